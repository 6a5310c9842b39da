#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# CloudZip - Read-only access to Zip archives in cloud object storage
# Copyright (C) 2025-2026 CloudZip contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Read-only filesystem view over Zip archives in an object store.

- ArchiveHandle: one archive, indexed lazily and at most once
- ArchiveFileSystem: every archive of one account, sharing one RangeReader
- ArchiveSession: explicit registry of open filesystems

Entries are addressed by their archive name. Every write-side operation raises
io.UnsupportedOperation.
"""

import io
import os
import threading

from dataclasses import dataclass
from typing import BinaryIO, Callable, Dict, Iterator, List, NamedTuple, Optional, Protocol, Tuple
from urllib.parse import parse_qs, unquote, urlparse

from cloudzip.Kernel import SingleFlight, getLogger
from cloudzip.Reader import ArchiveIndex, CentralDirectoryEntry, EntryExtractor, buildIndex, normalizeName
from cloudzip.Settings import (
    B2_ACCOUNT_QUERY_KEY, B2_APPLICATION_KEY_ENV, B2_SCHEME, CHUNK_SIZE, LOCAL_ACCOUNT, LOCAL_SCHEME,
    validateNameEncoding
)
from cloudzip.Storage import B2RangeReader, LocalRangeReader, RangeReader

logger = getLogger(__name__)


@dataclass
class Stat:
    """Entry metadata"""
    size: int
    mtime: Optional[float]
    isDir: bool


class ArchiveView(Protocol):
    """Read-only view that every archive implementation must follow"""

    def listEntries(self) -> List[str]:
        ...

    def stat(self, name: str) -> Stat:
        ...

    def open(self, name: str) -> BinaryIO:
        ...


class EntryFile(io.RawIOBase):
    """
    File-like object over the decompressed chunks of one entry.

    Chunks are pulled on demand; closing the file closes the chunk generator, which
    releases the network stream behind it.
    """

    def __init__(self, chunks: Iterator[bytes], name: str, size: int):
        super().__init__()
        self.name = name
        self._chunks = chunks
        self._size = int(size)
        self._pos = 0
        self._buffer = b''
        self._bufferPos = 0
        self._closed = False

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def tell(self) -> int:
        return self._pos

    @property
    def size(self) -> int:
        return self._size

    def readinto(self, b) -> int:
        if self._closed:
            return 0

        while self._bufferPos >= len(self._buffer):
            try:
                self._buffer = next(self._chunks)
            except StopIteration:
                return 0
            self._bufferPos = 0

        n = min(len(b), len(self._buffer) - self._bufferPos)
        b[:n] = self._buffer[self._bufferPos:self._bufferPos + n]
        self._bufferPos += n
        self._pos += n
        return n

    def close(self) -> None:
        if not self._closed:
            self._chunks.close()
            self._buffer = b''
            self._closed = True
        super().close()


class ArchiveHandle:
    """
    One archive object exposed as a flat, read-only set of entries.

    The index is built by the first operation that needs it. Concurrent first callers
    share one build; a failed build is kept and re-raised to every caller until the
    handle is closed and reopened.
    """

    def __init__(self, reader: RangeReader, container: str, objectName: str, chunkSize: int = CHUNK_SIZE,
                 legacyEncoding: str = None):
        self.reader = reader
        self.container = container
        self.objectName = objectName
        self.chunkSize = chunkSize
        self.legacyEncoding = validateNameEncoding(legacyEncoding) if legacyEncoding else None

        self._flight = SingleFlight(self.identity)
        self._closed = False

    @property
    def identity(self) -> str:
        return f"{self.reader.account}/{self.container}/{self.objectName}"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def isIndexed(self) -> bool:
        return self._flight.done()

    @property
    def index(self) -> ArchiveIndex:
        if self._closed:
            raise ValueError(f"Archive {self.identity} is closed")
        return self._flight.run(self._buildIndex)

    def _buildIndex(self) -> ArchiveIndex:
        logger.debug(f"Building index for {self.identity}")
        try:
            remote = self.reader.open(self.container, self.objectName)
            return buildIndex(self.reader, remote, self.legacyEncoding)
        except Exception as e:
            logger.error(f"Index build failed for {self.identity}: {e}")
            raise

    def listEntries(self) -> List[str]:
        return self.index.names()

    def iterEntries(self) -> Iterator[CentralDirectoryEntry]:
        return iter(self.index)

    def getEntry(self, name: str) -> CentralDirectoryEntry:
        """
        Resolve an entry name. A directory may be named with or without its trailing slash.

        Raises:
            FileNotFoundError: If the archive has no such entry
        """
        index = self.index
        entry = index.get(name)
        if entry is None and not name.endswith('/'):
            entry = index.get(name + '/')
        if entry is None:
            raise FileNotFoundError(f"No entry {name!r} in {self.identity}")
        return entry

    def exists(self, name: str) -> bool:
        try:
            self.getEntry(name)
            return True
        except FileNotFoundError:
            return False

    def stat(self, name: str) -> Stat:
        if not normalizeName(name).strip('/'):
            # The root exists only if the archive can be indexed
            self.listEntries()
            return Stat(size=0, mtime=None, isDir=True)

        entry = self.getEntry(name)
        return Stat(size=entry.uncompressedSize, mtime=entry.mtime, isDir=entry.isDir)

    def _extractor(self) -> EntryExtractor:
        return EntryExtractor(self.reader, self.index, self.chunkSize)

    def _fileEntry(self, name: str) -> CentralDirectoryEntry:
        entry = self.getEntry(name)
        if entry.isDir:
            raise IsADirectoryError(f"{name!r} is a directory in {self.identity}")
        return entry

    def openStream(self, name: str):
        """
        Open an entry as a context manager yielding decompressed chunks.

        Raises:
            FileNotFoundError, IsADirectoryError
        """
        entry = self._fileEntry(name)
        extractor = self._extractor()
        extractor.checkSupported(entry)
        return extractor.open(entry)

    def open(self, name: str) -> BinaryIO:
        """
        Open an entry for reading.

        Returns:
            Buffered binary file; reading it raises ZipIntegrityError if the data is corrupt

        Raises:
            FileNotFoundError: If the archive has no such entry
            IsADirectoryError: If the entry is a directory
            ZipFormatError: If the entry is encrypted or uses an unsupported compression method
        """
        entry = self._fileEntry(name)
        extractor = self._extractor()
        extractor.checkSupported(entry)
        chunks = extractor.iterEntry(entry)

        return io.BufferedReader(EntryFile(chunks, entry.name, entry.uncompressedSize), buffer_size=self.chunkSize)

    def read(self, name: str) -> bytes:
        with self.openStream(name) as chunks:
            return b''.join(chunks)

    def close(self) -> None:
        self._closed = True

    def __repr__(self):
        return f"ArchiveHandle({self.identity!r})"


def _unsupported(operation: str):
    raise io.UnsupportedOperation(f"{operation} is not supported: archives are read-only")


class ArchiveFileSystem:
    """
    All archives of one account.

    Handles are memoized per (container, objectName), so every caller shares one index
    per archive.
    """

    def __init__(self, reader: RangeReader, chunkSize: int = CHUNK_SIZE, legacyEncoding: str = None,
                 onClose: Callable[['ArchiveFileSystem'], None] = None):
        self.reader = reader
        self.chunkSize = chunkSize
        self.legacyEncoding = validateNameEncoding(legacyEncoding) if legacyEncoding else None

        self._onClose = onClose
        self._handles: Dict[Tuple[str, str], ArchiveHandle] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def account(self) -> str:
        return self.reader.account

    @property
    def closed(self) -> bool:
        return self._closed

    def openArchive(self, container: str, objectName: str) -> ArchiveHandle:
        """Get the shared handle for one archive. Nothing is fetched until the handle is used."""
        with self._lock:
            if self._closed:
                raise ValueError(f"Filesystem for {self.account} is closed")

            key = (container, objectName)
            handle = self._handles.get(key)
            if handle is None:
                handle = ArchiveHandle(self.reader, container, objectName, self.chunkSize, self.legacyEncoding)
                self._handles[key] = handle
            return handle

    def listEntries(self, container: str, objectName: str) -> List[str]:
        return self.openArchive(container, objectName).listEntries()

    def stat(self, container: str, objectName: str, name: str) -> Stat:
        return self.openArchive(container, objectName).stat(name)

    def open(self, container: str, objectName: str, name: str) -> BinaryIO:
        return self.openArchive(container, objectName).open(name)

    # Write-side operations
    def write(self, *args, **kwargs):
        _unsupported('write')

    def delete(self, *args, **kwargs):
        _unsupported('delete')

    def move(self, *args, **kwargs):
        _unsupported('move')

    def copy(self, *args, **kwargs):
        _unsupported('copy')

    def createDirectory(self, *args, **kwargs):
        _unsupported('createDirectory')

    def setAttribute(self, *args, **kwargs):
        _unsupported('setAttribute')

    def truncate(self, *args, **kwargs):
        _unsupported('truncate')

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            handles = list(self._handles.values())
            self._handles.clear()

        for handle in handles:
            handle.close()

        self.reader.close()
        logger.debug(f"Closed filesystem for {self.account} ({len(handles)} archives)")

        if self._onClose:
            self._onClose(self)

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.close()


class ArchiveLocation(NamedTuple):
    scheme: str
    account: str
    container: str
    objectName: str
    applicationKey: Optional[str] = None


def parseArchiveUri(uri: str) -> ArchiveLocation:
    """
    Parse an archive location.

    Accepted forms:
        b2://keyId/bucket/path/to/archive.zip[?applicationKey=...]
        file:///path/to/archive.zip
        /path/to/archive.zip (or any relative path)

    Raises:
        ValueError: If the URI is not one of those forms
    """
    if not uri:
        raise ValueError("archive location is empty")

    if '://' not in uri:
        path = os.path.abspath(uri)
        return ArchiveLocation(LOCAL_SCHEME, LOCAL_ACCOUNT, os.path.dirname(path), os.path.basename(path))

    parsed = urlparse(uri)
    scheme = parsed.scheme.lower()

    if scheme == LOCAL_SCHEME:
        path = os.path.abspath(unquote(parsed.path))
        return ArchiveLocation(LOCAL_SCHEME, LOCAL_ACCOUNT, os.path.dirname(path), os.path.basename(path))

    if scheme != B2_SCHEME:
        raise ValueError(f"unsupported scheme {parsed.scheme!r} in {uri!r}")

    # netloc keeps the key id's case, unlike hostname
    account = parsed.netloc.rsplit('@', 1)[-1]
    if not account:
        raise ValueError(f"missing account in {uri!r}")

    parts = parsed.path.lstrip('/').split('/', 1)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"expected b2://account/bucket/object in {uri!r}")

    applicationKey = parse_qs(parsed.query).get(B2_ACCOUNT_QUERY_KEY, [None])[0]

    return ArchiveLocation(B2_SCHEME, account, unquote(parts[0]), unquote(parts[1]), applicationKey)


def createRangeReader(scheme: str, account: str, applicationKey: str = None, **kwargs) -> RangeReader:
    """Construct the RangeReader for a scheme"""
    if scheme == B2_SCHEME:
        applicationKey = applicationKey or os.getenv(B2_APPLICATION_KEY_ENV)
        if not applicationKey:
            raise ValueError(f"B2 application key for {account} is missing (set {B2_APPLICATION_KEY_ENV})")
        return B2RangeReader(account, applicationKey, **kwargs)

    if scheme == LOCAL_SCHEME:
        return LocalRangeReader(account=account, **kwargs)

    raise ValueError(f"unsupported scheme {scheme!r}")


class ArchiveSession:
    """
    Registry of open filesystems, one per account.

    Usage:
        with ArchiveSession() as session:
            archive = session.openUri('b2://keyId/bucket/backups/app.zip?applicationKey=...')
            with archive.open('logs/app.log') as f:
                data = f.read()
    """

    def __init__(self, readerFactory: Callable[..., RangeReader] = createRangeReader, chunkSize: int = CHUNK_SIZE,
                 legacyEncoding: str = None):
        self.readerFactory = readerFactory
        self.chunkSize = chunkSize
        self.legacyEncoding = validateNameEncoding(legacyEncoding) if legacyEncoding else None

        self._fileSystems: Dict[str, ArchiveFileSystem] = {}
        self._lock = threading.Lock()

    def newFileSystem(self, account: str, applicationKey: str = None, scheme: str = B2_SCHEME,
                      reader: RangeReader = None) -> ArchiveFileSystem:
        """
        Open the filesystem for an account.

        Raises:
            FileExistsError: If the account already has an open filesystem
        """
        with self._lock:
            if account in self._fileSystems:
                raise FileExistsError(f"Filesystem for {account} is already open")

            if reader is None:
                reader = self.readerFactory(scheme, account, applicationKey, chunkSize=self.chunkSize)

            fileSystem = ArchiveFileSystem(reader, self.chunkSize, self.legacyEncoding, onClose=self._forget)
            self._fileSystems[account] = fileSystem

        logger.debug(f"Opened {scheme} filesystem for {account}")
        return fileSystem

    def getFileSystem(self, account: str) -> ArchiveFileSystem:
        """
        Raises:
            FileNotFoundError: If the account has no open filesystem
        """
        with self._lock:
            fileSystem = self._fileSystems.get(account)

        if fileSystem is None:
            raise FileNotFoundError(f"No open filesystem for {account}")
        return fileSystem

    def hasFileSystem(self, account: str) -> bool:
        with self._lock:
            return account in self._fileSystems

    def openUri(self, uri: str) -> ArchiveHandle:
        """Open an archive by URI, creating the account's filesystem on first use"""
        location = parseArchiveUri(uri)

        with self._lock:
            fileSystem = self._fileSystems.get(location.account)

        if fileSystem is None:
            try:
                fileSystem = self.newFileSystem(location.account, location.applicationKey, location.scheme)
            except FileExistsError:
                fileSystem = self.getFileSystem(location.account)

        return fileSystem.openArchive(location.container, location.objectName)

    def closeFileSystem(self, account: str) -> None:
        self.getFileSystem(account).close()

    def _forget(self, fileSystem: ArchiveFileSystem) -> None:
        with self._lock:
            for account, registered in list(self._fileSystems.items()):
                if registered is fileSystem:
                    del self._fileSystems[account]

    def close(self) -> None:
        with self._lock:
            fileSystems = list(self._fileSystems.values())

        for fileSystem in fileSystems:
            fileSystem.close()

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.close()
