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
Zip engine over a RangeReader.

Index step (once per archive):
    tail fetch -> end of central directory (+ Zip64 records) -> central directory fetch -> ArchiveIndex

Extraction step (per entry):
    local header fetch -> payload stream -> inflate -> CRC-32 check

Only the byte ranges named by the archive's own records are ever requested.
"""

import datetime
import struct
import zipfile
import zlib

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from cloudzip.Kernel import getLogger
from cloudzip.Settings import CHUNK_SIZE
from cloudzip.Storage import RangeReader, RemoteObjectHandle
from cloudzip.Utils import decodeName, formatSize

logger = getLogger(__name__)

# ZIP format constants (from PKZIP APPNOTE.TXT)
# Signature constants - these are not exposed in zipfile module, but defined in APPNOTE
LOCAL_FILE_HEADER_SIGNATURE = struct.unpack('<I', zipfile.stringFileHeader)[0]  # 0x04034b50
CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringCentralDir)[0]  # 0x02014b50
END_OF_CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringEndArchive)[0]  # 0x06054b50
ZIP64_END_OF_CENTRAL_DIR_SIGNATURE = 0x06064b50  # ZIP64 extension (not in zipfile module)
ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE = 0x07064b50  # ZIP64 extension (not in zipfile module)

# Compression methods (from zipfile module)
STORE = zipfile.ZIP_STORED  # 0
DEFLATE = zipfile.ZIP_DEFLATED  # 8
SUPPORTED_METHODS = {STORE: 'stored', DEFLATE: 'deflate'}

# General purpose bit flags
ENCRYPTED_FLAG = 0x0001  # Bit 0: entry is encrypted
DATA_DESCRIPTOR_FLAG = 0x0008  # Bit 3: sizes/CRC in data descriptor
UTF8_FLAG = 0x0800  # Bit 11: filename and comment UTF-8 encoded

# Extra field header ids
ZIP64_EXTRA_ID = 0x0001
UNICODE_PATH_EXTRA_ID = 0x7075  # Info-ZIP Unicode Path

# Sentinels that defer a field to Zip64 records
ZIP64_LIMIT_32 = 0xFFFFFFFF
ZIP64_LIMIT_16 = 0xFFFF

# Fixed record layouts
END_OF_CENTRAL_DIR = struct.Struct('<IHHHHIIH')  # 22 bytes
ZIP64_LOCATOR = struct.Struct('<IIQI')  # 20 bytes
ZIP64_END_OF_CENTRAL_DIR = struct.Struct('<IQHHIIQQQQ')  # 56 bytes
CENTRAL_DIR_HEADER = struct.Struct('<IHHHHHHIIIHHHHHII')  # 46 bytes
LOCAL_FILE_HEADER = struct.Struct('<IHHHHHIIIHH')  # 30 bytes
EXTRA_HEADER = struct.Struct('<HH')

MAX_COMMENT_LENGTH = 0xFFFF

# One fetch covers the longest possible comment and a Zip64 locator in front of the trailer
TAIL_WINDOW = END_OF_CENTRAL_DIR.size + MAX_COMMENT_LENGTH + ZIP64_LOCATOR.size


# =============================================================================
# Archive Exception Classes
# =============================================================================


class ArchiveError(Exception):
    """Base exception for archive content failures"""

    def __init__(self, message, objectName=None, entryName=None, offset=None):
        super().__init__(message)
        self.message = message
        self.objectName = str(objectName) if objectName is not None else None
        self.entryName = entryName
        self.offset = offset

    def __str__(self):
        context = []
        if self.objectName:
            context.append(f"object={self.objectName}")
        if self.entryName is not None:
            context.append(f"entry={self.entryName}")
        if self.offset is not None:
            context.append(f"offset={self.offset}")

        if not context:
            return self.message
        return f"{self.message} [{', '.join(context)}]"


class ZipFormatError(ArchiveError):
    """Malformed signature, truncated object or inconsistent records"""
    pass


class UnsupportedCompressionError(ZipFormatError):
    """Entry uses a compression method other than stored or deflate"""

    def __init__(self, method, objectName=None, entryName=None, offset=None):
        super().__init__(f"Unsupported compression method {method}", objectName, entryName, offset)
        self.method = method


class ZipIntegrityError(ArchiveError):
    """Decompressed data does not match the recorded CRC-32 or size"""
    pass


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class EndOfCentralDirectory:
    """Location of the central directory, after any Zip64 override"""
    entryCount: int
    centralDirSize: int
    centralDirOffset: int
    commentLength: int
    offset: int  # Absolute offset of the 32-bit trailer
    comment: bytes = b''
    zip64Offset: Optional[int] = None  # Absolute offset of the Zip64 end record, if any

    @property
    def isZip64(self) -> bool:
        return self.zip64Offset is not None

    @property
    def centralDirEnd(self) -> int:
        return self.centralDirOffset + self.centralDirSize


def dosDateTime(dosDate: int, dosTime: int) -> Optional[datetime.datetime]:
    """
    Convert MS-DOS date and time fields to a naive local datetime.

    DOS time format (16 bits):
        bits 0-4: seconds / 2 (0-29)
        bits 5-10: minutes (0-59)
        bits 11-15: hours (0-23)

    DOS date format (16 bits):
        bits 0-4: day (1-31)
        bits 5-8: month (1-12)
        bits 9-15: year - 1980 (0-127, representing 1980-2107)

    Returns:
        datetime or None when the fields do not form a valid date
    """
    try:
        return datetime.datetime(
            (dosDate >> 9) + 1980, (dosDate >> 5) & 0x0F, dosDate & 0x1F,
            dosTime >> 11, (dosTime >> 5) & 0x3F, (dosTime & 0x1F) * 2
        )
    except ValueError:
        return None


@dataclass(frozen=True)
class CentralDirectoryEntry:
    """One central directory record with Zip64 values already applied"""
    name: str
    rawName: bytes
    compressedSize: int
    uncompressedSize: int
    compressMethod: int
    crc: int
    localHeaderOffset: int
    dosDate: int
    dosTime: int
    flags: int = 0
    extraLength: int = 0
    externalAttr: int = 0
    comment: str = ''
    index: int = 0

    @property
    def isDir(self) -> bool:
        return self.name.endswith('/')

    @property
    def isEncrypted(self) -> bool:
        return bool(self.flags & ENCRYPTED_FLAG)

    @property
    def hasDataDescriptor(self) -> bool:
        return bool(self.flags & DATA_DESCRIPTOR_FLAG)

    @property
    def lastModified(self) -> Optional[datetime.datetime]:
        return dosDateTime(self.dosDate, self.dosTime)

    @property
    def mtime(self) -> Optional[float]:
        lastModified = self.lastModified
        return lastModified.timestamp() if lastModified else None


def normalizeName(name: str) -> str:
    """Entry lookup key: forward slashes, no leading slash"""
    return name.replace('\\', '/').lstrip('/')


class ArchiveIndex:
    """
    Immutable index of one archive.

    Entries keep archive order. Lookups by name resolve duplicates to the last record
    with that name, the same policy as common Zip tooling.
    """

    def __init__(self, handle: RemoteObjectHandle, endOfCentralDirectory: EndOfCentralDirectory,
                 entries: List[CentralDirectoryEntry]):
        self.handle = handle
        self.endOfCentralDirectory = endOfCentralDirectory
        self._entries = tuple(entries)

        byName: Dict[str, CentralDirectoryEntry] = {}
        for entry in self._entries:
            if entry.name in byName:
                logger.debug(f"Duplicate entry {entry.name!r} in {handle.identity}, keeping the later record")
            byName[entry.name] = entry
        self._byName = byName

    @property
    def entries(self) -> Tuple[CentralDirectoryEntry, ...]:
        return self._entries

    def names(self) -> List[str]:
        """Unique entry names in archive order (first appearance)"""
        return list(self._byName)

    def get(self, name: str) -> Optional[CentralDirectoryEntry]:
        return self._byName.get(normalizeName(name))

    def __contains__(self, name) -> bool:
        return self.get(name) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CentralDirectoryEntry]:
        return iter(self._entries)


# =============================================================================
# End of Central Directory Locator
# =============================================================================


def findEndOfCentralDirectory(tail: bytes, tailOffset: int = 0) -> int:
    """
    Find the trailer record in the last bytes of an object.

    Scans backward. A candidate only counts when its comment length ends exactly at the
    end of the object and its central directory fits in front of it, so signature bytes
    inside a comment are skipped.

    Args:
        tail: Last bytes of the object
        tailOffset: Absolute offset of tail[0]

    Returns:
        int: Position of the trailer in `tail`, or -1
    """
    signature = zipfile.stringEndArchive
    position = tail.rfind(signature, 0, len(tail) - END_OF_CENTRAL_DIR.size + len(signature))

    while position >= 0:
        (_, _, _, _, _, cdSize, cdOffset, commentLength) = END_OF_CENTRAL_DIR.unpack_from(tail, position)

        if position + END_OF_CENTRAL_DIR.size + commentLength == len(tail):
            if cdSize == ZIP64_LIMIT_32 or cdOffset == ZIP64_LIMIT_32:
                return position
            if cdOffset + cdSize <= tailOffset + position:
                return position

        position = tail.rfind(signature, 0, position)

    return -1


def locateEndOfCentralDirectory(reader: RangeReader, handle: RemoteObjectHandle) -> EndOfCentralDirectory:
    """
    Locate and parse the end of central directory, applying Zip64 records when present.

    Raises:
        ZipFormatError: If no valid trailer exists or the Zip64 records are unreadable
    """
    if handle.size < END_OF_CENTRAL_DIR.size:
        raise ZipFormatError(f"Not a valid archive: only {handle.size} bytes", handle)

    windowSize = min(handle.size, TAIL_WINDOW)
    windowStart = handle.size - windowSize
    tail = reader.fetch(handle, windowStart, windowSize)

    position = findEndOfCentralDirectory(tail, windowStart)
    if position < 0:
        raise ZipFormatError(
            f"Not a valid archive: no end of central directory in the last {windowSize} bytes", handle,
            offset=windowStart
        )

    eocdOffset = windowStart + position
    (_, diskNumber, cdDisk, entriesOnDisk, entryCount, cdSize, cdOffset,
     commentLength) = END_OF_CENTRAL_DIR.unpack_from(tail, position)
    comment = bytes(tail[position + END_OF_CENTRAL_DIR.size:position + END_OF_CENTRAL_DIR.size + commentLength])

    needsZip64 = (
        entryCount == ZIP64_LIMIT_16 or entriesOnDisk == ZIP64_LIMIT_16 or
        cdSize == ZIP64_LIMIT_32 or cdOffset == ZIP64_LIMIT_32
    )

    locatorPosition = position - ZIP64_LOCATOR.size
    hasLocator = (
        locatorPosition >= 0 and
        struct.unpack_from('<I', tail, locatorPosition)[0] == ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE
    )

    zip64Offset = None
    cdEnd = eocdOffset

    if hasLocator:
        (_, zip64Disk, zip64Offset, totalDisks) = ZIP64_LOCATOR.unpack_from(tail, locatorPosition)
        locatorOffset = windowStart + locatorPosition

        if zip64Disk != 0 or totalDisks > 1:
            raise ZipFormatError("Multi-disk archives are not supported", handle, offset=locatorOffset)

        if zip64Offset + ZIP64_END_OF_CENTRAL_DIR.size > locatorOffset:
            raise ZipFormatError(
                f"Zip64 locator points outside the archive ({zip64Offset})", handle, offset=locatorOffset
            )

        if zip64Offset >= windowStart:
            record = tail[zip64Offset - windowStart:zip64Offset - windowStart + ZIP64_END_OF_CENTRAL_DIR.size]
        else:
            record = reader.fetch(handle, zip64Offset, ZIP64_END_OF_CENTRAL_DIR.size)

        (signature, _, _, _, diskNumber, cdDisk, entriesOnDisk, entryCount, cdSize,
         cdOffset) = ZIP64_END_OF_CENTRAL_DIR.unpack_from(record)

        if signature != ZIP64_END_OF_CENTRAL_DIR_SIGNATURE:
            raise ZipFormatError("Zip64 end of central directory record is unreadable", handle, offset=zip64Offset)

        cdEnd = zip64Offset
        logger.debug(f"Zip64 end of central directory at {zip64Offset} in {handle.identity}")

    elif needsZip64:
        raise ZipFormatError("Zip64 sentinel values without a Zip64 locator", handle, offset=eocdOffset)

    if diskNumber != 0 or cdDisk != 0 or entriesOnDisk != entryCount:
        raise ZipFormatError("Multi-disk archives are not supported", handle, offset=eocdOffset)

    if cdOffset + cdSize > cdEnd:
        raise ZipFormatError(
            f"Central directory {cdOffset}+{cdSize} overlaps its trailer at {cdEnd}", handle, offset=eocdOffset
        )

    if entryCount * CENTRAL_DIR_HEADER.size > cdSize:
        raise ZipFormatError(
            f"Central directory of {cdSize} bytes cannot hold {entryCount} entries", handle, offset=cdOffset
        )

    return EndOfCentralDirectory(
        entryCount=entryCount,
        centralDirSize=cdSize,
        centralDirOffset=cdOffset,
        commentLength=commentLength,
        offset=eocdOffset,
        comment=comment,
        zip64Offset=zip64Offset,
    )


# =============================================================================
# Central Directory Parser
# =============================================================================


def parseExtraFields(extra: bytes) -> Dict[int, bytes]:
    """
    Split an extra field block into {headerId: data}. The first record of an id wins.

    Raises:
        ValueError: If a record runs past the end of the block
    """
    fields = {}
    position = 0

    while position + EXTRA_HEADER.size <= len(extra):
        headerId, size = EXTRA_HEADER.unpack_from(extra, position)
        start = position + EXTRA_HEADER.size
        end = start + size
        if end > len(extra):
            raise ValueError(f"extra field 0x{headerId:04x} declares {size} bytes, {len(extra) - start} left")

        fields.setdefault(headerId, extra[start:end])
        position = end

    return fields


def applyZip64Extra(data: Optional[bytes], uncompressedSize: int, compressedSize: int,
                    localHeaderOffset: Optional[int] = None, diskStart: Optional[int] = None) -> Tuple[int, int, int, int]:
    """
    Replace sentinel fields with the 64-bit values of a Zip64 extra record.

    Values appear in a fixed order, and only for the fields holding a sentinel:
    uncompressed size, compressed size, local header offset, disk start.

    Raises:
        ValueError: If a sentinel field has no value in the record
    """
    position = 0
    values = []

    for value, sentinel, layout in (
        (uncompressedSize, ZIP64_LIMIT_32, '<Q'),
        (compressedSize, ZIP64_LIMIT_32, '<Q'),
        (localHeaderOffset, ZIP64_LIMIT_32, '<Q'),
        (diskStart, ZIP64_LIMIT_16, '<I'),
    ):
        if value != sentinel:
            values.append(value)
            continue

        size = struct.calcsize(layout)
        if data is None or position + size > len(data):
            raise ValueError("Zip64 extra field is missing a value for a sentinel field")

        values.append(struct.unpack_from(layout, data, position)[0])
        position += size

    return tuple(values)


def _unicodePathName(data: Optional[bytes], rawName: bytes) -> Optional[str]:
    # Info-ZIP Unicode Path: version(1) + CRC-32 of the header name(4) + UTF-8 name
    if not data or len(data) < 5 or data[0] != 1:
        return None

    nameCrc = struct.unpack_from('<I', data, 1)[0]
    if nameCrc != zlib.crc32(rawName):
        return None

    try:
        return data[5:].decode('utf-8')
    except UnicodeDecodeError:
        return None


def iterCentralDirectory(data: bytes, endOfCentralDirectory: EndOfCentralDirectory,
                         objectName=None, legacyEncoding: str = None) -> Iterator[CentralDirectoryEntry]:
    """
    Parse central directory records from the bytes of the whole directory.

    Args:
        data: Exactly the central directory bytes
        endOfCentralDirectory: Trailer the directory belongs to
        objectName: Archive identity for error context
        legacyEncoding: Name encoding when the UTF-8 flag is clear

    Raises:
        ZipFormatError: On a bad signature, a truncated record or an impossible offset
    """
    base = endOfCentralDirectory.centralDirOffset
    position = 0

    for index in range(endOfCentralDirectory.entryCount):
        if position + CENTRAL_DIR_HEADER.size > len(data):
            raise ZipFormatError(
                f"Central directory truncated at entry {index} of {endOfCentralDirectory.entryCount}",
                objectName, offset=base + position
            )

        (signature, _, _, flags, method, dosTime, dosDate, crc, compressedSize, uncompressedSize,
         nameLength, extraLength, commentLength, diskStart, _, externalAttr,
         localHeaderOffset) = CENTRAL_DIR_HEADER.unpack_from(data, position)

        if signature != CENTRAL_DIR_SIGNATURE:
            raise ZipFormatError(
                f"Bad central directory signature 0x{signature:08x} at entry {index}", objectName,
                offset=base + position
            )

        nameStart = position + CENTRAL_DIR_HEADER.size
        extraStart = nameStart + nameLength
        commentStart = extraStart + extraLength
        recordEnd = commentStart + commentLength

        if recordEnd > len(data):
            raise ZipFormatError(
                f"Central directory record {index} runs past the directory", objectName, offset=base + position
            )

        rawName = bytes(data[nameStart:extraStart])
        isUtf8 = bool(flags & UTF8_FLAG)
        name = decodeName(rawName, isUtf8, legacyEncoding)

        try:
            extras = parseExtraFields(data[extraStart:commentStart])
            (uncompressedSize, compressedSize, localHeaderOffset, diskStart) = applyZip64Extra(
                extras.get(ZIP64_EXTRA_ID), uncompressedSize, compressedSize, localHeaderOffset, diskStart
            )
        except ValueError as e:
            raise ZipFormatError(f"Corrupt extra field: {e}", objectName, entryName=name, offset=base + position)

        unicodeName = _unicodePathName(extras.get(UNICODE_PATH_EXTRA_ID), rawName)
        if unicodeName is not None:
            name = unicodeName

        name = normalizeName(name)

        if diskStart != 0:
            raise ZipFormatError("Multi-disk archives are not supported", objectName, entryName=name,
                                 offset=base + position)

        if localHeaderOffset >= endOfCentralDirectory.centralDirOffset:
            raise ZipFormatError(
                f"Local header offset {localHeaderOffset} is not before the central directory", objectName,
                entryName=name, offset=base + position
            )

        yield CentralDirectoryEntry(
            name=name,
            rawName=rawName,
            compressedSize=compressedSize,
            uncompressedSize=uncompressedSize,
            compressMethod=method,
            crc=crc,
            localHeaderOffset=localHeaderOffset,
            dosDate=dosDate,
            dosTime=dosTime,
            flags=flags,
            extraLength=extraLength,
            externalAttr=externalAttr,
            comment=decodeName(bytes(data[commentStart:recordEnd]), isUtf8, legacyEncoding),
            index=index,
        )

        position = recordEnd

    if position != len(data):
        logger.warning(
            f"Central directory of {objectName} has {len(data) - position} bytes after "
            f"{endOfCentralDirectory.entryCount} entries"
        )


def parseCentralDirectory(reader: RangeReader, handle: RemoteObjectHandle,
                          endOfCentralDirectory: EndOfCentralDirectory,
                          legacyEncoding: str = None) -> List[CentralDirectoryEntry]:
    """Fetch the whole central directory in one range read and parse it"""
    if endOfCentralDirectory.entryCount == 0:
        return []

    data = reader.fetch(handle, endOfCentralDirectory.centralDirOffset, endOfCentralDirectory.centralDirSize)
    return list(iterCentralDirectory(data, endOfCentralDirectory, handle, legacyEncoding))


def buildIndex(reader: RangeReader, handle: RemoteObjectHandle, legacyEncoding: str = None) -> ArchiveIndex:
    """Run the full index step for one archive"""
    endOfCentralDirectory = locateEndOfCentralDirectory(reader, handle)
    entries = parseCentralDirectory(reader, handle, endOfCentralDirectory, legacyEncoding)

    logger.debug(
        f"Indexed {handle.identity}: {len(entries)} entries, central directory "
        f"{formatSize(endOfCentralDirectory.centralDirSize)} at {endOfCentralDirectory.centralDirOffset}"
        f"{' (Zip64)' if endOfCentralDirectory.isZip64 else ''}"
    )

    return ArchiveIndex(handle, endOfCentralDirectory, entries)


# =============================================================================
# Entry Extractor
# =============================================================================


class EntryExtractor:
    """
    Extracts single entries with range reads only.

    Per entry: one fetch for the local header (a second, small one only when the local
    extra field is longer than the central record's), then one stream of exactly
    `compressedSize` payload bytes.
    """

    def __init__(self, reader: RangeReader, index: ArchiveIndex, chunkSize: int = CHUNK_SIZE):
        self.reader = reader
        self.index = index
        self.handle = index.handle
        self.chunkSize = chunkSize

    @property
    def dataLimit(self) -> int:
        # Entries physically precede the directory that describes them
        return self.index.endOfCentralDirectory.centralDirOffset

    def checkSupported(self, entry: CentralDirectoryEntry) -> None:
        if entry.isEncrypted:
            raise ZipFormatError("Encrypted entries are not supported", self.handle, entry.name,
                                 entry.localHeaderOffset)

        if entry.compressMethod not in SUPPORTED_METHODS:
            raise UnsupportedCompressionError(entry.compressMethod, self.handle, entry.name, entry.localHeaderOffset)

        if entry.compressMethod == STORE and entry.compressedSize != entry.uncompressedSize:
            raise ZipFormatError(
                f"Stored entry sizes differ ({entry.compressedSize} != {entry.uncompressedSize})", self.handle,
                entry.name, entry.localHeaderOffset
            )

    def readLocalHeader(self, entry: CentralDirectoryEntry) -> int:
        """
        Fetch and cross-check the local file header of an entry.

        Returns:
            int: Absolute offset of the first payload byte

        Raises:
            ZipFormatError: If the header is missing or disagrees with the central record
        """
        start = entry.localHeaderOffset

        if start + LOCAL_FILE_HEADER.size > self.dataLimit:
            raise ZipFormatError("Local header overlaps the central directory", self.handle, entry.name, start)

        estimate = LOCAL_FILE_HEADER.size + len(entry.rawName) + entry.extraLength
        header = self.reader.fetch(self.handle, start, min(estimate, self.dataLimit - start))

        (signature, _, flags, method, _, _, crc, compressedSize, uncompressedSize, nameLength,
         extraLength) = LOCAL_FILE_HEADER.unpack_from(header)

        if signature != LOCAL_FILE_HEADER_SIGNATURE:
            raise ZipFormatError(f"Bad local header signature 0x{signature:08x}", self.handle, entry.name, start)

        headerLength = LOCAL_FILE_HEADER.size + nameLength + extraLength
        if start + headerLength > self.dataLimit:
            raise ZipFormatError("Local header overlaps the central directory", self.handle, entry.name, start)

        if headerLength > len(header):
            header += self.reader.fetch(self.handle, start + len(header), headerLength - len(header))

        rawName = header[LOCAL_FILE_HEADER.size:LOCAL_FILE_HEADER.size + nameLength]
        if rawName != entry.rawName:
            raise ZipFormatError(
                f"Local header name {rawName!r} differs from central directory name {entry.rawName!r}", self.handle,
                entry.name, start
            )

        if method != entry.compressMethod:
            raise ZipFormatError(
                f"Local header method {method} differs from central directory method {entry.compressMethod}",
                self.handle, entry.name, start
            )

        if not flags & DATA_DESCRIPTOR_FLAG:
            try:
                extras = parseExtraFields(header[LOCAL_FILE_HEADER.size + nameLength:headerLength])
                (uncompressedSize, compressedSize, _, _) = applyZip64Extra(
                    extras.get(ZIP64_EXTRA_ID), uncompressedSize, compressedSize
                )
            except ValueError as e:
                raise ZipFormatError(f"Corrupt local extra field: {e}", self.handle, entry.name, start)

            if (crc, compressedSize, uncompressedSize) != (entry.crc, entry.compressedSize, entry.uncompressedSize):
                raise ZipFormatError(
                    f"Local header (crc={crc:08x}, compressed={compressedSize}, size={uncompressedSize}) differs "
                    f"from central directory (crc={entry.crc:08x}, compressed={entry.compressedSize}, "
                    f"size={entry.uncompressedSize})", self.handle, entry.name, start
                )
        # With a data descriptor the local fields are placeholders; the central record is authoritative

        dataOffset = start + headerLength
        if dataOffset + entry.compressedSize > self.dataLimit:
            raise ZipFormatError(
                f"Payload of {entry.compressedSize} bytes overlaps the central directory", self.handle, entry.name,
                dataOffset
            )

        return dataOffset

    @contextmanager
    def open(self, entry: CentralDirectoryEntry):
        """
        Open an entry as a lazy sequence of decompressed chunks.

        The network stream is released when the `with` block exits, including when the
        consumer stops early.

        Yields:
            Iterator[bytes]: Decompressed chunks; raises ZipIntegrityError at the end on a CRC mismatch
        """
        chunks = self.iterEntry(entry)
        try:
            yield chunks
        finally:
            chunks.close()

    def extract(self, entry: CentralDirectoryEntry) -> bytes:
        with self.open(entry) as chunks:
            return b''.join(chunks)

    def iterEntry(self, entry: CentralDirectoryEntry) -> Iterator[bytes]:
        self.checkSupported(entry)

        dataOffset = self.readLocalHeader(entry)

        logger.debug(
            f"Extracting {entry.name!r} from {self.handle.identity}: {SUPPORTED_METHODS[entry.compressMethod]}, "
            f"{entry.compressedSize} bytes at {dataOffset}"
        )

        decompressor = zlib.decompressobj(-zlib.MAX_WBITS) if entry.compressMethod == DEFLATE else None
        crc = 0
        produced = 0

        with self.reader.stream(self.handle, dataOffset, entry.compressedSize, self.chunkSize) as payload:
            for chunk in payload:
                for data in self._decompress(decompressor, chunk, entry, dataOffset):
                    produced += len(data)
                    if produced > entry.uncompressedSize:
                        raise ZipIntegrityError(
                            f"Entry produced more than its recorded {entry.uncompressedSize} bytes", self.handle,
                            entry.name, dataOffset
                        )

                    crc = zlib.crc32(data, crc)
                    yield data

        if decompressor is not None:
            try:
                data = decompressor.flush()
            except zlib.error as e:
                raise ZipIntegrityError(f"Corrupt deflate stream: {e}", self.handle, entry.name, dataOffset)

            if not decompressor.eof:
                raise ZipIntegrityError("Deflate stream is truncated", self.handle, entry.name, dataOffset)

            if decompressor.unused_data:
                raise ZipIntegrityError(
                    f"Deflate stream ends {len(decompressor.unused_data)} bytes before the recorded "
                    f"compressed size {entry.compressedSize}", self.handle, entry.name, dataOffset
                )

            if data:
                produced += len(data)
                if produced > entry.uncompressedSize:
                    raise ZipIntegrityError(
                        f"Entry produced more than its recorded {entry.uncompressedSize} bytes", self.handle,
                        entry.name, dataOffset
                    )
                crc = zlib.crc32(data, crc)
                yield data

        if produced != entry.uncompressedSize:
            raise ZipIntegrityError(
                f"Entry produced {produced} bytes, expected {entry.uncompressedSize}", self.handle, entry.name,
                dataOffset
            )

        if crc != entry.crc:
            logger.warning(f"CRC mismatch for {entry.name!r} in {self.handle.identity}")
            raise ZipIntegrityError(
                f"CRC-32 mismatch: computed {crc:08x}, recorded {entry.crc:08x}", self.handle, entry.name, dataOffset
            )

    def _decompress(self, decompressor, chunk: bytes, entry: CentralDirectoryEntry, dataOffset: int) -> Iterator[bytes]:
        if decompressor is None:
            yield chunk
            return

        # Bounded output per call keeps a highly compressed chunk from expanding in one piece
        try:
            data = decompressor.decompress(chunk, self.chunkSize)
            while True:
                if data:
                    yield data
                if not decompressor.unconsumed_tail:
                    break
                data = decompressor.decompress(decompressor.unconsumed_tail, self.chunkSize)
        except zlib.error as e:
            raise ZipIntegrityError(f"Corrupt deflate stream: {e}", self.handle, entry.name, dataOffset)
