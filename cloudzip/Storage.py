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
Range Reader: byte-range access to objects in a cloud object store.

Provides a single I/O primitive for the Zip engine:
- RemoteObjectHandle: identity + size of one object, resolved once
- RangeReader.fetch(): exactly N bytes at an offset
- RangeReader.stream(): the same range as a chunk iterator bound to a `with` block

Backends:
- LocalRangeReader: objects on the local disk (container = directory)
- B2RangeReader: Backblaze B2 native API with HTTP Range requests

Transient transport failures are retried with bounded exponential backoff; a stream
broken mid-body resumes at the first undelivered byte. Authorization failures are
raised immediately.
"""

import os
import re
import threading
import time

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional
from urllib.parse import quote

import requests

from cloudzip.Kernel import getLogger
from cloudzip.Settings import (
    B2_AUTH_URL, CHUNK_SIZE, FETCH_RETRIES, HTTP_TIMEOUT, LOCAL_ACCOUNT, RETRY_BACKOFF, RETRY_BACKOFF_MAX, USER_AGENT
)
from cloudzip.Utils import StallResilientAdapter, formatSize

logger = getLogger(__name__)

# HTTP statuses worth another attempt
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

BUCKET_NAME_PATTERN = re.compile(r'^[A-Za-z0-9-]{6,50}$')
MAX_OBJECT_NAME_BYTES = 1024


@dataclass(frozen=True)
class RemoteObjectHandle:
    """One object in the store, with its size fixed when the handle was opened"""
    account: str
    container: str
    objectName: str
    size: int

    @property
    def identity(self) -> str:
        return f"{self.account}/{self.container}/{self.objectName}"

    def __str__(self):
        return self.identity


# =============================================================================
# Storage Exception Classes
# =============================================================================


class StorageError(Exception):
    """Base exception for object store failures"""

    def __init__(self, message, statusCode=None, target=None, offset=None, length=None, response=None):
        super().__init__(message)
        self.message = message
        self.statusCode = statusCode
        self.target = str(target) if target is not None else None
        self.offset = offset
        self.length = length
        self.response = response

    def __str__(self):
        context = []
        if self.target:
            context.append(f"object={self.target}")
        if self.offset is not None:
            context.append(f"offset={self.offset}")
        if self.length is not None:
            context.append(f"length={self.length}")
        if self.statusCode is not None:
            context.append(f"status={self.statusCode}")

        if not context:
            return self.message
        return f"{self.message} [{', '.join(context)}]"


class ObjectNotFoundError(StorageError):
    """Raised when the container or object does not exist (404)"""
    pass


class UnauthorizedError(StorageError):
    """Raised when credentials are missing, invalid or lack permission (401/403). Never retried."""
    pass


class TransientStorageError(StorageError):
    """Raised for connection resets, timeouts and retryable server statuses"""
    pass


class ShortReadError(TransientStorageError):
    """Raised when a range body ends before the requested length was delivered"""
    pass


class RangeOutOfBoundsError(ValueError):
    """Raised when a caller requests bytes outside the object. A programming error, never retried."""

    def __init__(self, handle, offset, length):
        super().__init__(f"Range {offset}+{length} is outside {handle.identity} (size {handle.size})")
        self.handle = handle
        self.offset = offset
        self.length = length


def validateBucketName(name: str) -> None:
    """
    Validate a B2 bucket name.

    Bucket names are 6-50 characters of letters, digits and "-". Names starting
    with "b2-" are reserved.
    re: https://www.backblaze.com/b2/docs/buckets.html

    Raises:
        ValueError: If the name is not a valid bucket name
    """
    if not name or not name.strip():
        raise ValueError("bucket name is empty")
    if not BUCKET_NAME_PATTERN.match(name):
        raise ValueError(f"bucket name must be 6-50 characters of letters, digits and '-': {name!r}")
    if name.lower().startswith('b2-'):
        raise ValueError(f"bucket name cannot start with b2-: {name!r}")


def validateObjectName(name: str) -> None:
    """
    Validate a B2 file name: up to 1024 UTF-8 bytes, no control characters or DEL.
    re: https://www.backblaze.com/b2/docs/files.html

    Raises:
        ValueError: If the name is not a valid file name
    """
    if not name or not name.strip():
        raise ValueError("file name is empty")
    if len(name.encode('utf-8')) > MAX_OBJECT_NAME_BYTES:
        raise ValueError(f"file name is longer than {MAX_OBJECT_NAME_BYTES} bytes")
    if any(ord(c) < 32 or ord(c) == 127 for c in name):
        raise ValueError(f"file name contains illegal characters: {name!r}")


class RangeReader:
    """
    Base class for byte-range access to one account of an object store.

    Subclasses implement _objectSize() and _openRange(); retry, resume and bounds
    checking live here.
    """

    def __init__(
        self,
        account: str,
        chunkSize: int = CHUNK_SIZE,
        retries: int = FETCH_RETRIES,
        backoff: float = RETRY_BACKOFF,
        backoffMax: float = RETRY_BACKOFF_MAX
    ):
        """
        Initialize RangeReader.

        Args:
            account: Account identifier, part of every handle's identity
            chunkSize: Default streaming chunk size
            retries: Attempts per operation for transient failures (at least 1)
            backoff: First retry delay in seconds, doubled on every attempt
            backoffMax: Upper bound for a single retry delay
        """
        self.account = account
        self.chunkSize = int(chunkSize)
        self.retries = max(1, int(retries))
        self.backoff = float(backoff)
        self.backoffMax = float(backoffMax)

    def backoffDelay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)"""
        return min(self.backoff * (2 ** (attempt - 1)), self.backoffMax)

    def open(self, container: str, objectName: str) -> RemoteObjectHandle:
        """
        Resolve an object and its size.

        Returns:
            RemoteObjectHandle: Immutable handle for range reads

        Raises:
            ObjectNotFoundError, UnauthorizedError, TransientStorageError
        """
        self._validateNames(container, objectName)

        target = f"{self.account}/{container}/{objectName}"
        size = self._retry(f"size of {target}", self._objectSize, container, objectName)

        handle = RemoteObjectHandle(self.account, container, objectName, int(size))
        logger.debug(f"Opened {handle.identity} ({formatSize(handle.size)})")
        return handle

    def checkRange(self, handle: RemoteObjectHandle, offset: int, length: int) -> None:
        if offset < 0 or length < 0 or offset + length > handle.size:
            raise RangeOutOfBoundsError(handle, offset, length)

    def fetch(self, handle: RemoteObjectHandle, offset: int, length: int) -> bytes:
        """
        Read exactly `length` bytes starting at `offset`.

        Raises:
            RangeOutOfBoundsError: If the range is outside the object
            ShortReadError: If the store keeps delivering fewer bytes than requested
        """
        with self.stream(handle, offset, length) as chunks:
            return b''.join(chunks)

    @contextmanager
    def stream(self, handle: RemoteObjectHandle, offset: int, length: int, chunkSize: Optional[int] = None):
        """
        Stream a byte range as chunks.

        The connection behind the stream is released when the `with` block exits,
        whether the chunks were exhausted, an error was raised, or the consumer stopped early.

        Yields:
            Iterator[bytes]: Chunks whose concatenation is exactly `length` bytes
        """
        self.checkRange(handle, offset, length)

        logger.debug(f"Range fetch {handle.identity} offset={offset} length={length}")

        chunks = self._iterRange(handle, offset, length, chunkSize or self.chunkSize)
        try:
            yield chunks
        finally:
            chunks.close()

    def close(self) -> None:
        """Release pooled connections"""
        pass

    def _retry(self, description, function, *args):
        attempt = 0
        while True:
            try:
                return function(*args)
            except TransientStorageError as e:
                attempt += 1
                if attempt >= self.retries:
                    logger.warning(f"Giving up on {description} after {attempt} attempts: {e}")
                    raise

                delay = self.backoffDelay(attempt)
                logger.debug(f"Retrying {description} in {delay:.2f}s (attempt {attempt}): {e}")
                time.sleep(delay)

    def _iterRange(self, handle: RemoteObjectHandle, offset: int, length: int, chunkSize: int) -> Iterator[bytes]:
        delivered = 0
        attempt = 0

        while delivered < length:
            position = offset + delivered
            remaining = length - delivered

            try:
                with self._openRange(handle, position, remaining, chunkSize) as body:
                    for chunk in body:
                        if not chunk:
                            continue

                        chunk = chunk[:length - delivered]
                        delivered += len(chunk)
                        attempt = 0
                        yield chunk

                        if delivered >= length:
                            break

                if delivered < length:
                    raise ShortReadError(
                        f"Range body ended after {delivered} of {length} bytes",
                        target=handle, offset=offset, length=length
                    )

            except TransientStorageError as e:
                attempt += 1
                if attempt >= self.retries:
                    logger.warning(f"Giving up on range {handle.identity} after {attempt} attempts: {e}")
                    raise

                delay = self.backoffDelay(attempt)
                logger.debug(
                    f"Range {handle.identity} interrupted at {offset + delivered}, "
                    f"resuming in {delay:.2f}s (attempt {attempt}): {e}"
                )
                time.sleep(delay)

    def _validateNames(self, container: str, objectName: str) -> None:
        pass

    def _objectSize(self, container: str, objectName: str) -> int:
        raise NotImplementedError

    def _openRange(self, handle: RemoteObjectHandle, offset: int, length: int, chunkSize: int):
        """Context manager yielding an iterator over the bytes of one range request"""
        raise NotImplementedError


class LocalRangeReader(RangeReader):
    """
    Local filesystem backend.

    Containers are directories below `root`, objects are files inside them.
    """

    def __init__(self, root: Optional[str] = None, account: str = LOCAL_ACCOUNT, **kwargs):
        super().__init__(account, **kwargs)
        self.root = os.path.abspath(root) if root else None

        logger.debug(f"LocalRangeReader initialized: {self.root or '(absolute containers)'}")

    def pathFor(self, container: str, objectName: str) -> str:
        if self.root is None:
            return os.path.join(os.path.abspath(container), objectName)

        path = os.path.abspath(os.path.join(self.root, container, objectName))
        if os.path.commonpath([self.root, path]) != self.root:
            raise ValueError(f"Object escapes storage root: {container}/{objectName}")
        return path

    def _objectSize(self, container: str, objectName: str) -> int:
        path = self.pathFor(container, objectName)
        target = f"{self.account}/{container}/{objectName}"

        try:
            if os.path.isdir(path):
                raise ObjectNotFoundError("Not a file", target=target)
            return os.path.getsize(path)
        except FileNotFoundError:
            raise ObjectNotFoundError("No such object", target=target)
        except PermissionError as e:
            raise UnauthorizedError(f"Permission denied: {e}", target=target)

    @contextmanager
    def _openRange(self, handle: RemoteObjectHandle, offset: int, length: int, chunkSize: int):
        try:
            f = open(self.pathFor(handle.container, handle.objectName), 'rb')
        except FileNotFoundError:
            raise ObjectNotFoundError("No such object", target=handle, offset=offset, length=length)
        except PermissionError as e:
            raise UnauthorizedError(f"Permission denied: {e}", target=handle, offset=offset, length=length)

        with f:
            f.seek(offset)
            yield self._iterFile(f, length, chunkSize)

    def _iterFile(self, f, length: int, chunkSize: int) -> Iterator[bytes]:
        remaining = length
        while remaining > 0:
            data = f.read(min(chunkSize, remaining))
            if not data:
                return
            remaining -= len(data)
            yield data


class _ThreadLocalSession(threading.local):
    """
    Thread-local storage for requests.Session with guaranteed initialization.

    Subclassing threading.local ensures __init__ is called for each thread,
    so 'session' attribute always exists (no hasattr/getattr needed).
    """

    def __init__(self):
        super().__init__()
        self.session = None


class B2RangeReader(RangeReader):
    """
    Backblaze B2 backend (native API).

    - Authorizes once per reader with b2_authorize_account (HTTP Basic keyId:applicationKey)
    - Sizes objects with HEAD {downloadUrl}/file/{bucket}/{name}
    - Reads with GET + Range on the same URL

    Thread Safety:
    - Each thread gets its own requests.Session via _ThreadLocalSession
    - Authorization is shared and refreshed under a lock
    """

    def __init__(
        self,
        keyId: str,
        applicationKey: str,
        authUrl: str = B2_AUTH_URL,
        timeout: float = HTTP_TIMEOUT,
        **kwargs
    ):
        """
        Initialize B2RangeReader.

        Args:
            keyId: B2 application key id (the account identifier of handles)
            applicationKey: B2 application key
            authUrl: b2_authorize_account endpoint
            timeout: Socket timeout per request in seconds
        """
        if not keyId:
            raise ValueError("B2 key id is required")
        if not applicationKey:
            raise ValueError("B2 application key is required")

        super().__init__(keyId, **kwargs)

        self.authUrl = authUrl
        self.timeout = timeout
        self._applicationKey = applicationKey

        self._authLock = threading.Lock()
        self._authorization = None

        self._tls = _ThreadLocalSession()
        self._sessions = []
        self._sessionsLock = threading.Lock()

    @property
    def _session(self) -> requests.Session:
        """Get or create the thread-local requests.Session"""
        if self._tls.session is None:
            session = requests.Session()
            session.headers['User-Agent'] = USER_AGENT
            adapter = StallResilientAdapter(chunkSize=self.chunkSize)
            session.mount('https://', adapter)
            session.mount('http://', adapter)

            with self._sessionsLock:
                self._sessions.append(session)

            self._tls.session = session
            logger.debug(f"Created new thread-local B2 session for thread {threading.current_thread().name}")
        return self._tls.session

    def authorize(self, force: bool = False) -> dict:
        """
        Authorize the account, or return the cached authorization.

        Args:
            force: Discard the cached token (used when B2 reports it expired)

        Returns:
            dict: authorizationToken, downloadUrl, apiUrl

        Raises:
            UnauthorizedError: If B2 rejects the key
        """
        with self._authLock:
            if self._authorization and not force:
                return self._authorization

            logger.debug(f"Authorizing B2 account {self.account}")
            authorization = self._retry(f"authorization of {self.account}", self._authorize)
            self._authorization = authorization
            return authorization

    def _authorize(self) -> dict:
        try:
            response = self._session.get(self.authUrl, auth=(self.account, self._applicationKey), timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientStorageError(f"B2 authorization failed: {e}", target=self.account)

        with response:
            self._checkStatus(response, self.account)

            try:
                data = response.json()
                return {
                    'authorizationToken': data['authorizationToken'],
                    'downloadUrl': data['downloadUrl'].rstrip('/'),
                    'apiUrl': data.get('apiUrl'),
                }
            except (ValueError, KeyError) as e:
                raise StorageError(f"Invalid B2 authorization response: {e}", target=self.account)

    def _validateNames(self, container: str, objectName: str) -> None:
        validateBucketName(container)
        validateObjectName(objectName)

    def _objectUrl(self, downloadUrl: str, container: str, objectName: str) -> str:
        return f"{downloadUrl}/file/{container}/{quote(objectName, safe='/')}"

    def _request(self, method: str, container: str, objectName: str, headers=None, stream=False, target=None,
                 offset=None, length=None) -> requests.Response:
        """Send one request, refreshing the token once if B2 reports it expired"""
        for refresh in (False, True):
            authorization = self.authorize(force=refresh)

            requestHeaders = {'Authorization': authorization['authorizationToken']}
            requestHeaders.update(headers or {})
            url = self._objectUrl(authorization['downloadUrl'], container, objectName)

            try:
                response = self._session.request(
                    method, url, headers=requestHeaders, stream=stream, timeout=self.timeout
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                raise TransientStorageError(
                    f"B2 {method} failed: {e}", target=target, offset=offset, length=length
                )

            if response.status_code == 401 and not refresh and self._isExpiredToken(response):
                logger.debug(f"B2 token expired for {self.account}, re-authorizing")
                response.close()
                continue

            return response

        raise RuntimeError("Unreachable code")

    def _isExpiredToken(self, response: requests.Response) -> bool:
        # HEAD responses carry no JSON body; a 401 there is retried once with a fresh token
        if response.request is not None and response.request.method == 'HEAD':
            return True

        try:
            return response.json().get('code') == 'expired_auth_token'
        except ValueError:
            return False

    def _checkStatus(self, response: requests.Response, target, offset=None, length=None) -> None:
        status = response.status_code
        if status in (200, 206):
            return

        message = f"B2 returned HTTP {status}"
        try:
            detail = response.json().get('message')
            if detail:
                message = f"{message}: {detail}"
        except ValueError:
            pass

        kwargs = dict(statusCode=status, target=target, offset=offset, length=length, response=response)

        if status in (401, 403):
            raise UnauthorizedError(message, **kwargs)
        if status == 404:
            raise ObjectNotFoundError(message, **kwargs)
        if status in TRANSIENT_STATUS_CODES:
            raise TransientStorageError(message, **kwargs)
        raise StorageError(message, **kwargs)

    def _objectSize(self, container: str, objectName: str) -> int:
        target = f"{self.account}/{container}/{objectName}"

        with self._request('HEAD', container, objectName, target=target) as response:
            self._checkStatus(response, target)

            contentLength = response.headers.get('Content-Length')
            if contentLength is None:
                raise StorageError("B2 did not report Content-Length", target=target)
            return int(contentLength)

    @contextmanager
    def _openRange(self, handle: RemoteObjectHandle, offset: int, length: int, chunkSize: int):
        end = offset + length - 1
        response = self._request(
            'GET', handle.container, handle.objectName,
            headers={'Range': f'bytes={offset}-{end}'}, stream=True,
            target=handle, offset=offset, length=length
        )

        try:
            self._checkStatus(response, handle, offset, length)

            if response.status_code == 200 and not (offset == 0 and length == handle.size):
                raise StorageError(
                    "B2 ignored the Range header", statusCode=200, target=handle, offset=offset, length=length
                )

            yield self._iterBody(response, handle, offset, length, chunkSize)
        finally:
            response.close()

    def _iterBody(self, response, handle, offset, length, chunkSize) -> Iterator[bytes]:
        try:
            yield from response.iter_content(chunkSize)
        except (requests.ConnectionError, requests.Timeout, requests.exceptions.ChunkedEncodingError) as e:
            raise TransientStorageError(f"B2 range body interrupted: {e}", target=handle, offset=offset, length=length)

    def close(self) -> None:
        """Close every thread's session"""
        with self._sessionsLock:
            sessions, self._sessions = self._sessions, []

        for session in sessions:
            session.close()

        self._tls = _ThreadLocalSession()
        logger.debug(f"B2RangeReader closed for {self.account}")
