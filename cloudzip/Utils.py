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

import locale
import os
import platform
import socket
import sys

import bitmath
import chardet

from urllib3 import PoolManager
from urllib3.connection import HTTPConnection
from urllib3.util.retry import Retry
from requests.adapters import HTTPAdapter

from cloudzip.Kernel import getEnv, getLogger
from cloudzip.Settings import AUTO_NAME_ENCODING, LEGACY_NAME_ENCODING, SUPPORT_URL

ONE_KB = bitmath.KiB(1).bytes
ONE_MB = bitmath.MiB(1).bytes
ONE_GB = bitmath.GiB(1).bytes
ONE_TB = bitmath.TiB(1).bytes

logger = getLogger(__name__)

_UNICODE_TRY_ENCODINGS = tuple(e for e in (locale.getlocale()[1], 'cp437') if e)


def _unicode(s, encodings=None, throw=True, confidence=0.8):
    """
    Force to UNICODE string (str type in Python 3).

    @param s String.
    @param encodings Native encodings for decode. It will be tried to decode
                     string, try and error.
    @param throw Raise exception if it fails to convert string.
    @param confidence Minimum chardet confidence before its guess is tried first.
    @return UNICODE type string.
    """
    if isinstance(s, str):
        return s

    if not isinstance(s, bytes):
        return str(s)

    encodings = list(encodings or [])

    try:
        result = chardet.detect(s)

        if result['confidence'] > confidence:
            if result['encoding']:
                encodings.insert(0, result['encoding'])
            encodings.extend(_UNICODE_TRY_ENCODINGS)
        else:
            encodings.extend(_UNICODE_TRY_ENCODINGS)
            if result['encoding']:
                encodings.append(result['encoding'])

    except Exception as e:
        logger.debug(f"chardet failed on {s!r}: {e}")
        encodings.extend(_UNICODE_TRY_ENCODINGS)

    error = None
    for encoding in encodings:
        try:
            return s.decode(encoding)
        except (UnicodeDecodeError, LookupError) as e:
            error = e

    if throw and error:
        raise error

    return None


def decodeName(raw: bytes, isUtf8: bool, legacyEncoding: str = None) -> str:
    """
    Decode a Zip entry name.

    Args:
        raw: Name bytes as stored in the archive
        isUtf8: True when general purpose flag bit 11 is set
        legacyEncoding: Encoding for names without the flag, 'auto' to detect with chardet

    Returns:
        str: Decoded name
    """
    legacyEncoding = legacyEncoding or LEGACY_NAME_ENCODING

    if isUtf8:
        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError as e:
            # Some writers set bit 11 on names that are not UTF-8
            logger.debug(f"Entry name flagged UTF-8 but is not: {raw!r} ({e})")

    if legacyEncoding == AUTO_NAME_ENCODING:
        return _unicode(raw)

    return raw.decode(legacyEncoding, errors='replace')


def formatSize(size, decimal=None, plural=None):
    if decimal is None:
        if size < ONE_GB: # Less than 1GB
            decimal = 0
        elif size < ONE_TB: # Between 1GB and 1TB
            decimal = 1
        else: # Greater than 1TB
            decimal = 2

    if plural is None:
        plural = size != 1

    best = bitmath.Byte(size).best_prefix(system=bitmath.SI)
    value = f"{best.value:.{decimal}f}"

    # bitmath 1.x names the byte unit 'Byte', 2.x names it 'B'; class names are stable
    if type(best) is bitmath.Byte:
        return f"{value} {'Bytes' if plural else 'Byte'}"

    return f"{value}{type(best).__name__[0].upper()}"


# https://github.com/chriskiehl/Gooey/issues/701
# flush is required if this is in .exe file.
def flushPrint(text):
    try:
        print(text, flush=True)
    except UnicodeEncodeError as e:
        # Terminals that can't show some entry names (e.g. cp950 consoles)
        logger.debug(f"UnicodeEncodeError during print, using fallback encoding: {e}, {sys.stdout.encoding=}")

        buf = getattr(sys.stdout, "buffer", None)
        if buf is not None:
            buf.write(text.encode("utf-8", errors="replace"))
            buf.write(b"\n")
            buf.flush()
            return

        print(text.encode(sys.stdout.encoding, errors='replace').decode(sys.stdout.encoding), flush=True)


def sendException(logger, e, action=None, errorPrefix="Oops, something went wrong"):
    if e and errorPrefix:
        flushPrint(f'{errorPrefix}: {e}')
    elif e:
        flushPrint(f'{e}')
    else: # only errorPrefix without e?
        logger.error(f'Incorrect argument: {errorPrefix=} {e=}')

    if action:
        flushPrint(action)

    flushPrint(f'\nIf you still get the same problem, please report it at {SUPPORT_URL}.')

    if isinstance(e, BaseException):
        logger.debug("Failure details", exc_info=e)

    if os.getenv('RAISE_EXCEPTION', 'False') == 'True' and isinstance(e, BaseException):
        raise e


# HTTP/HTTPS connection timeout configuration
# https://github.com/urllib3/urllib3/issues/3100
# https://github.com/urllib3/urllib3/issues/2733

# Minimum stall timeout in seconds
DEFAULT_MIN_STALL_TIMEOUT_SECONDS = getEnv('HTTP_DEFAULT_MIN_STALL_TIMEOUT_SECONDS', 120)

# Minimum speed threshold in MBps for stall calculation
DEFAULT_STALL_SPEED_THRESHOLD_MBPS = getEnv('HTTP_DEFAULT_STALL_SPEED_THRESHOLD_MBPS', 1.0)


class StallResilientAdapter(HTTPAdapter):
    """
    HTTP adapter that detects stalled range downloads through TCP socket options.

    Features:
    - TCP keepalive for early dead connection detection
    - TCP_USER_TIMEOUT on Linux for stall detection on long range bodies
    - urllib3 retries disabled: RangeReader retries at the application layer so that
      every attempt is logged and a broken stream resumes at the right offset
    """

    DEFAULT_SOCKET_OPTIONS = HTTPConnection.default_socket_options

    @classmethod
    def calculateStallTimeoutMs(cls, chunkSize):
        """
        Calculate dynamic stall timeout based on chunk size and minimum acceptable speed.
        Formula: stall = max(120s, chunkSize / speedThreshold)

        Args:
            chunkSize: Size of transfer chunks in bytes

        Returns:
            int: Stall timeout in milliseconds
        """
        speedThresholdBps = DEFAULT_STALL_SPEED_THRESHOLD_MBPS * ONE_MB
        calculatedTimeSeconds = chunkSize / speedThresholdBps
        stallTimeoutSeconds = max(DEFAULT_MIN_STALL_TIMEOUT_SECONDS, calculatedTimeSeconds)

        return int(stallTimeoutSeconds * 1000)

    def __init__(self, stallTimeoutMs: int = None, chunkSize: int = None, *args, **kwargs):
        """
        Initialize stall-resilient adapter.

        Args:
            stallTimeoutMs: Explicit stall timeout in milliseconds (overrides calculation)
            chunkSize: Chunk size for dynamic timeout calculation
        """
        if stallTimeoutMs is None and chunkSize is not None:
            self.stallTimeoutMs = self.calculateStallTimeoutMs(chunkSize)
        elif stallTimeoutMs is not None:
            self.stallTimeoutMs = stallTimeoutMs
        else:
            self.stallTimeoutMs = DEFAULT_MIN_STALL_TIMEOUT_SECONDS * 1000

        self.isLinux = platform.system() == 'Linux'

        kwargs['max_retries'] = Retry(total=0)

        super().__init__(*args, **kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **kwargs):
        """Initialize pool manager with custom socket options."""
        socketOptions = list(self.DEFAULT_SOCKET_OPTIONS)

        # Enable TCP keepalive for early dead connection detection
        socketOptions.append((socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1))

        # Aggressive keepalive parameters (available on most platforms)
        if hasattr(socket, "TCP_KEEPIDLE"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, 30))
        if hasattr(socket, "TCP_KEEPINTVL"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, 10))
        if hasattr(socket, "TCP_KEEPCNT"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPCNT, 3))

        # Linux-specific: Timeout for unacknowledged data
        if self.isLinux and hasattr(socket, "TCP_USER_TIMEOUT"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_USER_TIMEOUT, self.stallTimeoutMs))

        kwargs["socket_options"] = socketOptions

        self.poolmanager = PoolManager(num_pools=connections, maxsize=maxsize, block=block, **kwargs)
