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

import codecs

from cloudzip.Kernel import PUBLIC_VERSION, getEnv, getLogger

logger = getLogger(__name__)

# Streaming chunk size (256 KiB) - used for range bodies and decompressed output
CHUNK_SIZE = max(1, getEnv('CLOUDZIP_CHUNK_SIZE', 256 * 1024))

# Range fetch retry policy for transient transport errors
FETCH_RETRIES = max(1, getEnv('CLOUDZIP_FETCH_RETRIES', 5))
RETRY_BACKOFF = getEnv('CLOUDZIP_RETRY_BACKOFF', 0.5)
RETRY_BACKOFF_MAX = getEnv('CLOUDZIP_RETRY_BACKOFF_MAX', 8.0)

# Per-request socket timeout in seconds
HTTP_TIMEOUT = getEnv('CLOUDZIP_HTTP_TIMEOUT', 30.0)

# Backblaze B2 native API
B2_SCHEME = 'b2'
B2_AUTH_URL = getEnv('CLOUDZIP_B2_AUTH_URL', 'https://api.backblazeb2.com/b2api/v2/b2_authorize_account')
B2_ACCOUNT_QUERY_KEY = 'applicationKey'
B2_APPLICATION_KEY_ENV = 'CLOUDZIP_B2_APPLICATION_KEY'

LOCAL_SCHEME = 'file'
LOCAL_ACCOUNT = 'local'

AUTO_NAME_ENCODING = 'auto'
DEFAULT_NAME_ENCODING = 'cp437'


def validateNameEncoding(encoding: str) -> str:
    """
    Check an encoding for entry names without the UTF-8 flag.

    Returns:
        str: Canonical codec name, or 'auto' for chardet detection

    Raises:
        ValueError: If Python has no codec by that name
    """
    if encoding == AUTO_NAME_ENCODING:
        return encoding

    try:
        return codecs.lookup(encoding).name
    except LookupError:
        raise ValueError(f"unknown entry name encoding {encoding!r}")


# Entry names without the UTF-8 flag bit. 'auto' enables chardet detection.
try:
    LEGACY_NAME_ENCODING = validateNameEncoding(getEnv('CLOUDZIP_LEGACY_NAME_ENCODING', DEFAULT_NAME_ENCODING))
except ValueError as e:
    logger.warning(f"CLOUDZIP_LEGACY_NAME_ENCODING: {e}, using {DEFAULT_NAME_ENCODING}")
    LEGACY_NAME_ENCODING = DEFAULT_NAME_ENCODING

USER_AGENT = f'cloudzip/{PUBLIC_VERSION}'

SUPPORT_URL = 'https://github.com/cloudzip/cloudzip/issues'

COPYRIGHT = 'Copyright (c) 2025 CloudZip Contributors. Licensed under Apache-2.0.'
