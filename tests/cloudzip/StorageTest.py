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

import base64
import os
import re
import shutil
import tempfile
import unittest
from unittest.mock import call, patch

import requests
import requests_mock

from tests.ArchiveTestBase import ARCHIVE_NAME, CONTAINER, MemoryRangeReader, buildZip
from cloudzip.FileSystems import ArchiveHandle
from cloudzip.Storage import (
    B2RangeReader, LocalRangeReader, ObjectNotFoundError, RangeOutOfBoundsError, RemoteObjectHandle, ShortReadError,
    StorageError, TransientStorageError, UnauthorizedError, validateBucketName, validateObjectName
)

AUTH_URL = 'https://api.example-b2.test/b2api/v2/b2_authorize_account'
DOWNLOAD_URL = 'https://f000.example-b2.test'
OBJECT_URL = f'{DOWNLOAD_URL}/file/{CONTAINER}/{ARCHIVE_NAME}'
KEY_ID = '0012ab34cd56ef70000000001'
APPLICATION_KEY = 'K001secretApplicationKey'


def authorization(token):
    return {
        'accountId': '12ab34cd56ef',
        'authorizationToken': token,
        'apiUrl': 'https://api000.example-b2.test',
        'downloadUrl': DOWNLOAD_URL + '/',
    }


def rangeContent(data):
    """requests_mock callback that honors the Range header"""

    def callback(request, context):
        start, end = map(int, re.match(r'bytes=(\d+)-(\d+)$', request.headers['Range']).groups())
        context.status_code = 206
        context.headers['Content-Range'] = f'bytes {start}-{end}/{len(data)}'
        return data[start:end + 1]

    return callback


class RangeReaderTest(unittest.TestCase):

    def setUp(self):
        self.data = os.urandom(100_000)
        self.reader = MemoryRangeReader(chunkSize=4096, backoff=0.5, backoffMax=2.0)
        self.reader.put(CONTAINER, ARCHIVE_NAME, self.data)
        self.handle = self.reader.open(CONTAINER, ARCHIVE_NAME)

    def testOpen(self):
        self.assertEqual(self.handle, RemoteObjectHandle('memory', CONTAINER, ARCHIVE_NAME, len(self.data)))
        self.assertEqual(self.handle.identity, f'memory/{CONTAINER}/{ARCHIVE_NAME}')

    def testOpenMissing(self):
        with self.assertRaises(ObjectNotFoundError):
            self.reader.open(CONTAINER, 'missing.zip')

    def testFetchExact(self):
        self.assertEqual(self.reader.fetch(self.handle, 1000, 20_000), self.data[1000:21_000])
        self.assertEqual(self.reader.fetch(self.handle, len(self.data) - 1, 1), self.data[-1:])
        self.assertEqual(self.reader.fetches, [(1000, 20_000), (len(self.data) - 1, 1)])

    def testZeroLengthFetch(self):
        self.assertEqual(self.reader.fetch(self.handle, len(self.data), 0), b'')
        self.assertEqual(self.reader.fetches, [])

    def testOutOfBounds(self):
        for offset, length in ((-1, 10), (0, -1), (len(self.data) - 5, 6), (len(self.data) + 1, 0)):
            with self.assertRaises(RangeOutOfBoundsError):
                self.reader.fetch(self.handle, offset, length)

        self.assertEqual(self.reader.fetches, [])

    def testStreamChunks(self):
        with self.reader.stream(self.handle, 0, 10_000, chunkSize=3000) as chunks:
            sizes = [len(chunk) for chunk in chunks]

        self.assertEqual(sizes, [3000, 3000, 3000, 1000])

    def testStreamReleasedOnEarlyExit(self):
        with self.reader.stream(self.handle, 0, 50_000) as chunks:
            next(chunks)
            self.assertEqual(self.reader.active, 1)

        self.assertEqual(self.reader.active, 0)

    def testStreamReleasedOnError(self):
        with self.assertRaises(KeyError):
            with self.reader.stream(self.handle, 0, 50_000) as chunks:
                next(chunks)
                raise KeyError('consumer failure')

        self.assertEqual(self.reader.active, 0)

    @patch('cloudzip.Storage.time.sleep')
    def testResumeFromFirstUndeliveredByte(self, mockSleep):
        self.reader.breakAfter = 10_000

        data = self.reader.fetch(self.handle, 500, 50_000)

        self.assertEqual(data, self.data[500:50_500])
        self.assertEqual(self.reader.fetches, [(500, 50_000), (10_500, 40_000)])
        mockSleep.assert_called_once_with(0.5)

    @patch('cloudzip.Storage.time.sleep')
    def testTransientFailuresRetried(self, mockSleep):
        self.reader.failures = [TransientStorageError('reset'), TransientStorageError('503', statusCode=503)]

        self.assertEqual(self.reader.fetch(self.handle, 0, 100), self.data[:100])
        self.assertEqual(len(self.reader.fetches), 3)
        self.assertEqual(mockSleep.call_args_list, [call(0.5), call(1.0)])

    @patch('cloudzip.Storage.time.sleep')
    def testRetriesExhausted(self, mockSleep):
        self.reader.failures = [TransientStorageError(f'reset {i}') for i in range(10)]

        with self.assertRaises(TransientStorageError) as context:
            self.reader.fetch(self.handle, 0, 100)

        self.assertEqual(str(context.exception), 'reset 4')
        self.assertEqual(len(self.reader.fetches), self.reader.retries)
        self.assertEqual(mockSleep.call_count, self.reader.retries - 1)

    @patch('cloudzip.Storage.time.sleep')
    def testUnauthorizedNotRetried(self, mockSleep):
        self.reader.failures = [UnauthorizedError('denied', statusCode=403)]

        with self.assertRaises(UnauthorizedError):
            self.reader.fetch(self.handle, 0, 100)

        self.assertEqual(len(self.reader.fetches), 1)
        mockSleep.assert_not_called()

    @patch('cloudzip.Storage.time.sleep')
    def testShortRead(self, mockSleep):
        # Object shrank after the handle was opened
        self.reader.put(CONTAINER, ARCHIVE_NAME, self.data[:1000])

        with self.assertRaises(ShortReadError):
            self.reader.fetch(self.handle, 0, 5000)

    def testBackoffDelay(self):
        self.assertEqual([self.reader.backoffDelay(i) for i in range(1, 6)], [0.5, 1.0, 2.0, 2.0, 2.0])

    def testErrorContext(self):
        error = StorageError('boom', statusCode=500, target=self.handle, offset=10, length=20)

        self.assertEqual(str(error), f'boom [object={self.handle.identity}, offset=10, length=20, status=500]')


class LocalRangeReaderTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp()
        os.makedirs(os.path.join(self.tempDir, CONTAINER, 'nightly'))
        self.data = buildZip([('a.txt', b'alpha')])
        with open(os.path.join(self.tempDir, CONTAINER, ARCHIVE_NAME), 'wb') as f:
            f.write(self.data)

        self.reader = LocalRangeReader(self.tempDir, chunkSize=7)

    def tearDown(self):
        shutil.rmtree(self.tempDir)

    def testFetch(self):
        handle = self.reader.open(CONTAINER, ARCHIVE_NAME)

        self.assertEqual(handle.size, len(self.data))
        self.assertEqual(self.reader.fetch(handle, 3, 40), self.data[3:43])

    def testAbsoluteContainer(self):
        reader = LocalRangeReader()
        handle = reader.open(os.path.join(self.tempDir, CONTAINER), ARCHIVE_NAME)

        self.assertEqual(reader.fetch(handle, 0, handle.size), self.data)
        self.assertEqual(handle.account, 'local')

    def testMissing(self):
        with self.assertRaises(ObjectNotFoundError):
            self.reader.open(CONTAINER, 'nightly/missing.zip')

        with self.assertRaises(ObjectNotFoundError):
            self.reader.open(CONTAINER, 'nightly')

    def testEscapingRoot(self):
        with self.assertRaises(ValueError):
            self.reader.open(CONTAINER, '../../etc/passwd')


class NameValidationTest(unittest.TestCase):

    def testBucketNames(self):
        validateBucketName('my-backups')
        validateBucketName('A' * 50)

        for name in ('', 'short', 'a' * 51, 'bad_name', 'b2-reserved', 'B2-Reserved'):
            with self.assertRaises(ValueError):
                validateBucketName(name)

    def testObjectNames(self):
        validateObjectName('nightly/archive.zip')
        validateObjectName('報告/第一季.zip')

        for name in ('', '   ', 'a\x01b', 'tab\tname', 'del\x7f', 'x' * 1025, '報' * 342):
            with self.assertRaises(ValueError):
                validateObjectName(name)


class B2RangeReaderTest(unittest.TestCase):

    def setUp(self):
        self.data = buildZip([
            ('logs/app.log', b'GET /index.html 200\n' * 2000),
            ('logs/error.log', b'timeout contacting upstream\n' * 100),
        ])
        self.reader = B2RangeReader(KEY_ID, APPLICATION_KEY, authUrl=AUTH_URL, backoff=0.0)

        self.mocker = requests_mock.Mocker()
        self.mocker.start()
        self.addCleanup(self.mocker.stop)

        self.mocker.get(AUTH_URL, json=authorization('token-1'))
        self.mocker.head(OBJECT_URL, headers={'Content-Length': str(len(self.data))})
        self.mocker.get(OBJECT_URL, content=rangeContent(self.data))

    def requestsTo(self, url, method=None):
        return [
            r for r in self.mocker.request_history
            if r.url.split('?')[0] == url and (method is None or r.method == method)
        ]

    def testRequiresCredentials(self):
        with self.assertRaises(ValueError):
            B2RangeReader('', APPLICATION_KEY)
        with self.assertRaises(ValueError):
            B2RangeReader(KEY_ID, None)

    def testAuthorizeAndFetch(self):
        handle = self.reader.open(CONTAINER, ARCHIVE_NAME)

        self.assertEqual(handle.size, len(self.data))
        self.assertEqual(handle.account, KEY_ID)
        self.assertEqual(self.reader.fetch(handle, 10, 100), self.data[10:110])

        authRequest = self.requestsTo(AUTH_URL)[0]
        expected = base64.b64encode(f'{KEY_ID}:{APPLICATION_KEY}'.encode()).decode()
        self.assertEqual(authRequest.headers['Authorization'], f'Basic {expected}')

        rangeRequest = self.requestsTo(OBJECT_URL, 'GET')[0]
        self.assertEqual(rangeRequest.headers['Range'], 'bytes=10-109')
        self.assertEqual(rangeRequest.headers['Authorization'], 'token-1')

    def testAuthorizationCached(self):
        handle = self.reader.open(CONTAINER, ARCHIVE_NAME)
        self.reader.fetch(handle, 0, 10)
        self.reader.fetch(handle, 10, 10)

        self.assertEqual(len(self.requestsTo(AUTH_URL)), 1)

    def testObjectNameQuoted(self):
        url = f'{DOWNLOAD_URL}/file/{CONTAINER}/backups/2024%20Q1/%E5%A0%B1%E5%91%8A.zip'
        self.mocker.head(url, headers={'Content-Length': '22'})

        handle = self.reader.open(CONTAINER, 'backups/2024 Q1/報告.zip')

        self.assertEqual(handle.size, 22)

    @patch('cloudzip.Storage.time.sleep')
    def testExpiredTokenRefreshedOnce(self, mockSleep):
        handle = self.reader.open(CONTAINER, ARCHIVE_NAME)

        self.mocker.get(AUTH_URL, json=authorization('token-2'))
        self.mocker.get(OBJECT_URL, [
            {'status_code': 401, 'json': {'status': 401, 'code': 'expired_auth_token', 'message': 'expired'}},
            {'content': rangeContent(self.data)},
        ])

        self.assertEqual(self.reader.fetch(handle, 0, 50), self.data[:50])

        rangeRequests = self.requestsTo(OBJECT_URL, 'GET')
        self.assertEqual([r.headers['Authorization'] for r in rangeRequests], ['token-1', 'token-2'])
        self.assertEqual(len(self.requestsTo(AUTH_URL)), 2)
        mockSleep.assert_not_called()

    @patch('cloudzip.Storage.time.sleep')
    def testUnauthorizedNotRetried(self, mockSleep):
        handle = self.reader.open(CONTAINER, ARCHIVE_NAME)
        self.mocker.get(OBJECT_URL, status_code=401, json={'status': 401, 'code': 'bad_auth_token', 'message': 'no'})

        with self.assertRaises(UnauthorizedError) as context:
            self.reader.fetch(handle, 0, 50)

        self.assertEqual(context.exception.statusCode, 401)
        self.assertEqual(len(self.requestsTo(OBJECT_URL, 'GET')), 1)
        mockSleep.assert_not_called()

    def testForbidden(self):
        handle = self.reader.open(CONTAINER, ARCHIVE_NAME)
        self.mocker.get(OBJECT_URL, status_code=403, json={'status': 403, 'code': 'access_denied', 'message': 'no'})

        with self.assertRaises(UnauthorizedError):
            self.reader.fetch(handle, 0, 50)

    def testBadKey(self):
        self.mocker.get(AUTH_URL, status_code=401, json={'status': 401, 'code': 'unauthorized', 'message': 'bad key'})

        with self.assertRaises(UnauthorizedError) as context:
            self.reader.open(CONTAINER, ARCHIVE_NAME)

        self.assertIn('bad key', str(context.exception))

    def testNotFound(self):
        self.mocker.head(OBJECT_URL, status_code=404)

        with self.assertRaises(ObjectNotFoundError):
            self.reader.open(CONTAINER, ARCHIVE_NAME)

    def testInvalidNamesRejectedBeforeRequests(self):
        with self.assertRaises(ValueError):
            self.reader.open('x', ARCHIVE_NAME)

        self.assertEqual(self.mocker.call_count, 0)

    @patch('cloudzip.Storage.time.sleep')
    def testServerErrorsRetried(self, mockSleep):
        handle = self.reader.open(CONTAINER, ARCHIVE_NAME)
        self.mocker.get(OBJECT_URL, [
            {'status_code': 503, 'json': {'status': 503, 'code': 'service_unavailable', 'message': 'busy'}},
            {'exc': requests.exceptions.ConnectionError},
            {'content': rangeContent(self.data)},
        ])

        self.assertEqual(self.reader.fetch(handle, 100, 200), self.data[100:300])
        self.assertEqual(len(self.requestsTo(OBJECT_URL, 'GET')), 3)
        self.assertEqual(mockSleep.call_count, 2)

    def testRangeIgnored(self):
        handle = self.reader.open(CONTAINER, ARCHIVE_NAME)
        self.mocker.get(OBJECT_URL, content=self.data)

        with self.assertRaises(StorageError) as context:
            self.reader.fetch(handle, 100, 200)

        self.assertNotIsInstance(context.exception, TransientStorageError)

    def testWholeObjectWith200(self):
        handle = self.reader.open(CONTAINER, ARCHIVE_NAME)
        self.mocker.get(OBJECT_URL, content=self.data)

        self.assertEqual(self.reader.fetch(handle, 0, len(self.data)), self.data)

    def testArchiveOverB2(self):
        archive = ArchiveHandle(self.reader, CONTAINER, ARCHIVE_NAME)

        self.assertEqual(archive.listEntries(), ['logs/app.log', 'logs/error.log'])
        indexRequests = len(self.requestsTo(OBJECT_URL, 'GET'))

        with archive.open('logs/error.log') as f:
            self.assertEqual(f.read(), b'timeout contacting upstream\n' * 100)

        # Tail and central directory, then local header and payload
        self.assertEqual(indexRequests, 2)
        self.assertEqual(len(self.requestsTo(OBJECT_URL, 'GET')) - indexRequests, 2)

    def testClose(self):
        self.reader.open(CONTAINER, ARCHIVE_NAME)
        self.assertEqual(len(self.reader._sessions), 1)

        self.reader.close()

        self.assertEqual(self.reader._sessions, [])


if __name__ == '__main__':
    unittest.main()
