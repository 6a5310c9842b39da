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

import argparse
import io
import os
import shutil
import tempfile
import unittest
import zipfile
from unittest.mock import patch

from tests.ArchiveTestBase import buildZip
from cloudzip.CLI import (
    EXIT_FAILURE, EXIT_OK, EXIT_USAGE, catCommand, configureCLIParser, listCommand, main, statCommand
)
from cloudzip.FileSystems import Stat


class CLITest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp()
        self.archivePath = os.path.join(self.tempDir, 'backup.zip')

        readme = zipfile.ZipInfo('docs/readme.md', date_time=(2024, 3, 1, 12, 0, 0))
        readme.compress_type = zipfile.ZIP_DEFLATED
        with open(self.archivePath, 'wb') as f:
            f.write(buildZip([
                ('docs/', b''),
                (readme, b'# Backup\n' * 100),
                ('logs/app.log', b'started\nstopped\n'),
            ]))

        self.printed = []
        printPatcher = patch('cloudzip.CLI.flushPrint', side_effect=self.printed.append)
        printPatcher.start()
        self.addCleanup(printPatcher.stop)

    def tearDown(self):
        shutil.rmtree(self.tempDir)

    def testList(self):
        self.assertEqual(main(['ls', self.archivePath]), EXIT_OK)
        self.assertEqual(self.printed, ['docs/', 'docs/readme.md', 'logs/app.log'])

    def testListLong(self):
        self.assertEqual(main(['ls', '--long', self.archivePath]), EXIT_OK)

        self.assertIn('2024-03-01 12:00:00  docs/readme.md', self.printed[1])
        self.assertTrue(self.printed[1].strip().startswith(str(len(b'# Backup\n' * 100))))
        self.assertTrue(self.printed[-1].startswith('3 entries'))

    def testStat(self):
        self.assertEqual(main(['stat', self.archivePath, 'logs/app.log']), EXIT_OK)

        output = '\n'.join(self.printed)
        self.assertIn('Size:     16', output)
        self.assertIn('Type:     file', output)

    def testStatDirectory(self):
        self.assertEqual(main(['stat', self.archivePath, 'docs']), EXIT_OK)
        self.assertIn('Type:     directory', '\n'.join(self.printed))

    def testCat(self):
        stdout = io.TextIOWrapper(io.BytesIO())

        with patch('cloudzip.CLI.sys.stdout', stdout):
            self.assertEqual(main(['cat', self.archivePath, 'logs/app.log']), EXIT_OK)

        self.assertEqual(stdout.buffer.getvalue(), b'started\nstopped\n')

    def testExtract(self):
        outputPath = os.path.join(self.tempDir, 'readme.md')

        self.assertEqual(main(['extract', self.archivePath, 'docs/readme.md', '--output', outputPath]), EXIT_OK)

        with open(outputPath, 'rb') as f:
            self.assertEqual(f.read(), b'# Backup\n' * 100)
        self.assertFalse(os.path.exists(outputPath + '.part'))

    def testMissingEntry(self):
        self.assertEqual(main(['stat', self.archivePath, 'nope.txt']), EXIT_FAILURE)
        self.assertTrue(self.printed[0].startswith('Error:'))

    def testMissingArchive(self):
        missing = os.path.join(self.tempDir, 'missing.zip')

        with patch('cloudzip.Utils.flushPrint'):
            self.assertEqual(main(['ls', missing]), EXIT_FAILURE)

    def testCorruptArchive(self):
        with open(self.archivePath, 'wb') as f:
            f.write(b'this is not an archive' * 10)

        with patch('cloudzip.Utils.flushPrint'):
            self.assertEqual(main(['ls', self.archivePath]), EXIT_FAILURE)

    def testUnsupportedScheme(self):
        self.assertEqual(main(['ls', 's3://bucket/archive.zip']), EXIT_USAGE)

    def testUsageErrors(self):
        with patch('sys.stderr', io.StringIO()):
            self.assertEqual(main(['stat', self.archivePath]), EXIT_USAGE)
            self.assertEqual(main(['--log-level', 'LOUD', 'ls', self.archivePath]), EXIT_USAGE)

    def testNoCommand(self):
        with patch('sys.stdout', io.StringIO()):
            self.assertEqual(main([]), EXIT_USAGE)

    def testVersion(self):
        self.assertEqual(main(['--version']), EXIT_OK)
        self.assertTrue(self.printed[0].startswith('CloudZip v'))

    def testParser(self):
        parser = configureCLIParser()

        args = parser.parse_args(['extract', 'b2://acct/bucket-name/a.zip', 'logs/app.log', '-o', 'out.log'])

        self.assertEqual(args.command, 'extract')
        self.assertEqual(args.entry, 'logs/app.log')
        self.assertEqual(args.output, 'out.log')


class MemoryArchiveView:
    """ArchiveView over a dict of entry name to content"""

    def __init__(self, files):
        self.files = files

    def listEntries(self):
        return list(self.files)

    def stat(self, name):
        if name not in self.files:
            raise FileNotFoundError(name)
        return Stat(size=len(self.files[name]), mtime=None, isDir=name.endswith('/'))

    def open(self, name):
        return io.BytesIO(self.files[name])


class CommandsTest(unittest.TestCase):

    def setUp(self):
        self.view = MemoryArchiveView({'reports/': b'', 'reports/q1.csv': b'region,total\nnorth,12\n'})
        self.lines = []

    def testListLong(self):
        self.assertEqual(listCommand(self.view, argparse.Namespace(long=True), self.lines.append), EXIT_OK)

        self.assertTrue(self.lines[1].endswith('-  reports/q1.csv'))
        self.assertTrue(self.lines[-1].startswith('2 entries'))

    def testStat(self):
        self.assertEqual(statCommand(self.view, argparse.Namespace(entry='reports/'), self.lines.append), EXIT_OK)
        self.assertIn('Type:     directory', self.lines)

    def testCat(self):
        stream = io.BytesIO()

        self.assertEqual(catCommand(self.view, argparse.Namespace(entry='reports/q1.csv'), stream), EXIT_OK)
        self.assertEqual(stream.getvalue(), b'region,total\nnorth,12\n')


if __name__ == '__main__':
    unittest.main()
