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
import datetime
import json
import os
import logging
import logging.config
import shutil
import sys

from cloudzip.Kernel import PUBLIC_VERSION, getLogger, configureGlobalLogLevel, LOG_LEVEL_MAPPING
from cloudzip.FileSystems import ArchiveSession, ArchiveView
from cloudzip.Reader import ArchiveError
from cloudzip.Settings import CHUNK_SIZE, COPYRIGHT, SUPPORT_URL
from cloudzip.Storage import StorageError
from cloudzip.Utils import flushPrint, formatSize, getEnv, sendException

logger = getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def configureLogging(logLevel):
    """Configure logging level for the application using Kernel's centralized configuration or config file

    Priority order:
    1. logLevel parameter (from --log-level CLI argument)
    2. CLOUDZIP_LOGGING_LEVEL environment variable
    3. Default to None (no configuration change)

    Both logLevel and CLOUDZIP_LOGGING_LEVEL can be:
    - A logging level name (DEBUG, INFO, WARNING, ERROR)
    - A path to a logging configuration JSON file
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    # Priority: CLI argument > environment variable > None (no change)
    if logLevel is None:
        logLevel = getEnv('CLOUDZIP_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, ValueError, KeyError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}")
            flushPrint("Falling back to default logging level configuration")

    if logLevel.upper() in LOG_LEVEL_MAPPING:
        configureGlobalLogLevel(LOG_LEVEL_MAPPING[logLevel.upper()])
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    # Suppress noisy third-party loggers even in DEBUG mode
    suppressNoisyLogger()

    return logLevel


def showVersion():
    flushPrint(f"CloudZip v{PUBLIC_VERSION}")
    flushPrint(COPYRIGHT)
    flushPrint(f"Support: {SUPPORT_URL}")


def configureCLIParser():
    """Build the argument parser: global options plus one subcommand per operation"""

    def validateLogLevel(logLevel):
        """Validate log level for argparse"""
        # Allow file paths (they'll be validated later)
        if os.path.exists(logLevel):
            return logLevel

        if logLevel.upper() not in LOG_LEVEL_MAPPING:
            raise argparse.ArgumentTypeError(
                f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(LOG_LEVEL_MAPPING)}"
            )
        return logLevel.upper()

    # Global options may appear before or after the command
    globalsParent = argparse.ArgumentParser(add_help=False, argument_default=argparse.SUPPRESS)
    globalsParent.add_argument("--version", action="store_true", help="Show version information")
    globalsParent.add_argument(
        "--log-level",
        type=validateLogLevel,
        help="Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file",
        metavar="LEVEL_OR_FILE",
        dest="logLevel"
    )

    parser = argparse.ArgumentParser(
        prog="cloudzip",
        description="Read entries of Zip archives in cloud object storage without downloading the archive.",
        parents=[globalsParent],
        epilog="URI forms: b2://KEY_ID/BUCKET/path/archive.zip[?applicationKey=KEY], file:///path/archive.zip, "
        "or a local path. The B2 key may also come from CLOUDZIP_B2_APPLICATION_KEY.",
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    lsParser = subparsers.add_parser('ls', help='List archive entries', parents=[globalsParent])
    lsParser.add_argument("uri", metavar="URI", help="Archive location")
    lsParser.add_argument("--long", "-l", action="store_true", help="Show size and modification time")

    statParser = subparsers.add_parser('stat', help='Show metadata of one entry', parents=[globalsParent])
    statParser.add_argument("uri", metavar="URI", help="Archive location")
    statParser.add_argument("entry", metavar="ENTRY", help="Entry name inside the archive")

    catParser = subparsers.add_parser('cat', help='Write an entry to stdout', parents=[globalsParent])
    catParser.add_argument("uri", metavar="URI", help="Archive location")
    catParser.add_argument("entry", metavar="ENTRY", help="Entry name inside the archive")

    extractParser = subparsers.add_parser('extract', help='Write an entry to a file', parents=[globalsParent])
    extractParser.add_argument("uri", metavar="URI", help="Archive location")
    extractParser.add_argument("entry", metavar="ENTRY", help="Entry name inside the archive")
    extractParser.add_argument(
        "--output", "-o", metavar="PATH", help="Output file path (default: entry base name in the current directory)"
    )

    return parser


def _formatTime(mtime):
    if mtime is None:
        return '-'
    return datetime.datetime.fromtimestamp(mtime).strftime('%Y-%m-%d %H:%M:%S')


def listCommand(archive: ArchiveView, args, output=None):
    output = output or flushPrint

    if not args.long:
        for name in archive.listEntries():
            output(name)
        return EXIT_OK

    total = 0
    for name in archive.listEntries():
        stat = archive.stat(name)
        total += stat.size
        output(f"{stat.size:>12}  {_formatTime(stat.mtime)}  {name}")

    output(f"{len(archive.listEntries())} entries, {formatSize(total)}")
    return EXIT_OK


def statCommand(archive: ArchiveView, args, output=None):
    output = output or flushPrint

    stat = archive.stat(args.entry)
    output(f"Name:     {args.entry}")
    output(f"Size:     {stat.size} ({formatSize(stat.size)})")
    output(f"Type:     {'directory' if stat.isDir else 'file'}")
    output(f"Modified: {_formatTime(stat.mtime)}")
    return EXIT_OK


def catCommand(archive: ArchiveView, args, stream=None):
    stream = stream or sys.stdout.buffer

    with archive.open(args.entry) as source:
        shutil.copyfileobj(source, stream, CHUNK_SIZE)
    stream.flush()
    return EXIT_OK


def extractCommand(archive: ArchiveView, args):
    outputPath = args.output or os.path.basename(args.entry.rstrip('/'))
    partialPath = f"{outputPath}.part"

    # Write to a temporary name so a failed CRC check never leaves a complete-looking file
    try:
        with archive.open(args.entry) as source, open(partialPath, 'wb') as target:
            shutil.copyfileobj(source, target, CHUNK_SIZE)
        os.replace(partialPath, outputPath)
    except BaseException:
        if os.path.exists(partialPath):
            os.remove(partialPath)
        raise

    flushPrint(f"Extracted {args.entry} to {outputPath}")
    return EXIT_OK


COMMANDS = {
    'ls': listCommand,
    'stat': statCommand,
    'cat': catCommand,
    'extract': extractCommand,
}


def main(argv=None):
    parser = configureCLIParser()

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return e.code

    configureLogging(getattr(args, 'logLevel', None))

    if getattr(args, 'version', False):
        showVersion()
        return EXIT_OK

    if not args.command:
        parser.print_help()
        return EXIT_USAGE

    try:
        with ArchiveSession() as session:
            archive = session.openUri(args.uri)
            return COMMANDS[args.command](archive, args)
    except ValueError as e:
        flushPrint(f"Error: {e}")
        return EXIT_USAGE
    except (FileNotFoundError, IsADirectoryError) as e:
        flushPrint(f"Error: {e}")
        return EXIT_FAILURE
    except (StorageError, ArchiveError) as e:
        sendException(logger, e)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
