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

import os
import logging
import threading

from concurrent.futures import Future

# While Sentry (error tracking) is included, error reporting is strictly disabled by default.
# Nothing is sent anywhere unless CLOUDZIP_SENTRY_DSN is set explicitly.
import sentry_sdk

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '0.3.0'

# Map string levels to logging constants for standard level names
LOG_LEVEL_MAPPING = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}


def configureGlobalLogLevel(logLevel):
    """
    Configure the global logging level for the application.
    This affects all loggers created via getLogger().

    Args:
        logLevel: Logging level (logging.DEBUG, logging.INFO, etc.)
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    # Add console handler if none exists
    if not rootLogger.handlers:
        consoleHandler = logging.StreamHandler()
        consoleHandler.setLevel(logLevel)
        consoleHandler.setFormatter(formatter)
        rootLogger.addHandler(consoleHandler)
    else:
        # Update existing handlers
        for handler in rootLogger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, SentryHandler):
                handler.setLevel(logLevel)
                handler.setFormatter(formatter)


def getEnv(envVar, default):
    """Safely get value from environment variable with automatic type detection based on default"""
    try:
        value = os.getenv(envVar)
        if value is not None:
            if default is None:
                return value

            # Automatically detect type based on default value
            if isinstance(default, bool):
                return value == "True"
            elif isinstance(default, int):
                return int(value)
            elif isinstance(default, float):
                return float(value)
            elif isinstance(default, str):
                return str(value)
            else:
                # For other types, try to convert to same type as default
                return type(default)(value)
        return default
    except (ValueError, TypeError):
        return default


if os.getenv('CLOUDZIP_LOGGING_LEVEL'):
    logLevel = LOG_LEVEL_MAPPING.get(os.getenv('CLOUDZIP_LOGGING_LEVEL').upper())
    if logLevel is not None:
        configureGlobalLogLevel(logLevel)


def getLogger(name, version=PUBLIC_VERSION):
    """
    Get a logger with Sentry integration. Uses Sentry's own client state to avoid duplicate setup.
    Sentry is only initialized when CLOUDZIP_SENTRY_DSN is set.

    Args:
        name: Logger name
        version: Version string for logging context
    """
    try:
        sentryInitialized = False

        if not sentry_sdk.get_client().is_active():
            sentryDsn = os.getenv('CLOUDZIP_SENTRY_DSN')

            if sentryDsn:
                # Override default_callback to suppress "sentry is attempting to send pending events..." message
                sentryAtexit.default_callback = lambda pending, timeout: None

                sentry_sdk.init(
                    dsn=sentryDsn,
                    release=f'cloudzip@{version}',
                    default_integrations=False,
                    integrations=[
                        LoggingIntegration(),
                        sentryAtexit.AtexitIntegration(),
                    ],
                )
                sentryInitialized = True

        logger = logging.getLogger(name)

        # Add Sentry handler if not already present
        if not any(isinstance(h, SentryHandler) for h in logger.handlers):
            formatter = logging.Formatter('%(asctime)s version[%(version)s] : %(message)s')

            syslog = SentryHandler()
            syslog.setFormatter(formatter)
            logger.addHandler(syslog)

        logger = logging.LoggerAdapter(logger, {'version': version or 'unknown'})

        if sentryInitialized:
            logger.debug('Sentry initialized for error reporting')

        return logger

    except Exception as e:
        fallbackLogger = logging.getLogger(name)

        # If Sentry setup fails, log the error and continue with standard logging
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")

        return fallbackLogger


class SingleFlight:
    """
    Runs a call at most once and shares its outcome with every caller.

    The first caller executes the function; callers arriving while it runs block on the
    same Future and receive the same result. A failure is kept as well, so every later
    caller re-raises it instead of retrying.
    """

    def __init__(self, name=None):
        self.name = name
        self._lock = threading.Lock()
        self._future = None

    @property
    def started(self) -> bool:
        with self._lock:
            return self._future is not None

    def done(self) -> bool:
        with self._lock:
            return self._future is not None and self._future.done()

    def run(self, function, *args, **kwargs):
        with self._lock:
            owner = self._future is None
            if owner:
                self._future = Future()
                self._future.set_running_or_notify_cancel()
            future = self._future

        if owner:
            try:
                result = function(*args, **kwargs)
            except BaseException as e:
                future.set_exception(e)
                raise
            future.set_result(result)

        return future.result()
