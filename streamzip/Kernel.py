#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# streamzip - Streaming ZIP archives from files that are still arriving
# Copyright (C) 2024-2025 FastFileLink contributors
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

# Error reporting is strictly disabled by default. Nothing is sent anywhere
# unless STREAMZIP_SENTRY_DSN is explicitly set.
import sentry_sdk

from enum import Enum

from signalslot import Signal

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration

PUBLIC_VERSION = '1.0.0'

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


if os.getenv('STREAMZIP_LOGGING_LEVEL'):
    logLevel = LOG_LEVEL_MAPPING.get(os.getenv('STREAMZIP_LOGGING_LEVEL').upper())
    if logLevel is not None:
        configureGlobalLogLevel(logLevel)


def getLogger(name, version=PUBLIC_VERSION):
    """
    Get a logger with Sentry integration. Sentry is only initialized when
    STREAMZIP_SENTRY_DSN is set, and only once per process.

    Args:
        name: Logger name
        version: Version string for logging context
    """
    try:
        sentryDsn = os.getenv('STREAMZIP_SENTRY_DSN')
        if sentryDsn and not sentry_sdk.get_client().is_active():
            sentry_sdk.init(
                dsn=sentryDsn,
                default_integrations=False,
                integrations=[LoggingIntegration()],
                release=version,
            )

        logger = logging.getLogger(name)

        # Add Sentry handler if not already present
        if not any(isinstance(h, SentryHandler) for h in logger.handlers):
            syslog = SentryHandler()
            syslog.setFormatter(logging.Formatter('%(asctime)s version[%(version)s] : %(message)s'))
            logger.addHandler(syslog)

        return logging.LoggerAdapter(logger, {'version': version or 'unknown'})

    except Exception as e:
        fallbackLogger = logging.getLogger(name)

        # If Sentry setup fails, log the error and continue with standard logging
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")

        return fallbackLogger


class Singleton:
    """
    Thread-safe singleton base class that can be inherited by other classes.
    Subclasses override initialize() for custom initialization.
    """

    _instances = {}
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = super().__new__(cls)
        return cls._instances[cls]

    def __init__(self, *args, **kwargs):
        if not hasattr(self, '_initialized'):
            self.initialize(*args, **kwargs)
            self._initialized = True

    def initialize(self, *args, **kwargs):
        pass

    @classmethod
    def getInstance(cls):
        """
        Static access method for the singleton instance.
        """
        if cls not in cls._instances:
            cls()
        return cls._instances[cls]


class EventTiming(Enum):
    """Constants for event timing phases"""
    BEFORE = "BEFORE"
    AFTER = "AFTER"


class EventService(Singleton):
    """
    Dispatches archive lifecycle events to observers.
    Thread-safe singleton backed by 'signalslot' signals, one BEFORE and one
    AFTER signal per event. Observers must accept **kwargs.
    """

    def initialize(self):
        self.signals = {}

    def reset(self):
        """
        Clears all registered signals. Should only be used in test suites
        to ensure test isolation.
        """
        self.signals.clear()

    def _normalizeTiming(self, timing):
        if timing is None:
            return None

        if isinstance(timing, EventTiming):
            return timing

        if isinstance(timing, str):
            try:
                return EventTiming(timing.upper())
            except ValueError:
                raise ValueError(f"Invalid timing value: '{timing}'. Must be 'BEFORE' or 'AFTER'.")

        raise ValueError(f"Timing must be EventTiming enum, string, or None. Got: {type(timing)}")

    def trigger(self, event, **kwargs):
        """
        Trigger an event, calling all connected observers (slots).
        """
        timing = kwargs.pop('timing', None)
        normalizedTiming = self._normalizeTiming(timing)

        signalObjects = self.signals.get(event)
        if not signalObjects:
            return

        beforeSignal, afterSignal = signalObjects

        if normalizedTiming in (EventTiming.BEFORE, None):
            beforeSignal.emit(**kwargs)

        if normalizedTiming in (EventTiming.AFTER, None):
            afterSignal.emit(**kwargs)

    def isRegistered(self, event):
        return event in self.signals

    def register(self, event):
        if self.isRegistered(event):
            return False
        self.signals[event] = (Signal(), Signal())
        return True

    def unregister(self, event):
        if not self.isRegistered(event):
            return False

        del self.signals[event]
        return True

    def subscribe(self, event, observer, timing=EventTiming.AFTER):
        """
        Connect an observer to an event, registering the event on first use.
        """
        self.register(event)

        beforeSignal, afterSignal = self.signals[event]
        signal = beforeSignal if self._normalizeTiming(timing) == EventTiming.BEFORE else afterSignal

        if observer in signal._slots:
            return

        signal.connect(observer)

    def unsubscribe(self, event, observer, timing=None):
        if not self.isRegistered(event):
            return

        normalizedTiming = self._normalizeTiming(timing)
        beforeSignal, afterSignal = self.signals[event]

        if normalizedTiming in (EventTiming.BEFORE, None) and observer in beforeSignal._slots:
            beforeSignal.disconnect(observer)

        if normalizedTiming in (EventTiming.AFTER, None) and observer in afterSignal._slots:
            afterSignal.disconnect(observer)


class Event:
    """Event key bound to the EventService singleton."""

    def __init__(self, key):
        self.key = key
        EventService.getInstance().register(key)

    def subscribe(self, observer, timing=EventTiming.AFTER):
        EventService.getInstance().subscribe(self.key, observer, timing)

    def unsubscribe(self, observer, timing=None):
        EventService.getInstance().unsubscribe(self.key, observer, timing)

    def trigger(self, **kwargs):
        EventService.getInstance().trigger(self.key, **kwargs)

    def __repr__(self):
        return f'Event({self.key!r})'


class ZipEvent:
    memberStarted = Event('zip.memberStarted') # archive, member
    memberEnded = Event('zip.memberEnded') # archive, member
    archiveFinished = Event('zip.archiveFinished') # archive
    archiveDestroyed = Event('zip.archiveDestroyed') # archive, error
