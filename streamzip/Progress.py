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

import sys
import time

from tqdm import tqdm

from streamzip.Kernel import getLogger
from streamzip.Utils import formatSize

logger = getLogger(__name__)


class SizeTqdm(tqdm):
    """tqdm bar that renders byte counts and rates with formatSize"""

    def __init__(self, *args, sizeFormatter=None, **kwargs):
        self.sizeFormatter = sizeFormatter or formatSize
        super().__init__(*args, unit='B', unit_scale=False, **kwargs)

    @property
    def format_dict(self):
        d = super().format_dict

        rate = d.get('rate', 0) or 0
        d['rate_fmt'] = f"{self.sizeFormatter(int(rate))}/sec" if rate > 0 else "0/sec"
        d['n_fmt'] = self.sizeFormatter(d.get('n', 0))

        total = d.get('total')
        d['total_fmt'] = self.sizeFormatter(total) if total is not None else '?'

        return d


class Progress:
    """
    Reports archive output progress.

    With useBar a tqdm bar is drawn on the given file, otherwise a progress
    line is passed to loggerCallback at most once per logInterval seconds.
    Archive bytes may go to stdout, so everything here defaults to stderr.
    """

    BAR_FORMAT = '{desc}: {percentage:3.0f}%|{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]'

    def __init__(self, totalSize, loggerCallback=None, logInterval=2.0, useBar=False, file=None, description='Zipping'):
        self.totalSize = totalSize
        self.loggerCallback = loggerCallback or logger.info
        self.logInterval = logInterval
        self.useBar = useBar

        self.transferred = 0
        self.startTime = time.monotonic()
        self.lastProgressTime = self.startTime
        self.lastProgressBytes = 0

        self.pbar = None
        if self.useBar:
            self.pbar = SizeTqdm(
                total=totalSize or None,
                desc=description,
                file=file or sys.stderr,
                leave=True,
                ncols=100,
                bar_format=self.BAR_FORMAT,
            )

    def update(self, bytesTransferred, forceLog=False):
        previousTransferred = self.transferred
        self.transferred = bytesTransferred
        currentTime = time.monotonic()

        if self.pbar is not None:
            increment = self.transferred - previousTransferred
            if increment > 0:
                self.pbar.update(increment)
        elif forceLog or (currentTime - self.lastProgressTime) >= self.logInterval:
            self._logProgress(currentTime)

    def _logProgress(self, currentTime):
        timeDelta = currentTime - self.lastProgressTime
        bytesDelta = self.transferred - self.lastProgressBytes
        speed = bytesDelta / timeDelta if timeDelta > 0 else 0

        percentage = (self.transferred * 100.0 / self.totalSize) if self.totalSize else 0
        self.loggerCallback(
            f"Progress: {formatSize(self.transferred)}/{formatSize(self.totalSize or 0)} "
            f"({percentage:.2f}%), {formatSize(int(speed))}/sec"
        )

        self.lastProgressTime = currentTime
        self.lastProgressBytes = self.transferred

    def write(self, text):
        """Print a line without tearing the bar"""
        if self.pbar is not None:
            self.pbar.write(text, file=sys.stderr)
        else:
            self.loggerCallback(text)

    def getElapsedTime(self):
        """Seconds since the progress started"""
        return time.monotonic() - self.startTime

    def finish(self, complete=True):
        if self.pbar is None:
            if complete:
                self._logProgress(time.monotonic())
            return

        try:
            if complete and self.pbar.total:
                remaining = self.pbar.total - self.pbar.n
                if remaining > 0:
                    self.pbar.update(remaining)
            self.pbar.refresh()
            self.pbar.close()
        except (ValueError, AttributeError) as e:
            logger.debug(f"Exception during progress bar cleanup: {e}")
        finally:
            self.pbar = None

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.finish(complete=excType is None)
