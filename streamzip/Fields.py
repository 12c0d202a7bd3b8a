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

import struct
import datetime

from typing import Iterable, Tuple, Union

# Width marker for byte spans copied verbatim
RAW = 0

# Unsigned little-endian formats by width in bytes
FIELD_FORMATS = {1: '<B', 2: '<H', 4: '<I', 8: '<Q'}

# 1980-01-01 00:00:00, the earliest DOS timestamp
DEFAULT_DOS_TIME = 0
DEFAULT_DOS_DATE = (1 << 5) | 1


class UnsupportedWidthError(ValueError):
    """Raised when a field asks for a width the encoder cannot pack"""

    def __init__(self, width, value=None):
        super().__init__(f"createByteArray: No handler defined for data size {width} of entry data {value!r}")
        self.width = width
        self.value = value


def createByteArray(fields: Iterable[Tuple[Union[int, bytes], int]]) -> bytes:
    """
    Pack an ordered list of (value, width) fields into a little-endian buffer

    Args:
        fields: (int, 1|2|4|8) for unsigned integers, (bytes, RAW) for byte spans

    Returns:
        bytes: The packed buffer

    Raises:
        UnsupportedWidthError: If a width is not 1, 2, 4, 8 or RAW, or a RAW value is not bytes
        ValueError: If an integer does not fit its width
    """
    buffer = bytearray()

    for value, width in fields:
        if width == RAW:
            if not isinstance(value, (bytes, bytearray, memoryview)):
                raise UnsupportedWidthError(width, value)
            buffer += value
            continue

        fmt = FIELD_FORMATS.get(width)
        if fmt is None:
            raise UnsupportedWidthError(width, value)

        try:
            buffer += struct.pack(fmt, value)
        except struct.error as e:
            raise ValueError(f"Value {value!r} does not fit in {width} bytes") from e

    return bytes(buffer)


def toDosDateTime(value) -> Tuple[int, int]:
    """
    Convert a timestamp to DOS time and date format

    Args:
        value: datetime, Unix timestamp (seconds since epoch) or None

    Returns:
        tuple: (dosTime, dosDate) - both as 16-bit integers

    DOS time format (16 bits):
        bits 0-4: seconds / 2 (0-29)
        bits 5-10: minutes (0-59)
        bits 11-15: hours (0-23)

    DOS date format (16 bits):
        bits 0-4: day (1-31)
        bits 5-8: month (1-12)
        bits 9-15: year - 1980 (0-127, representing 1980-2107)
    """
    if value is None:
        return DEFAULT_DOS_TIME, DEFAULT_DOS_DATE

    if isinstance(value, datetime.datetime):
        dt = value
    else:
        if value <= 0:
            return DEFAULT_DOS_TIME, DEFAULT_DOS_DATE

        try:
            dt = datetime.datetime.fromtimestamp(value)
        except (ValueError, OSError, OverflowError):
            return DEFAULT_DOS_TIME, DEFAULT_DOS_DATE

    if dt.year < 1980:
        return DEFAULT_DOS_TIME, DEFAULT_DOS_DATE

    year = min(2107, dt.year)

    dosTime = ((dt.hour & 0x1F) << 11) | ((dt.minute & 0x3F) << 5) | ((dt.second // 2) & 0x1F)
    dosDate = (((year - 1980) & 0x7F) << 9) | ((dt.month & 0x0F) << 5) | (dt.day & 0x1F)

    return dosTime, dosDate
