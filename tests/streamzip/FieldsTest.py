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

import datetime
import unittest
import zlib

from streamzip.Checksum import Crc32
from streamzip.Fields import (
    RAW, DEFAULT_DOS_DATE, DEFAULT_DOS_TIME, UnsupportedWidthError, createByteArray, toDosDateTime
)


class CreateByteArrayTest(unittest.TestCase):

    def testIntegerWidths(self):
        """Each width packs an unsigned little-endian integer"""
        data = createByteArray([(0x01, 1), (0x0203, 2), (0x04050607, 4), (0x08090A0B0C0D0E0F, 8)])
        self.assertEqual(
            data, b'\x01' + b'\x03\x02' + b'\x07\x06\x05\x04' + b'\x0f\x0e\x0d\x0c\x0b\x0a\x09\x08'
        )

    def testSignature(self):
        self.assertEqual(createByteArray([(0x04034b50, 4)]), b'PK\x03\x04')

    def testRawSpan(self):
        """RAW fields are copied verbatim between integers"""
        data = createByteArray([(3, 2), (b'foo', RAW), (0xFFFF, 2)])
        self.assertEqual(data, b'\x03\x00foo\xff\xff')

    def testEmpty(self):
        self.assertEqual(createByteArray([]), b'')

    def testUnsupportedWidth(self):
        with self.assertRaises(UnsupportedWidthError) as context:
            createByteArray([(1, 3)])

        self.assertEqual(context.exception.width, 3)
        self.assertIsInstance(context.exception, ValueError)

    def testRawRequiresBytes(self):
        self.assertEqual(createByteArray([(bytearray(b'ab'), RAW), (memoryview(b'c'), RAW)]), b'abc')

        for value in (0, 1234, 'foo'):
            with self.subTest(value=value):
                with self.assertRaises(UnsupportedWidthError) as context:
                    createByteArray([(value, RAW)])

                self.assertEqual(context.exception.width, RAW)

    def testOverflow(self):
        """Integers that do not fit their width are rejected"""
        for value, width in [(0x100, 1), (0x10000, 2), (0x100000000, 4), (2**64, 8), (-1, 4)]:
            with self.subTest(value=value, width=width):
                with self.assertRaises(ValueError):
                    createByteArray([(value, width)])


class ToDosDateTimeTest(unittest.TestCase):

    def testDateTime(self):
        dosTime, dosDate = toDosDateTime(datetime.datetime(2020, 5, 17, 13, 45, 58))

        self.assertEqual(dosTime, (13 << 11) | (45 << 5) | 29)
        self.assertEqual(dosDate, (40 << 9) | (5 << 5) | 17)

    def testOddSecondsTruncated(self):
        """DOS time has two-second resolution"""
        self.assertEqual(
            toDosDateTime(datetime.datetime(2020, 1, 1, 0, 0, 59)),
            toDosDateTime(datetime.datetime(2020, 1, 1, 0, 0, 58)),
        )

    def testDefaults(self):
        """None, non-positive timestamps and pre-1980 dates map to 1980-01-01"""
        for value in [None, 0, -5, datetime.datetime(1970, 1, 1)]:
            with self.subTest(value=value):
                self.assertEqual(toDosDateTime(value), (DEFAULT_DOS_TIME, DEFAULT_DOS_DATE))

        self.assertEqual(DEFAULT_DOS_DATE, (1 << 5) | 1)

    def testYearClamped(self):
        dosTime, dosDate = toDosDateTime(datetime.datetime(2200, 1, 1))
        self.assertEqual(dosDate >> 9, 127)

    def testTimestamp(self):
        """Timestamps are interpreted as local time, like datetime.fromtimestamp()"""
        timestamp = 1700000000
        self.assertEqual(toDosDateTime(timestamp), toDosDateTime(datetime.datetime.fromtimestamp(timestamp)))


class Crc32Test(unittest.TestCase):

    def testKnownValue(self):
        crc = Crc32()
        crc.append(b'123456789')
        self.assertEqual(crc.get(), 0xCBF43926)

    def testEmpty(self):
        self.assertEqual(Crc32().get(), 0)

    def testIncremental(self):
        """Appending chunks equals checksumming the concatenation"""
        data = bytes(range(256)) * 40
        crc = Crc32()
        for start in range(0, len(data), 999):
            crc.append(data[start:start + 999])

        self.assertEqual(crc.get(), zlib.crc32(data) & 0xFFFFFFFF)


if __name__ == '__main__':
    unittest.main()
