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

import zlib


class Crc32:
    """Running CRC-32 over every chunk appended so far"""

    __slots__ = ('value',)

    def __init__(self):
        self.value = 0

    def append(self, data) -> None:
        self.value = zlib.crc32(data, self.value)

    def get(self) -> int:
        return self.value & 0xFFFFFFFF
