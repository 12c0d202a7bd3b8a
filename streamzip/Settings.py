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

from streamzip.Utils import getEnv, ONE_KB, ONE_MB

# Read size for member sources (256 KiB)
TRANSFER_CHUNK_SIZE = getEnv('TRANSFER_CHUNK_SIZE', 256 * ONE_KB)

# Bytes the consumer may leave unread before payload writes are suspended
HIGH_WATER_MARK = getEnv('HIGH_WATER_MARK', ONE_MB)

# Connect/read timeout in seconds for URL sources
FETCH_TIMEOUT = getEnv('FETCH_TIMEOUT', 30.0)

# Abort when emitted bytes disagree with declared sizes
STRICT_SIZE = getEnv('STRICT_SIZE', True)

DEFAULT_ARCHIVE_NAME = 'archive.zip'

DEFAULT_SERVER_HOST = getEnv('SERVER_HOST', '127.0.0.1')
