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

from typing import Iterable, Mapping, NamedTuple

from streamzip.Kernel import getLogger

logger = getLogger(__name__)

# Archives at or above this size need ZIP64 records
ZIP64_LIMIT = 0xFFFFFFFF

MAX_MEMBER_SIZE = 0xFFFFFFFFFFFFFFFF

# Fixed record sizes (bytes, excluding file names)
LOCAL_FILE_HEADER_SIZE = 30
DATA_DESCRIPTOR_SIZE = 12
ZIP64_DATA_DESCRIPTOR_SIZE = 20
CENTRAL_DIR_HEADER_SIZE = 46
END_OF_CENTRAL_DIR_SIZE = 22
ZIP64_EXTRA_FIELD_SIZE = 32
ZIP64_END_OF_CENTRAL_DIR_SIZE = 56
ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIZE = 20


class SizeEstimate(NamedTuple):
    total: int
    zip64: bool


def encodeName(name) -> bytes:
    """Archive names are stored as UTF-8"""
    nameBytes = name.encode('utf-8') if isinstance(name, str) else bytes(name)

    # The name length field is 2 bytes wide
    if len(nameBytes) > 0xFFFF:
        raise ValueError(f"Member name is too long ({len(nameBytes)} bytes)")

    return nameBytes


def validateSize(size) -> int:
    if isinstance(size, bool) or not isinstance(size, int):
        raise ValueError(f"Member size must be an integer, got {size!r}")

    if size < 0 or size > MAX_MEMBER_SIZE:
        raise ValueError(f"Member size {size} is outside the 64-bit unsigned range")

    return size


def localFileHeaderLength(nameBytes: bytes, zip64: bool) -> int:
    return LOCAL_FILE_HEADER_SIZE + len(nameBytes) + (ZIP64_EXTRA_FIELD_SIZE if zip64 else 0)


def dataDescriptorLength(zip64: bool) -> int:
    return ZIP64_DATA_DESCRIPTOR_SIZE if zip64 else DATA_DESCRIPTOR_SIZE


def centralDirHeaderLength(nameBytes: bytes, zip64: bool) -> int:
    return CENTRAL_DIR_HEADER_SIZE + len(nameBytes) + (ZIP64_EXTRA_FIELD_SIZE if zip64 else 0)


def endOfCentralDirLength(zip64: bool) -> int:
    length = END_OF_CENTRAL_DIR_SIZE
    if zip64:
        length += ZIP64_END_OF_CENTRAL_DIR_SIZE + ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIZE
    return length


def _archiveLength(members: list, zip64: bool) -> int:
    total = 0
    for nameBytes, size in members:
        total += localFileHeaderLength(nameBytes, zip64)
        total += size
        total += dataDescriptorLength(zip64)
        total += centralDirHeaderLength(nameBytes, zip64)

    return total + endOfCentralDirLength(zip64)


def calculateSize(members: Iterable[Mapping], zip64: bool = False) -> SizeEstimate:
    """
    Calculate the exact byte length of the archive ZipStream will emit

    Nothing is generated; every record length follows from the names and
    sizes alone. The standard layout is tried first and ZIP64 is used when
    that total reaches 0xFFFFFFFF or when zip64 is forced.

    Args:
        members: Ordered mappings with 'name' (str or bytes) and 'size' (int)
        zip64: Force ZIP64 records even for small archives

    Returns:
        SizeEstimate: (total, zip64)

    Raises:
        ValueError: If a size is negative, not an integer or exceeds 64 bits
    """
    entries = [(encodeName(member['name']), validateSize(member['size'])) for member in members]

    total = _archiveLength(entries, zip64=False)
    useZip64 = bool(zip64) or total >= ZIP64_LIMIT

    if useZip64:
        total = _archiveLength(entries, zip64=True)

    logger.debug(f"Calculate ZIP size: totalSize={total}, zip64={useZip64}, entries={len(entries)}")

    return SizeEstimate(total, useZip64)
