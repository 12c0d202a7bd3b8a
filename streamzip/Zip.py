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
import zipfile
import datetime
import threading

from collections import deque
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Iterator, NamedTuple, Optional

from streamzip.Checksum import Crc32
from streamzip.Fields import RAW, createByteArray, toDosDateTime
from streamzip.Kernel import getLogger, ZipEvent
from streamzip.Settings import HIGH_WATER_MARK, STRICT_SIZE
from streamzip.Size import ZIP64_LIMIT, ZIP64_EXTRA_FIELD_SIZE, encodeName, validateSize
from streamzip.Utils import formatSize

logger = getLogger(__name__)


class ZipStreamError(RuntimeError):
    """Base class for archive stream failures"""


class SequenceError(ZipStreamError):
    """An operation was invoked out of the required order"""


class AlreadyFinishedError(SequenceError):
    """The archive was already finished"""


class AlreadyDestroyedError(ZipStreamError):
    """The archive was destroyed and accepts nothing more"""


class SizeMismatchError(ZipStreamError):
    """Emitted bytes disagree with a declared size"""

    def __init__(self, message: str, expected: int = None, actual: int = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class Lifecycle(Enum):
    OPEN = auto()
    FINISHED = auto()
    DESTROYED = auto()


class MemberState(Enum):
    STARTED = auto()
    ENDED = auto()


@dataclass
class MemberRecord:
    name: bytes
    offset: int
    date: object
    expectedSize: Optional[int] = None
    size: int = 0
    crc: Crc32 = field(default_factory=Crc32)
    state: MemberState = MemberState.STARTED

    @property
    def displayName(self) -> str:
        return self.name.decode('utf-8', errors='replace')


class WriteResult(NamedTuple):
    accepted: bool # False when the consumer buffer is saturated
    ready: Future # Resolves when the next write may proceed


class MemberWriter:
    """
    Payload sink for one archive member

    Returned by ZipStream.startFile(). Chunks go straight to the archive
    output while the CRC and size are tracked; close() appends the data
    descriptor. Used as a context manager, a clean exit ends the member and
    an exception destroys the whole archive.
    """

    def __init__(self, archive: 'ZipStream', member: MemberRecord):
        self.archive = archive
        self.member = member

    @property
    def name(self) -> str:
        return self.member.displayName

    @property
    def closed(self) -> bool:
        return self.member.state == MemberState.ENDED

    def tryWrite(self, chunk) -> WriteResult:
        """
        Append a payload chunk without blocking

        Returns:
            WriteResult: accepted is False when the consumer is saturated, in
                         which case ready resolves once it has drained (or
                         fails with the destruction error)

        Raises:
            AlreadyDestroyedError: If the archive was destroyed
            SequenceError: If the member already ended or a write is still pending
        """
        archive = self.archive

        if archive.destroyed:
            raise AlreadyDestroyedError("Already destroyed") from archive.error

        if self.closed:
            archive._fail(SequenceError(f"The file {self.name} was already finished."))

        if archive.hasPendingWrite:
            archive._fail(SequenceError(f"Previous write to {self.name} is still pending."))

        ready = Future()
        data = bytes(chunk)

        if not data:
            ready.set_result(None)
            return WriteResult(True, ready)

        accepted = archive._emit(data, waiter=ready)
        self.member.crc.append(data)
        self.member.size += len(data)

        if accepted:
            ready.set_result(None)

        return WriteResult(accepted, ready)

    def write(self, chunk, timeout: float = None) -> int:
        """
        Append a payload chunk, blocking while the consumer is saturated

        The chunk is part of the output as soon as it is accepted, so a wait
        that times out cannot be retried: it destroys the archive instead.
        """
        result = self.tryWrite(chunk)
        try:
            result.ready.result(timeout)
        except FutureTimeoutError as e:
            self.archive.destroy(e)
            raise
        return len(chunk)

    def close(self) -> None:
        """End the member by emitting its data descriptor"""
        if self.closed:
            return

        self.archive._endFile(self.member)

    def __enter__(self):
        return self

    def __exit__(self, excType, exc, tb):
        if exc is None:
            self.close()
        else:
            self.archive.destroy(exc)
        return False

    def __repr__(self):
        return f'<MemberWriter {self.name!r} size={self.member.size} closed={self.closed}>'


class ZipStream:
    """
    Streaming ZIP encoder

    Emits a stored (uncompressed) archive while member payloads are still
    arriving. Every local header defers its CRC and sizes to a trailing data
    descriptor, so nothing already emitted is ever patched. The format mode
    (standard or ZIP64) is fixed at construction, normally from
    Size.calculateSize(), because it changes header widths.

    Producer side: startFile() -> MemberWriter.write()/tryWrite() ->
    MemberWriter.close(), repeated per member, then finish().

    Consumer side: read() or iteration. Unread bytes are bounded by
    highWaterMark; beyond it payload writes are suspended until the consumer
    catches up.

    Any structural error destroys the archive; a destroyed archive's output is
    incomplete and must be discarded.
    """

    # ZIP format constants (PKZIP APPNOTE.TXT)
    LOCAL_FILE_HEADER_SIGNATURE = struct.unpack('<I', zipfile.stringFileHeader)[0] # 0x04034b50
    CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringCentralDir)[0] # 0x02014b50
    END_OF_CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringEndArchive)[0] # 0x06054b50
    ZIP64_END_OF_CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringEndArchive64)[0] # 0x06064b50
    ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE = struct.unpack('<I', zipfile.stringEndArchive64Locator)[0] # 0x07064b50

    ZIP64_EXTRA_FIELD_TAG = 0x0001
    ZIP64_EXTRA_FIELD_DATA_SIZE = 28
    ZIP64_END_OF_CENTRAL_DIR_REMAINING_SIZE = 44

    # 4.5 covers ZIP64 and data descriptors
    VERSION = 45

    STORE = zipfile.ZIP_STORED # 0

    # General purpose bit flags
    DATA_DESCRIPTOR_FLAG = 0x0008 # Bit 3: sizes/CRC in data descriptor
    UTF8_FLAG = 0x0800 # Bit 11: filename UTF-8 encoded
    FLAGS = DATA_DESCRIPTOR_FLAG | UTF8_FLAG

    def __init__(
        self,
        total: int = None,
        zip64: bool = None,
        highWaterMark: int = HIGH_WATER_MARK,
        strictSize: bool = STRICT_SIZE,
        clock=None
    ):
        """
        Args:
            total: Predicted archive size from Size.calculateSize(), or None if unknown
            zip64: Format mode; None derives it from total >= 0xFFFFFFFF
            highWaterMark: Unread bytes tolerated before payload writes suspend
            strictSize: Destroy the archive when emitted bytes disagree with total
                        or with a member's declared size
            clock: Callable returning the datetime stamped on new members
        """
        if total is not None:
            validateSize(total)

        if zip64 is None:
            zip64 = total is not None and total >= ZIP64_LIMIT

        self.total = total
        self.zip64 = bool(zip64)
        self.highWaterMark = highWaterMark
        self.strictSize = strictSize
        self.clock = clock or datetime.datetime.now

        self.members = []
        self.cursor = 0
        self.lifecycle = Lifecycle.OPEN
        self.error = None

        self._condition = threading.Condition()
        self._chunks = deque()
        self._buffered = 0
        self._ended = False
        self._pending = None

        logger.debug(f"Started zip with zip64: {self.zip64} and size {self.total}")

    @property
    def finished(self) -> bool:
        return self.lifecycle == Lifecycle.FINISHED

    @property
    def destroyed(self) -> bool:
        return self.lifecycle == Lifecycle.DESTROYED

    @property
    def buffered(self) -> int:
        """Bytes emitted but not yet read by the consumer"""
        with self._condition:
            return self._buffered

    @property
    def hasPendingWrite(self) -> bool:
        with self._condition:
            return self._pending is not None

    # Output buffer

    def _push(self, data: bytes, waiter: Future = None) -> bool:
        """Queue data for the consumer; False once the high-water mark is reached"""
        with self._condition:
            if self.lifecycle == Lifecycle.DESTROYED:
                raise AlreadyDestroyedError("Already destroyed") from self.error

            self._chunks.append(data)
            self._buffered += len(data)
            self._condition.notify_all()

            if self._buffered < self.highWaterMark:
                return True

            # Parked until read() drains below the mark or destroy() fails it
            if waiter is not None:
                self._pending = waiter
            return False

    def _emit(self, data: bytes, waiter: Future = None) -> bool:
        accepted = self._push(data, waiter)
        self.cursor += len(data)
        return accepted

    def _end(self) -> None:
        with self._condition:
            if self.lifecycle == Lifecycle.DESTROYED:
                raise AlreadyDestroyedError("Already destroyed") from self.error

            self._ended = True
            self.lifecycle = Lifecycle.FINISHED
            self._condition.notify_all()

    def read(self) -> bytes:
        """
        Return the next chunk of archive output, blocking until one is available

        Returns:
            bytes: Next chunk, or b'' once the archive is finished and drained

        Raises:
            Exception: The error that destroyed the archive
        """
        waiter = None

        with self._condition:
            while not self._chunks and not self._ended and self.lifecycle != Lifecycle.DESTROYED:
                self._condition.wait()

            if self.lifecycle == Lifecycle.DESTROYED:
                raise self.error

            if not self._chunks:
                return b''

            chunk = self._chunks.popleft()
            self._buffered -= len(chunk)

            if self._pending is not None and self._buffered < self.highWaterMark:
                waiter, self._pending = self._pending, None

        if waiter is not None:
            waiter.set_result(None)

        return chunk

    def iterChunks(self) -> Iterator[bytes]:
        while True:
            chunk = self.read()
            if not chunk:
                return
            yield chunk

    def __iter__(self):
        return self.iterChunks()

    # Lifecycle

    def destroy(self, error: BaseException = None) -> None:
        """
        Abort the archive

        Fails a suspended payload write with the error, wakes blocked readers
        and stops all further emission. Nothing is written to repair the
        output. Calling it again has no effect.
        """
        with self._condition:
            if self.lifecycle == Lifecycle.DESTROYED:
                return

            if error is None:
                error = AlreadyDestroyedError("Archive was destroyed")

            self.lifecycle = Lifecycle.DESTROYED
            self.error = error
            self._chunks.clear()
            self._buffered = 0
            waiter, self._pending = self._pending, None
            self._condition.notify_all()

        if waiter is not None and not waiter.done():
            waiter.set_exception(error)

        logger.debug(f"Zip destroyed after {self.cursor} bytes: {error!r}")
        ZipEvent.archiveDestroyed.trigger(archive=self, error=error)

    def _fail(self, error: BaseException):
        self.destroy(error)
        raise error

    def _checkNotFinished(self):
        if self.lifecycle == Lifecycle.FINISHED:
            raise AlreadyFinishedError("Already finished")

    def _checkNotDestroyed(self):
        if self.lifecycle == Lifecycle.DESTROYED:
            raise AlreadyDestroyedError("Already destroyed") from self.error

    def _checkNotWritingFile(self):
        if self.members:
            lastFile = self.members[-1]
            if lastFile.state != MemberState.ENDED:
                self._fail(SequenceError(f"The file {lastFile.displayName} was not finished."))

    # API

    def startFile(self, name, date=None, size: int = None) -> MemberWriter:
        """
        Begin a new member and emit its local file header

        Args:
            name: Archive path (str is encoded as UTF-8)
            date: datetime or Unix timestamp for the entry, defaults to clock()
            size: Declared payload size, checked when the member ends

        Returns:
            MemberWriter: Sink for this member's payload

        Raises:
            AlreadyFinishedError: If finish() was already called
            AlreadyDestroyedError: If the archive was destroyed
            SequenceError: If the previous member was not ended (destroys the archive)
        """
        self._checkNotFinished()
        self._checkNotDestroyed()
        self._checkNotWritingFile()

        nameBytes = encodeName(name)
        if size is not None:
            validateSize(size)

        member = MemberRecord(
            name=nameBytes,
            offset=self.cursor,
            date=date if date is not None else self.clock(),
            expectedSize=size,
        )

        header = self._makeLocalFileHeader(member)
        self.members.append(member)
        self._emit(header)

        logger.debug(f"Start file: {member.displayName} at offset {member.offset}")
        ZipEvent.memberStarted.trigger(archive=self, member=member)

        return MemberWriter(self, member)

    def _endFile(self, member: MemberRecord) -> None:
        self._checkNotDestroyed()

        if self.strictSize and member.expectedSize is not None and member.size != member.expectedSize:
            self._fail(
                SizeMismatchError(
                    f"The file {member.displayName} has {member.size} bytes, expected {member.expectedSize}.",
                    expected=member.expectedSize,
                    actual=member.size,
                )
            )

        try:
            descriptor = self._makeDataDescriptor(member)
        except ValueError as e:
            self._fail(e)

        self._emit(descriptor)
        member.state = MemberState.ENDED

        logger.debug(f"End file: {member.displayName} ({member.size} bytes, crc {member.crc.get():08x})")
        ZipEvent.memberEnded.trigger(archive=self, member=member)

    def finish(self) -> None:
        """
        Emit the central directory and end records, then end the output

        Raises:
            AlreadyFinishedError: If called more than once
            AlreadyDestroyedError: If the archive was destroyed
            SequenceError: If the last member was not ended (destroys the archive)
            SizeMismatchError: If strictSize is on and the final length differs
                               from total (destroys the archive, nothing emitted)
        """
        self._checkNotFinished()
        self._checkNotDestroyed()
        self._checkNotWritingFile()

        logger.debug("Finishing zip")

        entryCount = len(self.members)
        centralDirStart = self.cursor

        try:
            records = [self._makeCentralDirHeader(member) for member in self.members]
            centralDirSize = sum(len(record) for record in records)

            if self.zip64:
                zip64EocdOffset = centralDirStart + centralDirSize
                records.append(self._makeZip64EndOfCentralDir(entryCount, centralDirSize, centralDirStart))
                records.append(self._makeZip64Locator(zip64EocdOffset))

            records.append(self._makeEndOfCentralDir(entryCount, centralDirSize, centralDirStart))
        except ValueError as e:
            # A field overflowed its standard width
            self._fail(e)

        finalSize = centralDirStart + sum(len(record) for record in records)
        if self.strictSize and self.total is not None and finalSize != self.total:
            self._fail(
                SizeMismatchError(
                    f"Archive would be {finalSize} bytes, expected {self.total}.",
                    expected=self.total,
                    actual=finalSize,
                )
            )

        for record in records:
            self._emit(record)
        self._end()

        logger.info(
            f"Done writing zip file. Wrote {entryCount} files and a total of "
            f"{formatSize(self.cursor)} ({self.cursor} bytes)."
        )
        ZipEvent.archiveFinished.trigger(archive=self)

    # Record builders

    def _makeZip64ExtraField(self, size: int, offset: int) -> list:
        if not self.zip64:
            return []

        return [
            (self.ZIP64_EXTRA_FIELD_TAG, 2),
            (self.ZIP64_EXTRA_FIELD_DATA_SIZE, 2),
            (size, 8), # Uncompressed size
            (size, 8), # Compressed size
            (offset, 8), # Local header offset
            (0, 4), # Disk start number
        ]

    def _makeLocalFileHeader(self, member: MemberRecord) -> bytes:
        dosTime, dosDate = toDosDateTime(member.date)
        sizePlaceholder = 0xFFFFFFFF if self.zip64 else 0

        return createByteArray([
            (self.LOCAL_FILE_HEADER_SIGNATURE, 4),
            (self.VERSION, 2), # Version needed to extract
            (self.FLAGS, 2),
            (self.STORE, 2), # Compression method
            (dosTime, 2),
            (dosDate, 2),
            (0, 4), # CRC-32, in data descriptor
            (sizePlaceholder, 4), # Compressed size
            (sizePlaceholder, 4), # Uncompressed size
            (len(member.name), 2),
            (ZIP64_EXTRA_FIELD_SIZE if self.zip64 else 0, 2), # Extra field length
            (member.name, RAW),
            *self._makeZip64ExtraField(0, member.offset),
        ])

    def _makeDataDescriptor(self, member: MemberRecord) -> bytes:
        sizeWidth = 8 if self.zip64 else 4

        return createByteArray([
            (member.crc.get(), 4),
            (member.size, sizeWidth), # Compressed size
            (member.size, sizeWidth), # Uncompressed size
        ])

    def _makeCentralDirHeader(self, member: MemberRecord) -> bytes:
        dosTime, dosDate = toDosDateTime(member.date)

        return createByteArray([
            (self.CENTRAL_DIR_SIGNATURE, 4),
            (self.VERSION, 2), # Version made by
            (self.VERSION, 2), # Version needed to extract
            (self.FLAGS, 2),
            (self.STORE, 2),
            (dosTime, 2),
            (dosDate, 2),
            (member.crc.get(), 4),
            (0xFFFFFFFF if self.zip64 else member.size, 4), # Compressed size
            (0xFFFFFFFF if self.zip64 else member.size, 4), # Uncompressed size
            (len(member.name), 2),
            (ZIP64_EXTRA_FIELD_SIZE if self.zip64 else 0, 2),
            (0, 2), # File comment length
            (0, 2), # Disk number start
            (0, 2), # Internal file attributes
            (0, 4), # External file attributes
            (0xFFFFFFFF if self.zip64 else member.offset, 4), # Relative offset of local header
            (member.name, RAW),
            *self._makeZip64ExtraField(member.size, member.offset),
        ])

    def _makeZip64EndOfCentralDir(self, entryCount: int, centralDirSize: int, centralDirStart: int) -> bytes:
        return createByteArray([
            (self.ZIP64_END_OF_CENTRAL_DIR_SIGNATURE, 4),
            (self.ZIP64_END_OF_CENTRAL_DIR_REMAINING_SIZE, 8),
            (self.VERSION, 2),
            (self.VERSION, 2),
            (0, 4), # Number of this disk
            (0, 4), # Disk where central directory starts
            (entryCount, 8), # Entries on this disk
            (entryCount, 8), # Total entries
            (centralDirSize, 8),
            (centralDirStart, 8),
        ])

    def _makeZip64Locator(self, zip64EocdOffset: int) -> bytes:
        return createByteArray([
            (self.ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE, 4),
            (0, 4), # Disk number with zip64 EOCD
            (zip64EocdOffset, 8),
            (1, 4), # Total number of disks
        ])

    def _makeEndOfCentralDir(self, entryCount: int, centralDirSize: int, centralDirStart: int) -> bytes:
        return createByteArray([
            (self.END_OF_CENTRAL_DIR_SIGNATURE, 4),
            (0, 2), # Number of this disk
            (0, 2), # Disk where central directory starts
            (0xFFFF if self.zip64 else entryCount, 2),
            (0xFFFF if self.zip64 else entryCount, 2),
            (0xFFFFFFFF if self.zip64 else centralDirSize, 4),
            (0xFFFFFFFF if self.zip64 else centralDirStart, 4),
            (0, 2), # Comment length
        ])

    def __repr__(self):
        return (
            f'<ZipStream zip64={self.zip64} total={self.total} cursor={self.cursor} '
            f'members={len(self.members)} {self.lifecycle.name}>'
        )
