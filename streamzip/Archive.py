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
import json
import threading

from contextlib import closing
from typing import Iterator, List
from urllib.parse import unquote, urlparse

import requests
from urllib3.exceptions import HTTPError as TransportError

from streamzip.Kernel import getLogger, PUBLIC_VERSION
from streamzip.Settings import FETCH_TIMEOUT, HIGH_WATER_MARK, TRANSFER_CHUNK_SIZE
from streamzip.Size import calculateSize, validateSize
from streamzip.Utils import StallResilientAdapter
from streamzip.Zip import AlreadyDestroyedError, ZipStream, ZipStreamError

logger = getLogger(__name__)


class UpstreamFailure(ZipStreamError):
    """A member source failed or was aborted"""

    def __init__(self, message, source=None):
        super().__init__(message)
        self.source = source


def createSession() -> requests.Session:
    session = requests.Session()
    session.headers['User-Agent'] = f'streamzip/{PUBLIC_VERSION}'

    adapter = StallResilientAdapter()
    session.mount('http://', adapter)
    session.mount('https://', adapter)

    return session


def isUrl(text) -> bool:
    return urlparse(str(text)).scheme in ('http', 'https')


class MemberSource:
    """A member payload with its archive name and declared size"""

    name = None
    size = None
    date = None

    def iterChunks(self, chunkSize: int) -> Iterator[bytes]:
        raise NotImplementedError

    def asMember(self) -> dict:
        return {'name': self.name, 'size': self.size}

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.name!r} size={self.size}>'


class FileMemberSource(MemberSource):

    def __init__(self, path, name=None):
        try:
            stat = os.stat(path)
        except OSError as e:
            raise UpstreamFailure(f"Cannot read {path}: {e}") from e

        self.path = path
        self.name = name or os.path.basename(os.path.normpath(path))
        self.size = stat.st_size
        self.date = stat.st_mtime

    def iterChunks(self, chunkSize: int) -> Iterator[bytes]:
        try:
            with open(self.path, 'rb') as f:
                while True:
                    chunk = f.read(chunkSize)
                    if not chunk:
                        break
                    yield chunk
        except OSError as e:
            raise UpstreamFailure(f"Failed to read {self.path}: {e}", self) from e


class UrlMemberSource(MemberSource):
    """
    Member fetched over HTTP(S) with requests.

    When size is not given it is taken from a HEAD request's Content-Length,
    since the archive layout must be known before the first byte is sent.
    """

    # Content-Length must describe the bytes that end up in the archive
    REQUEST_HEADERS = {'Accept-Encoding': 'identity'}

    def __init__(self, url, name=None, size=None, session=None, timeout=FETCH_TIMEOUT):
        self.url = url
        self.session = session or createSession()
        self.timeout = timeout
        self.name = name or self._nameFromUrl(url)
        self.size = validateSize(size) if size is not None else self.resolveSize()

    @staticmethod
    def _nameFromUrl(url):
        baseName = os.path.basename(unquote(urlparse(url).path))
        return baseName or 'download'

    def resolveSize(self) -> int:
        try:
            response = self.session.head(
                self.url, headers=self.REQUEST_HEADERS, allow_redirects=True, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise UpstreamFailure(f"Failed to resolve size of {self.url}: {e}", self) from e

        contentLength = response.headers.get('Content-Length')
        if contentLength is None:
            raise UpstreamFailure(f"{self.url} did not report a Content-Length", self)

        try:
            size = validateSize(int(contentLength))
        except ValueError as e:
            raise UpstreamFailure(f"{self.url} reported an invalid Content-Length {contentLength!r}", self) from e

        logger.debug(f"Resolved {self.url} to {size} bytes")
        return size

    def iterChunks(self, chunkSize: int) -> Iterator[bytes]:
        try:
            with self.session.get(
                self.url, headers=self.REQUEST_HEADERS, stream=True, timeout=self.timeout
            ) as response:
                response.raise_for_status()
                # Undecoded, so a server that compresses anyway still matches its Content-Length
                for chunk in response.raw.stream(chunkSize, decode_content=False):
                    if chunk:
                        yield chunk
        except (requests.RequestException, TransportError) as e:
            raise UpstreamFailure(f"Failed to fetch {self.url}: {e}", self) from e


def sourceFromString(text, session=None) -> MemberSource:
    """Parse a command line source: path, URL, or name=path_or_url"""
    name = None
    target = text

    if not isUrl(text) and '=' in text and not os.path.exists(text):
        name, target = text.split('=', 1)

    if isUrl(target):
        return UrlMemberSource(target, name=name or None, session=session)

    return FileMemberSource(target, name=name or None)


def buildSources(entries, session=None) -> List[MemberSource]:
    """
    Turn manifest entries into member sources

    Args:
        entries: dicts with 'url' or 'path', and optional 'name' and 'size'
        session: requests.Session shared by URL sources
    """
    sources = []

    for entry in entries:
        if 'url' in entry:
            sources.append(
                UrlMemberSource(entry['url'], name=entry.get('name'), size=entry.get('size'), session=session)
            )
        elif 'path' in entry:
            sources.append(FileMemberSource(entry['path'], name=entry.get('name')))
        else:
            raise ValueError(f"Manifest entry needs a 'url' or 'path': {entry!r}")

    return sources


def loadManifest(path) -> list:
    with open(path, 'r', encoding='utf-8') as f:
        entries = json.load(f)

    if not isinstance(entries, list):
        raise ValueError(f"Manifest {path} must contain a JSON list")

    return entries


def pumpSources(archive: ZipStream, sources, chunkSize: int = TRANSFER_CHUNK_SIZE) -> None:
    """
    Stream every source into the archive in order, then finish it

    Failures destroy the archive so the consumer sees the error on read().
    """
    try:
        for source in sources:
            with archive.startFile(source.name, date=source.date, size=source.size) as writer:
                with closing(source.iterChunks(chunkSize)) as chunks:
                    for chunk in chunks:
                        writer.write(chunk)

        archive.finish()
    except AlreadyDestroyedError as e:
        logger.debug(f"Archive aborted while pumping: {e}")
    except UpstreamFailure as e:
        logger.error(f"Source failed: {e}")
        archive.destroy(e)
    except ZipStreamError as e:
        logger.error(f"Archive failed: {e}")
        archive.destroy(e)
    except Exception as e:
        logger.exception(f"Unexpected error while zipping: {e}")
        archive.destroy(UpstreamFailure(str(e)))


def zipSources(
    sources,
    zip64: bool = None,
    highWaterMark: int = HIGH_WATER_MARK,
    chunkSize: int = TRANSFER_CHUNK_SIZE,
    clock=None,
) -> ZipStream:
    """
    Predict the archive size, then pump the sources into a new ZipStream
    on a daemon thread.

    Returns:
        ZipStream: Readable archive; total holds the exact length
    """
    sources = list(sources)
    estimate = calculateSize([source.asMember() for source in sources], zip64=bool(zip64))

    archive = ZipStream(total=estimate.total, zip64=estimate.zip64, highWaterMark=highWaterMark, clock=clock)

    thread = threading.Thread(
        target=pumpSources, args=(archive, sources, chunkSize), name='streamzip-pump', daemon=True
    )
    thread.start()

    return archive
