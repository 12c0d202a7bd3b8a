#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: AGPL-3.0-or-later
#
# streamzip - Streaming ZIP archives from files that are still arriving
# Copyright (C) 2024-2025 FastFileLink contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

import sys

from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import quote, urlparse

from streamzip.Archive import UpstreamFailure, zipSources
from streamzip.Kernel import getLogger
from streamzip.Progress import Progress
from streamzip.Settings import DEFAULT_ARCHIVE_NAME, DEFAULT_SERVER_HOST, HIGH_WATER_MARK, TRANSFER_CHUNK_SIZE
from streamzip.Size import calculateSize
from streamzip.Utils import formatSize
from streamzip.Zip import ZipStreamError

LOG_OUTPUT_DURATION = 1 # Seconds

logger = getLogger(__name__)


class ZipDownloadHandler(BaseHTTPRequestHandler):
    """Serves a freshly streamed archive on every GET of / or /download"""

    protocol_version = 'HTTP/1.1'

    DOWNLOAD_PATHS = ('', '/', '/download')

    def _sendArchiveHeaders(self, size):
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Length", str(size))
        self.send_header("Content-Type", "application/zip")
        self.send_header("Content-Disposition", f"attachment; filename={quote(self.server.fileName)}")
        self.end_headers()

    def _sendNotFound(self):
        self.send_response(HTTPStatus.NOT_FOUND)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_HEAD(self):
        if urlparse(self.path).path not in self.DOWNLOAD_PATHS:
            self._sendNotFound()
            return

        self._sendArchiveHeaders(self.server.estimate.total)

    def do_GET(self):
        if urlparse(self.path).path not in self.DOWNLOAD_PATHS:
            self._sendNotFound()
            return

        archive = zipSources(
            self.server.sources,
            zip64=self.server.zip64,
            highWaterMark=self.server.highWaterMark,
            chunkSize=self.server.chunkSize,
        )
        self._sendArchiveHeaders(archive.total)

        written = 0
        progress = Progress(archive.total, loggerCallback=logger.info, logInterval=LOG_OUTPUT_DURATION)

        try:
            for chunk in archive:
                self.wfile.write(chunk)
                written += len(chunk)
                progress.update(written)

            progress.update(written, forceLog=True)
            logger.info(
                f"Sent {self.server.fileName} ({formatSize(written)}) to {self.client_address[0]} "
                f"in {progress.getElapsedTime():.1f}s"
            )
        except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError) as e:
            logger.info(f"Client {self.client_address[0]} disconnected after {written} bytes: {e}")
            archive.destroy(UpstreamFailure(f"Client disconnected: {e}"))
        except ZipStreamError as e:
            # Headers are out, so a short body is the only signal left
            logger.error(f"Archive failed after {written} bytes: {e}")
        except BaseException as e:
            logger.warning(f"Sending to {self.client_address[0]} failed after {written} bytes: {e!r}")
            archive.destroy(UpstreamFailure(f"Failed to send archive: {e!r}"))
            raise
        finally:
            self.close_connection = True

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")


class Server(ThreadingHTTPServer):

    request_queue_size = 5
    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self,
        sources,
        fileName,
        serverAddress,
        zip64=None,
        requestHandlerClass=None,
        highWaterMark=HIGH_WATER_MARK,
        chunkSize=TRANSFER_CHUNK_SIZE,
    ):
        self.sources = list(sources)
        self.fileName = fileName
        self.zip64 = zip64
        self.highWaterMark = highWaterMark
        self.chunkSize = chunkSize
        self.estimate = calculateSize([source.asMember() for source in self.sources], zip64=bool(zip64))

        super().__init__(serverAddress, requestHandlerClass or ZipDownloadHandler)

    @property
    def port(self):
        return self.server_address[1]

    def handle_error(self, request, client_address):
        logger.exception(sys.exc_info()[1])

    def start(self):
        logger.info(
            f"Serving {self.fileName} ({formatSize(self.estimate.total)}) on "
            f"http://{self.server_address[0]}:{self.port}/"
        )
        self.serve_forever()


def createServer(port, sources, fileName=DEFAULT_ARCHIVE_NAME, zip64=None, host=DEFAULT_SERVER_HOST, **kwargs):
    serverAddress = (host, port)
    return Server(sources, fileName, serverAddress, zip64=zip64, **kwargs)
