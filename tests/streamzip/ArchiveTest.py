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

import gzip
import io
import json
import os
import shutil
import tempfile
import threading
import unittest
import zipfile
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import MagicMock

import requests
from urllib3.exceptions import ProtocolError

from streamzip.Zip import SizeMismatchError
from streamzip.Archive import (
    FileMemberSource, UpstreamFailure, UrlMemberSource, buildSources, loadManifest, sourceFromString, zipSources
)


def mockResponse(chunks=(), headers=None, error=None):
    response = MagicMock()
    response.__enter__.return_value = response
    response.headers = headers or {}
    response.raw.stream.return_value = iter(chunks)
    if error is not None:
        response.raise_for_status.side_effect = error
    return response


class MemberSourceTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp()
        self.filePath = os.path.join(self.tempDir, 'data.bin')
        self.content = os.urandom(10000)
        with open(self.filePath, 'wb') as f:
            f.write(self.content)

    def tearDown(self):
        shutil.rmtree(self.tempDir)

    def testFileSource(self):
        source = FileMemberSource(self.filePath)

        self.assertEqual(source.name, 'data.bin')
        self.assertEqual(source.size, 10000)
        self.assertEqual(source.asMember(), {'name': 'data.bin', 'size': 10000})

        chunks = list(source.iterChunks(4096))
        self.assertEqual([len(chunk) for chunk in chunks], [4096, 4096, 1808])
        self.assertEqual(b''.join(chunks), self.content)

    def testFileSourceRenamed(self):
        self.assertEqual(FileMemberSource(self.filePath, name='other/name.bin').name, 'other/name.bin')

    def testMissingFile(self):
        with self.assertRaises(UpstreamFailure):
            FileMemberSource(os.path.join(self.tempDir, 'missing'))

    def testUrlSizeFromHead(self):
        """Without a declared size the Content-Length of a HEAD request is used"""
        session = MagicMock()
        session.head.return_value = mockResponse(headers={'Content-Length': '5'})

        source = UrlMemberSource('http://example.com/files/a%20b.txt', session=session)

        self.assertEqual(source.size, 5)
        self.assertEqual(source.name, 'a b.txt')
        args, kwargs = session.head.call_args
        self.assertEqual(kwargs['headers'], {'Accept-Encoding': 'identity'})

    def testUrlDeclaredSize(self):
        session = MagicMock()

        source = UrlMemberSource('https://example.com/', name='index.html', size=42, session=session)

        self.assertEqual((source.name, source.size), ('index.html', 42))
        session.head.assert_not_called()

    def testUrlWithoutName(self):
        source = UrlMemberSource('https://example.com/', size=1, session=MagicMock())
        self.assertEqual(source.name, 'download')

    def testUrlMissingContentLength(self):
        session = MagicMock()
        session.head.return_value = mockResponse()

        with self.assertRaises(UpstreamFailure):
            UrlMemberSource('http://example.com/a', session=session)

    def testUrlHeadFailure(self):
        session = MagicMock()
        session.head.side_effect = requests.ConnectionError('refused')

        with self.assertRaises(UpstreamFailure):
            UrlMemberSource('http://example.com/a', session=session)

    def testUrlChunks(self):
        session = MagicMock()
        session.get.return_value = mockResponse([b'he', b'', b'llo'])

        source = UrlMemberSource('http://example.com/a', size=5, session=session)

        self.assertEqual(list(source.iterChunks(2)), [b'he', b'llo'])
        args, kwargs = session.get.call_args
        self.assertTrue(kwargs['stream'])
        self.assertEqual(kwargs['headers'], {'Accept-Encoding': 'identity'})
        session.get.return_value.raw.stream.assert_called_once_with(2, decode_content=False)

    def testUrlHttpError(self):
        session = MagicMock()
        session.get.return_value = mockResponse(error=requests.HTTPError('404 Not Found'))

        source = UrlMemberSource('http://example.com/a', size=5, session=session)

        with self.assertRaises(UpstreamFailure) as context:
            list(source.iterChunks(2))

        self.assertIs(context.exception.source, source)


class ManifestTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp()
        self.filePath = os.path.join(self.tempDir, 'local.txt')
        with open(self.filePath, 'wb') as f:
            f.write(b'local file')

    def tearDown(self):
        shutil.rmtree(self.tempDir)

    def testBuildSources(self):
        session = MagicMock()
        entries = [
            {'name': 'remote.bin', 'size': 100, 'url': 'https://example.com/remote'},
            {'path': self.filePath},
        ]

        sources = buildSources(entries, session=session)

        self.assertIsInstance(sources[0], UrlMemberSource)
        self.assertEqual(sources[0].asMember(), {'name': 'remote.bin', 'size': 100})
        self.assertIsInstance(sources[1], FileMemberSource)
        self.assertEqual(sources[1].asMember(), {'name': 'local.txt', 'size': 10})
        session.head.assert_not_called()

    def testInvalidEntry(self):
        with self.assertRaises(ValueError):
            buildSources([{'name': 'nothing'}])

    def testLoadManifest(self):
        manifestPath = os.path.join(self.tempDir, 'manifest.json')
        with open(manifestPath, 'w') as f:
            json.dump([{'path': self.filePath}], f)

        self.assertEqual(loadManifest(manifestPath), [{'path': self.filePath}])

    def testManifestMustBeList(self):
        manifestPath = os.path.join(self.tempDir, 'manifest.json')
        with open(manifestPath, 'w') as f:
            json.dump({'path': self.filePath}, f)

        with self.assertRaises(ValueError):
            loadManifest(manifestPath)

    def testSourceFromString(self):
        self.assertEqual(sourceFromString(self.filePath).name, 'local.txt')
        self.assertEqual(sourceFromString(f'renamed.txt={self.filePath}').name, 'renamed.txt')

        session = MagicMock()
        session.head.return_value = mockResponse(headers={'Content-Length': '7'})
        source = sourceFromString('mirror.iso=https://example.com/x.iso', session=session)

        self.assertIsInstance(source, UrlMemberSource)
        self.assertEqual((source.name, source.url), ('mirror.iso', 'https://example.com/x.iso'))

    def testSourceFromUrl(self):
        session = MagicMock()
        session.head.return_value = mockResponse(headers={'Content-Length': '7'})

        source = sourceFromString('https://example.com/path/x.iso?a=b', session=session)

        self.assertEqual((source.name, source.size), ('x.iso', 7))


class ZipSourcesTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp()
        self.files = {'one.txt': b'first file', 'two.bin': os.urandom(300 * 1024)}
        for name, content in self.files.items():
            with open(os.path.join(self.tempDir, name), 'wb') as f:
                f.write(content)

    def tearDown(self):
        shutil.rmtree(self.tempDir)

    def testFileSources(self):
        sources = [FileMemberSource(os.path.join(self.tempDir, name)) for name in self.files]

        archive = zipSources(sources, highWaterMark=8192, chunkSize=1000)
        data = b''.join(archive)

        self.assertTrue(archive.finished)
        self.assertEqual(len(data), archive.total)
        with zipfile.ZipFile(io.BytesIO(data)) as zipf:
            self.assertEqual(zipf.namelist(), list(self.files))
            for name, content in self.files.items():
                self.assertEqual(zipf.read(name), content)

    def testForcedZip64(self):
        sources = [FileMemberSource(os.path.join(self.tempDir, 'one.txt'))]

        archive = zipSources(sources, zip64=True)
        data = b''.join(archive)

        self.assertTrue(archive.zip64)
        self.assertEqual(len(data), archive.total)
        with zipfile.ZipFile(io.BytesIO(data)) as zipf:
            self.assertEqual(zipf.read('one.txt'), b'first file')

    def testUpstreamFailureDestroysArchive(self):
        """A source failing mid-stream surfaces as UpstreamFailure to the consumer"""

        def brokenContent(amt=None, decode_content=None):
            yield b'ab'
            raise ProtocolError('Connection broken', ConnectionResetError(104, 'reset'))

        response = mockResponse()
        response.raw.stream.side_effect = brokenContent
        session = MagicMock()
        session.get.return_value = response

        sources = [
            FileMemberSource(os.path.join(self.tempDir, 'one.txt')),
            UrlMemberSource('http://example.com/broken', size=10, session=session),
        ]
        archive = zipSources(sources)

        with self.assertRaises(UpstreamFailure):
            b''.join(archive)

        self.assertTrue(archive.destroyed)

    def testShortSourceDestroysArchive(self):
        session = MagicMock()
        session.get.return_value = mockResponse([b'short'])

        archive = zipSources([UrlMemberSource('http://example.com/short', size=10, session=session)])

        with self.assertRaises(SizeMismatchError):
            b''.join(archive)

        self.assertTrue(archive.destroyed)


class GzipHandler(BaseHTTPRequestHandler):
    """Always answers gzip encoded, whatever the client asks for"""

    payload = b'compressible text\n' * 1000
    body = gzip.compress(payload)
    acceptEncodings = []

    def _sendHeaders(self):
        self.acceptEncodings.append(self.headers.get('Accept-Encoding'))
        self.send_response(200)
        self.send_header('Content-Encoding', 'gzip')
        self.send_header('Content-Length', str(len(self.body)))
        self.end_headers()

    def do_HEAD(self):
        self._sendHeaders()

    def do_GET(self):
        self._sendHeaders()
        self.wfile.write(self.body)

    def log_message(self, format, *args):
        pass


class ContentEncodingTest(unittest.TestCase):

    def setUp(self):
        GzipHandler.acceptEncodings = []
        self.server = ThreadingHTTPServer(('127.0.0.1', 0), GzipHandler)
        threading.Thread(target=self.server.serve_forever, daemon=True).start()
        self.url = f'http://127.0.0.1:{self.server.server_address[1]}/f.txt'

    def tearDown(self):
        self.server.shutdown()
        self.server.server_close()

    def testEncodedBodyStoredAsSent(self):
        """The member holds the encoded bytes its Content-Length describes"""
        source = UrlMemberSource(self.url)
        self.assertEqual(source.size, len(GzipHandler.body))

        archive = zipSources([source])
        data = b''.join(archive)

        self.assertEqual(len(data), archive.total)
        with zipfile.ZipFile(io.BytesIO(data)) as zipf:
            stored = zipf.read('f.txt')

        self.assertEqual(stored, GzipHandler.body)
        self.assertEqual(gzip.decompress(stored), GzipHandler.payload)
        self.assertEqual(GzipHandler.acceptEncodings, ['identity', 'identity'])


if __name__ == '__main__':
    unittest.main()
