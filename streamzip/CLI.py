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

import argparse
import json
import logging
import logging.config
import os
import platform
import sys

from streamzip.Archive import buildSources, createSession, loadManifest, sourceFromString, zipSources
from streamzip.Kernel import configureGlobalLogLevel, getLogger, LOG_LEVEL_MAPPING, PUBLIC_VERSION, ZipEvent
from streamzip.Progress import Progress
from streamzip.Server import createServer
from streamzip.Settings import DEFAULT_ARCHIVE_NAME, DEFAULT_SERVER_HOST, TRANSFER_CHUNK_SIZE
from streamzip.Utils import flushPrint, formatSize, getEnv, sendException
from streamzip.Zip import ZipStreamError

logger = getLogger(__name__)


def configureLogging(logLevel):
    """Configure logging from --log-level or STREAMZIP_LOGGING_LEVEL

    Either can be a level name (DEBUG, INFO, WARNING, ERROR) or a path to a
    logging configuration JSON file.
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('STREAMZIP_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, ValueError, KeyError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}", file=sys.stderr)
            flushPrint("Falling back to default logging level configuration", file=sys.stderr)

    level = LOG_LEVEL_MAPPING.get(logLevel.upper())
    if level is not None:
        configureGlobalLogLevel(level)
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    suppressNoisyLogger()

    return logLevel


def showVersion():
    flushPrint(f"streamzip v{PUBLIC_VERSION}")
    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine}")


def configureCLIParser():

    def validatePositive(valueStr):
        try:
            value = int(valueStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid chunk size: {valueStr}")
        if value <= 0:
            raise argparse.ArgumentTypeError(f"Chunk size {value} must be positive")
        return value

    def validatePort(portStr):
        try:
            port = int(portStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid port number: {portStr}")
        if not 0 <= port <= 65535:
            raise argparse.ArgumentTypeError(f"Port {port} is out of valid range (0-65535)")
        return port

    def validateLogLevel(logLevel):
        if os.path.exists(logLevel):
            return logLevel

        if logLevel.upper() not in LOG_LEVEL_MAPPING:
            raise argparse.ArgumentTypeError(
                f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(LOG_LEVEL_MAPPING)}"
            )
        return logLevel.upper()

    parser = argparse.ArgumentParser(
        prog='streamzip',
        description="Stream a ZIP archive from local files and URLs without buffering them.",
    )
    parser.add_argument(
        "sources",
        nargs='*',
        metavar="SOURCE",
        help="File path, http(s) URL, or NAME=PATH_OR_URL to store it under another name",
    )
    parser.add_argument(
        "-o", "--output", default=DEFAULT_ARCHIVE_NAME, help=f"Output file, '-' for stdout (default: {DEFAULT_ARCHIVE_NAME})"
    )
    parser.add_argument(
        "--manifest", metavar="JSON_FILE", help="JSON list of {name, size, url|path} entries to add before SOURCEs"
    )
    parser.add_argument("--zip64", action="store_true", help="Force ZIP64 records even for small archives")
    parser.add_argument(
        "--serve", type=validatePort, metavar="PORT", help="Serve the archive over HTTP instead of writing it"
    )
    parser.add_argument("--host", default=DEFAULT_SERVER_HOST, help=f"Address to serve on (default: {DEFAULT_SERVER_HOST})")
    parser.add_argument(
        "--chunk-size",
        type=validatePositive,
        default=TRANSFER_CHUNK_SIZE,
        dest="chunkSize",
        help=f"Source read size in bytes (default: {TRANSFER_CHUNK_SIZE})",
    )
    parser.add_argument(
        "--log-level",
        type=validateLogLevel,
        metavar="LEVEL_OR_FILE",
        dest="logLevel",
        help="Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="No progress or member listing")
    parser.add_argument("--version", action="store_true", help="Show version information")

    return parser


def collectSources(args):
    session = createSession()
    sources = []

    if args.manifest:
        sources.extend(buildSources(loadManifest(args.manifest), session=session))

    for text in args.sources:
        sources.append(sourceFromString(text, session=session))

    return sources


def writeArchive(archive, stream, progress=None) -> int:
    written = 0

    for chunk in archive:
        stream.write(chunk)
        written += len(chunk)
        if progress:
            progress.update(written)

    stream.flush()
    return written


def stderrPrint(text):
    flushPrint(text, file=sys.stderr)


def zipToOutput(sources, args) -> int:
    toStdout = args.output == '-'
    progress = None

    def onMemberStarted(member=None, **kwargs):
        if args.quiet:
            return
        line = f"  adding: {member.displayName}"
        if progress:
            progress.write(line)
        else:
            stderrPrint(line)

    # Subscribed before the pump thread starts so no member is missed
    ZipEvent.memberStarted.subscribe(onMemberStarted)

    try:
        archive = zipSources(sources, zip64=args.zip64 or None, chunkSize=args.chunkSize)
        if not args.quiet:
            progress = Progress(archive.total, loggerCallback=stderrPrint, useBar=sys.stderr.isatty())

        try:
            if toStdout:
                written = writeArchive(archive, sys.stdout.buffer, progress)
            else:
                with open(args.output, 'wb') as f:
                    written = writeArchive(archive, f, progress)
        except BaseException as e:
            archive.destroy(e)
            if not toStdout and os.path.exists(args.output):
                os.remove(args.output)
            raise
    finally:
        ZipEvent.memberStarted.unsubscribe(onMemberStarted)
        if progress:
            progress.finish(complete=archive.finished)

    if not args.quiet and not toStdout:
        stderrPrint(
            f"Wrote {args.output} ({formatSize(written)}, {len(sources)} files) in {progress.getElapsedTime():.1f}s"
        )

    return 0


def serveSources(sources, args) -> int:
    fileName = os.path.basename(args.output) if args.output != '-' else DEFAULT_ARCHIVE_NAME
    server = createServer(args.serve, sources, fileName=fileName, zip64=args.zip64 or None, host=args.host)

    if not args.quiet:
        flushPrint(f"Serving {fileName} at http://{args.host}:{server.port}/", file=sys.stderr)

    try:
        server.start()
    except KeyboardInterrupt:
        flushPrint('\nStopping server...', file=sys.stderr)
    finally:
        server.server_close()

    return 0


def main(argv=None) -> int:
    parser = configureCLIParser()
    args = parser.parse_args(argv)

    if args.version:
        showVersion()
        return 0

    configureLogging(args.logLevel)

    if not args.sources and not args.manifest:
        parser.print_help()
        return 0

    try:
        sources = collectSources(args)

        if args.serve is not None:
            return serveSources(sources, args)

        return zipToOutput(sources, args)
    except (ZipStreamError, ValueError, OSError) as e:
        sendException(logger, e)
        return 1
