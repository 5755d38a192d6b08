#!/usr/bin/env python3
"""Orchestrator side of the sync worker protocol."""

import logging
import os
import subprocess
import sys
from typing import List, Optional, Tuple

from wp_database import ConnectionFailure
from wp_replacements import DEFAULT_BATCH_SIZE
from wp_webp_worker import (
    CMD_FLUSH_CACHE,
    CMD_FLUSH_REPLACE,
    CMD_INFO,
    CMD_UPDATE,
    RESP_ERROR,
    RESP_FLUSHED,
    RESP_META,
    RESP_NOTFOUND,
    RESP_READY,
    RESP_REPLACED,
    RESP_THUMBS,
    Message,
    ProtocolError,
)

logger = logging.getLogger(__name__)


class WorkerError(Exception):
    """Raised when the worker answers ERROR or its channel closes early."""


class WorkerClient:
    """Blocking request/response calls to a running sync worker.

    ``process`` is anything with ``stdin``/``stdout`` text streams and a
    ``wait()`` method, normally a ``subprocess.Popen``. Each call writes
    one line and blocks until one full response line arrives; there is
    no timeout.
    """

    def __init__(self, process):
        self.process = process
        self.table_prefix = None
        self._closed = False

    @classmethod
    def spawn(cls, wp_config: str, batch_size: int = DEFAULT_BATCH_SIZE,
              log_file: Optional[str] = None, log_level: str = 'INFO') -> 'WorkerClient':
        """Start ``python -m wp_webp_worker`` and wait for its greeting"""
        cmd = [sys.executable, '-m', 'wp_webp_worker', str(wp_config),
               '--batch-size', str(batch_size), '--log-level', log_level]
        if log_file:
            cmd.extend(['--log-file', str(log_file)])

        env = dict(os.environ, PYTHONIOENCODING='utf-8')
        logger.debug(f"Starting worker: {' '.join(cmd)}")
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            text=True,
            encoding='utf-8',
            bufsize=1,
            env=env,
            # Ctrl-C reaches only the orchestrator, which still needs the worker to flush
            start_new_session=True,
        )
        client = cls(process)
        try:
            client.handshake()
        except Exception:
            client.close()
            raise
        return client

    def handshake(self) -> str:
        """Read the greeting line; raises ConnectionFailure unless it is READY"""
        try:
            greeting = self._read()
        except WorkerError as e:
            raise ConnectionFailure(f"Worker did not start: {e}") from e
        if greeting.tag != RESP_READY:
            detail = greeting.fields[0] if greeting.fields else greeting.tag
            raise ConnectionFailure(f"Worker could not connect: {detail}")
        self.table_prefix = greeting.fields[0] if greeting.fields else None
        logger.info(f"Worker ready (table prefix {self.table_prefix})")
        return self.table_prefix

    def _read(self) -> Message:
        line = self.process.stdout.readline()
        if not line:
            raise WorkerError("worker channel closed")
        try:
            return Message.parse(line)
        except ProtocolError as e:
            raise WorkerError(f"malformed response {line!r}: {e}") from e

    def call(self, command: str, *fields) -> Message:
        if self._closed:
            raise WorkerError("worker already closed")
        line = Message(command, tuple(str(field) for field in fields)).encode()
        try:
            self.process.stdin.write(line + '\n')
            self.process.stdin.flush()
        except (BrokenPipeError, ValueError, OSError) as e:
            raise WorkerError(f"cannot send {command}: {e}") from e
        return self._read()

    @staticmethod
    def _raise_for_error(response: Message, command: str):
        if response.tag == RESP_ERROR:
            detail = response.fields[0] if response.fields else 'unknown error'
            raise WorkerError(f"{command} failed: {detail}")

    def _expect(self, response: Message, command: str, tag: str, count: int) -> Tuple[str, ...]:
        self._raise_for_error(response, command)
        if response.tag != tag or len(response.fields) != count:
            raise WorkerError(f"unexpected {command} response: {response.encode()!r}")
        return response.fields

    def info(self, rel_path: str) -> List[str]:
        response = self.call(CMD_INFO, rel_path)
        self._raise_for_error(response, CMD_INFO)
        if response.tag != RESP_THUMBS:
            raise WorkerError(f"unexpected {CMD_INFO} response: {response.encode()!r}")
        return [name for name in response.fields if name]

    def update(self, old_rel: str, new_rel: str, width: int, height: int) -> Optional[int]:
        """Returns the attachment ID, or None if nothing is stored at old_rel"""
        response = self.call(CMD_UPDATE, old_rel, new_rel, int(width), int(height))
        if response.tag == RESP_NOTFOUND:
            return None
        (attachment_id,) = self._expect(response, CMD_UPDATE, RESP_META, 1)
        return int(attachment_id)

    def flush_replace(self) -> Tuple[int, int]:
        response = self.call(CMD_FLUSH_REPLACE)
        content_rows, document_rows = self._expect(response, CMD_FLUSH_REPLACE, RESP_REPLACED, 2)
        return int(content_rows), int(document_rows)

    def flush_cache(self) -> int:
        response = self.call(CMD_FLUSH_CACHE)
        (cleared,) = self._expect(response, CMD_FLUSH_CACHE, RESP_FLUSHED, 1)
        return int(cleared)

    def close(self) -> Optional[int]:
        """Close the request channel and wait for the worker to exit"""
        if self._closed:
            return None
        self._closed = True
        try:
            self.process.stdin.close()
        except (BrokenPipeError, OSError):
            pass
        returncode = self.process.wait()
        self.process.stdout.close()
        logger.info(f"Worker exited with status {returncode}")
        return returncode

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
