#!/usr/bin/env python3
"""
WordPress WebP Sync Worker
==========================

Long-running companion process for wp_webp_converter. It opens a single
database connection for the whole run and answers one tab-separated
request line with exactly one response line on stdout.

Protocol:
    INFO <path>                       -> THUMBS [basename ...]
    UPDATE <old> <new> <w> <h>        -> META <id> | NOTFOUND <path> | ERROR <msg>
    FLUSH-REPLACE                     -> REPLACED <content_rows> <elementor_rows>
    FLUSH-CACHE                       -> FLUSHED <post_css_rows>

On start the worker writes one greeting line, READY <prefix> or
ERROR <message>. EOF on stdin ends the session.

Usage:
    python3 -m wp_webp_worker /var/www/html/wp-config.php --log-file logs/worker.log
"""

import argparse
import logging
import posixpath
import sys
from contextlib import contextmanager
from typing import List, NamedTuple, Optional, Sequence, Tuple

from mysql.connector import Error as MySQLError

from wp_config_parser import ConfigError, DatabaseConfig, load_wp_config, validate_table_prefix
from wp_database import ConnectionFailure, connect_database
from wp_metadata_codec import (
    WEBP_MIME_TYPE,
    MalformedMetadata,
    decode_attachment_metadata,
    encode,
    join_relative,
    rewrite_attachment_metadata,
    variant_files,
)
from wp_replacements import DEFAULT_BATCH_SIZE, ReplacementCollision, ReplacementMap, flush_replacements

logger = logging.getLogger(__name__)

DELIMITER = '\t'

CMD_INFO = 'INFO'
CMD_UPDATE = 'UPDATE'
CMD_FLUSH_REPLACE = 'FLUSH-REPLACE'
CMD_FLUSH_CACHE = 'FLUSH-CACHE'

RESP_READY = 'READY'
RESP_THUMBS = 'THUMBS'
RESP_META = 'META'
RESP_NOTFOUND = 'NOTFOUND'
RESP_REPLACED = 'REPLACED'
RESP_FLUSHED = 'FLUSHED'
RESP_ERROR = 'ERROR'

_ARITY = {
    CMD_INFO: 1,
    CMD_UPDATE: 4,
    CMD_FLUSH_REPLACE: 0,
    CMD_FLUSH_CACHE: 0,
}


class ProtocolError(Exception):
    """Raised for request or response lines that do not follow the protocol."""


class Message(NamedTuple):
    """One protocol line: a command or response tag plus its fields."""

    tag: str
    fields: Tuple[str, ...] = ()

    def encode(self) -> str:
        for field in self.fields:
            if DELIMITER in field or '\n' in field or '\r' in field:
                raise ProtocolError(f"field contains a delimiter or newline: {field!r}")
        return DELIMITER.join((self.tag,) + tuple(self.fields))

    @classmethod
    def parse(cls, line: str) -> 'Message':
        line = line.rstrip('\n')
        if not line:
            raise ProtocolError("empty line")
        parts = line.split(DELIMITER)
        return cls(parts[0], tuple(parts[1:]))


def error_message(text) -> Message:
    flat = ' '.join(str(text).split()) or 'unknown error'
    return Message(RESP_ERROR, (flat,))


class WorkerSession:
    """One open connection, the table prefix and the pending replacements."""

    def __init__(self, connection, table_prefix: str, batch_size: int = DEFAULT_BATCH_SIZE):
        self.connection = connection
        self.table_prefix = validate_table_prefix(table_prefix)
        self.batch_size = batch_size
        self.replacements = ReplacementMap()
        self.closed = False

    def close(self):
        if self.closed:
            return
        self.closed = True
        if len(self.replacements):
            logger.warning(f"Session closed with {len(self.replacements)} replacements never flushed")
        self.connection.close()
        logger.info("Database connection closed")


@contextmanager
def open_session(db_config: DatabaseConfig, batch_size: int = DEFAULT_BATCH_SIZE):
    """Connect once and guarantee the connection is released"""
    connection = connect_database(db_config)
    try:
        session = WorkerSession(connection, db_config.table_prefix, batch_size)
    except Exception:
        connection.close()
        raise
    try:
        yield session
    finally:
        session.close()


class SyncWorker:
    """Database side of the conversion: per-attachment updates and final flushes."""

    def __init__(self, session: WorkerSession):
        self.session = session

    @property
    def _prefix(self) -> str:
        return self.session.table_prefix

    def _find_attachment(self, cursor, rel_path: str) -> Optional[int]:
        cursor.execute(
            f"SELECT post_id FROM {self._prefix}postmeta "
            f"WHERE meta_key = '_wp_attached_file' AND meta_value = %s",
            (rel_path,)
        )
        row = cursor.fetchone()
        cursor.fetchall()
        return int(row[0]) if row else None

    def _load_metadata(self, cursor, attachment_id: int):
        cursor.execute(
            f"SELECT meta_value FROM {self._prefix}postmeta "
            f"WHERE post_id = %s AND meta_key = '_wp_attachment_metadata'",
            (attachment_id,)
        )
        row = cursor.fetchone()
        cursor.fetchall()
        return row[0] if row and row[0] else None

    def info(self, rel_path: str) -> List[str]:
        """Variant basenames of the attachment stored at rel_path"""
        cursor = self.session.connection.cursor()
        try:
            attachment_id = self._find_attachment(cursor, rel_path)
            if attachment_id is None:
                return []
            raw = self._load_metadata(cursor, attachment_id)
        finally:
            cursor.close()

        if raw is None:
            return []
        try:
            return variant_files(decode_attachment_metadata(raw))
        except MalformedMetadata as e:
            logger.warning(f"Attachment {attachment_id}: {e}")
            return []

    def update(self, old_rel: str, new_rel: str, width: int, height: int) -> Optional[int]:
        """Point one attachment at its converted file.

        Returns the attachment ID, or None when no attachment is stored at
        old_rel. Post content and Elementor data are not touched here; the
        paths are queued for flush_replace().
        """
        connection = self.session.connection
        old_dir = posixpath.dirname(old_rel)
        old_basename = posixpath.basename(old_rel)
        new_basename = posixpath.basename(new_rel)

        cursor = connection.cursor()
        try:
            attachment_id = self._find_attachment(cursor, old_rel)
            if attachment_id is None:
                logger.warning(f"No attachment found for {old_rel}")
                return None

            metadata = None
            raw = self._load_metadata(cursor, attachment_id)
            if raw is not None:
                try:
                    metadata = decode_attachment_metadata(raw)
                except MalformedMetadata as e:
                    logger.warning(f"Attachment {attachment_id}: metadata left untouched ({e})")

            pairs = [(old_rel, new_rel)]
            if metadata is not None:
                for old_thumb, new_thumb in rewrite_attachment_metadata(metadata, new_rel, width, height):
                    pairs.append((join_relative(old_dir, old_thumb), join_relative(old_dir, new_thumb)))

            self.session.replacements.check(pairs)

            cursor.execute(
                f"UPDATE {self._prefix}postmeta SET meta_value = %s "
                f"WHERE post_id = %s AND meta_key = '_wp_attached_file'",
                (new_rel, attachment_id)
            )
            if metadata is not None:
                cursor.execute(
                    f"UPDATE {self._prefix}postmeta SET meta_value = %s "
                    f"WHERE post_id = %s AND meta_key = '_wp_attachment_metadata'",
                    (encode(metadata), attachment_id)
                )
            cursor.execute(
                f"UPDATE {self._prefix}posts SET guid = REPLACE(guid, %s, %s) "
                f"WHERE ID = %s AND post_type = 'attachment'",
                (old_basename, new_basename, attachment_id)
            )
            cursor.execute(
                f"UPDATE {self._prefix}posts SET post_mime_type = %s "
                f"WHERE ID = %s AND post_type = 'attachment'",
                (WEBP_MIME_TYPE, attachment_id)
            )
            connection.commit()
        except MySQLError:
            connection.rollback()
            raise
        finally:
            cursor.close()

        self.session.replacements.extend(pairs)
        logger.info(f"Attachment {attachment_id} updated: {old_rel} -> {new_rel} "
                    f"({len(pairs) - 1} variants queued)")
        return attachment_id

    def flush_replace(self) -> Tuple[int, int]:
        """Apply and clear the queued replacements; returns (content, elementor) rows"""
        replacements = self.session.replacements
        result = flush_replacements(self.session.connection, self._prefix, replacements,
                                    self.session.batch_size)
        replacements.clear()
        return result

    def flush_cache(self) -> int:
        """Delete Elementor CSS caches so they regenerate with new URLs"""
        connection = self.session.connection
        cursor = connection.cursor()
        try:
            cursor.execute(f"DELETE FROM {self._prefix}postmeta WHERE meta_key = '_elementor_css'")
            post_css = max(0, cursor.rowcount)
            cursor.execute(
                f"DELETE FROM {self._prefix}options WHERE option_name IN (%s, %s)",
                ('_elementor_global_css', '_elementor_css_updated_time')
            )
            connection.commit()
        except MySQLError:
            connection.rollback()
            raise
        finally:
            cursor.close()

        logger.info(f"Elementor CSS cache cleared: {post_css} post entries")
        return post_css


def _parse_dimension(text: str, name: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise ProtocolError(f"invalid {name}: {text!r}") from None


def dispatch(worker: SyncWorker, request: Message) -> Message:
    """Run one request and build its response"""
    expected = _ARITY.get(request.tag)
    if expected is None:
        return error_message(f"unknown command {request.tag}")
    if len(request.fields) != expected:
        return error_message(f"{request.tag} expects {expected} fields, got {len(request.fields)}")

    if request.tag == CMD_INFO:
        return Message(RESP_THUMBS, tuple(worker.info(request.fields[0])))

    if request.tag == CMD_UPDATE:
        old_rel, new_rel, width, height = request.fields
        attachment_id = worker.update(old_rel, new_rel,
                                      _parse_dimension(width, 'width'),
                                      _parse_dimension(height, 'height'))
        if attachment_id is None:
            return Message(RESP_NOTFOUND, (old_rel,))
        return Message(RESP_META, (str(attachment_id),))

    if request.tag == CMD_FLUSH_REPLACE:
        content_rows, document_rows = worker.flush_replace()
        return Message(RESP_REPLACED, (str(content_rows), str(document_rows)))

    return Message(RESP_FLUSHED, (str(worker.flush_cache()),))


def handle_line(worker: SyncWorker, line: str) -> str:
    """Turn one request line into one response line, never raising"""
    try:
        request = Message.parse(line)
        response = dispatch(worker, request)
        return response.encode()
    except (ProtocolError, ReplacementCollision) as e:
        logger.error(f"Rejected request {line.strip()!r}: {e}")
        return error_message(e).encode()
    except MySQLError as e:
        logger.error(f"Database error for {line.strip()!r}: {e}")
        return error_message(e).encode()
    except Exception as e:
        logger.exception(f"Unexpected error for {line.strip()!r}")
        return error_message(e).encode()


def serve(worker: SyncWorker, stdin, stdout) -> int:
    """Answer requests until stdin is closed; returns the number handled"""
    handled = 0
    for line in stdin:
        if not line.strip():
            continue
        response = handle_line(worker, line)
        stdout.write(response + '\n')
        stdout.flush()
        handled += 1
    logger.info(f"Request channel closed after {handled} requests")
    return handled


def _setup_logging(log_file: Optional[str], level: str):
    handler = logging.FileHandler(log_file, encoding='utf-8') if log_file else logging.StreamHandler(sys.stderr)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
        handlers=[handler]
    )


def _reply(stdout, message: Message):
    stdout.write(message.encode() + '\n')
    stdout.flush()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='WordPress WebP database sync worker')
    parser.add_argument('wp_config', help='Path to wp-config.php')
    parser.add_argument('--batch-size', type=int, default=DEFAULT_BATCH_SIZE,
                        help='Replacement pairs per UPDATE statement')
    parser.add_argument('--log-file', help='Write the worker log here instead of stderr')
    parser.add_argument('--log-level', default='INFO')
    args = parser.parse_args(argv)

    _setup_logging(args.log_file, args.log_level)
    for stream in (sys.stdin, sys.stdout):
        if hasattr(stream, 'reconfigure'):
            stream.reconfigure(encoding='utf-8')

    if args.batch_size < 1:
        _reply(sys.stdout, error_message(f"invalid batch size {args.batch_size}"))
        return 1

    try:
        db_config = load_wp_config(args.wp_config)
    except ConfigError as e:
        logger.error(str(e))
        _reply(sys.stdout, error_message(e))
        return 1

    try:
        with open_session(db_config, args.batch_size) as session:
            _reply(sys.stdout, Message(RESP_READY, (session.table_prefix,)))
            serve(SyncWorker(session), sys.stdin, sys.stdout)
    except ConnectionFailure as e:
        _reply(sys.stdout, error_message(e))
        return 1
    except KeyboardInterrupt:
        logger.warning("Worker interrupted")
        return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
