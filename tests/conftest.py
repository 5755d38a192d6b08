"""Shared fixtures: a WordPress-shaped schema in SQLite behind a MySQL-style API."""

from __future__ import annotations

import sqlite3
from typing import Optional

import pytest

from wp_metadata_codec import encode
from wp_webp_worker import SyncWorker, WorkerSession

PREFIX = "wp_"

SCHEMA = f"""
CREATE TABLE {PREFIX}posts (
    ID INTEGER PRIMARY KEY,
    post_type TEXT NOT NULL DEFAULT 'post',
    post_mime_type TEXT NOT NULL DEFAULT '',
    guid TEXT NOT NULL DEFAULT '',
    post_content TEXT NOT NULL DEFAULT ''
);
CREATE TABLE {PREFIX}postmeta (
    meta_id INTEGER PRIMARY KEY AUTOINCREMENT,
    post_id INTEGER NOT NULL,
    meta_key TEXT,
    meta_value TEXT
);
CREATE TABLE {PREFIX}options (
    option_id INTEGER PRIMARY KEY AUTOINCREMENT,
    option_name TEXT UNIQUE,
    option_value TEXT
);
"""


class SqliteCursor:
    """Cursor that accepts mysql.connector's %s placeholders."""

    def __init__(self, cursor: sqlite3.Cursor, log: list):
        self._cursor = cursor
        self._log = log

    def execute(self, sql, params=()):
        self._log.append((sql, tuple(params)))
        self._cursor.execute(sql.replace("%s", "?"), tuple(params))

    def fetchone(self):
        return self._cursor.fetchone()

    def fetchall(self):
        return self._cursor.fetchall()

    @property
    def rowcount(self):
        return self._cursor.rowcount

    def close(self):
        self._cursor.close()


class SqliteConnection:
    """Just enough of a mysql.connector connection for the worker code."""

    def __init__(self):
        self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        self._conn.executescript(SCHEMA)
        self.statements: list = []
        self.commits = 0
        self.closed = False

    def cursor(self):
        return SqliteCursor(self._conn.cursor(), self.statements)

    def commit(self):
        self.commits += 1
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def is_connected(self):
        return not self.closed

    def close(self):
        self.closed = True
        self._conn.close()

    def query(self, sql, params=()):
        return self._conn.execute(sql, params).fetchall()

    def scalar(self, sql, params=()):
        row = self._conn.execute(sql, params).fetchone()
        return row[0] if row else None


def add_attachment(db: SqliteConnection, post_id: int, rel_path: str, metadata=None,
                   mime: str = "image/jpeg", guid: Optional[str] = None, raw_metadata: Optional[str] = None):
    db._conn.execute(
        f"INSERT INTO {PREFIX}posts (ID, post_type, post_mime_type, guid) VALUES (?, 'attachment', ?, ?)",
        (post_id, mime, guid or f"https://example.com/wp-content/uploads/{rel_path}"),
    )
    db._conn.execute(
        f"INSERT INTO {PREFIX}postmeta (post_id, meta_key, meta_value) VALUES (?, '_wp_attached_file', ?)",
        (post_id, rel_path),
    )
    if metadata is not None or raw_metadata is not None:
        value = raw_metadata if raw_metadata is not None else encode(metadata)
        db._conn.execute(
            f"INSERT INTO {PREFIX}postmeta (post_id, meta_key, meta_value) VALUES (?, '_wp_attachment_metadata', ?)",
            (post_id, value),
        )
    db._conn.commit()


def add_post(db: SqliteConnection, post_id: int, content: str, post_type: str = "page"):
    db._conn.execute(
        f"INSERT INTO {PREFIX}posts (ID, post_type, post_content) VALUES (?, ?, ?)",
        (post_id, post_type, content),
    )
    db._conn.commit()


def add_meta(db: SqliteConnection, post_id: int, key: str, value: str):
    db._conn.execute(
        f"INSERT INTO {PREFIX}postmeta (post_id, meta_key, meta_value) VALUES (?, ?, ?)",
        (post_id, key, value),
    )
    db._conn.commit()


def add_option(db: SqliteConnection, name: str, value: str):
    db._conn.execute(f"INSERT INTO {PREFIX}options (option_name, option_value) VALUES (?, ?)", (name, value))
    db._conn.commit()


def get_meta(db: SqliteConnection, post_id: int, key: str):
    return db.scalar(
        f"SELECT meta_value FROM {PREFIX}postmeta WHERE post_id = ? AND meta_key = ?", (post_id, key)
    )


@pytest.fixture
def wp_db():
    db = SqliteConnection()
    yield db
    if not db.closed:
        db.close()


@pytest.fixture
def session(wp_db):
    return WorkerSession(wp_db, PREFIX)


@pytest.fixture
def worker(session):
    return SyncWorker(session)
