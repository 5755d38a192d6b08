#!/usr/bin/env python3
"""MySQL connection helpers and the tracked attachment lister."""

import logging
from contextlib import contextmanager
from typing import Iterator

import mysql.connector
from mysql.connector import Error as MySQLError

from wp_config_parser import DatabaseConfig, validate_table_prefix
from wp_metadata_codec import LEGACY_MIME_TYPES

logger = logging.getLogger(__name__)


class ConnectionFailure(Exception):
    """Raised when the database cannot be reached with the given credentials."""


def connect_database(db_config: DatabaseConfig):
    """Open one connection to the WordPress database"""
    try:
        connection = mysql.connector.connect(**db_config.connection_params())
    except MySQLError as e:
        logger.error(f"Database connection failed: {e}")
        raise ConnectionFailure(f"Database connection failed: {e}") from e

    if not connection.is_connected():
        raise ConnectionFailure(f"Database connection failed: {db_config.describe()}")

    logger.info(f"Database connected: {db_config.describe()}")
    return connection


@contextmanager
def open_connection(db_config: DatabaseConfig):
    """Scoped connection that is always closed on exit"""
    connection = connect_database(db_config)
    try:
        yield connection
    finally:
        if connection.is_connected():
            connection.close()
            logger.debug("Database connection closed")


def list_tracked_items(connection, table_prefix: str) -> Iterator[str]:
    """Yield the relative path of every JPEG/PNG attachment, ordered by path"""
    prefix = validate_table_prefix(table_prefix)
    placeholders = ', '.join(['%s'] * len(LEGACY_MIME_TYPES))
    query = f"""
        SELECT pm.meta_value
        FROM {prefix}postmeta pm
        INNER JOIN {prefix}posts p ON p.ID = pm.post_id
        WHERE pm.meta_key = '_wp_attached_file'
          AND p.post_type = 'attachment'
          AND p.post_mime_type IN ({placeholders})
        ORDER BY pm.meta_value
    """

    cursor = connection.cursor()
    try:
        cursor.execute(query, LEGACY_MIME_TYPES)
        for (file_path,) in cursor.fetchall():
            if file_path:
                yield file_path
    finally:
        cursor.close()
