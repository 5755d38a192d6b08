#!/usr/bin/env python3
"""
WordPress configuration parser
==============================

Reads database credentials and the table prefix out of a wp-config.php
file without executing any PHP.

Only the literal forms WordPress itself writes are recognised:

    define( 'DB_NAME', 'wordpress' );
    define("DB_PASSWORD", "secret");
    $table_prefix = 'wp_';
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

DEFAULT_TABLE_PREFIX = "wp_"
DEFAULT_CHARSET = "utf8mb4"

_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
_TABLE_PREFIX_PATTERN = re.compile(r"\$table_prefix\s*=\s*['\"](.+?)['\"]\s*;")


class ConfigError(Exception):
    """Raised when configuration cannot be read or is invalid."""


@dataclass(frozen=True)
class DatabaseConfig:
    """Validated connection settings for one WordPress install."""

    name: str
    user: str
    password: str
    host: str
    table_prefix: str = DEFAULT_TABLE_PREFIX
    port: Optional[int] = None
    unix_socket: Optional[str] = None
    charset: str = DEFAULT_CHARSET

    def connection_params(self) -> Dict[str, Any]:
        """Keyword arguments for mysql.connector.connect()"""
        params = {
            'host': self.host,
            'user': self.user,
            'password': self.password,
            'database': self.name,
            'charset': self.charset,
            'autocommit': False,
        }
        if self.port is not None:
            params['port'] = self.port
        if self.unix_socket:
            params['unix_socket'] = self.unix_socket
        return params

    def describe(self) -> str:
        """Human-readable summary that never includes the password"""
        location = self.unix_socket or (f"{self.host}:{self.port}" if self.port else self.host)
        return f"{self.user}@{location}/{self.name} (prefix {self.table_prefix})"


def validate_table_prefix(prefix: str) -> str:
    """Reject prefixes that are unsafe to interpolate into SQL"""
    if not prefix or not _PREFIX_PATTERN.match(prefix):
        raise ConfigError(f"Invalid table prefix: {prefix!r}")
    return prefix


def extract_define(content: str, name: str) -> Optional[str]:
    """Return the literal value of define('NAME', '...') or None"""
    escaped = re.escape(name)
    single = re.search(r"define\s*\(\s*['\"]" + escaped + r"['\"]\s*,\s*'([^']*)'\s*\)", content)
    if single:
        return single.group(1)
    double = re.search(r"define\s*\(\s*['\"]" + escaped + r"['\"]\s*,\s*\"([^\"]*)\"\s*\)", content)
    if double:
        return double.group(1)
    return None


def extract_table_prefix(content: str) -> str:
    match = _TABLE_PREFIX_PATTERN.search(content)
    if match:
        return match.group(1)
    return DEFAULT_TABLE_PREFIX


def split_db_host(host: str):
    """Split DB_HOST into (host, port, unix_socket) the way WordPress does.

    'localhost:3307' carries a port, 'localhost:/run/mysqld/mysqld.sock'
    carries a socket path. Bracketed IPv6 literals keep their colons.
    """
    port = None
    unix_socket = None

    if host.startswith('['):
        closing = host.find(']')
        if closing != -1:
            rest = host[closing + 1:]
            host = host[1:closing]
            if rest.startswith(':') and rest[1:].isdigit():
                port = int(rest[1:])
        return host, port, unix_socket

    if ':' in host:
        base, _, extra = host.partition(':')
        if extra.isdigit():
            host, port = base, int(extra)
        elif extra.startswith('/'):
            host, unix_socket = base or 'localhost', extra
        elif ':' in extra and extra.split(':', 1)[1].startswith('/'):
            port_text, unix_socket = extra.split(':', 1)
            host = base
            if port_text.isdigit():
                port = int(port_text)

    return host or 'localhost', port, unix_socket


def parse_wp_config(content: str) -> DatabaseConfig:
    """Parse wp-config.php source into a validated DatabaseConfig"""
    values = {}
    for key in ('DB_NAME', 'DB_USER', 'DB_HOST'):
        value = extract_define(content, key)
        if value is None:
            raise ConfigError(f"Could not find {key} in wp-config.php")
        values[key] = value

    # DB_PASSWORD can legitimately be absent
    password = extract_define(content, 'DB_PASSWORD') or ''
    charset = extract_define(content, 'DB_CHARSET') or DEFAULT_CHARSET
    prefix = validate_table_prefix(extract_table_prefix(content))
    host, port, unix_socket = split_db_host(values['DB_HOST'])

    return DatabaseConfig(
        name=values['DB_NAME'],
        user=values['DB_USER'],
        password=password,
        host=host,
        table_prefix=prefix,
        port=port,
        unix_socket=unix_socket,
        charset=charset,
    )


def load_wp_config(path: Union[str, Path]) -> DatabaseConfig:
    """Read and parse a wp-config.php file"""
    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigError(f"File not found: {config_path}")
    try:
        content = config_path.read_text(encoding='utf-8', errors='replace')
    except OSError as e:
        raise ConfigError(f"Could not read {config_path}: {e}") from e
    return parse_wp_config(content)
