#!/usr/bin/env python3
"""Optional safety copies taken before a conversion run."""

import logging
import os
import shutil
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Optional

from wp_config_parser import DatabaseConfig

logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Raised when a requested backup could not be completed."""


def _timestamp() -> str:
    return datetime.now().strftime('%Y-%m-%d_%H%M%S')


def backup_uploads(uploads_path: Path, destination: Optional[Path] = None) -> Path:
    """Copy the whole uploads tree next to itself, preserving metadata"""
    uploads_path = Path(uploads_path)
    if destination is None:
        destination = uploads_path.parent / f"uploads_backup_{_timestamp()}"

    logger.info(f"Copying {uploads_path} to {destination}")
    try:
        shutil.copytree(uploads_path, destination, copy_function=shutil.copy2, symlinks=True)
    except (OSError, shutil.Error) as e:
        raise BackupError(f"Uploads backup failed: {e}") from e

    logger.info(f"Uploads backup complete: {destination}")
    return destination


def dump_database(db_config: DatabaseConfig, output_dir: Path, mysqldump: str = 'mysqldump') -> Path:
    """Run mysqldump for the whole database into a timestamped .sql file"""
    output_path = Path(output_dir) / f"database-backup-{_timestamp()}.sql"

    cmd = [mysqldump, f"--host={db_config.host}", f"--user={db_config.user}",
           f"--default-character-set={db_config.charset}", '--single-transaction']
    if db_config.port:
        cmd.append(f"--port={db_config.port}")
    if db_config.unix_socket:
        cmd.append(f"--socket={db_config.unix_socket}")
    cmd.append(db_config.name)

    # Password goes through the environment so it never shows up in ps
    env = dict(os.environ)
    if db_config.password:
        env['MYSQL_PWD'] = db_config.password

    logger.info(f"Dumping database {db_config.name} to {output_path}")
    try:
        with open(output_path, 'w', encoding='utf-8') as f:
            result = subprocess.run(cmd, stdout=f, stderr=subprocess.PIPE, text=True, env=env)
    except FileNotFoundError as e:
        output_path.unlink(missing_ok=True)
        raise BackupError(f"{mysqldump} not found") from e

    if result.returncode != 0:
        output_path.unlink(missing_ok=True)
        raise BackupError(f"mysqldump failed: {result.stderr.strip()}")

    logger.info(f"Database backup complete: {output_path} ({output_path.stat().st_size:,} bytes)")
    return output_path
