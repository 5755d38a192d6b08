#!/usr/bin/env python3
"""
WordPress WebP Converter
========================

Converts the JPEG/PNG media library of a WordPress site to WebP and keeps
every database reference to those files in step with the new names.

Modes:
- Full mode (default): attachments are listed from the database, each one
  is converted together with its generated sizes, and a sync worker
  process updates the attachment records. References inside post content
  and Elementor data are rewritten in batches at the end of the run.
- Files only (--files-only): converts every JPEG/PNG under the uploads
  directory, no database involved.

Safety:
- A WebP is only kept when it is smaller than the original
- Originals are deleted only after every file of the attachment converted
- Nothing is kept outside the database and the files themselves; an
  interrupted run is detected on the next run by a WebP without its
  original and reported as UNRECONCILED

Usage Examples:
    python3 wp_webp_converter.py /var/www/html/wp-config.php --dry-run
    python3 wp_webp_converter.py /var/www/html/wp-config.php --backup-db --quality 82
    python3 wp_webp_converter.py --files-only --uploads /srv/site/uploads
"""

import argparse
import json
import logging
import os
import sys
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from wp_backup import BackupError, backup_uploads, dump_database
from wp_config_parser import ConfigError, load_wp_config
from wp_database import ConnectionFailure, list_tracked_items, open_connection
from wp_metadata_codec import LEGACY_EXTENSIONS, is_legacy_image
from wp_replacements import DEFAULT_BATCH_SIZE
from wp_webp_transcoder import ResizeBounds, TranscodeFailure, TranscodeResult, convert_to_webp, webp_path_for
from wp_worker_client import WorkerClient, WorkerError

__version__ = "1.0.0"

DEFAULT_CONFIG_FILE = 'wp_webp_config.json'

logger = logging.getLogger(__name__)


class ItemState(Enum):
    PENDING = 'pending'
    SKIPPED = 'skipped'
    CONVERTING = 'converting'
    CONVERT_ERROR = 'convert_error'
    CONVERTED = 'converted'
    SYNC_PENDING = 'sync_pending'
    SYNCED = 'synced'
    SYNC_ERROR = 'sync_error'


# Files are converted but the database may still point at the originals
UNRECONCILED_STATES = (ItemState.CONVERTED, ItemState.SYNC_PENDING)


def create_default_config() -> Dict:
    """Default settings, overridden by the JSON config file and CLI flags"""
    return {
        "conversion": {
            "quality": 80,
            "lossless": False,
            "method": 4,
            "max_width": 1920,
            "max_height": 1080,
            "target_width": None,
            "target_height": None,
            "min_size_kb": 50
        },
        "database": {
            "batch_size": DEFAULT_BATCH_SIZE
        },
        "logging": {
            "level": "INFO",
            "log_dir": "logs"
        }
    }


def deep_merge(dict1, dict2):
    """Deep merge two dictionaries"""
    result = dict1.copy()
    for key, value in dict2.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_file: Optional[str]) -> Dict:
    """Load the JSON config file merged over defaults; missing file means defaults"""
    config = create_default_config()
    if not config_file or not os.path.exists(config_file):
        return config

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            user_config = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in configuration file {config_file}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {config_file}: {e}") from e

    if not isinstance(user_config, dict):
        raise ConfigError(f"Configuration file {config_file} must contain a JSON object")
    return deep_merge(config, user_config)


def _require_int(value, name: str, minimum: int, maximum: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f"{minimum}-{maximum}" if maximum is not None else f">= {minimum}"
        raise ConfigError(f"Invalid {name}: {value} (must be {bounds})")
    return value


def validate_config(config: Dict) -> Dict:
    """Check ranges and fill in derived values; raises ConfigError"""
    conversion = config['conversion']
    _require_int(conversion['quality'], 'quality', 1, 100)
    _require_int(conversion['method'], 'method', 0, 6)
    _require_int(conversion['max_width'], 'max width', 1)
    _require_int(conversion['max_height'], 'max height', 1)
    _require_int(conversion['min_size_kb'], 'minimum size (KB)', 0)
    if conversion['target_width'] is None:
        conversion['target_width'] = conversion['max_width']
    if conversion['target_height'] is None:
        conversion['target_height'] = conversion['max_height']
    _require_int(conversion['target_width'], 'target width', 1)
    _require_int(conversion['target_height'], 'target height', 1)
    _require_int(config['database']['batch_size'], 'batch size', 1)
    return config


def apply_cli_overrides(config: Dict, args) -> Dict:
    overrides = {
        ('conversion', 'quality'): args.quality,
        ('conversion', 'max_width'): args.max_width,
        ('conversion', 'max_height'): args.max_height,
        ('conversion', 'target_width'): args.target_width,
        ('conversion', 'target_height'): args.target_height,
        ('conversion', 'min_size_kb'): args.min_size_kb,
        ('database', 'batch_size'): args.batch_size,
        ('logging', 'log_dir'): args.log_dir,
    }
    for (section, key), value in overrides.items():
        if value is not None:
            config[section][key] = value
    if args.debug:
        config['logging']['level'] = 'DEBUG'
    return config


def setup_logging(log_dir: str, level: str, start_time: datetime) -> Path:
    """File log for the whole run plus warnings on the console"""
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    timestamp = start_time.strftime("%Y%m%d_%H%M%S")
    log_file = log_path / f"{timestamp}_wp_webp_convert.log"

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
        handlers=[file_handler, console_handler]
    )

    logger.info(f"WordPress WebP Converter v{__version__} started")
    logger.info(f"Log file: {log_file}")
    return log_file


def format_bytes(size: int) -> str:
    if size >= 1024 ** 3:
        return f"{size / 1024 ** 3:.1f} GB"
    if size >= 1024 ** 2:
        return f"{size / 1024 ** 2:.1f} MB"
    if size >= 1024:
        return f"{size // 1024} KB"
    return f"{size} B"


def scan_legacy_files(uploads_path: Path) -> List[str]:
    """Every .jpg/.jpeg/.png under uploads as sorted relative POSIX paths"""
    found = []
    for root, _, files in os.walk(uploads_path):
        for name in files:
            if name.lower().endswith(LEGACY_EXTENSIONS):
                relative = Path(root, name).relative_to(uploads_path)
                found.append(relative.as_posix())
    return sorted(found)


def webp_relative_path(rel_path: str) -> str:
    return str(PurePosixPath(rel_path).with_suffix('.webp'))


class KeepAlive:
    """Prints a dot every few seconds while a long call blocks."""

    def __init__(self, interval: float = 5.0, stream=None):
        self.interval = interval
        self.stream = stream or sys.stdout
        self._stop = threading.Event()
        self._thread = None

    def _run(self):
        while not self._stop.wait(self.interval):
            self.stream.write('.')
            self.stream.flush()

    def __enter__(self):
        self._thread = threading.Thread(target=self._run, name='keepalive', daemon=True)
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._stop.set()
        self._thread.join()
        self.stream.write('\n')
        self.stream.flush()
        return False


class WebPConverter:
    """Drives the per-attachment loop and keeps the run statistics."""

    def __init__(self, uploads_path: Path, config: Dict, worker: Optional[WorkerClient] = None,
                 dry_run: bool = False, transcode=convert_to_webp, files_only: bool = False):
        self.uploads_path = Path(uploads_path)
        self.config = config
        self.worker = worker
        self.dry_run = dry_run
        self.files_only = files_only
        self.transcode = transcode
        self.start_time = datetime.now()

        conversion = config['conversion']
        self.min_size_bytes = conversion['min_size_kb'] * 1024
        self.resize_bounds = ResizeBounds(
            conversion['max_width'], conversion['max_height'],
            conversion['target_width'], conversion['target_height'])

        self.stats = {
            'total': 0,
            'converted': 0,
            'synced': 0,
            'would_convert': 0,
            'skipped': 0,
            'unreconciled': 0,
            'not_found': 0,
            'errors': 0,
            'variants_converted': 0,
            'size_saved': 0,
            'content_rows': 0,
            'document_rows': 0,
            'css_cleared': 0,
        }
        self.unreconciled = []
        # Synced items whose content references are still queued in the worker
        self.unflushed = []
        self._current = None
        self._state = ItemState.PENDING

    def _transcode(self, source: Path, resize: bool) -> TranscodeResult:
        conversion = self.config['conversion']
        return self.transcode(
            source,
            quality=conversion['quality'],
            lossless=conversion['lossless'],
            method=conversion['method'],
            resize=self.resize_bounds if resize else None,
        )

    def _skip(self, label: str, rel_path: str, reason: str) -> ItemState:
        print(f"{label} {rel_path} - skipped ({reason})")
        logger.info(f"SKIPPED: {rel_path} ({reason})")
        self.stats['skipped'] += 1
        return ItemState.SKIPPED

    def _error(self, rel_path: str, message: str, state: ItemState) -> ItemState:
        print(f"    ❌ {message}")
        logger.error(f"ERROR: {rel_path}: {message}")
        self.stats['errors'] += 1
        return state

    def _mark_unreconciled(self, rel_path: str, reason: str):
        self.stats['unreconciled'] += 1
        self.unreconciled.append(rel_path)
        logger.warning(f"UNRECONCILED: {rel_path} ({reason})")

    def _convert_variants(self, directory: Path, names: Sequence[str]) -> List[Tuple[Path, TranscodeResult]]:
        """Convert every variant on disk; all produced files are removed on failure"""
        converted = []
        seen = set()
        for name in names:
            if name in seen or Path(name).name != name or not is_legacy_image(name):
                continue
            seen.add(name)

            variant = directory / name
            if not variant.is_file():
                if not webp_path_for(variant).is_file():
                    logger.warning(f"Variant missing on disk: {variant}")
                continue

            try:
                if webp_path_for(variant).exists():
                    raise TranscodeFailure(f"{webp_path_for(variant).name} already exists next to {name}")
                result = self._transcode(variant, resize=False)
            except (TranscodeFailure, KeyboardInterrupt):
                for _, produced in converted:
                    produced.output_path.unlink(missing_ok=True)
                raise
            if not result.is_smaller:
                logger.debug(f"Variant {name} kept as WebP although not smaller")
            converted.append((variant, result))
        return converted

    def process_item(self, rel_path: str, label: str = '') -> ItemState:
        """Run one attachment through Pending -> ... -> terminal state"""
        self._current = rel_path
        self._state = ItemState.PENDING
        source = self.uploads_path / rel_path

        if not source.is_file():
            if webp_path_for(source).is_file():
                if not self.files_only:
                    self._mark_unreconciled(rel_path, "WebP exists but original is gone; database not re-checked")
                    return self._skip(label, rel_path, "WebP already exists, may need DB update")
                return self._skip(label, rel_path, "WebP already exists")
            return self._skip(label, rel_path, "file not found on disk")

        # foo.jpg and foo.png both map to foo.webp; never overwrite
        if webp_path_for(source).exists():
            return self._skip(label, rel_path, f"{webp_path_for(source).name} already exists next to the original")

        file_size = source.stat().st_size
        if file_size < self.min_size_bytes:
            return self._skip(label, rel_path, f"{format_bytes(file_size)} < {self.min_size_bytes // 1024} KB")

        if self.dry_run:
            print(f"{label} {rel_path} - would convert ({format_bytes(file_size)})")
            logger.info(f"DRY RUN: would convert {rel_path}")
            self.stats['would_convert'] += 1
            return ItemState.SKIPPED

        print(f"{label} {rel_path}")
        self._state = ItemState.CONVERTING
        try:
            result = self._transcode(source, resize=True)
        except TranscodeFailure as e:
            return self._error(rel_path, f"Conversion failed: {e}", ItemState.CONVERT_ERROR)

        if not result.is_smaller:
            result.output_path.unlink(missing_ok=True)
            print("    Skipped: WebP not smaller than original")
            return self._skip(label, rel_path, "WebP not smaller than original")

        variants = []
        if self.worker is not None:
            try:
                names = self.worker.info(rel_path)
                variants = self._convert_variants(source.parent, names)
            except (WorkerError, TranscodeFailure) as e:
                result.output_path.unlink(missing_ok=True)
                return self._error(rel_path, f"Variant conversion failed: {e}", ItemState.CONVERT_ERROR)
            except KeyboardInterrupt:
                result.output_path.unlink(missing_ok=True)
                raise

        try:
            source.unlink()
        except OSError as e:
            result.output_path.unlink(missing_ok=True)
            for _, variant in variants:
                variant.output_path.unlink(missing_ok=True)
            return self._error(rel_path, f"Cannot remove original: {e}", ItemState.CONVERT_ERROR)
        self._state = ItemState.CONVERTED
        for variant_source, _ in variants:
            try:
                variant_source.unlink()
            except OSError as e:
                logger.warning(f"Could not remove converted thumbnail {variant_source}: {e}")

        saved = result.saved + sum(variant.saved for _, variant in variants)
        self.stats['converted'] += 1
        self.stats['variants_converted'] += len(variants)
        self.stats['size_saved'] += saved
        percent = result.saved * 100 // result.original_size if result.original_size else 0
        resized = f", resized to {result.width}x{result.height}" if result.resized else ""
        print(f"    Converted: {format_bytes(result.new_size)} ({percent}% savings{resized})")
        if variants:
            print(f"    Thumbnails: {len(variants)} converted")

        new_rel = webp_relative_path(rel_path)
        logger.info(f"CONVERTED: {rel_path} -> {new_rel} (saved {percent}%, thumbs: {len(variants)})")
        if self.worker is None:
            return ItemState.CONVERTED

        self._state = ItemState.SYNC_PENDING
        try:
            attachment_id = self.worker.update(rel_path, new_rel, result.width, result.height)
        except WorkerError as e:
            self._mark_unreconciled(rel_path, "database update failed")
            return self._error(rel_path, f"Database update failed: {e}", ItemState.SYNC_ERROR)

        if attachment_id is None:
            self.stats['not_found'] += 1
            self._mark_unreconciled(rel_path, "no attachment stored at this path")
            return self._error(rel_path, "No attachment found in database", ItemState.SYNC_ERROR)

        self.stats['synced'] += 1
        self.unflushed.append(rel_path)
        print(f"    Database: ✓ attachment #{attachment_id} updated")
        return ItemState.SYNCED

    def run(self, items: Iterable[str]) -> Dict:
        """Process every item in order; one item at a time"""
        items = list(items)
        self.stats['total'] = len(items)
        print(f"Processing {len(items)} {'images' if self.worker is None else 'attachments'}...")

        try:
            for index, rel_path in enumerate(items, 1):
                self._state = self.process_item(rel_path, f"[{index}/{len(items)}]")
        except KeyboardInterrupt:
            if self._state in UNRECONCILED_STATES:
                self._mark_unreconciled(self._current, "interrupted before the database update")
            raise
        return self.stats

    def finish(self):
        """Flush batched content replacements and the Elementor cache"""
        if self.worker is None or self.dry_run or not self.unflushed:
            return

        print("Replacing image references in posts and Elementor data", end='', flush=True)
        try:
            with KeepAlive():
                content_rows, document_rows = self.worker.flush_replace()
        except WorkerError as e:
            self._error('<flush>', f"Content replacement failed: {e}", ItemState.SYNC_ERROR)
        else:
            self.unflushed.clear()
            self.stats['content_rows'] = content_rows
            self.stats['document_rows'] = document_rows
            print(f"    ✓ Content updated: {content_rows} posts, {document_rows} Elementor entries")

        print("Flushing Elementor CSS cache", end='', flush=True)
        try:
            with KeepAlive():
                self.stats['css_cleared'] = self.worker.flush_cache()
        except WorkerError as e:
            print("    ⚠ Could not flush Elementor cache (may not be installed)")
            logger.warning(f"Elementor cache flush failed: {e}")
        else:
            print("    ✓ Elementor CSS cache cleared")

    def convert_all(self, items: Iterable[str]) -> Dict:
        """run() then finish(); an interrupt still flushes what was already synced"""
        try:
            self.run(items)
        except KeyboardInterrupt:
            if self.unflushed:
                print(f"\n⚠️  Interrupted, flushing references for {len(self.unflushed)} updated attachments first")
                logger.warning(f"Interrupted with {len(self.unflushed)} synced items not yet flushed")
                self.finish()
            raise
        self.finish()
        return self.stats

    def report(self, log_file: Optional[Path] = None):
        """Print and log the run summary"""
        duration = datetime.now() - self.start_time
        minutes, seconds = divmod(int(duration.total_seconds()), 60)

        if self.worker is not None and not self.dry_run:
            remaining = len(scan_legacy_files(self.uploads_path))
            if remaining:
                print(f"\n⚠ {remaining} JPEG/PNG files on disk were not converted.")
                print("    These may be thumbnails of skipped images, orphaned files or untracked uploads.")
                logger.info(f"{remaining} legacy image files remain on disk")

        print("\n=== Complete ===")
        if self.dry_run:
            print(f"    Would convert: {self.stats['would_convert']} images")
        else:
            print(f"    Converted:   {self.stats['converted']} images "
                  f"({self.stats['variants_converted']} thumbnails)")
        print(f"    Skipped:     {self.stats['skipped']} images")
        print(f"    Errors:      {self.stats['errors']}")
        if self.stats['unreconciled']:
            print(f"    Unreconciled: {self.stats['unreconciled']} (files converted, database not confirmed)")
        if self.unflushed:
            print(f"    Unflushed:   {len(self.unflushed)} (attachment updated, post content and Elementor data still reference the old file)")
        print(f"    Space saved: {format_bytes(max(0, self.stats['size_saved']))}")
        print(f"    Duration:    {minutes}m {seconds}s")
        if log_file:
            print(f"    Log:         {log_file}")

        logger.info(f"Run statistics: {json.dumps(self.stats, sort_keys=True)}")
        for rel_path in self.unreconciled:
            logger.warning(f"Needs database check: {rel_path}")
        for rel_path in self.unflushed:
            logger.warning(f"Needs content check: {rel_path}")
        if self.stats['errors']:
            print(f"\n⚠ There were {self.stats['errors']} errors. Check the log for details.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Convert a WordPress media library to WebP and update the database',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s /var/www/html/wp-config.php --dry-run           Show what would be converted
  %(prog)s /var/www/html/wp-config.php --backup-db         Convert after dumping the database
  %(prog)s --files-only --uploads ./uploads --quality 75   Convert files, no database
        """
    )
    parser.add_argument('wp_config', nargs='?', help='Path to wp-config.php (full mode)')
    parser.add_argument('--uploads', help='Uploads directory (default: <wp root>/wp-content/uploads)')
    parser.add_argument('--config', default=DEFAULT_CONFIG_FILE, help='JSON configuration file')
    parser.add_argument('--files-only', action='store_true', help='Convert files only, no database')
    parser.add_argument('--dry-run', action='store_true', help='Report what would be converted')
    parser.add_argument('--quality', type=int, help='WebP quality (1-100)')
    parser.add_argument('--max-width', type=int, help='Resize images wider than this')
    parser.add_argument('--max-height', type=int, help='Resize images taller than this')
    parser.add_argument('--target-width', type=int, help='Width to fit oversized images into')
    parser.add_argument('--target-height', type=int, help='Height to fit oversized images into')
    parser.add_argument('--min-size-kb', type=int, help='Skip files smaller than this')
    parser.add_argument('--batch-size', type=int, help='Replacement pairs per UPDATE statement')
    parser.add_argument('--limit', type=int, help='Process only the first N items')
    parser.add_argument('--backup-uploads', action='store_true', help='Copy the uploads directory first')
    parser.add_argument('--backup-db', action='store_true', help='Run mysqldump first')
    parser.add_argument('--log-dir', help='Directory for log files')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.files_only and not args.wp_config:
        parser.error("wp-config.php path is required unless --files-only is given")
    if args.files_only and not args.uploads:
        parser.error("--uploads is required with --files-only")

    try:
        config = validate_config(apply_cli_overrides(load_config(args.config), args))
        db_config = None if args.files_only else load_wp_config(args.wp_config)
    except ConfigError as e:
        print(f"❌ {e}")
        return 1

    start_time = datetime.now()
    log_file = setup_logging(config['logging']['log_dir'], config['logging']['level'], start_time)
    logger.info(f"Mode: {'FILES ONLY' if args.files_only else 'FULL'}{' (DRY RUN)' if args.dry_run else ''}")

    if args.uploads:
        uploads_path = Path(args.uploads).resolve()
    else:
        uploads_path = Path(args.wp_config).resolve().parent / 'wp-content' / 'uploads'
    if not uploads_path.is_dir():
        print(f"❌ Uploads directory not found: {uploads_path}")
        logger.error(f"Uploads directory not found: {uploads_path}")
        return 1

    print(f"\n=== WordPress WebP Converter v{__version__} ===")
    print(f"    Uploads: {uploads_path}")
    if db_config:
        print(f"    Database: {db_config.describe()}")

    try:
        if args.files_only:
            items = scan_legacy_files(uploads_path)
        else:
            with open_connection(db_config) as connection:
                items = list(list_tracked_items(connection, db_config.table_prefix))
    except ConnectionFailure as e:
        print(f"❌ {e}")
        return 1

    if args.limit:
        items = items[:args.limit]
    if not items:
        print("No JPEG/PNG images found. Nothing to do.")
        return 0

    if not args.dry_run:
        try:
            if args.backup_uploads:
                print(f"    ✓ Uploads backup: {backup_uploads(uploads_path)}")
            if args.backup_db and db_config:
                print(f"    ✓ Database backup: {dump_database(db_config, Path.cwd())}")
        except BackupError as e:
            print(f"❌ {e}")
            logger.error(str(e))
            return 1

    converter = WebPConverter(uploads_path, config, dry_run=args.dry_run, files_only=args.files_only)
    converter.start_time = start_time
    try:
        if args.files_only or args.dry_run:
            converter.run(items)
        else:
            worker_log = log_file.with_name(log_file.name.replace('_convert.log', '_worker.log'))
            with WorkerClient.spawn(args.wp_config, config['database']['batch_size'],
                                    worker_log, config['logging']['level']) as worker:
                converter.worker = worker
                converter.convert_all(items)
    except ConnectionFailure as e:
        print(f"❌ {e}")
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        print("\n⚠️  Operation cancelled by user.")
        logger.warning("Run interrupted by user")
        converter.report(log_file)
        return 130

    converter.report(log_file)
    return 0


if __name__ == "__main__":
    sys.exit(main())
