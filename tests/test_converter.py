"""Tests for the conversion orchestrator."""

from __future__ import annotations

import json
import logging

import pytest
from PIL import Image

from wp_config_parser import ConfigError
from wp_webp_converter import (
    ItemState,
    WebPConverter,
    create_default_config,
    load_config,
    main,
    scan_legacy_files,
    validate_config,
    webp_relative_path,
)
from wp_webp_transcoder import TranscodeFailure, TranscodeResult, webp_path_for
from wp_worker_client import WorkerError


class FakeWorker:
    """Records calls the way WorkerClient would receive them."""

    def __init__(self, variants=None, update_result=42, raise_on=None, flush_error=None):
        self.variants = variants or {}
        self.update_result = update_result
        self.raise_on = raise_on or {}
        self.flush_error = flush_error
        self.info_calls = []
        self.updates = []
        self.flushes = []

    def info(self, rel_path):
        self.info_calls.append(rel_path)
        return self.variants.get(rel_path, [])

    def update(self, old_rel, new_rel, width, height):
        self.updates.append((old_rel, new_rel, width, height))
        if old_rel in self.raise_on:
            raise self.raise_on[old_rel]
        if isinstance(self.update_result, BaseException):
            raise self.update_result
        return self.update_result

    def flush_replace(self):
        self.flushes.append("replace")
        if self.flush_error:
            raise self.flush_error
        return 2, 1

    def flush_cache(self):
        self.flushes.append("cache")
        return 3


def fake_transcode(ratio=0.5, fail_on=None):
    calls = []

    def transcode(source, quality, lossless, method, resize):
        calls.append(source.name)
        if fail_on and fail_on in source.name:
            raise TranscodeFailure(f"cannot read {source.name}")
        output = webp_path_for(source)
        original = source.stat().st_size
        output.write_bytes(b"W" * int(original * ratio))
        return TranscodeResult(output, original, int(original * ratio), 800, 450, False)

    transcode.calls = calls
    return transcode


@pytest.fixture
def config():
    config = create_default_config()
    config["conversion"]["min_size_kb"] = 0
    return validate_config(config)


@pytest.fixture
def uploads(tmp_path):
    root = tmp_path / "uploads"
    month = root / "2024" / "03"
    month.mkdir(parents=True)
    (month / "foo.jpg").write_bytes(b"J" * 4000)
    (month / "foo-150x150.jpg").write_bytes(b"J" * 1000)
    (month / "foo-300x200.jpg").write_bytes(b"J" * 2000)
    return root


FOO = "2024/03/foo.jpg"
FOO_VARIANTS = {FOO: ["foo-150x150.jpg", "foo-300x200.jpg", "foo-150x150.jpg"]}


def test_full_item_converts_variants_then_updates_database(uploads, config) -> None:
    worker = FakeWorker(FOO_VARIANTS)
    converter = WebPConverter(uploads, config, worker=worker, transcode=fake_transcode())

    state = converter.process_item(FOO)

    month = uploads / "2024" / "03"
    assert state is ItemState.SYNCED
    assert sorted(p.name for p in month.iterdir()) == ["foo-150x150.webp", "foo-300x200.webp", "foo.webp"]
    assert worker.updates == [(FOO, "2024/03/foo.webp", 800, 450)]
    assert converter.stats["converted"] == 1
    assert converter.stats["synced"] == 1
    assert converter.stats["variants_converted"] == 2
    assert converter.stats["size_saved"] == 3500


def test_output_not_smaller_leaves_original_and_database_alone(uploads, config) -> None:
    worker = FakeWorker(FOO_VARIANTS)
    converter = WebPConverter(uploads, config, worker=worker, transcode=fake_transcode(ratio=1.2))

    state = converter.process_item(FOO)

    assert state is ItemState.SKIPPED
    assert (uploads / FOO).read_bytes() == b"J" * 4000
    assert not (uploads / "2024/03/foo.webp").exists()
    assert worker.info_calls == []
    assert worker.updates == []


def test_variant_failure_removes_everything_produced(uploads, config) -> None:
    worker = FakeWorker(FOO_VARIANTS)
    converter = WebPConverter(uploads, config, worker=worker, transcode=fake_transcode(fail_on="300x200"))

    state = converter.process_item(FOO)

    month = uploads / "2024" / "03"
    assert state is ItemState.CONVERT_ERROR
    assert sorted(p.name for p in month.iterdir()) == ["foo-150x150.jpg", "foo-300x200.jpg", "foo.jpg"]
    assert worker.updates == []
    assert converter.stats["errors"] == 1


def test_small_files_are_skipped(uploads, config) -> None:
    config["conversion"]["min_size_kb"] = 50
    transcode = fake_transcode()
    converter = WebPConverter(uploads, config, worker=FakeWorker(), transcode=transcode)

    assert converter.process_item(FOO) is ItemState.SKIPPED
    assert transcode.calls == []


def test_webp_without_original_is_reported_unreconciled(uploads, config) -> None:
    (uploads / FOO).rename(uploads / "2024/03/foo.webp")
    converter = WebPConverter(uploads, config, worker=FakeWorker(), transcode=fake_transcode())

    assert converter.process_item(FOO) is ItemState.SKIPPED
    assert converter.unreconciled == [FOO]
    assert converter.process_item("2024/03/gone.jpg") is ItemState.SKIPPED
    assert converter.stats["skipped"] == 2
    assert converter.stats["unreconciled"] == 1


@pytest.mark.parametrize(
    "update_result, not_found",
    [(None, 1), (WorkerError("UPDATE failed: lost connection"), 0)],
)
def test_failed_database_update_is_unreconciled(uploads, config, update_result, not_found) -> None:
    worker = FakeWorker(update_result=update_result)
    converter = WebPConverter(uploads, config, worker=worker, transcode=fake_transcode())

    assert converter.process_item(FOO) is ItemState.SYNC_ERROR
    assert not (uploads / FOO).exists()
    assert converter.unreconciled == [FOO]
    assert converter.stats["not_found"] == not_found
    assert converter.stats["synced"] == 0


def test_interrupt_during_update_marks_item_unreconciled(uploads, config) -> None:
    worker = FakeWorker(update_result=KeyboardInterrupt())
    converter = WebPConverter(uploads, config, worker=worker, transcode=fake_transcode())

    with pytest.raises(KeyboardInterrupt):
        converter.run([FOO, "2024/03/next.jpg"])

    assert converter.unreconciled == [FOO]


def test_interrupt_still_flushes_items_already_synced(uploads, config) -> None:
    (uploads / "2024/03/bar.jpg").write_bytes(b"J" * 4000)
    worker = FakeWorker(raise_on={"2024/03/bar.jpg": KeyboardInterrupt()})
    converter = WebPConverter(uploads, config, worker=worker, transcode=fake_transcode())

    with pytest.raises(KeyboardInterrupt):
        converter.convert_all([FOO, "2024/03/bar.jpg", "2024/03/foo-150x150.jpg"])

    assert worker.flushes == ["replace", "cache"]
    assert converter.unflushed == []
    assert converter.unreconciled == ["2024/03/bar.jpg"]
    assert converter.stats["content_rows"] == 2


def test_failed_flush_lists_items_needing_a_content_check(uploads, config, capsys, caplog) -> None:
    worker = FakeWorker(flush_error=WorkerError("FLUSH-REPLACE failed: server has gone away"))
    converter = WebPConverter(uploads, config, worker=worker, transcode=fake_transcode())

    converter.convert_all([FOO])
    with caplog.at_level(logging.WARNING):
        converter.report()

    assert worker.flushes == ["replace", "cache"]
    assert converter.unflushed == [FOO]
    assert converter.stats["errors"] == 1
    assert "Unflushed:   1" in capsys.readouterr().out
    assert f"Needs content check: {FOO}" in caplog.text


def test_same_stem_siblings_never_share_a_webp(uploads, config) -> None:
    month = uploads / "2024" / "03"
    (month / "foo.png").write_bytes(b"P" * 6000)
    worker = FakeWorker()
    converter = WebPConverter(uploads, config, worker=worker, transcode=fake_transcode())

    converter.run([FOO, "2024/03/foo.png"])

    assert (month / "foo.png").read_bytes() == b"P" * 6000
    assert (month / "foo.webp").stat().st_size == 2000
    assert worker.updates == [(FOO, "2024/03/foo.webp", 800, 450)]
    assert converter.stats["converted"] == 1
    assert converter.stats["skipped"] == 1
    assert converter.unreconciled == []


def test_existing_variant_webp_fails_the_item_untouched(uploads, config) -> None:
    month = uploads / "2024" / "03"
    (month / "foo-150x150.webp").write_bytes(b"keep")
    worker = FakeWorker(FOO_VARIANTS)
    converter = WebPConverter(uploads, config, worker=worker, transcode=fake_transcode())

    assert converter.process_item(FOO) is ItemState.CONVERT_ERROR

    assert (month / "foo-150x150.webp").read_bytes() == b"keep"
    assert sorted(p.name for p in month.iterdir()) == [
        "foo-150x150.jpg", "foo-150x150.webp", "foo-300x200.jpg", "foo.jpg",
    ]
    assert worker.updates == []


@pytest.mark.parametrize("files_only, unreconciled", [(False, [FOO]), (True, [])])
def test_dry_run_reports_missing_original_by_mode(uploads, config, files_only, unreconciled) -> None:
    (uploads / FOO).rename(uploads / "2024/03/foo.webp")
    converter = WebPConverter(uploads, config, dry_run=True, transcode=fake_transcode(), files_only=files_only)

    assert converter.process_item(FOO) is ItemState.SKIPPED
    assert converter.unreconciled == unreconciled


def test_dry_run_writes_nothing(uploads, config) -> None:
    transcode = fake_transcode()
    converter = WebPConverter(uploads, config, dry_run=True, transcode=transcode)

    converter.run(scan_legacy_files(uploads))

    assert converter.stats["would_convert"] == 3
    assert transcode.calls == []
    assert not list(uploads.rglob("*.webp"))


def test_files_only_mode_converts_without_database(uploads, config) -> None:
    converter = WebPConverter(uploads, config, transcode=fake_transcode(), files_only=True)

    stats = converter.run(scan_legacy_files(uploads))

    assert stats["converted"] == 3
    assert stats["total"] == 3
    assert scan_legacy_files(uploads) == []


def test_finish_flushes_only_after_a_synced_item(uploads, config) -> None:
    worker = FakeWorker()
    converter = WebPConverter(uploads, config, worker=worker, transcode=fake_transcode())

    converter.finish()
    assert worker.flushes == []

    converter.run([FOO])
    converter.finish()

    assert worker.flushes == ["replace", "cache"]
    assert (converter.stats["content_rows"], converter.stats["document_rows"]) == (2, 1)
    assert converter.stats["css_cleared"] == 3


def test_scan_legacy_files_returns_sorted_posix_paths(tmp_path) -> None:
    for name in ("b/IMG.JPG", "a/photo.png", "a/anim.gif", "a/done.webp", "c.jpeg"):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x")

    assert scan_legacy_files(tmp_path) == ["a/photo.png", "b/IMG.JPG", "c.jpeg"]
    assert webp_relative_path("b/IMG.JPG") == "b/IMG.webp"


def test_config_file_is_merged_over_defaults(tmp_path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"conversion": {"quality": 70, "max_width": 1200}}), encoding="utf-8")

    config = validate_config(load_config(str(path)))

    assert config["conversion"]["quality"] == 70
    assert config["conversion"]["target_width"] == 1200
    assert config["conversion"]["max_height"] == 1080
    assert config["database"]["batch_size"] == 50


def test_invalid_config_is_rejected(tmp_path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid JSON"):
        load_config(str(path))

    config = create_default_config()
    config["conversion"]["quality"] = 101
    with pytest.raises(ConfigError, match="quality"):
        validate_config(config)

    config = create_default_config()
    config["database"]["batch_size"] = 0
    with pytest.raises(ConfigError, match="batch size"):
        validate_config(config)


def test_main_requires_wp_config_outside_files_only_mode() -> None:
    with pytest.raises(SystemExit):
        main([])


def test_main_files_only_converts_real_images(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    uploads = tmp_path / "uploads" / "2024" / "05"
    uploads.mkdir(parents=True)
    Image.effect_noise((128, 128), 64).save(uploads / "noise.png", "PNG")

    code = main([
        "--files-only", "--uploads", str(tmp_path / "uploads"),
        "--config", str(tmp_path / "missing.json"), "--log-dir", str(tmp_path / "logs"),
        "--quality", "10", "--min-size-kb", "0",
    ])

    assert code == 0
    assert (uploads / "noise.webp").is_file()
    assert not (uploads / "noise.png").exists()
    assert list((tmp_path / "logs").glob("*_wp_webp_convert.log"))
