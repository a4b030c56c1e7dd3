from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
import gzip
import os
from pathlib import Path
import time

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table, insert
from sqlalchemy.ext.asyncio import create_async_engine

from webengine.services import backup as backup_service
from webengine.services.backup import BackupEngine
from webengine.services.settings import BackupConfig


FIXED_NOW = datetime(2026, 3, 1, 12, 30, 45, tzinfo=timezone.utc)


async def _small_database(tmp_path: Path):
    # Two tables: users with two rows, sessions empty.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'small.db'}")
    metadata = MetaData()
    users = Table(
        "users",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("username", String(50)),
        Column("bio", String(255), nullable=True),
    )
    Table("sessions", metadata, Column("id", String(64), primary_key=True))
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        await conn.execute(
            insert(users),
            [
                {"id": 1, "username": "alice", "bio": "it's \"quoted\"\nline"},
                {"id": 2, "username": "bob", "bio": None},
            ],
        )
    return engine


def _engine(bind, backup_dir: Path, **config_overrides) -> BackupEngine:
    config = replace(BackupConfig(storage_path=str(backup_dir)), **config_overrides)
    return BackupEngine(
        bind=bind,
        backup_dir=backup_dir,
        database="shop",
        config=config,
        clock=lambda: FIXED_NOW,
    )


def _read_dump(path: str) -> str:
    with gzip.open(path, "rt", encoding="utf-8") as handle:
        return handle.read()


def _touch_backup(directory: Path, name: str, mtime: float, payload: bytes = b"x" * 64) -> Path:
    path = directory / name
    path.write_bytes(payload)
    os.utime(path, (mtime, mtime))
    return path


@pytest.mark.asyncio
async def test_full_backup_emits_drop_create_and_inserts_per_table(tmp_path: Path) -> None:
    # Each table gets DROP + CREATE, rows become INSERTs, and FK checks bracket the dump.
    bind = await _small_database(tmp_path)
    engine = _engine(bind, tmp_path / "backups")
    try:
        result = await engine.create_full_backup()
    finally:
        await bind.dispose()

    assert result.success, result.error
    assert result.filename == "backup_shop_full_2026-03-01_12-30-45.sql.gz"
    assert result.tables_count == 2
    assert result.size > 0
    dump = _read_dump(result.path)
    assert dump.startswith("-- Database Backup")
    assert dump.count("DROP TABLE IF EXISTS") == 2
    assert dump.count("CREATE TABLE") == 2
    assert dump.count("INSERT INTO `users`") == 2
    assert "INSERT INTO `sessions`" not in dump
    assert dump.index("SET FOREIGN_KEY_CHECKS=0;") < dump.index("-- Table: sessions")
    assert dump.rstrip().endswith("SET FOREIGN_KEY_CHECKS=1;")
    assert "'it\\'s \\\"quoted\\\"\\nline'" in dump
    assert "(2, 'bob', NULL)" in dump


@pytest.mark.asyncio
async def test_structure_backup_has_no_data(tmp_path: Path) -> None:
    # Structure dumps carry DDL only under their own header.
    bind = await _small_database(tmp_path)
    engine = _engine(bind, tmp_path / "backups")
    try:
        result = await engine.create_structure_backup()
    finally:
        await bind.dispose()

    assert result.success, result.error
    assert "_structure_" in result.filename
    dump = _read_dump(result.path)
    assert dump.startswith("-- Database Structure Backup")
    assert "-- Table structure: users" in dump
    assert "INSERT INTO" not in dump
    assert "FOREIGN_KEY_CHECKS" not in dump


@pytest.mark.asyncio
async def test_backup_writes_checksum_sidecar_and_verifies(tmp_path: Path) -> None:
    # A fresh dump verifies; tampering with it breaks the checksum.
    bind = await _small_database(tmp_path)
    engine = _engine(bind, tmp_path / "backups")
    try:
        result = await engine.create_full_backup()
    finally:
        await bind.dispose()

    sidecar = Path(result.path + ".sha256")
    assert sidecar.read_text(encoding="utf-8") == f"{result.checksum}  {result.filename}\n"
    verification = engine.verify_backup(result.filename)
    assert verification.valid
    assert verification.checksum_verified

    Path(result.path).write_bytes(gzip.compress(b"-- Database Backup\n-- tampered\n" * 4))
    verification = engine.verify_backup(result.filename)
    assert not verification.valid
    assert "Checksum mismatch" in verification.errors


@pytest.mark.asyncio
async def test_backup_without_tables_returns_error_result(tmp_path: Path) -> None:
    # An empty database yields an error result, never an exception.
    bind = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    engine = _engine(bind, tmp_path / "backups")
    try:
        result = await engine.create_full_backup()
    finally:
        await bind.dispose()

    assert not result.success
    assert result.error == "No tables found in database"
    assert not list((tmp_path / "backups").glob("backup_*"))


@pytest.mark.asyncio
async def test_backup_respects_table_allowlist(tmp_path: Path) -> None:
    # Only allow-listed tables are dumped.
    bind = await _small_database(tmp_path)
    engine = _engine(bind, tmp_path / "backups", table_allowlist=("sessions",))
    try:
        result = await engine.create_full_backup()
    finally:
        await bind.dispose()

    assert result.success
    assert result.tables_count == 1
    assert "users" not in _read_dump(result.path)


@pytest.mark.asyncio
async def test_concurrent_run_is_rejected_while_locked(tmp_path: Path) -> None:
    # A held lock turns a second run into an error result.
    bind = await _small_database(tmp_path)
    backup_dir = tmp_path / "backups"
    backup_dir.mkdir()
    engine = _engine(bind, backup_dir)
    try:
        with backup_service.backup_lock(backup_dir):
            result = await engine.create_full_backup()
    finally:
        await bind.dispose()

    assert not result.success
    assert "already in progress" in result.error
    assert not (backup_dir / backup_service.LOCK_FILENAME).exists()


def test_stale_lock_is_broken(tmp_path: Path) -> None:
    # Locks left by crashed runs expire after the stale window.
    lock_path = tmp_path / backup_service.LOCK_FILENAME
    lock_path.write_text("999999\n", encoding="ascii")
    old = time.time() - 7200
    os.utime(lock_path, (old, old))
    with backup_service.backup_lock(tmp_path, stale_after_s=3600) as acquired:
        assert acquired == lock_path
    assert not lock_path.exists()


def test_clean_old_backups_keeps_newest_by_mtime(tmp_path: Path) -> None:
    # Never more than max_backups remain and the oldest go first.
    now = time.time()
    names = [f"backup_shop_full_2026-01-0{day}_00-00-00.sql.gz" for day in range(1, 6)]
    for offset, name in enumerate(names):
        _touch_backup(tmp_path, name, now - (len(names) - offset) * 3600)
    (tmp_path / (names[0] + ".sha256")).write_text("x  y\n", encoding="utf-8")
    engine = _engine(None, tmp_path)

    result = engine.clean_old_backups(max_backups=2)

    assert result.success
    assert result.deleted_count == 3
    assert result.freed_space == 3 * 64
    remaining = sorted(path.name for path in tmp_path.glob("backup_*.sql.gz"))
    assert remaining == sorted(names[-2:])
    assert not (tmp_path / (names[0] + ".sha256")).exists()


def test_prune_expired_removes_only_old_backups(tmp_path: Path) -> None:
    # Age-based retention compares file mtimes against the engine clock.
    fresh = _touch_backup(tmp_path, "backup_shop_full_fresh.sql.gz", FIXED_NOW.timestamp() - 86400)
    stale = _touch_backup(tmp_path, "backup_shop_full_stale.sql.gz", FIXED_NOW.timestamp() - 40 * 86400)
    engine = _engine(None, tmp_path)

    result = engine.prune_expired(retention_days=30)

    assert result.deleted == [stale.name]
    assert fresh.exists()


@pytest.mark.parametrize(
    "filename",
    [
        "../backup_x.sql.gz",
        "backup_../../etc.sql.gz",
        "backup_x.sql",
        "notes.txt",
        "sub/backup_x.sql.gz",
        "",
    ],
)
def test_delete_backup_rejects_unsafe_names(tmp_path: Path, filename: str) -> None:
    # Traversal and non-matching names are refused before touching the disk.
    backup_dir = tmp_path / "backups"
    backup_dir.mkdir()
    outside = tmp_path / "backup_x.sql.gz"
    outside.write_bytes(b"keep")
    engine = _engine(None, backup_dir)

    result = engine.delete_backup(filename)

    assert not result.success
    assert result.error == "Invalid backup filename"
    assert outside.exists()


def test_delete_backup_removes_file_and_sidecar(tmp_path: Path) -> None:
    # A valid name inside the directory is deleted with its checksum.
    path = _touch_backup(tmp_path, "backup_shop_full_2026-01-01_00-00-00.sql.gz", time.time())
    sidecar = tmp_path / (path.name + ".sha256")
    sidecar.write_text("x  y\n", encoding="utf-8")
    engine = _engine(None, tmp_path)

    assert engine.delete_backup(path.name).success
    assert not path.exists()
    assert not sidecar.exists()
    missing = engine.delete_backup(path.name)
    assert missing.error == "Backup file not found"


def test_list_backups_parses_names_newest_first(tmp_path: Path) -> None:
    now = time.time()
    _touch_backup(tmp_path, "backup_shop_structure_2026-01-01_00-00-00.sql.gz", now - 100)
    _touch_backup(tmp_path, "backup_shop_full_2026-01-02_00-00-00.sql.gz", now)
    (tmp_path / "unrelated.txt").write_text("ignored", encoding="utf-8")
    engine = _engine(None, tmp_path)

    records = engine.list_backups()

    assert [record.backup_type for record in records] == ["full", "structure"]
    assert records[0].database == "shop"
    assert engine.backup_status()["count"] == 2


def test_quote_value_renders_sql_literals() -> None:
    assert backup_service.quote_value(None) == "NULL"
    assert backup_service.quote_value(True) == "1"
    assert backup_service.quote_value(42) == "42"
    assert backup_service.quote_value(Decimal("1.50")) == "1.50"
    assert backup_service.quote_value(b"\x01\xff") == "X'01ff'"
    assert backup_service.quote_value("a\\b\x00\r\x1a") == "'a\\\\b\\0\\r\\Z'"
    assert backup_service.quote_value(datetime(2026, 1, 2, 3, 4, 5)) == "'2026-01-02 03:04:05'"
    assert backup_service.quote_value({"k": [1]}) == "'{\\\"k\\\":[1]}'"


def test_select_backup_type_follows_schedule() -> None:
    config = BackupConfig(hourly_structure=True)
    # 2026-03-01 is a Sunday and the first of the month.
    assert backup_service.select_backup_type(datetime(2026, 3, 1, 6), config) == "full"
    assert backup_service.select_backup_type(datetime(2026, 3, 4, 6), config) == "structure"
    assert backup_service.select_backup_type(datetime(2026, 3, 4, 7), config) == "full"
    assert backup_service.select_backup_type(datetime(2026, 3, 4, 6), BackupConfig()) == "full"


@pytest.mark.asyncio
async def test_health_check_reports_low_disk_space(tmp_path: Path) -> None:
    # An impossible free-space threshold fails the check without raising.
    engine = _engine(None, tmp_path)
    report = await backup_service.health_check(engine, min_free_mb=10**12)
    assert not report.healthy
    assert any("Insufficient disk space" in error for error in report.errors)
    assert any("No database connection" in error for error in report.errors)


@pytest.mark.asyncio
async def test_backups_in_the_same_second_do_not_overwrite(tmp_path: Path) -> None:
    # The clock is frozen, so the second dump needs its own name.
    bind = await _small_database(tmp_path)
    engine = _engine(bind, tmp_path / "backups")
    try:
        first = await engine.create_full_backup()
        async with bind.begin() as conn:
            await conn.exec_driver_sql("INSERT INTO users (id, username) VALUES (3, 'carol')")
        second = await engine.create_full_backup()
    finally:
        await bind.dispose()

    assert first.success and second.success
    assert first.filename == "backup_shop_full_2026-03-01_12-30-45.sql.gz"
    assert second.filename == "backup_shop_full_2026-03-01_12-30-45_1.sql.gz"
    assert _read_dump(first.path).count("INSERT INTO `users`") == 2
    assert _read_dump(second.path).count("INSERT INTO `users`") == 3
    assert engine.verify_backup(first.filename).checksum_verified
    assert engine.verify_backup(second.filename).checksum_verified
    records = engine.list_backups()
    assert len(records) == 2
    assert {record.backup_type for record in records} == {"full"}


@pytest.mark.asyncio
async def test_unusable_backup_directory_returns_error_result(tmp_path: Path) -> None:
    # A plain file where the directory should be fails the run without raising.
    bind = await _small_database(tmp_path)
    blocker = tmp_path / "backups"
    blocker.write_text("not a directory", encoding="utf-8")
    engine = _engine(bind, blocker)
    try:
        result = await engine.create_full_backup()
    finally:
        await bind.dispose()

    assert not result.success
    assert result.error.startswith("Backup directory")
    assert result.filename is None
    assert blocker.read_text(encoding="utf-8") == "not a directory"


@pytest.mark.asyncio
async def test_backup_over_time_limit_returns_error_result(tmp_path: Path, monkeypatch) -> None:
    engine = _engine(object(), tmp_path / "backups", time_limit_s=1)

    async def _slow_render(include_data: bool, now: datetime) -> tuple[str, int]:
        await asyncio.sleep(30)
        return "", 0

    monkeypatch.setattr(engine, "_render", _slow_render)
    result = await engine.create_full_backup()

    assert not result.success
    assert result.error == "Backup timed out after 1 seconds"
    assert not list((tmp_path / "backups").glob("backup_*"))
    assert not (tmp_path / "backups" / backup_service.LOCK_FILENAME).exists()


def test_clean_old_backups_honours_explicit_zero(tmp_path: Path) -> None:
    now = time.time()
    for day in range(1, 4):
        _touch_backup(tmp_path, f"backup_shop_full_2026-01-0{day}_00-00-00.sql.gz", now - day * 60)
    engine = _engine(None, tmp_path, max_files=30)

    result = engine.clean_old_backups(max_backups=0)

    assert result.deleted_count == 3
    assert not list(tmp_path.glob("backup_*.sql.gz"))


def test_ordinary_days_take_structure_dumps_without_daily_full() -> None:
    config = BackupConfig(daily_full=False)
    # Sunday and the 1st stay full; a Wednesday drops to a structure snapshot.
    assert backup_service.select_backup_type(datetime(2026, 3, 1, 7), config) == "full"
    assert backup_service.select_backup_type(datetime(2026, 3, 8, 7), config) == "full"
    assert backup_service.select_backup_type(datetime(2026, 3, 4, 7), config) == "structure"
