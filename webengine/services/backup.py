from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
import gzip
import hashlib
import json
import logging
import math
import os
from pathlib import Path
import re
import shutil
from typing import Any, Callable, Iterator, Literal

from sqlalchemy import MetaData, Table, inspect, select, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.schema import CreateTable

from webengine.core.config import get_settings
from webengine.core.errors import BackupError
from webengine.services.settings import BackupConfig, default_backup_config


logger = logging.getLogger(__name__)

BackupType = Literal["full", "structure"]

BACKUP_GLOB = "backup_*.sql.gz"
BACKUP_NAME_PATTERN = re.compile(r"^backup_.*\.sql\.gz$")
_BACKUP_PARTS_PATTERN = re.compile(
    r"^backup_(?P<database>.+)_(?P<backup_type>full|structure)_"
    r"(?P<stamp>\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2})(?:_\d+)?\.sql\.gz$"
)
FILENAME_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
CHECKSUM_SUFFIX = ".sha256"
LOCK_FILENAME = ".backup.lock"
FULL_HEADER = "-- Database Backup"
STRUCTURE_HEADER = "-- Database Structure Backup"
# Anything smaller cannot hold a gzip header plus a dump header.
MIN_BACKUP_BYTES = 32


class BackupLockedError(BackupError):
    """Another backup run holds the directory lock."""


@dataclass(frozen=True)
class BackupResult:
    # Structured outcome returned instead of raising past the caller.
    success: bool
    backup_type: str
    filename: str | None = None
    path: str | None = None
    size: int = 0
    tables_count: int = 0
    timestamp: str | None = None
    checksum: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BackupRecord:
    # Describe a dump file found on disk; nothing is persisted in the database.
    filename: str
    path: str
    size: int
    created_at: datetime
    age_days: int
    database: str | None
    backup_type: str | None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload


@dataclass(frozen=True)
class CleanupResult:
    success: bool
    deleted_count: int = 0
    freed_space: int = 0
    deleted: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DeleteResult:
    success: bool
    filename: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    filename: str
    errors: list[str] = field(default_factory=list)
    checksum_verified: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _utc_now() -> datetime:
    # Use UTC timestamps for backup filenames and status reporting.
    return datetime.now(timezone.utc)


def _sha256_file(path: Path) -> str:
    # Compute streaming checksums for large backup artifacts.
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


_STRING_ESCAPES = {
    "\\": "\\\\",
    "'": "\\'",
    '"': '\\"',
    "\x00": "\\0",
    "\n": "\\n",
    "\r": "\\r",
    "\x1a": "\\Z",
}


def escape_string(value: str) -> str:
    return "".join(_STRING_ESCAPES.get(char, char) for char in value)


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def quote_value(value: Any) -> str:
    """Render a Python value as a SQL literal for ``INSERT`` statements.

    ``None`` becomes ``NULL``, numbers pass through unquoted, and everything
    else is rendered as an escaped single-quoted string.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        return repr(value) if math.isfinite(value) else "NULL"
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        return f"X'{raw.hex()}'" if raw else "''"
    if isinstance(value, datetime):
        fmt = "%Y-%m-%d %H:%M:%S.%f" if value.microsecond else "%Y-%m-%d %H:%M:%S"
        value = value.strftime(fmt)
    elif isinstance(value, (date, time)):
        value = value.isoformat()
    elif isinstance(value, (dict, list)):
        value = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return "'" + escape_string(str(value)) + "'"


def is_valid_backup_filename(filename: str) -> bool:
    # Plain basenames only; traversal and separators are rejected before the pattern check.
    if not filename or ".." in filename or "/" in filename or "\\" in filename:
        return False
    return bool(BACKUP_NAME_PATTERN.match(filename))


def parse_backup_filename(filename: str) -> tuple[str | None, str | None, datetime | None]:
    # Recover database name, type, and timestamp encoded in the filename.
    match = _BACKUP_PARTS_PATTERN.match(filename)
    if not match:
        return None, None, None
    stamp = datetime.strptime(match.group("stamp"), FILENAME_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    return match.group("database"), match.group("backup_type"), stamp


def build_backup_filename(database: str, backup_type: BackupType, when: datetime) -> str:
    safe_database = re.sub(r"[^A-Za-z0-9_-]", "_", database) or "database"
    return f"backup_{safe_database}_{backup_type}_{when.strftime(FILENAME_TIMESTAMP_FORMAT)}.sql.gz"


def _table_ddl(conn: Connection, metadata: MetaData, name: str) -> tuple[str, Table]:
    # MySQL reports its own DDL; other dialects compile the reflected table.
    table = Table(name, metadata, autoload_with=conn)
    if conn.dialect.name in {"mysql", "mariadb"}:
        row = conn.exec_driver_sql(f"SHOW CREATE TABLE {quote_identifier(name)}").first()
        if row is None:
            raise BackupError(f"Could not read structure of table {name}")
        return str(row[1]).strip(), table
    return str(CreateTable(table).compile(dialect=conn.dialect)).strip(), table


def list_tables(conn: Connection, allowlist: tuple[str, ...] = ()) -> list[str]:
    names = sorted(inspect(conn).get_table_names())
    if allowlist:
        allowed = set(allowlist)
        names = [name for name in names if name in allowed]
    return names


def render_dump(
    conn: Connection,
    *,
    database: str,
    include_data: bool,
    allowlist: tuple[str, ...] = (),
    generated_at: datetime | None = None,
) -> tuple[str, int]:
    """Build the SQL dump text for every table (or the allow-list).

    Returns the dump and the number of tables it covers. Runs on a sync
    connection, so async callers go through ``AsyncConnection.run_sync``.
    """
    tables = list_tables(conn, allowlist)
    if not tables:
        raise BackupError("No tables found in database")
    stamp = (generated_at or _utc_now()).strftime("%Y-%m-%d %H:%M:%S")
    header = FULL_HEADER if include_data else STRUCTURE_HEADER
    parts = [f"{header}\n-- Generated: {stamp}\n-- Database: {database}\n\n"]
    if include_data:
        parts.append("SET FOREIGN_KEY_CHECKS=0;\n\n")
    metadata = MetaData()
    for name in tables:
        quoted = quote_identifier(name)
        ddl, table = _table_ddl(conn, metadata, name)
        label = "-- Table" if include_data else "-- Table structure"
        parts.append(f"{label}: {name}\nDROP TABLE IF EXISTS {quoted};\n{ddl};\n\n")
        if not include_data:
            continue
        for row in conn.execute(select(table)):
            values = ", ".join(quote_value(value) for value in row)
            parts.append(f"INSERT INTO {quoted} VALUES ({values});\n")
        parts.append("\n")
    if include_data:
        parts.append("SET FOREIGN_KEY_CHECKS=1;\n")
    return "".join(parts), len(tables)


def _lock_is_stale(lock_path: Path, stale_after_s: int) -> bool:
    try:
        age = _utc_now().timestamp() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return True
    return age > stale_after_s


@contextmanager
def backup_lock(directory: Path, *, stale_after_s: int = 3600) -> Iterator[Path]:
    # Serialize runs that write or prune the directory; crashed runs leave locks that expire.
    lock_path = directory / LOCK_FILENAME
    flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
    try:
        fd = os.open(lock_path, flags)
    except FileExistsError:
        if not _lock_is_stale(lock_path, stale_after_s):
            raise BackupLockedError("Another backup operation is already in progress") from None
        logger.warning("backup_lock_stale_removed path=%s", lock_path)
        lock_path.unlink(missing_ok=True)
        try:
            fd = os.open(lock_path, flags)
        except FileExistsError:
            raise BackupLockedError("Another backup operation is already in progress") from None
    try:
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
    finally:
        os.close(fd)
    try:
        yield lock_path
    finally:
        lock_path.unlink(missing_ok=True)


class BackupEngine:
    """Logical SQL dumps of the application database stored as ``.sql.gz`` files."""

    def __init__(
        self,
        *,
        bind: AsyncEngine | None,
        backup_dir: str | Path,
        database: str,
        config: BackupConfig | None = None,
        lock_stale_after_s: int = 3600,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.bind = bind
        self.backup_dir = Path(backup_dir)
        self.database = database
        self.config = config or default_backup_config()
        self.lock_stale_after_s = lock_stale_after_s
        self._clock = clock

    async def create_full_backup(self) -> BackupResult:
        return await self._create_backup("full")

    async def create_structure_backup(self) -> BackupResult:
        return await self._create_backup("structure")

    async def create_backup(self, backup_type: BackupType) -> BackupResult:
        if backup_type not in ("full", "structure"):
            return BackupResult(success=False, backup_type=str(backup_type), error="Unknown backup type")
        return await self._create_backup(backup_type)

    async def _create_backup(self, backup_type: BackupType) -> BackupResult:
        logger.info("backup_started type=%s database=%s", backup_type, self.database)
        try:
            self._ensure_directory()
            with backup_lock(self.backup_dir, stale_after_s=self.lock_stale_after_s):
                result = await self._write_backup(backup_type)
                if backup_type == "full":
                    await asyncio.to_thread(self._clean_old_backups_unlocked, self.config.max_files)
        except BackupError as exc:
            logger.error("backup_failed type=%s error=%s", backup_type, exc)
            return BackupResult(success=False, backup_type=backup_type, error=str(exc))
        except SQLAlchemyError as exc:
            logger.exception("backup_failed type=%s error=database", backup_type)
            return BackupResult(
                success=False,
                backup_type=backup_type,
                error=f"Database error during backup: {exc.__class__.__name__}",
            )
        except OSError as exc:
            logger.exception("backup_failed type=%s error=filesystem", backup_type)
            return BackupResult(
                success=False,
                backup_type=backup_type,
                error=f"Failed to save backup file: {exc.strerror or exc}",
            )
        logger.info(
            "backup_succeeded type=%s filename=%s size=%s tables=%s",
            backup_type,
            result.filename,
            result.size,
            result.tables_count,
        )
        return result

    def _ensure_directory(self) -> None:
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Backup directory cannot be created: {self.backup_dir}") from exc
        if not os.access(self.backup_dir, os.W_OK):
            raise BackupError(f"Backup directory is not writable: {self.backup_dir}")

    async def _render(self, include_data: bool, now: datetime) -> tuple[str, int]:
        if self.bind is None:
            raise BackupError("No database connection configured for backups")
        async with self.bind.connect() as conn:
            return await conn.run_sync(
                lambda sync_conn: render_dump(
                    sync_conn,
                    database=self.database,
                    include_data=include_data,
                    allowlist=tuple(self.config.table_allowlist),
                    generated_at=now,
                )
            )

    async def _write_backup(self, backup_type: BackupType) -> BackupResult:
        now = self._clock()
        limit_s = self.config.time_limit_s if self.config.time_limit_s > 0 else None
        try:
            dump, tables_count = await asyncio.wait_for(
                self._render(backup_type == "full", now), timeout=limit_s
            )
        except asyncio.TimeoutError as exc:
            raise BackupError(f"Backup timed out after {self.config.time_limit_s} seconds") from exc
        # Compression and file writes block; keep them off the event loop.
        return await asyncio.to_thread(self._store_dump, dump, backup_type, now, tables_count)

    def _store_dump(self, dump: str, backup_type: BackupType, now: datetime, tables_count: int) -> BackupResult:
        try:
            compressed = gzip.compress(dump.encode("utf-8"), compresslevel=self.config.compression_level)
        except (ValueError, OSError) as exc:
            raise BackupError(f"Failed to compress backup: {exc}") from exc
        limit_bytes = self.config.size_limit_mb * 1024 * 1024
        if len(compressed) > limit_bytes:
            raise BackupError(
                f"Backup size {len(compressed)} exceeds limit of {self.config.size_limit_mb} MB"
            )

        final_path = self._unused_path(build_backup_filename(self.database, backup_type, now))
        temp_path = self.backup_dir / f".{final_path.name}.tmp"
        try:
            temp_path.write_bytes(compressed)
            os.replace(temp_path, final_path)
        finally:
            temp_path.unlink(missing_ok=True)

        checksum = None
        if self.config.create_checksum:
            checksum = self.write_checksum(final_path)
        return BackupResult(
            success=True,
            backup_type=backup_type,
            filename=final_path.name,
            path=str(final_path),
            size=final_path.stat().st_size,
            tables_count=tables_count,
            timestamp=now.isoformat(),
            checksum=checksum,
        )

    def _unused_path(self, filename: str) -> Path:
        # Runs within the same second get a numeric suffix instead of replacing a dump.
        candidate = self.backup_dir / filename
        stem = filename[: -len(".sql.gz")]
        counter = 1
        while candidate.exists():
            candidate = self.backup_dir / f"{stem}_{counter}.sql.gz"
            counter += 1
        return candidate

    def write_checksum(self, path: Path) -> str:
        # Sidecar format matches sha256sum output so operators can check by hand.
        digest = _sha256_file(path)
        sidecar = path.with_name(path.name + CHECKSUM_SUFFIX)
        sidecar.write_text(f"{digest}  {path.name}\n", encoding="utf-8")
        return digest

    def list_backups(self) -> list[BackupRecord]:
        if not self.backup_dir.is_dir():
            return []
        now = self._clock()
        records: list[BackupRecord] = []
        for path in self.backup_dir.glob(BACKUP_GLOB):
            if not path.is_file():
                continue
            stat = path.stat()
            created_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            database, backup_type, _stamp = parse_backup_filename(path.name)
            records.append(
                BackupRecord(
                    filename=path.name,
                    path=str(path),
                    size=stat.st_size,
                    created_at=created_at,
                    age_days=max(0, (now - created_at).days),
                    database=database,
                    backup_type=backup_type,
                )
            )
        # Newest first; ties broken by name so ordering is deterministic.
        records.sort(key=lambda record: (record.created_at, record.filename), reverse=True)
        return records

    def resolve_backup_path(self, filename: str) -> Path:
        """Return the on-disk path for ``filename`` or raise ``BackupError``.

        The name must match the backup pattern and the resolved path must stay
        inside the backup directory.
        """
        if not is_valid_backup_filename(filename):
            raise BackupError("Invalid backup filename")
        base = self.backup_dir.resolve()
        candidate = (base / filename).resolve()
        if candidate.parent != base:
            raise BackupError("Invalid backup filename")
        if not candidate.is_file():
            raise BackupError("Backup file not found")
        return candidate

    def delete_backup(self, filename: str) -> DeleteResult:
        try:
            path = self.resolve_backup_path(filename)
            self._remove_backup_file(path)
        except BackupError as exc:
            logger.warning("backup_delete_rejected filename=%r error=%s", filename, exc)
            return DeleteResult(success=False, filename=filename, error=str(exc))
        except OSError as exc:
            logger.exception("backup_delete_failed filename=%s", filename)
            return DeleteResult(success=False, filename=filename, error=f"Failed to delete backup: {exc.strerror or exc}")
        logger.info("backup_deleted filename=%s", filename)
        return DeleteResult(success=True, filename=filename)

    def _remove_backup_file(self, path: Path) -> int:
        size = path.stat().st_size
        path.unlink()
        path.with_name(path.name + CHECKSUM_SUFFIX).unlink(missing_ok=True)
        return size

    def clean_old_backups(self, max_backups: int | None = None) -> CleanupResult:
        try:
            self._ensure_directory()
            with backup_lock(self.backup_dir, stale_after_s=self.lock_stale_after_s):
                limit = max_backups if max_backups is not None else self.config.max_files
                return self._clean_old_backups_unlocked(limit)
        except (BackupError, OSError) as exc:
            logger.error("backup_cleanup_failed error=%s", exc)
            return CleanupResult(success=False, error=str(exc))

    def _clean_old_backups_unlocked(self, max_backups: int) -> CleanupResult:
        keep = max(0, int(max_backups))
        backups = self.list_backups()
        deleted: list[str] = []
        freed = 0
        for record in backups[keep:]:
            try:
                freed += self._remove_backup_file(Path(record.path))
            except OSError:
                logger.exception("backup_cleanup_delete_failed filename=%s", record.filename)
                continue
            deleted.append(record.filename)
        if deleted:
            logger.info("backup_cleanup_completed deleted_count=%s freed_space=%s", len(deleted), freed)
        return CleanupResult(success=True, deleted_count=len(deleted), freed_space=freed, deleted=deleted)

    def prune_expired(self, retention_days: int | None = None) -> CleanupResult:
        # Age-based retention used by scheduled runs alongside the count limit.
        days = retention_days if retention_days is not None else self.config.retention_days
        cutoff = self._clock() - timedelta(days=days)
        deleted: list[str] = []
        freed = 0
        try:
            self._ensure_directory()
            with backup_lock(self.backup_dir, stale_after_s=self.lock_stale_after_s):
                for record in self.list_backups():
                    if record.created_at >= cutoff:
                        continue
                    freed += self._remove_backup_file(Path(record.path))
                    deleted.append(record.filename)
        except (BackupError, OSError) as exc:
            logger.error("backup_prune_failed error=%s", exc)
            return CleanupResult(success=False, deleted_count=len(deleted), freed_space=freed, deleted=deleted, error=str(exc))
        if deleted:
            logger.info("backup_prune_completed deleted_count=%s retention_days=%s", len(deleted), days)
        return CleanupResult(success=True, deleted_count=len(deleted), freed_space=freed, deleted=deleted)

    def verify_backup(self, filename: str) -> VerificationResult:
        """Check that a dump decompresses, carries a dump header, and matches its checksum."""
        try:
            path = self.resolve_backup_path(filename)
        except BackupError as exc:
            return VerificationResult(valid=False, filename=filename, errors=[str(exc)])
        errors: list[str] = []
        if path.stat().st_size < MIN_BACKUP_BYTES:
            errors.append("Backup file is too small")
        try:
            with gzip.open(path, "rt", encoding="utf-8") as handle:
                first_line = handle.readline()
                # Read to the end so truncated archives fail the CRC check.
                for _chunk in iter(lambda: handle.read(1024 * 1024), ""):
                    pass
            if "Database Backup" not in first_line and "Database Structure Backup" not in first_line:
                errors.append("Backup header missing")
        except (OSError, EOFError, UnicodeDecodeError) as exc:
            errors.append(f"Backup archive is corrupt: {exc}")

        checksum_verified = False
        sidecar = path.with_name(path.name + CHECKSUM_SUFFIX)
        if sidecar.is_file():
            expected = sidecar.read_text(encoding="utf-8").split()[0] if sidecar.stat().st_size else ""
            if expected != _sha256_file(path):
                errors.append("Checksum mismatch")
            else:
                checksum_verified = True
        elif self.config.create_checksum:
            errors.append("Checksum file missing")
        if errors:
            logger.warning("backup_verify_failed filename=%s errors=%s", filename, "; ".join(errors))
        return VerificationResult(
            valid=not errors,
            filename=filename,
            errors=errors,
            checksum_verified=checksum_verified,
        )

    def backup_status(self) -> dict[str, Any]:
        # Summarize the directory for the admin dashboard.
        backups = self.list_backups()
        latest = backups[0] if backups else None
        age_hours = None
        if latest is not None:
            age_hours = round((self._clock() - latest.created_at).total_seconds() / 3600, 1)
        return {
            "count": len(backups),
            "total_size": sum(record.size for record in backups),
            "latest": latest.to_dict() if latest else None,
            "latest_age_hours": age_hours,
            "max_backups": self.config.max_files,
            "backup_dir": str(self.backup_dir),
        }

    def last_successful_backup(self) -> BackupRecord | None:
        backups = self.list_backups()
        return backups[0] if backups else None


def get_backup_engine(config: BackupConfig | None = None) -> BackupEngine:
    # Allow tests to monkeypatch engine construction without touching API code.
    from webengine.persistence.db import database_name, engine

    settings = get_settings()
    resolved = config or default_backup_config(settings)
    return BackupEngine(
        bind=engine,
        backup_dir=resolved.storage_path,
        database=database_name(),
        config=resolved,
        lock_stale_after_s=settings.backup_lock_stale_seconds,
    )


def select_backup_type(now: datetime, config: BackupConfig) -> BackupType:
    # Weekly (Sunday) and monthly (1st) runs are always full; optional 6-hourly structure snapshots otherwise.
    if now.weekday() == 6 or now.day == 1:
        return "full"
    if config.hourly_structure and now.hour % 6 == 0:
        return "structure"
    # With daily full dumps off, ordinary runs only snapshot the schema.
    return "full" if config.daily_full else "structure"


@dataclass(frozen=True)
class HealthReport:
    healthy: bool
    free_mb: int | None
    database_ok: bool
    errors: list[str] = field(default_factory=list)


async def health_check(engine: BackupEngine, *, min_free_mb: int | None = None) -> HealthReport:
    # Refuse to start when disk space is low or the database is unreachable.
    threshold = min_free_mb if min_free_mb is not None else get_settings().backup_min_free_mb
    errors: list[str] = []
    free_mb: int | None = None
    try:
        engine.backup_dir.mkdir(parents=True, exist_ok=True)
        free_mb = shutil.disk_usage(engine.backup_dir).free // (1024 * 1024)
        if free_mb < threshold:
            errors.append(f"Insufficient disk space: {free_mb} MB free, {threshold} MB required")
    except OSError as exc:
        errors.append(f"Backup directory unavailable: {exc.strerror or exc}")

    database_ok = False
    if engine.bind is None:
        errors.append("No database connection configured for backups")
    else:
        try:
            async with engine.bind.connect() as conn:
                await conn.execute(text("SELECT 1"))
            database_ok = True
        except SQLAlchemyError as exc:
            errors.append(f"Database unavailable: {exc.__class__.__name__}")
    return HealthReport(healthy=not errors, free_mb=free_mb, database_ok=database_ok, errors=errors)
