from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from webengine.core.config import Settings, get_settings
from webengine.core.errors import ValidationFailed
from webengine.domain.models import SiteSetting


logger = logging.getLogger(__name__)

BACKUP_CATEGORY = "backup"
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class BackupConfig:
    # Static defaults for backup runs; site_settings rows override them per run.
    compression_level: int = 6
    time_limit_s: int = 300
    hourly_structure: bool = False
    daily_full: bool = True
    weekly_cleanup: bool = True
    verify_backup: bool = True
    create_checksum: bool = True
    email_on_success: bool = True
    email_on_failure: bool = True
    email_address: str | None = None
    storage_path: str = "./backups"
    max_files: int = 30
    retention_days: int = 30
    size_limit_mb: int = 500
    table_allowlist: tuple[str, ...] = field(default_factory=tuple)


def default_backup_config(settings: Settings | None = None) -> BackupConfig:
    # Seed defaults from environment settings before database overrides apply.
    resolved = settings or get_settings()
    allowlist = tuple(
        name.strip() for name in resolved.backup_table_allowlist.split(",") if name.strip()
    )
    return BackupConfig(
        compression_level=_clamp_level(resolved.backup_compression_level),
        email_address=resolved.admin_email or None,
        storage_path=resolved.backup_dir,
        max_files=resolved.backup_max_files,
        retention_days=resolved.backup_retention_days,
        table_allowlist=allowlist,
    )


def _clamp_level(value: int) -> int:
    return max(1, min(9, int(value)))


def parse_bool(value: Any) -> bool:
    # Accept the loose truthy spellings admin forms submit.
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Not a boolean: {value!r}")


def cast_setting(raw: str | None, value_type: str) -> Any:
    # Convert stored text into the declared type.
    if raw is None:
        return None
    if value_type == "int":
        return int(raw)
    if value_type == "bool":
        return parse_bool(raw)
    if value_type == "json":
        return json.loads(raw)
    return raw


def serialize_setting(value: Any) -> tuple[str, str]:
    # Store every value as text alongside a cast hint.
    if isinstance(value, bool):
        return ("1" if value else "0"), "bool"
    if isinstance(value, int):
        return str(value), "int"
    if isinstance(value, (dict, list)):
        return json.dumps(value), "json"
    return ("" if value is None else str(value)), "string"


def apply_backup_overrides(config: BackupConfig, rows: dict[str, str | None]) -> BackupConfig:
    """Overlay ``site_settings`` values (category ``backup``) onto ``config``.

    Values that fail to parse are skipped with a warning so one bad row never
    blocks a scheduled backup.
    """
    changes: dict[str, Any] = {}

    def _apply(key: str, parser, *targets: str) -> None:
        raw = rows.get(key)
        if raw is None or raw == "":
            return
        try:
            value = parser(raw)
        except (TypeError, ValueError):
            logger.warning("backup_setting_invalid key=%s", key)
            return
        for target in targets:
            changes[target] = value

    _apply("backup_compression_level", lambda raw: _clamp_level(int(raw)), "compression_level")
    _apply("backup_verify_integrity", parse_bool, "verify_backup")
    _apply("backup_notifications_enabled", parse_bool, "email_on_success", "email_on_failure")
    _apply("backup_notification_email", str, "email_address")
    _apply("backup_path", str, "storage_path")
    _apply("backup_max_files", lambda raw: max(1, int(raw)), "max_files")
    _apply("backup_retention_days", lambda raw: max(1, int(raw)), "retention_days")
    _apply("backup_size_limit_mb", lambda raw: max(1, int(raw)), "size_limit_mb")
    _apply("backup_include_structure_only", parse_bool, "hourly_structure")
    _apply("backup_create_checksum", parse_bool, "create_checksum")
    _apply("backup_daily_full", parse_bool, "daily_full")
    _apply("backup_weekly_cleanup", parse_bool, "weekly_cleanup")
    _apply("backup_time_limit", lambda raw: max(0, int(raw)), "time_limit_s")
    if not changes:
        return config
    return replace(config, **changes)


async def resolve_backup_config(
    session: AsyncSession | None,
    *,
    settings: Settings | None = None,
) -> BackupConfig:
    # Read category-scoped overrides once per run; fall back to defaults when the DB is down.
    config = default_backup_config(settings)
    if session is None:
        return config
    try:
        result = await session.execute(
            select(SiteSetting.setting_key, SiteSetting.setting_value).where(
                SiteSetting.category == BACKUP_CATEGORY
            )
        )
        rows = {key: value for key, value in result.all()}
    except SQLAlchemyError as exc:
        logger.warning("backup_settings_unavailable using_defaults=true", exc_info=exc)
        return config
    return apply_backup_overrides(config, rows)


class SiteSettingsService:
    """Category-scoped key/value settings persisted in ``site_settings``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, key: str, default: Any = None) -> Any:
        row = await self._session.scalar(select(SiteSetting).where(SiteSetting.setting_key == key))
        if row is None:
            return default
        try:
            value = cast_setting(row.setting_value, row.value_type)
        except (TypeError, ValueError):
            logger.warning("site_setting_cast_failed key=%s", key)
            return default
        return default if value is None else value

    async def get_by_category(self, category: str) -> dict[str, Any]:
        result = await self._session.execute(
            select(SiteSetting).where(SiteSetting.category == category).order_by(SiteSetting.setting_key)
        )
        return self._to_mapping(result.scalars().all())

    async def get_public_settings(self) -> dict[str, Any]:
        result = await self._session.execute(
            select(SiteSetting).where(SiteSetting.is_public.is_(True)).order_by(SiteSetting.setting_key)
        )
        return self._to_mapping(result.scalars().all())

    async def update_settings(
        self,
        category: str,
        values: dict[str, Any],
        *,
        public: bool | None = None,
    ) -> dict[str, Any]:
        # Upsert every key in one transaction; callers commit.
        if not category.strip():
            raise ValidationFailed("Settings category is required")
        now = datetime.now(timezone.utc)
        for key, value in values.items():
            if not key or len(key) > 100:
                raise ValidationFailed(f"Invalid setting key: {key!r}")
            text_value, value_type = serialize_setting(value)
            row = await self._session.scalar(select(SiteSetting).where(SiteSetting.setting_key == key))
            if row is None:
                row = SiteSetting(setting_key=key, category=category, is_public=bool(public))
                self._session.add(row)
            elif row.category != category:
                raise ValidationFailed(f"Setting {key} belongs to category {row.category}")
            row.setting_value = text_value
            row.value_type = value_type
            row.updated_at = now
            if public is not None:
                row.is_public = public
        await self._session.flush()
        logger.info("site_settings_updated category=%s keys=%s", category, ",".join(sorted(values)))
        return await self.get_by_category(category)

    @staticmethod
    def _to_mapping(rows) -> dict[str, Any]:
        mapping: dict[str, Any] = {}
        for row in rows:
            try:
                mapping[row.setting_key] = cast_setting(row.setting_value, row.value_type)
            except (TypeError, ValueError):
                logger.warning("site_setting_cast_failed key=%s", row.setting_key)
                mapping[row.setting_key] = row.setting_value
        return mapping
