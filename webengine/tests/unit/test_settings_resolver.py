from __future__ import annotations

import pytest

from webengine.core.config import get_settings
from webengine.domain.models import SiteSetting
from webengine.persistence.db import SessionLocal
from webengine.services.settings import (
    BackupConfig,
    SiteSettingsService,
    apply_backup_overrides,
    default_backup_config,
    resolve_backup_config,
)


def test_defaults_come_from_environment(monkeypatch) -> None:
    # Environment settings seed the backup defaults before database overrides.
    monkeypatch.setenv("BACKUP_DIR", "/srv/backups")
    monkeypatch.setenv("BACKUP_MAX_FILES", "7")
    monkeypatch.setenv("BACKUP_COMPRESSION_LEVEL", "12")
    monkeypatch.setenv("BACKUP_TABLE_ALLOWLIST", "users, comments,,")
    get_settings.cache_clear()

    config = default_backup_config()

    assert config.storage_path == "/srv/backups"
    assert config.max_files == 7
    assert config.compression_level == 9
    assert config.table_allowlist == ("users", "comments")


def test_overrides_apply_and_bad_values_are_skipped() -> None:
    config = apply_backup_overrides(
        BackupConfig(),
        {
            "backup_compression_level": "0",
            "backup_verify_integrity": "false",
            "backup_notifications_enabled": "0",
            "backup_notification_email": "ops@example.test",
            "backup_max_files": "not-a-number",
            "backup_include_structure_only": "yes",
            "backup_create_checksum": "maybe",
        },
    )

    assert config.compression_level == 1
    assert config.verify_backup is False
    assert config.email_on_success is False
    assert config.email_on_failure is False
    assert config.email_address == "ops@example.test"
    assert config.max_files == 30
    assert config.hourly_structure is True
    assert config.create_checksum is True


def test_schedule_and_time_limit_overrides() -> None:
    config = apply_backup_overrides(
        BackupConfig(),
        {
            "backup_daily_full": "0",
            "backup_weekly_cleanup": "false",
            "backup_time_limit": "-5",
        },
    )

    assert config.daily_full is False
    assert config.weekly_cleanup is False
    assert config.time_limit_s == 0


@pytest.mark.asyncio
async def test_resolve_reads_backup_category_only() -> None:
    # Rows outside the backup category never leak into the backup config.
    async with SessionLocal() as session:
        session.add_all(
            [
                SiteSetting(setting_key="backup_max_files", setting_value="5", value_type="int", category="backup"),
                SiteSetting(setting_key="backup_path", setting_value="/data/dumps", category="backup"),
                SiteSetting(setting_key="backup_retention_days", setting_value="2", category="general"),
            ]
        )
        await session.commit()
        config = await resolve_backup_config(session)

    assert config.max_files == 5
    assert config.storage_path == "/data/dumps"
    assert config.retention_days == 30


@pytest.mark.asyncio
async def test_site_settings_upsert_and_cast() -> None:
    # Values round-trip through text storage with their declared type.
    async with SessionLocal() as session:
        service = SiteSettingsService(session)
        await service.update_settings("general", {"site_title": "Darkheim", "items_per_page": 12}, public=True)
        await service.update_settings("general", {"items_per_page": 24, "maintenance": False})
        await session.commit()

        assert await service.get("items_per_page") == 24
        assert await service.get("maintenance") is False
        assert await service.get("missing", "fallback") == "fallback"
        assert await service.get_by_category("general") == {
            "items_per_page": 24,
            "maintenance": False,
            "site_title": "Darkheim",
        }
        public = await service.get_public_settings()
    assert public == {"items_per_page": 24, "site_title": "Darkheim"}
