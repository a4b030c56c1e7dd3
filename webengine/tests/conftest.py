from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Point the app at a throwaway sqlite database before any webengine module reads settings.
_TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="webengine-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR / 'webengine_test.db'}")
os.environ.setdefault("MAIL_PROVIDER", "fake")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "4")
os.environ.setdefault("BACKUP_DIR", str(_TEST_DB_DIR / "backups"))

import pytest

from webengine.core.config import get_settings
from webengine.domain.models import Base
from webengine.persistence.db import engine


@pytest.fixture(autouse=True)
async def reset_database_between_tests():
    # Recreate every table so tests never see each other's rows.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def clear_settings_cache():
    # Tests that monkeypatch env vars must not leak cached settings into later tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
