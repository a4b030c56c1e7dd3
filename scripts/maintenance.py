from __future__ import annotations

import asyncio

from webengine.core.config import get_settings
from webengine.core.logging import configure_logging
from webengine.persistence.db import SessionLocal
from webengine.services.auth.accounts import purge_stale_auth_state


async def purge() -> None:
    # Keep web_sessions and user_tokens bounded; run from cron alongside backups.
    async with SessionLocal() as session:
        report = await purge_stale_auth_state(session, ttl_seconds=get_settings().session_ttl_seconds)
        await session.commit()
    print(f"purged_sessions={report.sessions_removed}")
    print(f"purged_tokens={report.tokens_removed}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(purge())
