from __future__ import annotations

import argparse
import asyncio
import sys

from webengine.core.logging import configure_logging
from webengine.persistence.db import SessionLocal
from webengine.services.backup import get_backup_engine
from webengine.services.backup_jobs import run_scheduled_backup
from webengine.services.notifications import BackupNotifier
from webengine.services.settings import resolve_backup_config


async def _run_scheduled(backup_type: str | None, min_free_mb: int | None) -> bool:
    # Cron entry point: health check, dump, verify, prune, and email the outcome.
    async with SessionLocal() as session:
        config = await resolve_backup_config(session)
    engine = get_backup_engine(config)
    report = await run_scheduled_backup(
        engine,
        BackupNotifier(),
        backup_type=backup_type,
        min_free_mb=min_free_mb,
    )
    print(f"success={str(report.success).lower()}")
    print(f"backup_type={report.backup_type}")
    if report.result is not None and report.result.filename:
        print(f"filename={report.result.filename}")
        print(f"size={report.result.size}")
    if report.verification is not None:
        print(f"verified={str(report.verification.valid).lower()}")
    print(f"deleted={sum(item.deleted_count for item in report.cleanup)}")
    print(f"notified={str(report.notified).lower()}")
    if report.error:
        print(f"error={report.error}")
    return report.success


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the scheduled database backup")
    parser.add_argument(
        "--type",
        default=None,
        choices=["full", "structure"],
        help="Force a backup type instead of the schedule-based choice",
    )
    parser.add_argument("--min-free-mb", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    ok = asyncio.run(_run_scheduled(args.type, args.min_free_mb))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
