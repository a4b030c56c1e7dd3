from __future__ import annotations

import argparse
import asyncio
from dataclasses import replace
import sys

from webengine.core.logging import configure_logging
from webengine.persistence.db import SessionLocal
from webengine.services.backup import get_backup_engine
from webengine.services.settings import resolve_backup_config


async def _run_prune(
    retention_days: int | None,
    max_files: int | None,
    base_dir: str | None,
    dry_run: bool,
) -> bool:
    # Apply count and age retention to the backup directory.
    async with SessionLocal() as session:
        config = await resolve_backup_config(session)
    if base_dir:
        config = replace(config, storage_path=base_dir)
    engine = get_backup_engine(config)
    keep = max_files or config.max_files
    days = retention_days or config.retention_days
    if dry_run:
        backups = engine.list_backups()
        over_count = [record.filename for record in backups[max(1, keep):]]
        expired = [record.filename for record in backups if record.age_days > days]
        print("dry_run=true")
        print(f"would_delete={len(set(over_count) | set(expired))}")
        return True
    by_count = engine.clean_old_backups(keep)
    by_age = engine.prune_expired(days)
    print(f"deleted_by_count={by_count.deleted_count}")
    print(f"deleted_by_age={by_age.deleted_count}")
    print(f"freed_space={by_count.freed_space + by_age.freed_space}")
    for error in (by_count.error, by_age.error):
        if error:
            print(f"error={error}")
    return by_count.success and by_age.success


def main() -> None:
    # Parse CLI flags for backup retention pruning.
    parser = argparse.ArgumentParser(description="Prune database backups beyond retention")
    parser.add_argument("--retention-days", type=int, default=None)
    parser.add_argument("--max-files", type=int, default=None)
    parser.add_argument("--base-dir", default=None)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    configure_logging()
    ok = asyncio.run(_run_prune(args.retention_days, args.max_files, args.base_dir, args.dry_run))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
