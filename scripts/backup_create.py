from __future__ import annotations

import argparse
import asyncio
from dataclasses import replace
import sys

from webengine.core.logging import configure_logging
from webengine.persistence.db import SessionLocal
from webengine.services.backup import get_backup_engine
from webengine.services.backup_jobs import run_backup
from webengine.services.settings import resolve_backup_config


async def _run_backup(backup_type: str, output: str | None) -> bool:
    # Create one dump from the CLI using the same overrides as the dashboard.
    async with SessionLocal() as session:
        config = await resolve_backup_config(session)
    if output:
        config = replace(config, storage_path=output)
    engine = get_backup_engine(config)
    result = await run_backup(engine, backup_type)
    print(f"success={str(result.success).lower()}")
    print(f"backup_type={result.backup_type}")
    if result.success:
        print(f"filename={result.filename}")
        print(f"size={result.size}")
        print(f"tables_count={result.tables_count}")
        if result.checksum:
            print(f"checksum={result.checksum}")
    else:
        print(f"error={result.error}")
    return result.success


def main() -> None:
    # Parse CLI flags for manual backup creation.
    parser = argparse.ArgumentParser(description="Create a database backup")
    parser.add_argument("--type", default="full", choices=["full", "structure"])
    parser.add_argument("--output", default=None, help="Override the backup directory")
    args = parser.parse_args()
    configure_logging()
    ok = asyncio.run(_run_backup(args.type, args.output))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
