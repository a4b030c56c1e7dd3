from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import logging
from typing import Any

from webengine.services.audit import record_actor_event
from webengine.services.authz import Actor
from webengine.services.backup import (
    BackupEngine,
    BackupResult,
    BackupType,
    CleanupResult,
    VerificationResult,
    health_check,
    select_backup_type,
)
from webengine.services.notifications.mailer import BackupNotifier


logger = logging.getLogger(__name__)


async def run_backup(
    engine: BackupEngine,
    backup_type: BackupType,
    *,
    actor: Actor | None = None,
    request_id: str | None = None,
) -> BackupResult:
    # Create a dump and record the outcome in the audit trail.
    result = await engine.create_backup(backup_type)
    await record_actor_event(
        None,
        actor,
        event_type="backup.created" if result.success else "backup.failed",
        outcome="success" if result.success else "failure",
        resource_type="backup",
        resource_id=result.filename,
        metadata={
            "backup_type": backup_type,
            "size": result.size,
            "tables_count": result.tables_count,
            "error": result.error,
        },
        error_code=None if result.success else "BACKUP_FAILED",
        request_id=request_id,
    )
    return result


@dataclass(frozen=True)
class ScheduledRunReport:
    success: bool
    backup_type: str
    result: BackupResult | None = None
    verification: VerificationResult | None = None
    cleanup: list[CleanupResult] = field(default_factory=list)
    notified: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "backup_type": self.backup_type,
            "result": self.result.to_dict() if self.result else None,
            "verification": self.verification.to_dict() if self.verification else None,
            "cleanup": [item.to_dict() for item in self.cleanup],
            "notified": self.notified,
            "error": self.error,
        }


async def run_scheduled_backup(
    engine: BackupEngine,
    notifier: BackupNotifier,
    *,
    now: datetime | None = None,
    backup_type: BackupType | None = None,
    min_free_mb: int | None = None,
) -> ScheduledRunReport:
    """Unattended backup run for cron: health check, dump, verify, prune, notify.

    Never raises; the report's ``success`` drives the script exit code.
    """
    config = engine.config
    current = now or datetime.now(timezone.utc)
    resolved_type = backup_type or select_backup_type(current, config)
    logger.info("scheduled_backup_started type=%s", resolved_type)

    health = await health_check(engine, min_free_mb=min_free_mb)
    if not health.healthy:
        failed = BackupResult(
            success=False,
            backup_type=resolved_type,
            timestamp=current.isoformat(),
            error="; ".join(health.errors),
        )
        return await _finish_failed(engine, notifier, failed)

    result = await run_backup(engine, resolved_type)
    if not result.success:
        return await _finish_failed(engine, notifier, replace(result, timestamp=current.isoformat()))

    verification = None
    if config.verify_backup and result.filename:
        verification = await asyncio.to_thread(engine.verify_backup, result.filename)
        if not verification.valid:
            failed = replace(
                result,
                success=False,
                error="Backup verification failed: " + "; ".join(verification.errors),
            )
            return await _finish_failed(engine, notifier, failed, verification=verification)

    cleanup: list[CleanupResult] = []
    if config.weekly_cleanup:
        cleanup = [
            await asyncio.to_thread(engine.clean_old_backups, config.max_files),
            await asyncio.to_thread(engine.prune_expired, config.retention_days),
        ]
    deleted = [filename for item in cleanup for filename in item.deleted]
    if deleted:
        await record_actor_event(
            None,
            None,
            event_type="backup.pruned",
            resource_type="backup",
            metadata={"deleted": deleted, "freed_space": sum(item.freed_space for item in cleanup)},
        )
    notified = await notifier.notify(result, config)
    logger.info(
        "scheduled_backup_succeeded type=%s filename=%s size=%s",
        resolved_type,
        result.filename,
        result.size,
    )
    return ScheduledRunReport(
        success=True,
        backup_type=resolved_type,
        result=result,
        verification=verification,
        cleanup=cleanup,
        notified=notified,
    )


async def _finish_failed(
    engine: BackupEngine,
    notifier: BackupNotifier,
    result: BackupResult,
    *,
    verification: VerificationResult | None = None,
) -> ScheduledRunReport:
    logger.error("scheduled_backup_failed type=%s error=%s", result.backup_type, result.error)
    last_success = engine.last_successful_backup()
    if last_success is not None and last_success.filename == result.filename:
        # A dump that failed verification is not a successful backup.
        others = [record for record in engine.list_backups() if record.filename != result.filename]
        last_success = others[0] if others else None
    notified = await notifier.notify(result, engine.config, last_success=last_success)
    return ScheduledRunReport(
        success=False,
        backup_type=result.backup_type,
        result=result,
        verification=verification,
        notified=notified,
        error=result.error,
    )
