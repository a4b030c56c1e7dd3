from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from webengine.apps.api.deps import RequestContext, get_request_context, require_action, verify_csrf
from webengine.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from webengine.apps.api.response import SuccessEnvelope, success_response
from webengine.core.errors import BackupError
from webengine.services.audit import record_actor_event
from webengine.services.authz import Actor
from webengine.services.backup import BackupEngine, BackupResult, get_backup_engine
from webengine.services.backup_jobs import run_backup
from webengine.services.settings import resolve_backup_config


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin/backups",
    tags=["backups"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(verify_csrf)],
)


class BackupCreateRequest(BaseModel):
    backup_type: Literal["full", "structure"] = Field(default="full", alias="type")

    model_config = {"populate_by_name": True}


class BackupResultResponse(BaseModel):
    success: bool
    backup_type: str
    filename: str | None = None
    size: int = 0
    tables_count: int = 0
    timestamp: str | None = None
    checksum: str | None = None
    error: str | None = None


class BackupRecordResponse(BaseModel):
    filename: str
    size: int
    created_at: datetime
    age_days: int
    database: str | None = None
    backup_type: str | None = None


class BackupListResponse(BaseModel):
    items: list[BackupRecordResponse]


class BackupCleanupRequest(BaseModel):
    max_backups: int | None = Field(default=None, ge=1, le=1000)
    retention_days: int | None = Field(default=None, ge=1, le=3650)


class BackupCleanupResponse(BaseModel):
    success: bool
    deleted_count: int
    freed_space: int
    deleted: list[str]
    error: str | None = None


class BackupVerifyResponse(BaseModel):
    valid: bool
    filename: str
    errors: list[str]
    checksum_verified: bool


def _backup_failed(message: str, *, status_code: int = 500) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": "BACKUP_FAILED", "message": message})


async def get_engine(ctx: RequestContext = Depends(get_request_context)) -> BackupEngine:
    # Database overrides are resolved per request so dashboard changes apply immediately.
    config = await resolve_backup_config(ctx.db)
    return get_backup_engine(config)


def _result_payload(result: BackupResult) -> BackupResultResponse:
    return BackupResultResponse(
        success=result.success,
        backup_type=result.backup_type,
        filename=result.filename,
        size=result.size,
        tables_count=result.tables_count,
        timestamp=result.timestamp,
        checksum=result.checksum,
        error=result.error,
    )


@router.post("", response_model=SuccessEnvelope[BackupResultResponse], status_code=201)
async def create_backup(
    request: Request,
    payload: BackupCreateRequest | None = None,
    actor: Actor = Depends(require_action("backup.manage")),
    ctx: RequestContext = Depends(get_request_context),
    engine: BackupEngine = Depends(get_engine),
) -> dict:
    backup_type = payload.backup_type if payload else "full"
    result = await run_backup(engine, backup_type, actor=actor, request_id=ctx.request_id)
    if not result.success:
        raise _backup_failed(result.error or "Backup failed")
    return success_response(request=request, data=_result_payload(result))


@router.get("", response_model=SuccessEnvelope[BackupListResponse])
async def list_backups(
    request: Request,
    actor: Actor = Depends(require_action("backup.manage")),
    engine: BackupEngine = Depends(get_engine),
) -> dict:
    items = [
        BackupRecordResponse(
            filename=record.filename,
            size=record.size,
            created_at=record.created_at,
            age_days=record.age_days,
            database=record.database,
            backup_type=record.backup_type,
        )
        for record in engine.list_backups()
    ]
    return success_response(request=request, data=BackupListResponse(items=items))


@router.get("/status")
async def backup_status(
    request: Request,
    actor: Actor = Depends(require_action("backup.manage")),
    engine: BackupEngine = Depends(get_engine),
) -> dict:
    status = engine.backup_status()
    status["config"] = {
        "compression_level": engine.config.compression_level,
        "max_files": engine.config.max_files,
        "retention_days": engine.config.retention_days,
        "verify_backup": engine.config.verify_backup,
        "create_checksum": engine.config.create_checksum,
        "email_on_success": engine.config.email_on_success,
        "email_on_failure": engine.config.email_on_failure,
        "daily_full": engine.config.daily_full,
        "weekly_cleanup": engine.config.weekly_cleanup,
        "time_limit_s": engine.config.time_limit_s,
    }
    return success_response(request=request, data=status)


@router.post("/cleanup", response_model=SuccessEnvelope[BackupCleanupResponse])
async def cleanup_backups(
    request: Request,
    payload: BackupCleanupRequest | None = None,
    actor: Actor = Depends(require_action("backup.manage")),
    ctx: RequestContext = Depends(get_request_context),
    engine: BackupEngine = Depends(get_engine),
) -> dict:
    # Count-based cleanup always runs; age-based pruning only when asked for.
    max_backups = payload.max_backups if payload else None
    result = await asyncio.to_thread(engine.clean_old_backups, max_backups)
    deleted = list(result.deleted)
    freed = result.freed_space
    error = result.error
    if result.success and payload is not None and payload.retention_days is not None:
        pruned = await asyncio.to_thread(engine.prune_expired, payload.retention_days)
        deleted.extend(pruned.deleted)
        freed += pruned.freed_space
        error = pruned.error
    await record_actor_event(
        ctx.db,
        actor,
        event_type="backup.pruned",
        outcome="success" if error is None else "failure",
        resource_type="backup",
        metadata={"deleted": deleted, "freed_space": freed},
        request_id=ctx.request_id,
    )
    await ctx.db.commit()
    data = BackupCleanupResponse(
        success=error is None,
        deleted_count=len(deleted),
        freed_space=freed,
        deleted=deleted,
        error=error,
    )
    return success_response(request=request, data=data)


@router.delete("/{filename}")
async def delete_backup(
    filename: str,
    request: Request,
    actor: Actor = Depends(require_action("backup.manage")),
    ctx: RequestContext = Depends(get_request_context),
    engine: BackupEngine = Depends(get_engine),
) -> dict:
    result = await asyncio.to_thread(engine.delete_backup, filename)
    await record_actor_event(
        ctx.db,
        actor,
        event_type="backup.deleted",
        outcome="success" if result.success else "failure",
        resource_type="backup",
        resource_id=filename,
        error_code=None if result.success else "BACKUP_DELETE_FAILED",
        request_id=ctx.request_id,
    )
    await ctx.db.commit()
    if not result.success:
        status_code = 404 if result.error == "Backup file not found" else 400
        raise HTTPException(
            status_code=status_code,
            detail={"code": "BACKUP_DELETE_FAILED", "message": result.error or "Delete failed"},
        )
    return success_response(request=request, data=result.to_dict())


@router.get("/{filename}/download")
async def download_backup(
    filename: str,
    actor: Actor = Depends(require_action("backup.manage")),
    ctx: RequestContext = Depends(get_request_context),
    engine: BackupEngine = Depends(get_engine),
) -> FileResponse:
    try:
        path = engine.resolve_backup_path(filename)
    except BackupError as exc:
        status_code = 404 if exc.message == "Backup file not found" else 400
        raise HTTPException(status_code=status_code, detail={"code": "BACKUP_NOT_FOUND", "message": exc.message}) from exc
    await record_actor_event(
        ctx.db,
        actor,
        event_type="backup.downloaded",
        resource_type="backup",
        resource_id=filename,
        request_id=ctx.request_id,
    )
    await ctx.db.commit()
    logger.info("backup_downloaded filename=%s user_id=%s", filename, actor.user_id)
    return FileResponse(path, media_type="application/gzip", filename=path.name)


@router.post("/{filename}/verify", response_model=SuccessEnvelope[BackupVerifyResponse])
async def verify_backup(
    filename: str,
    request: Request,
    actor: Actor = Depends(require_action("backup.manage")),
    engine: BackupEngine = Depends(get_engine),
) -> dict:
    # Verification reads the whole archive.
    result = await asyncio.to_thread(engine.verify_backup, filename)
    data = BackupVerifyResponse(
        valid=result.valid,
        filename=result.filename,
        errors=list(result.errors),
        checksum_verified=result.checksum_verified,
    )
    return success_response(request=request, data=data)
