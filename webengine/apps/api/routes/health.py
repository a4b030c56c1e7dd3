from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from webengine.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from webengine.apps.api.response import SuccessEnvelope, success_response
from webengine.persistence.db import ping

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Report degraded instead of failing so load balancers can tell the two apart.
    try:
        await ping()
        database = "ok"
    except (SQLAlchemyError, OSError):
        logger.warning("health_database_unreachable", exc_info=True)
        database = "unavailable"
    payload = HealthResponse(status="ok" if database == "ok" else "degraded", database=database)
    return success_response(request=request, data=payload)
