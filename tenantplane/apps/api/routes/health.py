from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tenantplane.apps.api.deps import get_container
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import SuccessEnvelope, success_response
from tenantplane.services.container import ServiceContainer


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    tenant_pools: int


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, container: ServiceContainer = Depends(get_container)) -> dict:
    # Report catalog reachability; a down catalog degrades health but never 500s the check.
    database = "ok"
    try:
        async with container.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        logger.warning("health_database_unreachable")
        database = "unavailable"
    payload = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        tenant_pools=len(container.router),
    )
    return success_response(request=request, data=payload)
