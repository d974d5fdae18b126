from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from tenantplane.apps.api.deps import get_container, require_admin
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import success_response
from tenantplane.services.container import ServiceContainer
from tenantplane.services.provisioning.queue import get_queue_depth
from tenantplane.services.telemetry import (
    availability,
    counters_snapshot,
    external_latency_by_integration,
    request_latency_by_class,
)


router = APIRouter(
    prefix="/ops",
    tags=["ops"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


@router.get("/ledger/stuck")
async def stuck_ledger_entries(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # Processing rows past their lease need an operator; they are never retried automatically.
    entries = await container.ledger.find_stuck(limit=limit)
    return success_response(
        request=request,
        data={"items": [entry.as_dict() for entry in entries], "count": len(entries)},
    )


@router.get("/metrics")
async def metrics(
    request: Request,
    window_s: int = Query(default=300, ge=1, le=86400),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    return success_response(
        request=request,
        data={
            "window_s": window_s,
            "availability": availability(window_s),
            "latency": request_latency_by_class(window_s),
            "external": external_latency_by_integration(window_s),
            "counters": counters_snapshot(),
            "tenant_pools": container.router.stats(),
            "registrations_in_flight": container.registration.in_flight,
            "provisioning_queue_depth": await get_queue_depth(container.settings),
        },
    )
