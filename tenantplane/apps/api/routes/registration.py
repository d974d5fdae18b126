from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from tenantplane.apps.api.deps import get_container
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import success_json
from tenantplane.services.container import ServiceContainer
from tenantplane.services.idempotency import COMPLETED, FAILED
from tenantplane.services.registration import parse_registration


router = APIRouter(prefix="/auth", tags=["registration"], responses=DEFAULT_ERROR_RESPONSES)


@router.post(
    "/register-organization",
    status_code=status.HTTP_201_CREATED,
    responses={202: {"description": "Provisioning still running; poll registration-status"}},
)
async def register_organization(
    request: Request,
    payload: dict[str, Any] = Body(...),
    container: ServiceContainer = Depends(get_container),
) -> JSONResponse:
    # Validate by hand so malformed input is a 400 that never reaches the ledger.
    data = parse_registration(payload)
    outcome = await container.registration.register(data)
    if outcome.status == COMPLETED:
        return success_json(request=request, data=outcome.as_dict(), status_code=status.HTTP_201_CREATED)
    if outcome.status == FAILED:
        raise HTTPException(
            status_code=outcome.error_status,
            detail={
                "code": outcome.error_code or "PROVISIONING_FAILED",
                "message": outcome.error_message or "Registration failed",
                "idempotency_key": outcome.idempotency_key,
                "cached": outcome.cached,
            },
        )
    return success_json(request=request, data=outcome.as_dict(), status_code=status.HTTP_202_ACCEPTED)


@router.get("/registration-status/{idempotency_key}")
async def registration_status(
    idempotency_key: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> JSONResponse:
    outcome = await container.registration.status(idempotency_key)
    if outcome is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "REGISTRATION_NOT_FOUND", "message": "No registration for this key"},
        )
    return success_json(request=request, data=outcome.as_dict())
