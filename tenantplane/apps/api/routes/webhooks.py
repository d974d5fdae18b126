from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from tenantplane.apps.api.deps import get_container
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import success_response
from tenantplane.services.container import ServiceContainer


router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


@router.post("/identity")
async def identity_webhook(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # Signatures cover the exact raw bytes, so read the body before any JSON parsing.
    body = await request.body()
    result = await container.events.handle_delivery(headers=request.headers, body=body)
    return success_response(request=request, data=result.as_dict())
