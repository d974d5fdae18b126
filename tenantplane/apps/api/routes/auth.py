from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from tenantplane.apps.api.deps import bearer_token, get_container
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import success_response
from tenantplane.core.errors import InvalidCredentialError
from tenantplane.services.container import ServiceContainer


router = APIRouter(prefix="/auth", tags=["token-bridge"], responses=DEFAULT_ERROR_RESPONSES)


class TokenExchangeRequest(BaseModel):
    credential: str = Field(min_length=1)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


@router.post("/token")
async def exchange_token(
    body: TokenExchangeRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    pair = await container.token_bridge.exchange(body.credential)
    return success_response(request=request, data=pair.as_dict())


@router.post("/refresh")
async def refresh_token(
    body: TokenRefreshRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    pair = await container.token_bridge.refresh(body.refresh_token)
    return success_response(request=request, data=pair.as_dict())


@router.get("/verify")
async def verify_credential(
    request: Request,
    authorization: str | None = Header(default=None),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    credential = bearer_token(authorization)
    if credential is None:
        raise InvalidCredentialError("Missing bearer credential")
    view = await container.token_bridge.verify(credential)
    return success_response(request=request, data=view)
