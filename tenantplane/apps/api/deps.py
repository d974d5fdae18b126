from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, Request, status

from tenantplane.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Service is starting"},
        )
    return container


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_admin(
    request: Request,
    authorization: str | None = Header(default=None),
) -> None:
    # Ops/admin routes are disabled entirely unless an operator token is configured.
    expected = get_container(request).settings.admin_api_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Admin API is disabled"},
        )
    token = bearer_token(authorization)
    if token is None:
        raise _auth_error("Missing bearer token")
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise _auth_error("Invalid admin token")
