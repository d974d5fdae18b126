from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from tenantplane.core.config import Settings
from tenantplane.core.errors import InvalidCredentialError


ACCESS = "ACCESS"
REFRESH = "REFRESH"
ADMIN = "ADMIN"
_ALGORITHM = "HS256"


@dataclass(frozen=True)
class SignedToken:
    token: str
    expires_at: datetime

    def as_dict(self) -> dict[str, str]:
        return {"token": self.token, "expires_at": self.expires_at.isoformat()}


@dataclass(frozen=True)
class TokenPair:
    access: SignedToken
    refresh: SignedToken

    def as_dict(self) -> dict[str, Any]:
        return {"access_token": self.access.as_dict(), "refresh_token": self.refresh.as_dict()}


@dataclass(frozen=True)
class TokenSubject:
    user_id: str
    tenant_id: str
    workspace_id: str
    user_workspace_id: str


class TokenMinter:
    """Sign credentials in the downstream application's own HS256 format."""

    def __init__(
        self,
        *,
        secret: str,
        access_ttl_s: int,
        refresh_ttl_s: int,
        admin_ttl_s: int,
        auth_provider: str,
    ) -> None:
        self._secret = secret
        self._access_ttl = timedelta(seconds=access_ttl_s)
        self._refresh_ttl = timedelta(seconds=refresh_ttl_s)
        self._admin_ttl = timedelta(seconds=admin_ttl_s)
        self._auth_provider = auth_provider

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenMinter":
        return cls(
            secret=settings.downstream_jwt_secret,
            access_ttl_s=settings.access_token_ttl_s,
            refresh_ttl_s=settings.refresh_token_ttl_s,
            admin_ttl_s=settings.admin_token_ttl_s,
            auth_provider=settings.idp_auth_provider,
        )

    def _sign(self, claims: dict[str, Any], ttl: timedelta, now: datetime) -> SignedToken:
        expires_at = now + ttl
        payload = {**claims, "iat": int(now.timestamp()), "exp": int(expires_at.timestamp())}
        return SignedToken(token=jwt.encode(payload, self._secret, algorithm=_ALGORITHM), expires_at=expires_at)

    def mint_pair(self, subject: TokenSubject, *, now: datetime | None = None) -> TokenPair:
        issued_at = now or datetime.now(timezone.utc)
        access = self._sign(
            {
                "sub": subject.user_id,
                "userId": subject.user_id,
                "tenantId": subject.tenant_id,
                "workspaceId": subject.workspace_id,
                "userWorkspaceId": subject.user_workspace_id,
                "authProvider": self._auth_provider,
                "type": ACCESS,
            },
            self._access_ttl,
            issued_at,
        )
        # Only the user identity; refresh resolves tenant and workspace again from the registry.
        refresh = self._sign(
            {
                "sub": subject.user_id,
                "userId": subject.user_id,
                "authProvider": self._auth_provider,
                "targetedTokenType": ACCESS,
                "type": REFRESH,
            },
            self._refresh_ttl,
            issued_at,
        )
        return TokenPair(access=access, refresh=refresh)

    def mint_admin_token(self, *, user_id: str, tenant_id: str, role: str = "admin") -> SignedToken:
        return self._sign(
            {
                "sub": user_id,
                "userId": user_id,
                "tenantId": tenant_id,
                "role": role,
                "type": ADMIN,
            },
            self._admin_ttl,
            datetime.now(timezone.utc),
        )

    def decode(self, token: str) -> dict[str, Any]:
        try:
            return jwt.decode(token, self._secret, algorithms=[_ALGORITHM])
        except jwt.ExpiredSignatureError as exc:
            raise InvalidCredentialError("Token has expired") from exc
        except jwt.PyJWTError as exc:
            raise InvalidCredentialError("Token is invalid") from exc

    def decode_refresh(self, token: str) -> str:
        """Return the internal user id a valid refresh token was issued to."""
        claims = self.decode(token)
        # Access tokens share the signing key; only the type claims tell them apart.
        if claims.get("type") != REFRESH or claims.get("targetedTokenType") != ACCESS:
            raise InvalidCredentialError("Token is not a refresh token")
        user_id = claims.get("userId") or claims.get("sub")
        if not user_id:
            raise InvalidCredentialError("Refresh token is missing claims")
        return str(user_id)

    def decode_access(self, token: str) -> dict[str, Any]:
        claims = self.decode(token)
        if claims.get("type") != ACCESS:
            raise InvalidCredentialError("Token is not an access token")
        return claims
