from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
import time
from typing import Any, Iterable, Protocol

import httpx
import jwt

from tenantplane.core.config import Settings
from tenantplane.core.errors import IntegrationUnavailableError, InvalidCredentialError
from tenantplane.services.resilience import RetryPolicy, retry_async
from tenantplane.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

VERIFIED = "verified"
NOT_APPLICABLE = "not_applicable"
REJECTED = "rejected"

_ASYMMETRIC_ALGS = {"RS256", "RS384", "RS512", "ES256", "ES384", "ES512"}


@dataclass(frozen=True)
class ForeignIdentity:
    subject: str
    org_id: str | None
    org_role: str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    session_id: str | None = None
    verifier: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "org_id": self.org_id,
            "org_role": self.org_role,
            "email": self.email,
            "session_id": self.session_id,
            "verifier": self.verifier,
        }


@dataclass(frozen=True)
class VerificationOutcome:
    status: str
    identity: ForeignIdentity | None = None
    reason: str | None = None

    @classmethod
    def verified(cls, identity: ForeignIdentity) -> "VerificationOutcome":
        return cls(status=VERIFIED, identity=identity)

    @classmethod
    def not_applicable(cls) -> "VerificationOutcome":
        return cls(status=NOT_APPLICABLE)

    @classmethod
    def rejected(cls, reason: str) -> "VerificationOutcome":
        return cls(status=REJECTED, reason=reason)


class CredentialVerifier(Protocol):
    name: str

    async def verify(self, credential: str) -> VerificationOutcome:
        ...


def identity_from_claims(claims: dict[str, Any], *, verifier: str) -> ForeignIdentity:
    # Accept both flat org claims and the compact "o" organization claim.
    compact_org = claims.get("o") if isinstance(claims.get("o"), dict) else {}
    return ForeignIdentity(
        subject=str(claims["sub"]),
        org_id=claims.get("org_id") or compact_org.get("id"),
        org_role=claims.get("org_role") or compact_org.get("rol"),
        email=claims.get("email") or claims.get("primary_email"),
        first_name=claims.get("first_name") or claims.get("given_name"),
        last_name=claims.get("last_name") or claims.get("family_name"),
        session_id=claims.get("sid"),
        verifier=verifier,
    )


def _looks_like_jwt(credential: str) -> bool:
    return credential.count(".") == 2


def _unverified_alg(credential: str) -> str | None:
    try:
        return jwt.get_unverified_header(credential).get("alg")
    except jwt.PyJWTError:
        return None


class SessionLookupVerifier:
    """Resolve opaque provider session handles through the provider's session API."""

    name = "session_lookup"

    def __init__(
        self,
        *,
        api_url: str,
        secret_key: str | None,
        prefixes: Iterable[str],
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 8.0,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._secret_key = secret_key
        self._prefixes = tuple(prefixes)
        self._client = client
        self._timeout_s = timeout_s
        self._retry_policy = retry_policy

    async def _get(self, path: str) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self._secret_key}"}
        url = f"{self._api_url}{path}"
        if self._client is not None:
            response = await self._client.get(url, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.get(url, headers=headers)
        # 4xx answers are verification outcomes; only 5xx is an outage.
        if response.status_code >= 500:
            response.raise_for_status()
        return response

    async def _fetch(self, path: str) -> httpx.Response:
        start = time.monotonic()
        success = False
        try:
            response = await retry_async(
                lambda: self._get(path),
                integration="idp_sessions",
                policy=self._retry_policy,
            )
            success = True
            return response
        except (httpx.HTTPError, TimeoutError, OSError) as exc:
            logger.warning("idp_session_lookup_unavailable error=%s", type(exc).__name__)
            raise IntegrationUnavailableError("Identity provider is unavailable") from exc
        finally:
            record_external_call(
                integration="idp_sessions",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    async def verify(self, credential: str) -> VerificationOutcome:
        if not credential.startswith(self._prefixes):
            return VerificationOutcome.not_applicable()
        if not self._secret_key:
            return VerificationOutcome.rejected("session_lookup_not_configured")
        response = await self._fetch(f"/v1/sessions/{credential}")
        if response.status_code in (401, 403, 404):
            return VerificationOutcome.rejected("session_not_found")
        if response.status_code >= 400:
            return VerificationOutcome.rejected(f"session_lookup_status_{response.status_code}")
        session = _json_object(response)
        if session is None:
            return VerificationOutcome.rejected("invalid_session_payload")
        if session.get("status") not in (None, "active"):
            return VerificationOutcome.rejected("session_not_active")
        user_id = session.get("user_id")
        if not user_id:
            return VerificationOutcome.rejected("session_without_user")
        email = session.get("email")
        first_name = last_name = None
        if not email:
            # Sessions do not embed the profile; fetch the user for the email link.
            user_response = await self._fetch(f"/v1/users/{user_id}")
            user = _json_object(user_response) if user_response.status_code < 400 else None
            if user is None:
                logger.warning("session_user_lookup_unusable status=%s", user_response.status_code)
            else:
                email = _primary_email(user)
                first_name = user.get("first_name")
                last_name = user.get("last_name")
        return VerificationOutcome.verified(
            ForeignIdentity(
                subject=str(user_id),
                org_id=session.get("org_id") or session.get("last_active_organization_id"),
                org_role=session.get("org_role"),
                email=email,
                first_name=first_name,
                last_name=last_name,
                session_id=session.get("id") or credential,
                verifier=self.name,
            )
        )


def _json_object(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _primary_email(user: dict[str, Any]) -> str | None:
    addresses = user.get("email_addresses") or []
    primary_id = user.get("primary_email_address_id")
    for address in addresses:
        if address.get("id") == primary_id:
            return address.get("email_address")
    return addresses[0].get("email_address") if addresses else None


class JwksVerifier:
    """Verify provider-signed RS/ES JWTs against the provider JWKS."""

    name = "jwks"

    def __init__(
        self,
        *,
        jwks_url: str | None,
        issuer: str | None = None,
        audience: str | None = None,
        clock_skew_seconds: int = 60,
        cache_ttl_s: int = 300,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 8.0,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._jwks_url = jwks_url
        self._issuer = issuer
        self._audience = audience
        self._clock_skew_seconds = clock_skew_seconds
        self._cache_ttl_s = cache_ttl_s
        self._client = client
        self._timeout_s = timeout_s
        self._retry_policy = retry_policy
        self._cached: tuple[float, dict[str, Any]] | None = None
        self._lock = asyncio.Lock()

    async def _get_jwks(self, url: str) -> httpx.Response:
        if self._client is not None:
            response = await self._client.get(url)
        else:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.get(url)
        response.raise_for_status()
        return response

    async def _fetch_jwks(self) -> dict[str, Any]:
        url = self._jwks_url
        if not url:
            raise IntegrationUnavailableError("Identity provider JWKS URL is not configured")
        start = time.monotonic()
        success = False
        try:
            response = await retry_async(
                lambda: self._get_jwks(url), integration="idp_jwks", policy=self._retry_policy
            )
            jwks = _json_object(response)
            if jwks is None:
                raise IntegrationUnavailableError("Identity provider JWKS payload is malformed")
            success = True
            return jwks
        except (httpx.HTTPError, TimeoutError, OSError) as exc:
            raise IntegrationUnavailableError("Identity provider JWKS is unavailable") from exc
        finally:
            record_external_call(
                integration="idp_jwks",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    async def _jwks(self, *, refresh: bool = False) -> dict[str, Any]:
        async with self._lock:
            now = time.monotonic()
            if not refresh and self._cached and now - self._cached[0] < self._cache_ttl_s:
                return self._cached[1]
            jwks = await self._fetch_jwks()
            self._cached = (now, jwks)
            return jwks

    @staticmethod
    def _select_jwk(jwks: dict[str, Any], kid: str | None) -> dict[str, Any] | None:
        keys = jwks.get("keys") or []
        if kid:
            for key in keys:
                if key.get("kid") == kid:
                    return key
        if len(keys) == 1:
            return keys[0]
        return None

    @staticmethod
    def _jwk_to_key(jwk: dict[str, Any], alg: str) -> Any:
        # Convert a JWK payload into a cryptography key for PyJWT.
        payload = json.dumps(jwk)
        if alg.startswith("RS"):
            return jwt.algorithms.RSAAlgorithm.from_jwk(payload)
        return jwt.algorithms.ECAlgorithm.from_jwk(payload)

    async def verify(self, credential: str) -> VerificationOutcome:
        if not self._jwks_url or not _looks_like_jwt(credential):
            return VerificationOutcome.not_applicable()
        alg = _unverified_alg(credential)
        if alg not in _ASYMMETRIC_ALGS:
            return VerificationOutcome.not_applicable()
        kid = jwt.get_unverified_header(credential).get("kid")
        jwk = self._select_jwk(await self._jwks(), kid)
        if jwk is None:
            # Provider may have rotated keys since the cache was filled.
            jwk = self._select_jwk(await self._jwks(refresh=True), kid)
        if jwk is None:
            return VerificationOutcome.rejected("unknown_signing_key")
        options = {"verify_aud": self._audience is not None}
        try:
            claims = jwt.decode(
                credential,
                self._jwk_to_key(jwk, alg),
                algorithms=[alg],
                audience=self._audience,
                issuer=self._issuer,
                leeway=self._clock_skew_seconds,
                options=options,
            )
        except jwt.ExpiredSignatureError:
            return VerificationOutcome.rejected("token_expired")
        except jwt.PyJWTError as exc:
            logger.info("jwks_token_rejected error=%s", type(exc).__name__)
            return VerificationOutcome.rejected("invalid_token")
        if not claims.get("sub"):
            return VerificationOutcome.rejected("missing_subject")
        return VerificationOutcome.verified(identity_from_claims(claims, verifier=self.name))


class SharedSecretVerifier:
    """Verify HS256 provider tokens signed with a shared secret (dev/test installs)."""

    name = "shared_secret"

    def __init__(self, *, secret: str | None, clock_skew_seconds: int = 60) -> None:
        self._secret = secret
        self._clock_skew_seconds = clock_skew_seconds

    async def verify(self, credential: str) -> VerificationOutcome:
        if not self._secret or not _looks_like_jwt(credential):
            return VerificationOutcome.not_applicable()
        if _unverified_alg(credential) != "HS256":
            return VerificationOutcome.not_applicable()
        try:
            claims = jwt.decode(
                credential,
                self._secret,
                algorithms=["HS256"],
                leeway=self._clock_skew_seconds,
                options={"verify_aud": False},
            )
        except jwt.ExpiredSignatureError:
            return VerificationOutcome.rejected("token_expired")
        except jwt.PyJWTError:
            return VerificationOutcome.rejected("invalid_token")
        if not claims.get("sub"):
            return VerificationOutcome.rejected("missing_subject")
        return VerificationOutcome.verified(identity_from_claims(claims, verifier=self.name))


class CredentialChain:
    """Ordered verifier strategies; the first verified outcome wins."""

    def __init__(self, verifiers: Iterable[CredentialVerifier]) -> None:
        self._verifiers = list(verifiers)

    @property
    def names(self) -> list[str]:
        return [verifier.name for verifier in self._verifiers]

    async def verify(self, credential: str) -> ForeignIdentity:
        if not credential or not credential.strip():
            raise InvalidCredentialError("Credential is empty")
        credential = credential.strip()
        reasons: list[str] = []
        for verifier in self._verifiers:
            outcome = await verifier.verify(credential)
            if outcome.status == VERIFIED and outcome.identity is not None:
                return outcome.identity
            if outcome.status == REJECTED:
                reasons.append(f"{verifier.name}:{outcome.reason}")
        logger.info("credential_rejected reasons=%s", ",".join(reasons) or "no_applicable_verifier")
        raise InvalidCredentialError(
            "Credential was rejected" if reasons else "Credential format is not recognized"
        )


def build_credential_chain(settings: Settings, *, client: httpx.AsyncClient | None = None) -> CredentialChain:
    timeout_s = settings.ext_call_timeout_ms / 1000
    retry_policy = RetryPolicy.from_settings(settings)
    return CredentialChain(
        [
            SessionLookupVerifier(
                api_url=settings.idp_api_url,
                secret_key=settings.idp_secret_key,
                prefixes=settings.session_prefixes(),
                client=client,
                timeout_s=timeout_s,
                retry_policy=retry_policy,
            ),
            JwksVerifier(
                jwks_url=settings.idp_jwks_url,
                issuer=settings.idp_issuer,
                audience=settings.idp_audience,
                clock_skew_seconds=settings.idp_clock_skew_seconds,
                cache_ttl_s=settings.idp_jwks_cache_ttl_s,
                client=client,
                timeout_s=timeout_s,
                retry_policy=retry_policy,
            ),
            SharedSecretVerifier(
                secret=settings.idp_shared_secret,
                clock_skew_seconds=settings.idp_clock_skew_seconds,
            ),
        ]
    )
