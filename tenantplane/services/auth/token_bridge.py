from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.errors import (
    ConflictError,
    InvalidCredentialError,
    LinkageFailureError,
    MissingOrganizationError,
    TenantNotProvisionedError,
)
from tenantplane.domain import state
from tenantplane.domain.models import GlobalUser, TenantRegistryEntry
from tenantplane.persistence.connections import ConnectionRouter
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.persistence.repos import users as users_repo
from tenantplane.services.auth.credentials import CredentialChain, ForeignIdentity
from tenantplane.services.auth.tokens import TokenMinter, TokenPair, TokenSubject
from tenantplane.services.telemetry import increment_counter
from tenantplane.services.workspace.linkage import ensure_user_linkage, resolve_workspace_id


logger = logging.getLogger(__name__)


class TokenBridge:
    """Exchange a foreign identity credential for a downstream token pair."""

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        router: ConnectionRouter,
        credentials: CredentialChain,
        minter: TokenMinter,
    ) -> None:
        self._session_factory = session_factory
        self._router = router
        self._credentials = credentials
        self._minter = minter

    async def _active_tenant(self, org_id: str) -> TenantRegistryEntry:
        async with self._session_factory() as session:
            tenant = await tenants_repo.find_by_external_org(session, org_id)
        if tenant is None or tenant.status != state.ACTIVE or not tenant.connection_descriptor:
            raise TenantNotProvisionedError(f"No active tenant for organization {org_id}")
        return tenant

    async def _resolve_user(self, identity: ForeignIdentity, tenant_id: str) -> GlobalUser:
        # Credential email wins; otherwise reuse what earlier events recorded for this subject.
        async with self._session_factory() as session:
            user = await users_repo.find_by_identity(
                session, external_user_id=identity.subject, email=identity.email
            )
            if user is not None and user.external_user_id is None:
                await users_repo.attach_external_id(session, user, identity.subject)
            if user is None:
                if not identity.email:
                    raise LinkageFailureError("Credential carries no email and the user is unknown")
                user, _ = await users_repo.create_user(
                    session,
                    email=identity.email,
                    external_user_id=identity.subject,
                    first_name=identity.first_name,
                    last_name=identity.last_name,
                    tenant_id=tenant_id,
                )
            elif user.tenant_id != tenant_id:
                if user.tenant_id is not None:
                    logger.info(
                        "user_tenant_relinked user_id=%s from_tenant=%s to_tenant=%s",
                        user.id,
                        user.tenant_id,
                        tenant_id,
                    )
                await users_repo.link_tenant(session, user, tenant_id)
            if not user.is_active:
                raise InvalidCredentialError("User is no longer active")
            await users_repo.touch_login(session, user)
            return user

    async def _mint_for(
        self,
        user: GlobalUser,
        tenant: TenantRegistryEntry,
        *,
        email: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> tuple[TokenPair, str]:
        engine = await self._router.pool(tenant.connection_descriptor)
        workspace_id = await resolve_workspace_id(engine, tenant.id)
        linkage = await ensure_user_linkage(
            engine,
            workspace_id=workspace_id,
            email=email,
            first_name=first_name,
            last_name=last_name,
            user_id=user.id,
        )
        if linkage.user_id != user.id:
            # Rows seeded before ids were shared keep their own id; claims still carry the global one.
            logger.warning(
                "downstream_user_id_mismatch tenant_id=%s user_id=%s downstream_id=%s",
                tenant.id,
                user.id,
                linkage.user_id,
            )
        pair = self._minter.mint_pair(
            TokenSubject(
                user_id=user.id,
                tenant_id=tenant.id,
                workspace_id=linkage.workspace_id,
                user_workspace_id=linkage.user_workspace_id,
            )
        )
        return pair, linkage.workspace_id

    async def exchange(self, credential: str) -> TokenPair:
        identity = await self._credentials.verify(credential)
        if not identity.org_id:
            raise MissingOrganizationError("Credential has no active organization")
        tenant = await self._active_tenant(identity.org_id)
        try:
            user = await self._resolve_user(identity, tenant.id)
        except ConflictError as exc:
            raise LinkageFailureError("Global user record conflicts with credential") from exc
        pair, workspace_id = await self._mint_for(
            user,
            tenant,
            email=identity.email or user.email,
            first_name=identity.first_name,
            last_name=identity.last_name,
        )
        increment_counter("token_exchanges_total")
        logger.info(
            "token_exchanged tenant_id=%s workspace_id=%s verifier=%s",
            tenant.id,
            workspace_id,
            identity.verifier,
        )
        return pair

    async def verify(self, credential: str) -> dict[str, Any]:
        # Read-only: never creates users or links.
        identity = await self._credentials.verify(credential)
        tenant_view = None
        if identity.org_id:
            async with self._session_factory() as session:
                tenant = await tenants_repo.find_by_external_org(session, identity.org_id)
            if tenant is not None:
                tenant_view = {
                    "tenant_id": tenant.id,
                    "slug": tenant.slug,
                    "status": tenant.status,
                    "plan": tenant.plan,
                }
        return {**identity.as_dict(), "tenant": tenant_view}

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Mint a new pair for the refresh token's user.

        Tenant and workspace come from the user's current registry link, so a user moved
        or deactivated since the last exchange never gets the stale claims back.
        """
        user_id = self._minter.decode_refresh(refresh_token)
        async with self._session_factory() as session:
            user = await users_repo.get_user(session, user_id)
            if user is None or not user.is_active:
                raise InvalidCredentialError("User is no longer active")
            if user.tenant_id is None:
                raise TenantNotProvisionedError("User is not linked to a tenant")
            tenant = await tenants_repo.get_tenant(session, user.tenant_id)
        if tenant is None or tenant.status != state.ACTIVE or not tenant.connection_descriptor:
            raise TenantNotProvisionedError("Tenant is no longer active")
        pair, _ = await self._mint_for(
            user, tenant, email=user.email, first_name=user.first_name, last_name=user.last_name
        )
        increment_counter("token_refreshes_total")
        return pair
