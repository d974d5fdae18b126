from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.errors import (
    DuplicateTenantError,
    ProvisioningFailedError,
    SlugExhaustedError,
    TenantPlaneError,
    ValidationError,
)
from tenantplane.domain import state
from tenantplane.domain.models import TenantRegistryEntry
from tenantplane.persistence.connections import ConnectionRouter
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.persistence.repos import users as users_repo
from tenantplane.services.auth.passwords import hash_password
from tenantplane.services.auth.tokens import TokenMinter
from tenantplane.services.provisioning.slugs import candidate_slugs
from tenantplane.services.provisioning.stores import DataStoreAllocator
from tenantplane.services.telemetry import increment_counter
from tenantplane.services.workspace.initializer import InitializationReport, WorkspaceInitializer


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisioningRequest:
    organization_name: str
    plan: str = "free"
    admin_email: str | None = None
    admin_password: str | None = field(default=None, repr=False)
    external_org_id: str | None = None


@dataclass(frozen=True)
class ProvisioningResult:
    tenant_id: str
    slug: str
    display_name: str
    plan: str
    status: str
    external_org_id: str | None
    workspace_id: str
    database_name: str | None
    admin_user_id: str | None = None
    admin_token: str | None = None
    admin_token_expires_at: str | None = None
    initialization: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "slug": self.slug,
            "display_name": self.display_name,
            "plan": self.plan,
            "status": self.status,
            "external_org_id": self.external_org_id,
            "workspace_id": self.workspace_id,
            "database_name": self.database_name,
            "admin_user_id": self.admin_user_id,
            "admin_token": self.admin_token,
            "admin_token_expires_at": self.admin_token_expires_at,
            "initialization": self.initialization,
        }


class Provisioner:
    """Drive a tenant from pending to active (or failed) through allocation and seeding.

    There is no physical rollback: a failure leaves the registry row ``failed`` with its
    slug and external organization still reserved until an operator cleans it up.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        router: ConnectionRouter,
        allocator: DataStoreAllocator,
        initializer: WorkspaceInitializer,
        minter: TokenMinter,
        workspace_features: frozenset[str],
        slug_max_attempts: int = 5,
    ) -> None:
        self._session_factory = session_factory
        self._router = router
        self._allocator = allocator
        self._initializer = initializer
        self._minter = minter
        self._workspace_features = workspace_features
        self._slug_max_attempts = max(1, slug_max_attempts)

    async def provision(self, request: ProvisioningRequest) -> ProvisioningResult:
        if request.plan not in state.PLANS:
            raise ValidationError(f"Unknown plan: {request.plan}")
        tenant = await self._reserve(request)
        logger.info("tenant_provisioning_started tenant_id=%s slug=%s", tenant.id, tenant.slug)
        try:
            result = await self._build(tenant, request)
        except Exception as exc:
            reason = _failure_reason(exc)
            logger.exception("tenant_provisioning_failed tenant_id=%s reason=%s", tenant.id, reason)
            increment_counter("tenant_provisioning_failed_total")
            await self._mark_failed(tenant.id, reason)
            raise ProvisioningFailedError("Tenant provisioning failed", tenant_id=tenant.id) from exc
        increment_counter("tenant_provisioned_total")
        logger.info("tenant_provisioning_completed tenant_id=%s slug=%s", tenant.id, tenant.slug)
        return result

    async def _reserve(self, request: ProvisioningRequest) -> TenantRegistryEntry:
        # The unique insert is the collision check; a lost race just moves on to the next candidate.
        for slug in candidate_slugs(request.organization_name, self._slug_max_attempts):
            async with self._session_factory() as session:
                try:
                    tenant = await tenants_repo.create_tenant(
                        session,
                        slug=slug,
                        display_name=request.organization_name,
                        plan=request.plan,
                        external_org_id=request.external_org_id,
                    )
                except DuplicateTenantError as exc:
                    if exc.field != "slug":
                        raise
                    logger.info("tenant_slug_taken slug=%s", slug)
                    continue
                return await tenants_repo.set_status(session, tenant.id, state.PROVISIONING)
        raise SlugExhaustedError(
            f"No free slug for {request.organization_name!r} after {self._slug_max_attempts} attempts"
        )

    async def _build(self, tenant: TenantRegistryEntry, request: ProvisioningRequest) -> ProvisioningResult:
        store = await self._allocator.allocate(tenant_id=tenant.id, slug=tenant.slug)
        async with self._session_factory() as session:
            await tenants_repo.record_connection(
                session,
                tenant.id,
                connection_descriptor=store.connection_descriptor,
                database_name=store.database_name,
            )
        engine = await self._router.pool(store.connection_descriptor)
        seeded_admin_id = await self._admin_global_id(request.admin_email)
        report: InitializationReport = await self._initializer.initialize(
            engine,
            tenant_id=tenant.id,
            display_name=tenant.display_name,
            admin_email=request.admin_email,
            requested=self._workspace_features,
            admin_user_id=seeded_admin_id,
        )

        admin_user_id = None
        admin_token = None
        async with self._session_factory() as session:
            if request.admin_email and request.admin_password:
                admin = await users_repo.upsert_admin_user(
                    session,
                    email=request.admin_email,
                    tenant_id=tenant.id,
                    password_hash=hash_password(request.admin_password),
                    user_id=seeded_admin_id,
                )
                admin_user_id = admin.id
                admin_token = self._minter.mint_admin_token(user_id=admin.id, tenant_id=tenant.id)
            activated = await tenants_repo.set_status(session, tenant.id, state.ACTIVE)

        return ProvisioningResult(
            tenant_id=activated.id,
            slug=activated.slug,
            display_name=activated.display_name,
            plan=activated.plan,
            status=activated.status,
            external_org_id=activated.external_org_id,
            workspace_id=report.workspace_id,
            database_name=activated.database_name,
            admin_user_id=admin_user_id,
            admin_token=admin_token.token if admin_token else None,
            admin_token_expires_at=admin_token.expires_at.isoformat() if admin_token else None,
            initialization=report.as_dict(),
        )

    async def _admin_global_id(self, admin_email: str | None) -> str | None:
        # The seeded downstream admin row shares its id with the global user.
        if not admin_email:
            return None
        async with self._session_factory() as session:
            existing = await users_repo.find_by_email(session, admin_email)
        return existing.id if existing is not None else uuid4().hex

    async def _mark_failed(self, tenant_id: str, reason: str) -> None:
        try:
            async with self._session_factory() as session:
                await tenants_repo.set_status(session, tenant_id, state.FAILED, failure_reason=reason)
        except Exception:  # noqa: BLE001 - the original provisioning error is what surfaces
            logger.exception("tenant_mark_failed_error tenant_id=%s", tenant_id)


def _failure_reason(exc: BaseException) -> str:
    if isinstance(exc, TenantPlaneError):
        return f"{exc.code}: {exc.message}"
    return f"INTERNAL_ERROR: {type(exc).__name__}"
