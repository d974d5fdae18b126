from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.core.errors import (
    ConflictingLinkError,
    DuplicateTenantError,
    InvalidTransitionError,
    TenantNotFoundError,
)
from tenantplane.domain import state
from tenantplane.domain.models import TenantRegistryEntry


logger = logging.getLogger(__name__)


async def get_tenant(session: AsyncSession, tenant_id: str) -> TenantRegistryEntry | None:
    result = await session.execute(
        select(TenantRegistryEntry).where(TenantRegistryEntry.id == tenant_id)
    )
    return result.scalar_one_or_none()


async def require_tenant(session: AsyncSession, tenant_id: str) -> TenantRegistryEntry:
    tenant = await get_tenant(session, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found")
    return tenant


async def find_by_slug(session: AsyncSession, slug: str) -> TenantRegistryEntry | None:
    result = await session.execute(
        select(TenantRegistryEntry).where(TenantRegistryEntry.slug == slug)
    )
    return result.scalar_one_or_none()


async def find_by_external_org(
    session: AsyncSession, external_org_id: str
) -> TenantRegistryEntry | None:
    result = await session.execute(
        select(TenantRegistryEntry).where(TenantRegistryEntry.external_org_id == external_org_id)
    )
    return result.scalar_one_or_none()


async def create_tenant(
    session: AsyncSession,
    *,
    slug: str,
    display_name: str,
    plan: str,
    external_org_id: str | None = None,
) -> TenantRegistryEntry:
    # Rely on the unique constraints instead of check-then-insert so concurrent creators cannot both win.
    tenant = TenantRegistryEntry(
        slug=slug,
        display_name=display_name,
        plan=plan,
        external_org_id=external_org_id,
        status=state.PENDING,
    )
    session.add(tenant)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        if external_org_id and await find_by_external_org(session, external_org_id) is not None:
            raise DuplicateTenantError(
                f"External organization {external_org_id} is already registered",
                field="external_org_id",
            ) from exc
        raise DuplicateTenantError(f"Slug {slug} is already taken", field="slug") from exc
    return tenant


async def set_status(
    session: AsyncSession,
    tenant_id: str,
    target: str,
    *,
    failure_reason: str | None = None,
) -> TenantRegistryEntry:
    tenant = await require_tenant(session, tenant_id)
    current = tenant.status
    state.ensure_transition(current, target)
    now = datetime.now(timezone.utc)
    values: dict[str, object] = {"status": target, "updated_at": now}
    if target == state.ACTIVE:
        values["activated_at"] = now
        values["failure_reason"] = None
    if target == state.FAILED:
        values["failure_reason"] = failure_reason
    # Compare-and-set on the observed status so a concurrent transition cannot be overwritten.
    result = await session.execute(
        update(TenantRegistryEntry)
        .where(TenantRegistryEntry.id == tenant_id, TenantRegistryEntry.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise InvalidTransitionError(f"Tenant {tenant_id} changed status concurrently")
    await session.commit()
    await session.refresh(tenant)
    logger.info("tenant_status_changed tenant_id=%s from=%s to=%s", tenant_id, current, target)
    return tenant


async def link_external_org(
    session: AsyncSession, tenant_id: str, external_org_id: str
) -> TenantRegistryEntry:
    tenant = await require_tenant(session, tenant_id)
    if tenant.external_org_id == external_org_id:
        return tenant
    owner = await find_by_external_org(session, external_org_id)
    if owner is not None:
        raise ConflictingLinkError(
            f"External organization {external_org_id} is linked to another tenant"
        )
    if tenant.external_org_id is not None:
        raise ConflictingLinkError(f"Tenant {tenant_id} is already linked to another organization")
    tenant.external_org_id = external_org_id
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictingLinkError(
            f"External organization {external_org_id} is linked to another tenant"
        ) from exc
    return tenant


async def record_connection(
    session: AsyncSession,
    tenant_id: str,
    *,
    connection_descriptor: str,
    database_name: str,
) -> TenantRegistryEntry:
    tenant = await require_tenant(session, tenant_id)
    tenant.connection_descriptor = connection_descriptor
    tenant.database_name = database_name
    await session.commit()
    return tenant
