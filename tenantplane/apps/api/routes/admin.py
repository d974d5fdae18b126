from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from tenantplane.apps.api.deps import get_container, require_admin
from tenantplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantplane.apps.api.response import success_response
from tenantplane.domain import state
from tenantplane.domain.models import TenantRegistryEntry
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.services.container import ServiceContainer


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class TenantView(BaseModel):
    id: str
    slug: str
    display_name: str
    external_org_id: str | None
    database_name: str | None
    status: str
    plan: str
    failure_reason: str | None
    created_at: str | None
    activated_at: str | None


def _view(tenant: TenantRegistryEntry) -> TenantView:
    # The connection descriptor can embed credentials; it is never returned.
    return TenantView(
        id=tenant.id,
        slug=tenant.slug,
        display_name=tenant.display_name,
        external_org_id=tenant.external_org_id,
        database_name=tenant.database_name,
        status=tenant.status,
        plan=tenant.plan,
        failure_reason=tenant.failure_reason,
        created_at=tenant.created_at.isoformat() if tenant.created_at else None,
        activated_at=tenant.activated_at.isoformat() if tenant.activated_at else None,
    )


@router.get("/tenants/{tenant_id}")
async def get_tenant(
    tenant_id: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    async with container.session_factory() as session:
        tenant = await tenants_repo.require_tenant(session, tenant_id)
    return success_response(request=request, data=_view(tenant))


@router.post("/tenants/{tenant_id}/deactivate")
async def deactivate_tenant(
    tenant_id: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # Status change only; the tenant store and registry row are kept.
    async with container.session_factory() as session:
        tenant = await tenants_repo.set_status(session, tenant_id, state.DEACTIVATED)
    if tenant.connection_descriptor:
        await container.router.evict(tenant.connection_descriptor)
    logger.info("tenant_deactivated tenant_id=%s", tenant_id)
    return success_response(request=request, data=_view(tenant))
