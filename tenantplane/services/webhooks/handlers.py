from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from tenantplane.core.errors import DuplicateTenantError
from tenantplane.domain import state
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.persistence.repos import users as users_repo
from tenantplane.services.provisioning.queue import ProvisioningJob, enqueue_provisioning_job

if TYPE_CHECKING:
    from tenantplane.services.container import ServiceContainer


logger = logging.getLogger(__name__)

EventHandler = Callable[["ServiceContainer", dict[str, Any]], Awaitable[dict[str, Any]]]

_JOB_ID_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


def skipped(reason: str, **extra: Any) -> dict[str, Any]:
    return {"action": "skipped", "reason": reason, **extra}


def primary_email(data: dict[str, Any]) -> str | None:
    # Prefer the address flagged primary; fall back to the first listed one.
    addresses = data.get("email_addresses") or []
    primary_id = data.get("primary_email_address_id")
    for address in addresses:
        if primary_id and address.get("id") == primary_id and address.get("email_address"):
            return address["email_address"]
    for address in addresses:
        if address.get("email_address"):
            return address["email_address"]
    return data.get("email") or None


def _membership_ids(data: dict[str, Any]) -> tuple[str | None, str | None]:
    # Provider payloads nest the ids; older senders put them flat on the data object.
    organization = data.get("organization") or {}
    public_user = data.get("public_user_data") or {}
    org_id = organization.get("id") or data.get("organization_id")
    user_id = public_user.get("user_id") or data.get("user_id")
    return org_id, user_id


async def handle_organization_created(container: ServiceContainer, data: dict[str, Any]) -> dict[str, Any]:
    org_id = data.get("id")
    name = data.get("name") or data.get("slug")
    if not org_id or not name:
        return skipped("missing_organization_fields")
    async with container.session_factory() as session:
        existing = await tenants_repo.find_by_external_org(session, org_id)
    if existing is not None:
        if existing.status in (state.PENDING, state.PROVISIONING):
            return skipped("tenant_already_provisioning", tenant_id=existing.id)
        return skipped("tenant_already_exists", tenant_id=existing.id, status=existing.status)

    # Stable job id so a redelivered event cannot enqueue a second job.
    job = ProvisioningJob(
        job_id=f"org_{_JOB_ID_UNSAFE.sub('_', org_id)}",
        organization_name=name,
        plan=container.settings.default_plan,
        external_org_id=org_id,
        origin="event",
    )
    try:
        outcome = await enqueue_provisioning_job(job, container=container)
    except DuplicateTenantError as exc:
        if exc.field != "external_org_id":
            raise
        return skipped("tenant_already_provisioning")
    if outcome.get("status") == "enqueued":
        return {"action": "provisioning_enqueued", "job_id": job.job_id}
    if outcome.get("tenant_id"):
        return {
            "action": "tenant_provisioned",
            "tenant_id": outcome["tenant_id"],
            "slug": outcome.get("slug"),
        }
    return skipped("provisioning_job_" + str(outcome.get("status")), job_id=job.job_id)


async def handle_user_created(container: ServiceContainer, data: dict[str, Any]) -> dict[str, Any]:
    external_user_id = data.get("id")
    email = primary_email(data)
    if not email:
        return skipped("no_email")
    async with container.session_factory() as session:
        existing = await users_repo.find_by_identity(session, external_user_id=external_user_id, email=email)
        if existing is not None:
            if external_user_id and existing.external_user_id is None:
                await users_repo.attach_external_id(session, existing, external_user_id)
            return skipped("user_already_exists", user_id=existing.id)
        user, created = await users_repo.create_user(
            session,
            email=email,
            external_user_id=external_user_id,
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
        )
    if not created:
        return skipped("user_already_exists", user_id=user.id)
    return {"action": "user_created", "user_id": user.id}


async def handle_membership_created(container: ServiceContainer, data: dict[str, Any]) -> dict[str, Any]:
    org_id, external_user_id = _membership_ids(data)
    async with container.session_factory() as session:
        tenant = await tenants_repo.find_by_external_org(session, org_id) if org_id else None
        if tenant is None:
            return skipped("tenant_not_found")
        if tenant.status != state.ACTIVE:
            return skipped("tenant_not_active", tenant_id=tenant.id, status=tenant.status)
        user = await users_repo.find_by_external_id(session, external_user_id) if external_user_id else None
        if user is None:
            # Membership can arrive before user.created; the later event does not backfill it.
            return skipped("user_not_found", tenant_id=tenant.id)
        if user.tenant_id == tenant.id:
            return skipped("already_linked", tenant_id=tenant.id, user_id=user.id)
        if user.tenant_id is not None:
            logger.info(
                "user_tenant_relinked user_id=%s from_tenant=%s to_tenant=%s",
                user.id,
                user.tenant_id,
                tenant.id,
            )
        await users_repo.link_tenant(session, user, tenant.id)
    return {"action": "user_linked", "tenant_id": tenant.id, "user_id": user.id}


async def handle_membership_deleted(container: ServiceContainer, data: dict[str, Any]) -> dict[str, Any]:
    org_id, external_user_id = _membership_ids(data)
    async with container.session_factory() as session:
        tenant = await tenants_repo.find_by_external_org(session, org_id) if org_id else None
        if tenant is None:
            return skipped("tenant_not_found")
        user = await users_repo.find_by_external_id(session, external_user_id) if external_user_id else None
        if user is None or user.tenant_id != tenant.id:
            return skipped("user_not_found", tenant_id=tenant.id)
        await users_repo.unlink_tenant(session, user)
    return {"action": "user_unlinked", "tenant_id": tenant.id, "user_id": user.id}


async def handle_user_updated(container: ServiceContainer, data: dict[str, Any]) -> dict[str, Any]:
    external_user_id = data.get("id")
    if not external_user_id:
        return skipped("missing_user_id")
    email = primary_email(data)
    async with container.session_factory() as session:
        user = await users_repo.find_by_external_id(session, external_user_id)
        if user is not None:
            await users_repo.update_profile(
                session,
                user,
                email=email,
                first_name=data.get("first_name"),
                last_name=data.get("last_name"),
            )
            return {"action": "user_updated", "user_id": user.id}
    # Unknown user: treat the update as a first sighting.
    return await handle_user_created(container, data)


DEFAULT_HANDLERS: dict[str, EventHandler] = {
    "organization.created": handle_organization_created,
    "user.created": handle_user_created,
    "user.updated": handle_user_updated,
    "organizationMembership.created": handle_membership_created,
    "organizationMembership.deleted": handle_membership_deleted,
}
