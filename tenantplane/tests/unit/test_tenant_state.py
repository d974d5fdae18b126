from __future__ import annotations

import pytest

from tenantplane.core.errors import (
    ConflictingLinkError,
    DuplicateTenantError,
    InvalidTransitionError,
    TenantNotFoundError,
)
from tenantplane.domain import state
from tenantplane.persistence.repos import tenants as tenants_repo


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (state.PENDING, state.PROVISIONING),
        (state.PROVISIONING, state.ACTIVE),
        (state.PROVISIONING, state.FAILED),
        (state.ACTIVE, state.DEACTIVATED),
    ],
)
def test_allowed_transitions(current: str, target: str) -> None:
    assert state.can_transition(current, target)
    state.ensure_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (state.ACTIVE, state.PENDING),
        (state.PENDING, state.ACTIVE),
        (state.FAILED, state.PROVISIONING),
        (state.DEACTIVATED, state.ACTIVE),
        (state.ACTIVE, "archived"),
    ],
)
def test_rejected_transitions(current: str, target: str) -> None:
    with pytest.raises(InvalidTransitionError):
        state.ensure_transition(current, target)


async def test_create_rejects_duplicate_slug_and_org(session_factory) -> None:
    async with session_factory() as session:
        await tenants_repo.create_tenant(
            session, slug="acme-inc", display_name="Acme Inc", plan="free", external_org_id="org_1"
        )
    async with session_factory() as session:
        with pytest.raises(DuplicateTenantError) as slug_error:
            await tenants_repo.create_tenant(session, slug="acme-inc", display_name="Acme", plan="free")
    assert slug_error.value.field == "slug"
    async with session_factory() as session:
        with pytest.raises(DuplicateTenantError) as org_error:
            await tenants_repo.create_tenant(
                session, slug="acme-two", display_name="Acme", plan="free", external_org_id="org_1"
            )
    assert org_error.value.field == "external_org_id"


async def test_set_status_walks_the_lifecycle(session_factory) -> None:
    async with session_factory() as session:
        tenant = await tenants_repo.create_tenant(session, slug="beta", display_name="Beta", plan="pro")
        assert tenant.status == state.PENDING
        tenant = await tenants_repo.set_status(session, tenant.id, state.PROVISIONING)
        tenant = await tenants_repo.set_status(session, tenant.id, state.ACTIVE)
        assert tenant.activated_at is not None
        with pytest.raises(InvalidTransitionError):
            await tenants_repo.set_status(session, tenant.id, state.PENDING)
    async with session_factory() as session:
        assert (await tenants_repo.require_tenant(session, tenant.id)).status == state.ACTIVE


async def test_set_status_on_missing_tenant(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(TenantNotFoundError):
            await tenants_repo.set_status(session, "missing", state.PROVISIONING)


async def test_link_external_org_conflicts(session_factory) -> None:
    async with session_factory() as session:
        first = await tenants_repo.create_tenant(
            session, slug="first", display_name="First", plan="free", external_org_id="org_a"
        )
        second = await tenants_repo.create_tenant(session, slug="second", display_name="Second", plan="free")
        # Linking the same org again is a no-op.
        await tenants_repo.link_external_org(session, first.id, "org_a")
        with pytest.raises(ConflictingLinkError):
            await tenants_repo.link_external_org(session, second.id, "org_a")
        linked = await tenants_repo.link_external_org(session, second.id, "org_b")
        assert linked.external_org_id == "org_b"
