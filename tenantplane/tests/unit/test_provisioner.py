from __future__ import annotations

import re

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from tenantplane.core.errors import (
    DuplicateTenantError,
    ProvisioningFailedError,
    SlugExhaustedError,
    ValidationError,
    WorkspaceInitializationError,
)
from tenantplane.domain import state
from tenantplane.domain.models import TenantRegistryEntry
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.persistence.repos import users as users_repo
from tenantplane.services.auth.passwords import verify_password
from tenantplane.services.provisioning.state_machine import Provisioner, ProvisioningRequest
from tenantplane.services.provisioning.stores import SqliteFileAllocator
from tenantplane.services.telemetry import counters_snapshot
from tenantplane.services.workspace import schema
from tenantplane.services.workspace.initializer import InitializationReport, SeedingWorkspaceInitializer


class _FailingInitializer:
    features = frozenset({"workspace"})

    async def initialize(self, engine: AsyncEngine, **_: object) -> InitializationReport:
        raise WorkspaceInitializationError("Workspace step roles failed")


@pytest.fixture
def make_provisioner(session_factory, router, minter, settings):
    def _make(**overrides: object) -> Provisioner:
        params: dict[str, object] = {
            "session_factory": session_factory,
            "router": router,
            "allocator": SqliteFileAllocator(directory=settings.tenant_sqlite_dir),
            "initializer": SeedingWorkspaceInitializer(),
            "minter": minter,
            "workspace_features": settings.enabled_workspace_features(),
            "slug_max_attempts": settings.slug_max_attempts,
        }
        params.update(overrides)
        return Provisioner(**params)

    return _make


async def test_provision_activates_tenant_with_admin(provisioner: Provisioner, session_factory) -> None:
    result = await provisioner.provision(
        ProvisioningRequest(
            organization_name="Acme Inc",
            admin_email="Owner@Acme.com",
            admin_password="s3cret-password",
        )
    )
    assert result.slug == "acme-inc"
    assert result.status == state.ACTIVE
    assert result.database_name == "tenant_acme_inc"
    assert result.workspace_id == result.tenant_id
    assert result.admin_token

    async with session_factory() as session:
        tenant = await tenants_repo.require_tenant(session, result.tenant_id)
        admin = await users_repo.find_by_email(session, "owner@acme.com")
    assert tenant.status == state.ACTIVE
    assert tenant.connection_descriptor.startswith("sqlite+aiosqlite:///")
    assert admin is not None
    assert admin.role == "admin"
    assert admin.tenant_id == tenant.id
    assert verify_password("s3cret-password", admin.password_hash)
    assert counters_snapshot().get("tenant_provisioned_total") == 1


async def test_provision_seeds_workspace(provisioner: Provisioner, router, session_factory) -> None:
    result = await provisioner.provision(
        ProvisioningRequest(
            organization_name="Seeded Co",
            admin_email="a@seeded.com",
            admin_password="password1",
        )
    )
    steps = {step["step"]: step["status"] for step in result.initialization["steps"]}
    assert steps["workspace"] == "applied"
    assert steps["roles"] == "applied"
    assert steps["onboarding"] == "applied"
    assert result.initialization["admin_user_id"]
    # The seeded downstream admin shares its id with the global admin user.
    assert result.initialization["admin_user_id"] == result.admin_user_id

    async with session_factory() as session:
        tenant = await tenants_repo.require_tenant(session, result.tenant_id)
    engine = await router.pool(tenant.connection_descriptor)
    async with engine.connect() as conn:
        roles = (await conn.execute(select(schema.role.c.label))).scalars().all()
        onboarding = (
            await conn.execute(
                select(schema.key_value_pair.c.key).where(
                    schema.key_value_pair.c.workspace_id == result.workspace_id
                )
            )
        ).scalars().all()
    assert sorted(roles) == ["ADMIN", "EDITOR", "VIEWER"]
    assert onboarding == ["ONBOARDING_COMPLETED"]


async def test_second_org_with_same_name_gets_suffixed_slug(provisioner: Provisioner) -> None:
    first = await provisioner.provision(
        ProvisioningRequest(organization_name="Acme Inc", external_org_id="org_1")
    )
    second = await provisioner.provision(
        ProvisioningRequest(organization_name="Acme Inc", external_org_id="org_42")
    )
    assert first.slug == "acme-inc"
    assert re.fullmatch(r"acme-inc-[0-9a-z]{6}", second.slug)
    assert second.tenant_id != first.tenant_id
    assert second.external_org_id == "org_42"


async def test_same_external_org_is_rejected(provisioner: Provisioner, session_factory) -> None:
    await provisioner.provision(ProvisioningRequest(organization_name="Acme Inc", external_org_id="org_1"))
    with pytest.raises(DuplicateTenantError) as exc_info:
        await provisioner.provision(ProvisioningRequest(organization_name="Other", external_org_id="org_1"))
    assert exc_info.value.field == "external_org_id"
    async with session_factory() as session:
        count = (await session.execute(select(func.count()).select_from(TenantRegistryEntry))).scalar_one()
    assert count == 1


async def test_slug_attempts_are_bounded(make_provisioner) -> None:
    bounded = make_provisioner(slug_max_attempts=1)
    await bounded.provision(ProvisioningRequest(organization_name="Acme Inc"))
    with pytest.raises(SlugExhaustedError):
        await bounded.provision(ProvisioningRequest(organization_name="Acme Inc"))


async def test_initializer_failure_marks_tenant_failed(
    provisioner: Provisioner, make_provisioner, session_factory
) -> None:
    failing = make_provisioner(initializer=_FailingInitializer())
    with pytest.raises(ProvisioningFailedError) as exc_info:
        await failing.provision(ProvisioningRequest(organization_name="Doomed Ltd", external_org_id="org_doomed"))

    async with session_factory() as session:
        tenant = await tenants_repo.require_tenant(session, exc_info.value.tenant_id)
    assert tenant.status == state.FAILED
    assert tenant.failure_reason.startswith("WORKSPACE_INITIALIZATION_FAILED")
    # Slug and org stay reserved after a failure.
    with pytest.raises(DuplicateTenantError):
        await provisioner.provision(ProvisioningRequest(organization_name="Doomed Ltd", external_org_id="org_doomed"))
    assert counters_snapshot().get("tenant_provisioning_failed_total") == 1


async def test_unknown_plan_is_rejected_before_any_row(provisioner: Provisioner, session_factory) -> None:
    with pytest.raises(ValidationError):
        await provisioner.provision(ProvisioningRequest(organization_name="Acme", plan="platinum"))
    async with session_factory() as session:
        assert await tenants_repo.find_by_slug(session, "acme") is None


async def test_allocator_is_idempotent_per_slug(tmp_path) -> None:
    allocator = SqliteFileAllocator(directory=tmp_path / "stores")
    first = await allocator.allocate(tenant_id="t1", slug="acme-inc")
    second = await allocator.allocate(tenant_id="t1", slug="acme-inc")
    assert first == second
    assert first.database_name == "tenant_acme_inc"
