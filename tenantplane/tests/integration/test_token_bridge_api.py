from __future__ import annotations

import jwt
from httpx import AsyncClient

from tenantplane.domain import state
from tenantplane.persistence.repos import tenants as tenants_repo
from tenantplane.persistence.repos import users as users_repo
from tenantplane.tests.utils.identity import (
    ADMIN_TOKEN,
    DOWNSTREAM_SECRET,
    foreign_credential,
    organization_created,
    signed_webhook,
)


async def _provision_org(client: AsyncClient, org_id: str, name: str) -> dict:
    body, headers = signed_webhook(organization_created(org_id, name), message_id=f"msg_{org_id}")
    response = await client.post("/v1/webhooks/identity", content=body, headers=headers)
    assert response.json()["data"]["action"] == "tenant_provisioned"
    return response.json()["data"]


async def test_exchange_mints_downstream_tokens(client: AsyncClient, session_factory) -> None:
    tenant = await _provision_org(client, "org_1", "Acme Inc")
    credential = foreign_credential(subject="user_1", org_id="org_1", email="Dev@Acme.com")

    response = await client.post("/v1/auth/token", json={"credential": credential})
    assert response.status_code == 200
    data = response.json()["data"]
    claims = jwt.decode(data["access_token"]["token"], DOWNSTREAM_SECRET, algorithms=["HS256"])
    assert claims["type"] == "ACCESS"
    assert claims["tenantId"] == tenant["tenant_id"]
    assert claims["workspaceId"] == tenant["tenant_id"]

    # Repeated exchanges converge on the same downstream user and linkage.
    second = await client.post("/v1/auth/token", json={"credential": credential})
    second_claims = jwt.decode(
        second.json()["data"]["access_token"]["token"], DOWNSTREAM_SECRET, algorithms=["HS256"]
    )
    assert second_claims["userId"] == claims["userId"]
    assert second_claims["userWorkspaceId"] == claims["userWorkspaceId"]

    async with session_factory() as session:
        user = await users_repo.find_by_external_id(session, "user_1")
    assert user.email == "dev@acme.com"
    assert user.tenant_id == tenant["tenant_id"]
    assert user.last_login_at is not None


async def test_refresh_accepts_only_refresh_tokens(client: AsyncClient) -> None:
    await _provision_org(client, "org_1", "Acme Inc")
    credential = foreign_credential(subject="user_1", org_id="org_1", email="dev@acme.com")
    pair = (await client.post("/v1/auth/token", json={"credential": credential})).json()["data"]

    refreshed = await client.post("/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]["token"]})
    assert refreshed.status_code == 200
    assert refreshed.json()["data"]["access_token"]["token"]

    wrong_type = await client.post("/v1/auth/refresh", json={"refresh_token": pair["access_token"]["token"]})
    assert wrong_type.status_code == 401
    assert wrong_type.json()["error"]["code"] == "INVALID_CREDENTIAL"


async def test_refresh_after_deactivation_is_rejected(client: AsyncClient) -> None:
    tenant = await _provision_org(client, "org_1", "Acme Inc")
    credential = foreign_credential(subject="user_1", org_id="org_1", email="dev@acme.com")
    pair = (await client.post("/v1/auth/token", json={"credential": credential})).json()["data"]

    deactivated = await client.post(
        f"/v1/admin/tenants/{tenant['tenant_id']}/deactivate",
        headers={"Authorization": f"Bearer {ADMIN_TOKEN}"},
    )
    assert deactivated.status_code == 200

    response = await client.post("/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]["token"]})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "TENANT_NOT_PROVISIONED"


async def test_credential_without_org_is_rejected(client: AsyncClient) -> None:
    credential = foreign_credential(subject="user_1", email="dev@acme.com")
    response = await client.post("/v1/auth/token", json={"credential": credential})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "MISSING_ORGANIZATION"
    assert response.headers["WWW-Authenticate"] == "Bearer"


async def test_unknown_or_failed_tenant_is_not_provisioned(client: AsyncClient, session_factory) -> None:
    unknown = await client.post(
        "/v1/auth/token",
        json={"credential": foreign_credential(subject="user_1", org_id="org_nobody", email="a@acme.com")},
    )
    assert unknown.status_code == 401
    assert unknown.json()["error"]["code"] == "TENANT_NOT_PROVISIONED"

    async with session_factory() as session:
        tenant = await tenants_repo.create_tenant(
            session, slug="broken", display_name="Broken", plan="free", external_org_id="org_broken"
        )
        await tenants_repo.set_status(session, tenant.id, state.PROVISIONING)
        await tenants_repo.set_status(session, tenant.id, state.FAILED, failure_reason="test")

    failed = await client.post(
        "/v1/auth/token",
        json={"credential": foreign_credential(subject="user_1", org_id="org_broken", email="a@acme.com")},
    )
    assert failed.status_code == 401
    assert failed.json()["error"]["code"] == "TENANT_NOT_PROVISIONED"


async def test_invalid_credentials(client: AsyncClient) -> None:
    forged = await client.post(
        "/v1/auth/token",
        json={"credential": foreign_credential(subject="user_1", org_id="org_1", secret="nope")},
    )
    assert forged.status_code == 401
    assert forged.json()["error"]["code"] == "INVALID_CREDENTIAL"

    empty = await client.post("/v1/auth/token", json={})
    assert empty.status_code == 400
    assert empty.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_verify_is_read_only(client: AsyncClient, session_factory) -> None:
    await _provision_org(client, "org_1", "Acme Inc")
    credential = foreign_credential(subject="user_7", org_id="org_1", email="seven@acme.com", org_role="admin")

    response = await client.get("/v1/auth/verify", headers={"Authorization": f"Bearer {credential}"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["subject"] == "user_7"
    assert data["org_role"] == "admin"
    assert data["tenant"]["slug"] == "acme-inc"

    async with session_factory() as session:
        assert await users_repo.find_by_external_id(session, "user_7") is None

    missing = await client.get("/v1/auth/verify")
    assert missing.status_code == 401


async def test_tokens_carry_the_global_user_id(client: AsyncClient, session_factory) -> None:
    await _provision_org(client, "org_1", "Acme Inc")
    credential = foreign_credential(subject="user_1", org_id="org_1", email="dev@acme.com")
    data = (await client.post("/v1/auth/token", json={"credential": credential})).json()["data"]

    async with session_factory() as session:
        user = await users_repo.find_by_external_id(session, "user_1")
    access = jwt.decode(data["access_token"]["token"], DOWNSTREAM_SECRET, algorithms=["HS256"])
    assert access["userId"] == user.id

    refresh = jwt.decode(data["refresh_token"]["token"], DOWNSTREAM_SECRET, algorithms=["HS256"])
    assert refresh["userId"] == user.id
    assert "tenantId" not in refresh
    assert "workspaceId" not in refresh
    assert "userWorkspaceId" not in refresh


async def test_refresh_resolves_claims_from_registry(client: AsyncClient) -> None:
    tenant = await _provision_org(client, "org_1", "Acme Inc")
    credential = foreign_credential(subject="user_1", org_id="org_1", email="dev@acme.com")
    pair = (await client.post("/v1/auth/token", json={"credential": credential})).json()["data"]
    original = jwt.decode(pair["access_token"]["token"], DOWNSTREAM_SECRET, algorithms=["HS256"])

    refreshed = await client.post("/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]["token"]})
    claims = jwt.decode(
        refreshed.json()["data"]["access_token"]["token"], DOWNSTREAM_SECRET, algorithms=["HS256"]
    )
    assert claims["tenantId"] == tenant["tenant_id"]
    assert claims["workspaceId"] == original["workspaceId"]
    assert claims["userWorkspaceId"] == original["userWorkspaceId"]
    assert claims["userId"] == original["userId"]


async def test_refresh_for_inactive_user_is_rejected(client: AsyncClient, session_factory) -> None:
    await _provision_org(client, "org_1", "Acme Inc")
    credential = foreign_credential(subject="user_1", org_id="org_1", email="dev@acme.com")
    pair = (await client.post("/v1/auth/token", json={"credential": credential})).json()["data"]

    async with session_factory() as session:
        user = await users_repo.find_by_external_id(session, "user_1")
        user.is_active = False
        await session.commit()

    response = await client.post("/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]["token"]})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_CREDENTIAL"
