from __future__ import annotations

import pytest
from arq import Retry
from redis.exceptions import ConnectionError as RedisConnectionError

from tenantplane.core.errors import IntegrationUnavailableError
from tenantplane.services.container import ServiceContainer
from tenantplane.services.provisioning import queue
from tenantplane.services.provisioning.queue import (
    ProvisioningJob,
    enqueue_provisioning_job,
    run_provisioning_job,
)
from tenantplane.workers.provisioning_worker import provision_tenant


class _RecordingRedis:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict, dict]] = []

    async def enqueue_job(self, function: str, payload: dict, **kwargs: object) -> object:
        self.calls.append((function, payload, kwargs))
        return object()


def test_job_password_is_not_in_repr() -> None:
    job = ProvisioningJob(organization_name="Acme", admin_email="a@acme.com", admin_password="hunter22")
    assert "hunter22" not in repr(job)
    assert job.to_request().admin_password == "hunter22"


async def test_worker_runs_job_once(container: ServiceContainer) -> None:
    payload = ProvisioningJob(job_id="job_1", organization_name="Acme Inc", external_org_id="org_1").model_dump(
        mode="json"
    )
    first = await provision_tenant({"container": container, "job_try": 1}, payload)
    assert first["status"] == "active"
    assert first["job_id"] == "job_1"

    # Redelivery after arq's own dedupe window is still a no-op.
    second = await provision_tenant({"container": container, "job_try": 1}, payload)
    assert second["duplicate"] is True
    assert second["tenant_id"] == first["tenant_id"]


async def test_worker_retries_transient_failures(container: ServiceContainer, monkeypatch) -> None:
    async def _unavailable(request):
        raise IntegrationUnavailableError("tenant store unreachable")

    monkeypatch.setattr(container.provisioner, "provision", _unavailable)
    payload = ProvisioningJob(job_id="job_2", organization_name="Acme Inc").model_dump(mode="json")

    with pytest.raises(Retry):
        await provision_tenant({"container": container, "job_try": 1}, payload)
    # The key was released so the retry can start again.
    assert await container.ledger.lookup("provisioning:job_2") is None

    with pytest.raises(IntegrationUnavailableError):
        await provision_tenant(
            {"container": container, "job_try": container.settings.provisioning_max_retries},
            payload,
        )


async def test_queue_mode_hands_job_to_arq(container: ServiceContainer, monkeypatch) -> None:
    container.settings.provisioning_execution_mode = "queue"
    redis = _RecordingRedis()

    async def _pool(settings=None):
        return redis

    monkeypatch.setattr(queue, "get_redis_pool", _pool)
    job = ProvisioningJob(job_id="org_org_1", organization_name="Acme Inc", external_org_id="org_1")
    receipt = await enqueue_provisioning_job(job, container=container)

    assert receipt == {"status": "enqueued", "job_id": "org_org_1"}
    function, payload, kwargs = redis.calls[0]
    assert function == "provision_tenant"
    assert payload["external_org_id"] == "org_1"
    assert kwargs["_job_id"] == "org_org_1"
    assert kwargs["_queue_name"] == container.settings.provisioning_queue_name


async def test_queue_outage_is_transient(container: ServiceContainer, monkeypatch) -> None:
    container.settings.provisioning_execution_mode = "queue"

    async def _pool(settings=None):
        raise RedisConnectionError("redis down")

    monkeypatch.setattr(queue, "get_redis_pool", _pool)
    with pytest.raises(IntegrationUnavailableError):
        await enqueue_provisioning_job(
            ProvisioningJob(organization_name="Acme Inc"),
            container=container,
        )


async def test_inline_mode_runs_job_directly(container: ServiceContainer) -> None:
    result = await enqueue_provisioning_job(
        ProvisioningJob(job_id="inline_1", organization_name="Inline Co"),
        container=container,
    )
    assert result["slug"] == "inline-co"
    replay = await run_provisioning_job(
        ProvisioningJob(job_id="inline_1", organization_name="Inline Co"),
        container=container,
    )
    assert replay["duplicate"] is True
