from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal
from uuid import uuid4

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from tenantplane.core.config import Settings, get_settings
from tenantplane.core.errors import IntegrationUnavailableError
from tenantplane.services.idempotency import (
    AlreadyCompleted,
    AlreadyFailed,
    AlreadyProcessing,
    idempotency_key,
)
from tenantplane.services.provisioning.state_machine import ProvisioningRequest

if TYPE_CHECKING:
    from tenantplane.services.container import ServiceContainer


logger = logging.getLogger(__name__)

_redis_pool: ArqRedis | None = None
_redis_pool_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()

PROVISION_TENANT_FUNCTION = "provision_tenant"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProvisioningJob(BaseModel):
    # Published job schema for handoff from the webhook router to the worker.
    job_id: str = Field(default_factory=lambda: uuid4().hex)
    organization_name: str
    admin_email: str | None = None
    # Never logged; only registration-originated jobs carry a password.
    admin_password: str | None = Field(default=None, repr=False)
    plan: str = "free"
    external_org_id: str | None = None
    origin: Literal["request", "event"] = "event"
    enqueued_at: datetime = Field(default_factory=_utc_now)

    def to_request(self) -> ProvisioningRequest:
        return ProvisioningRequest(
            organization_name=self.organization_name,
            plan=self.plan,
            admin_email=self.admin_email,
            admin_password=self.admin_password,
            external_org_id=self.external_org_id,
        )


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


async def get_redis_pool(settings: Settings | None = None) -> ArqRedis:
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = settings or get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.provisioning_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth(settings: Settings | None = None) -> int | None:
    # Return None to signal Redis unavailability to ops endpoints.
    settings = settings or get_settings()
    if settings.provisioning_execution_mode.lower() == "inline":
        return 0
    try:
        redis = await get_redis_pool(settings)
        depth = await redis.zcard(_queue_key(settings.provisioning_queue_name))
        return int(depth)
    except (RedisError, OSError):
        return None


async def enqueue_provisioning_job(job: ProvisioningJob, *, container: ServiceContainer) -> dict[str, Any]:
    """Hand a job to the worker, or run it immediately in inline mode.

    Returns the job outcome in inline mode and an enqueue receipt otherwise.
    """
    settings = container.settings
    if settings.provisioning_execution_mode.lower() == "inline":
        return await run_provisioning_job(job, container=container)

    try:
        redis = await get_redis_pool(settings)
        arq_job = await redis.enqueue_job(
            PROVISION_TENANT_FUNCTION,
            job.model_dump(mode="json"),
            _job_id=job.job_id,
            _queue_name=settings.provisioning_queue_name,
        )
    except (RedisError, OSError) as exc:
        logger.exception("provisioning_enqueue_failed job_id=%s", job.job_id)
        raise IntegrationUnavailableError("Provisioning queue is unavailable") from exc
    # When a job id already exists, arq returns None; the original job stays authoritative.
    logger.info(
        "provisioning_job_enqueued job_id=%s origin=%s duplicate=%s",
        job.job_id,
        job.origin,
        arq_job is None,
    )
    return {"status": "enqueued", "job_id": job.job_id}


async def run_provisioning_job(job: ProvisioningJob, *, container: ServiceContainer) -> dict[str, Any]:
    # Ledger guard makes redelivered jobs a no-op even after arq's own dedupe window.
    key = idempotency_key("provisioning", job.job_id)
    outcome = await container.ledger.begin(key)
    if isinstance(outcome, AlreadyCompleted):
        return {**(outcome.result or {}), "duplicate": True}
    if isinstance(outcome, AlreadyFailed):
        return {"status": "failed", "job_id": job.job_id, "error_code": outcome.error_code}
    if isinstance(outcome, AlreadyProcessing):
        return {"status": "processing", "job_id": job.job_id, "stale": outcome.stale}

    async def _provision() -> dict[str, Any]:
        result = await container.provisioner.provision(job.to_request())
        return {"job_id": job.job_id, **result.as_dict()}

    return await container.ledger.settle(key, _provision)
