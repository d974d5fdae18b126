from __future__ import annotations

import logging

from arq import Retry
from arq.connections import RedisSettings

from tenantplane.core.config import get_settings
from tenantplane.core.errors import TransientInfrastructureError
from tenantplane.core.logging import configure_logging
from tenantplane.services.container import build_container
from tenantplane.services.provisioning.queue import ProvisioningJob, run_provisioning_job


logger = logging.getLogger(__name__)


async def provision_tenant(ctx, payload: dict) -> dict:
    # Validate in the worker too; the queue is a trust boundary between deploys.
    job = ProvisioningJob.model_validate(payload)
    attempt = ctx.get("job_try", 1)
    container = ctx["container"]
    try:
        return await run_provisioning_job(job, container=container)
    except TransientInfrastructureError as exc:
        # The ledger key was released, so a retry starts clean.
        if attempt >= container.settings.provisioning_max_retries:
            logger.error("provisioning_job_gave_up job_id=%s attempt=%s", job.job_id, attempt)
            raise
        logger.warning("provisioning_job_retry job_id=%s attempt=%s code=%s", job.job_id, attempt, exc.code)
        raise Retry(defer=attempt * 5) from exc


async def _startup(ctx) -> None:
    configure_logging()
    ctx["container"] = build_container()
    logger.info("provisioning_worker_started")


async def _shutdown(ctx) -> None:
    container = ctx.get("container")
    if container is not None:
        await container.aclose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.provisioning_queue_name
    max_tries = settings.provisioning_max_retries
    functions = [provision_tenant]
    on_startup = _startup
    on_shutdown = _shutdown
