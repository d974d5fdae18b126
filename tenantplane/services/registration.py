from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import secrets
import time
from typing import Any, Literal

from pydantic import BaseModel, EmailStr, Field, ValidationError as PydanticValidationError

from tenantplane.core.errors import ProvisioningFailedError, TenantPlaneError, ValidationError
from tenantplane.services.idempotency import (
    COMPLETED,
    FAILED,
    AlreadyCompleted,
    AlreadyFailed,
    AlreadyProcessing,
    IdempotencyLedger,
    idempotency_key,
)
from tenantplane.services.provisioning.state_machine import Provisioner, ProvisioningRequest
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

REGISTRATION = "registration"


class RegistrationInput(BaseModel):
    organization_name: str = Field(min_length=2, max_length=255)
    admin_email: EmailStr | None = None
    admin_password: str | None = Field(default=None, min_length=8, repr=False)
    plan: Literal["free", "pro", "enterprise"] = "free"
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=255)


@dataclass(frozen=True)
class RegistrationOutcome:
    # "completed" -> 201, "processing" -> 202, "failed" -> 400/500.
    status: str
    idempotency_key: str
    cached: bool = False
    result: dict[str, Any] | None = None
    error_code: str | None = None
    error_message: str | None = None
    # HTTP status for fresh failures; replayed failures always answer 400.
    error_status: int = 400

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "idempotency_key": self.idempotency_key,
            "cached": self.cached,
        }
        if self.result is not None:
            payload["tenant"] = self.result
        if self.status == FAILED:
            payload["error"] = {"code": self.error_code, "message": self.error_message}
        return payload


def synthesize_key(organization_name: str) -> str:
    # Best-effort only: two retries without a caller key are two different registrations.
    return f"{organization_name}:{int(time.time() * 1000)}:{secrets.token_hex(4)}"


def parse_registration(payload: dict[str, Any]) -> RegistrationInput:
    try:
        data = RegistrationInput.model_validate(payload)
    except PydanticValidationError as exc:
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
        raise ValidationError(f"Invalid registration request: {fields}") from exc
    # Admin credentials come as a pair or not at all.
    if (data.admin_email is None) != (data.admin_password is None):
        raise ValidationError("admin_email and admin_password must be supplied together")
    return data


class RegistrationService:
    """Organization self-registration with a bounded wait over background provisioning."""

    def __init__(
        self,
        *,
        ledger: IdempotencyLedger,
        provisioner: Provisioner,
        wait_timeout_s: float = 30.0,
    ) -> None:
        self._ledger = ledger
        self._provisioner = provisioner
        self._wait_timeout_s = wait_timeout_s
        # Strong refs keep detached provisioning tasks alive past the caller's timeout.
        self._background: set[asyncio.Task[dict[str, Any]]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._background)

    async def register(self, data: RegistrationInput) -> RegistrationOutcome:
        raw_key = data.idempotency_key or synthesize_key(data.organization_name)
        key = idempotency_key(REGISTRATION, raw_key)
        outcome = await self._ledger.begin(key)
        if isinstance(outcome, AlreadyCompleted):
            increment_counter("registration_replayed_total")
            return RegistrationOutcome(status=COMPLETED, idempotency_key=raw_key, cached=True, result=outcome.result)
        if isinstance(outcome, AlreadyProcessing):
            return RegistrationOutcome(status="processing", idempotency_key=raw_key)
        if isinstance(outcome, AlreadyFailed):
            return RegistrationOutcome(
                status=FAILED,
                idempotency_key=raw_key,
                cached=True,
                error_code=outcome.error_code,
                error_message=outcome.error_message,
            )

        request = ProvisioningRequest(
            organization_name=data.organization_name,
            plan=data.plan,
            admin_email=str(data.admin_email) if data.admin_email else None,
            admin_password=data.admin_password,
        )
        task = asyncio.create_task(self._run(key, request))
        self._background.add(task)
        task.add_done_callback(self._on_done)
        try:
            # Shield so the wait timing out never cancels provisioning itself.
            result = await asyncio.wait_for(asyncio.shield(task), timeout=self._wait_timeout_s)
        except asyncio.TimeoutError:
            logger.info("registration_wait_timed_out key=%s", key)
            return RegistrationOutcome(status="processing", idempotency_key=raw_key)
        except TenantPlaneError as exc:
            return RegistrationOutcome(
                status=FAILED,
                idempotency_key=raw_key,
                error_code=exc.code,
                error_message=exc.message,
                error_status=exc.status_code,
            )
        return RegistrationOutcome(status=COMPLETED, idempotency_key=raw_key, result=result)

    def _on_done(self, task: asyncio.Task[dict[str, Any]]) -> None:
        self._background.discard(task)
        # Retrieve the exception so detached failures are not reported as unhandled.
        if not task.cancelled() and task.exception() is not None:
            logger.info("registration_task_finished_with_error error=%s", type(task.exception()).__name__)

    async def _run(self, key: str, request: ProvisioningRequest) -> dict[str, Any]:
        async def _provision() -> dict[str, Any]:
            result = await self._provisioner.provision(request)
            return result.as_dict()

        try:
            return await self._ledger.settle(key, _provision)
        except ProvisioningFailedError as exc:
            logger.warning("registration_provisioning_failed key=%s tenant_id=%s", key, exc.tenant_id)
            raise

    async def status(self, raw_key: str) -> RegistrationOutcome | None:
        entry = await self._ledger.lookup(idempotency_key(REGISTRATION, raw_key))
        if entry is None:
            return None
        return RegistrationOutcome(
            status=entry.status,
            idempotency_key=raw_key,
            cached=entry.status != "processing",
            result=entry.result,
            error_code=entry.error_code,
            error_message=entry.error_message,
        )

    async def drain(self, timeout_s: float | None = None) -> None:
        # Let detached provisioning finish on shutdown; exceptions were already recorded in the ledger.
        if not self._background:
            return
        await asyncio.wait(set(self._background), timeout=timeout_s)
