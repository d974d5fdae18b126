from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import TYPE_CHECKING, Any, Mapping

from tenantplane.core.errors import InvalidSignatureError, MissingWebhookHeadersError, ValidationError
from tenantplane.services.idempotency import (
    AlreadyCompleted,
    AlreadyFailed,
    AlreadyProcessing,
    IdempotencyLedger,
    idempotency_key,
)
from tenantplane.services.telemetry import increment_counter
from tenantplane.services.webhooks.handlers import DEFAULT_HANDLERS, EventHandler
from tenantplane.services.webhooks.signatures import ID_HEADER, verify_webhook

if TYPE_CHECKING:
    from tenantplane.services.container import ServiceContainer


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    event_type: str
    event_id: str
    outcome: dict[str, Any]
    duplicate: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            **self.outcome,
            "event_type": self.event_type,
            "event_id": self.event_id,
            "duplicate": self.duplicate,
        }


@dataclass
class EventRouter:
    """Map identity provider lifecycle events onto registry mutations, at most once per event."""

    container: ServiceContainer
    ledger: IdempotencyLedger
    signing_secret: str | None = None
    tolerance_seconds: int = 300
    allow_unsigned: bool = False
    handlers: dict[str, EventHandler] = field(default_factory=lambda: dict(DEFAULT_HANDLERS))

    async def handle_delivery(self, *, headers: Mapping[str, str], body: bytes) -> WebhookResult:
        # Authenticity is settled before the ledger sees the event.
        if self.signing_secret:
            envelope = verify_webhook(
                secret=self.signing_secret,
                headers=headers,
                body=body,
                tolerance_seconds=self.tolerance_seconds,
            )
            event_id = envelope.message_id
        elif self.allow_unsigned:
            event_id = headers.get(ID_HEADER) or ""
        else:
            raise InvalidSignatureError("Webhook signing secret is not configured")
        try:
            payload = json.loads(body)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict) or not payload.get("type"):
            raise ValidationError("Webhook body has no event type")
        event_id = event_id or str(payload.get("id") or "")
        if not event_id:
            raise MissingWebhookHeadersError("Webhook event has no id")
        return await self.handle(str(payload["type"]), event_id, payload)

    async def handle(self, event_type: str, event_id: str, payload: dict[str, Any]) -> WebhookResult:
        key = idempotency_key(event_type, event_id)
        outcome = await self.ledger.begin(key)
        if isinstance(outcome, AlreadyCompleted):
            increment_counter("webhook_duplicates_total")
            logger.info("webhook_replayed key=%s", key)
            return WebhookResult(event_type, event_id, outcome.result or {}, duplicate=True)
        if isinstance(outcome, AlreadyProcessing):
            increment_counter("webhook_duplicates_total")
            return WebhookResult(
                event_type,
                event_id,
                {"action": "duplicate_in_flight", "stale": outcome.stale},
                duplicate=True,
            )
        if isinstance(outcome, AlreadyFailed):
            increment_counter("webhook_duplicates_total")
            return WebhookResult(
                event_type,
                event_id,
                {"action": "previously_failed", "error_code": outcome.error_code},
                duplicate=True,
            )

        handler = self.handlers.get(event_type)
        data = payload.get("data") or {}

        async def _dispatch() -> dict[str, Any]:
            if handler is None:
                return {"action": "ignored", "reason": "unhandled_event_type"}
            return await handler(self.container, data)

        result = await self.ledger.settle(key, _dispatch)
        increment_counter(f"webhook_{result.get('action', 'unknown')}_total")
        logger.info(
            "webhook_handled key=%s action=%s reason=%s",
            key,
            result.get("action"),
            result.get("reason"),
        )
        return WebhookResult(event_type, event_id, result)
