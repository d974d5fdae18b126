from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from tenantplane.core.config import Settings
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: Exception) -> bool:
    # Provider 5xx and transport failures are worth another attempt; 4xx never are.
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (TimeoutError, OSError, httpx.TransportError))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 2
    backoff_ms: int = 200
    timeout_ms: int = 8000

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
            timeout_ms=settings.ext_call_timeout_ms,
        )

    def delay_s(self, attempt: int) -> float:
        # Exponential backoff with jitter.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    integration: str,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_transient,
) -> T:
    """Call ``func`` with a per-attempt timeout, retrying transient failures.

    The last error is re-raised unchanged; callers map it to their own error type.
    """
    policy = policy or RetryPolicy()
    attempts = max(policy.max_attempts, 1)
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:
            if attempt >= attempts or not retryable(exc):
                raise
            increment_counter(f"{integration}_retries_total")
            logger.info(
                "external_call_retry integration=%s attempt=%s error=%s",
                integration,
                attempt,
                type(exc).__name__,
            )
            await asyncio.sleep(policy.delay_s(attempt))
            attempt += 1
