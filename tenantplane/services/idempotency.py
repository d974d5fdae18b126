from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable, TypeVar, Union

from sqlalchemy import delete, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.errors import (
    LedgerUnavailableError,
    StorageUnavailableError,
    TenantPlaneError,
    TransientInfrastructureError,
)
from tenantplane.domain.models import IdempotencyRecord
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL_STATUSES = (COMPLETED, FAILED)

T = TypeVar("T")

# A concurrent release can delete the row between our failed insert and the reload.
_BEGIN_ATTEMPTS = 3


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_transient_storage_error(exc: BaseException) -> bool:
    # Connection-level failures: the same key must be retryable once the store is back.
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (OSError, TimeoutError))


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip; treat stored naive timestamps as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def idempotency_key(operation: str, token: str) -> str:
    # Namespace keys by operation so unrelated flows can never collide.
    return f"{operation}:{token}"


def operation_of(key: str) -> str:
    return key.split(":", 1)[0]


@dataclass(frozen=True)
class Started:
    key: str


@dataclass(frozen=True)
class AlreadyCompleted:
    key: str
    result: dict[str, Any] | None


@dataclass(frozen=True)
class AlreadyProcessing:
    key: str
    # Lease expired without a terminal status; reported to operators, never re-run.
    stale: bool = False


@dataclass(frozen=True)
class AlreadyFailed:
    key: str
    error_code: str | None
    error_message: str | None


BeginOutcome = Union[Started, AlreadyCompleted, AlreadyProcessing, AlreadyFailed]


@dataclass(frozen=True)
class LedgerEntry:
    key: str
    operation: str
    status: str
    result: dict[str, Any] | None
    error_code: str | None
    error_message: str | None
    created_at: datetime | None
    updated_at: datetime | None
    completed_at: datetime | None
    locked_until: datetime | None
    stale: bool = field(default=False)

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "operation": self.operation,
            "status": self.status,
            "result": self.result,
            "error": (
                {"code": self.error_code, "message": self.error_message}
                if self.status == FAILED
                else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "locked_until": self.locked_until.isoformat() if self.locked_until else None,
            "stale": self.stale,
        }


def _entry(record: IdempotencyRecord, now: datetime) -> LedgerEntry:
    locked_until = _as_utc(record.locked_until)
    return LedgerEntry(
        key=record.idem_key,
        operation=record.operation,
        status=record.status,
        result=record.result_json,
        error_code=record.error_code,
        error_message=record.error_message,
        created_at=_as_utc(record.created_at),
        updated_at=_as_utc(record.updated_at),
        completed_at=_as_utc(record.completed_at),
        locked_until=locked_until,
        stale=record.status == PROCESSING and locked_until is not None and locked_until < now,
    )


class IdempotencyLedger:
    """Durable exactly-once guard keyed by namespaced operation keys.

    Every call runs in its own short transaction so a begin/complete pair never holds
    a database transaction open across the guarded side effect.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        processing_lease_s: int = 900,
    ) -> None:
        self._session_factory = session_factory
        self._lease = timedelta(seconds=processing_lease_s)

    async def _load(self, session: AsyncSession, key: str) -> IdempotencyRecord | None:
        result = await session.execute(
            select(IdempotencyRecord).where(IdempotencyRecord.idem_key == key)
        )
        return result.scalar_one_or_none()

    async def begin(self, key: str) -> BeginOutcome:
        for _ in range(_BEGIN_ATTEMPTS):
            now = _utc_now()
            try:
                async with self._session_factory() as session:
                    session.add(
                        IdempotencyRecord(
                            idem_key=key,
                            operation=operation_of(key),
                            status=PROCESSING,
                            locked_until=now + self._lease,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    try:
                        await session.commit()
                    except IntegrityError:
                        # Unique key already present: another caller owns or finished this operation.
                        await session.rollback()
                    else:
                        increment_counter("ledger_started_total")
                        return Started(key=key)
                    record = await self._load(session, key)
                    if record is None:
                        continue
                    entry = _entry(record, now)
            except SQLAlchemyError as exc:
                logger.exception("ledger_begin_failed key=%s", key)
                raise LedgerUnavailableError("Idempotency ledger is unavailable") from exc
            except OSError as exc:
                logger.exception("ledger_begin_failed key=%s", key)
                raise LedgerUnavailableError("Idempotency ledger is unavailable") from exc
            return self._outcome(entry)
        raise LedgerUnavailableError(f"Idempotency key {key} kept changing during begin")

    def _outcome(self, entry: LedgerEntry) -> BeginOutcome:
        if entry.status == COMPLETED:
            increment_counter("ledger_replayed_total")
            return AlreadyCompleted(key=entry.key, result=entry.result)
        if entry.status == FAILED:
            increment_counter("ledger_replayed_total")
            return AlreadyFailed(
                key=entry.key,
                error_code=entry.error_code,
                error_message=entry.error_message,
            )
        if entry.stale:
            increment_counter("ledger_stale_total")
            logger.warning(
                "ledger_processing_stale key=%s locked_until=%s",
                entry.key,
                entry.locked_until.isoformat() if entry.locked_until else None,
            )
        else:
            increment_counter("ledger_in_flight_total")
        return AlreadyProcessing(key=entry.key, stale=entry.stale)

    async def complete(self, key: str, result: dict[str, Any] | None) -> None:
        now = _utc_now()
        try:
            async with self._session_factory() as session:
                outcome = await session.execute(
                    update(IdempotencyRecord)
                    .where(IdempotencyRecord.idem_key == key, IdempotencyRecord.status == PROCESSING)
                    .values(
                        status=COMPLETED,
                        result_json=result,
                        locked_until=None,
                        updated_at=now,
                        completed_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("ledger_complete_failed key=%s", key)
            raise LedgerUnavailableError("Idempotency ledger is unavailable") from exc
        if outcome.rowcount != 1:
            # Status is monotonic; a terminal row is never rewritten.
            logger.warning("ledger_complete_ignored key=%s", key)

    async def fail(self, key: str, code: str, message: str) -> None:
        now = _utc_now()
        try:
            async with self._session_factory() as session:
                outcome = await session.execute(
                    update(IdempotencyRecord)
                    .where(IdempotencyRecord.idem_key == key, IdempotencyRecord.status == PROCESSING)
                    .values(
                        status=FAILED,
                        error_code=code,
                        error_message=message,
                        locked_until=None,
                        updated_at=now,
                        completed_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("ledger_fail_failed key=%s", key)
            raise LedgerUnavailableError("Idempotency ledger is unavailable") from exc
        if outcome.rowcount != 1:
            logger.warning("ledger_fail_ignored key=%s", key)

    async def release(self, key: str) -> None:
        # Drop an in-flight row after a transient failure so a retry with the same key proceeds.
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(IdempotencyRecord).where(
                        IdempotencyRecord.idem_key == key,
                        IdempotencyRecord.status == PROCESSING,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.exception("ledger_release_failed key=%s", key)
            raise LedgerUnavailableError("Idempotency ledger is unavailable") from exc
        increment_counter("ledger_released_total")

    async def lookup(self, key: str) -> LedgerEntry | None:
        try:
            async with self._session_factory() as session:
                record = await self._load(session, key)
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError("Idempotency ledger is unavailable") from exc
        if record is None:
            return None
        return _entry(record, _utc_now())

    async def find_stuck(self, *, limit: int = 100) -> list[LedgerEntry]:
        now = _utc_now()
        async with self._session_factory() as session:
            result = await session.execute(
                select(IdempotencyRecord)
                .where(
                    IdempotencyRecord.status == PROCESSING,
                    IdempotencyRecord.locked_until < now,
                )
                .order_by(IdempotencyRecord.created_at.asc())
                .limit(limit)
            )
            records = list(result.scalars().all())
        return [_entry(record, now) for record in records]

    async def purge(self, *, retention_days: int, now: datetime | None = None) -> int:
        # Only terminal rows age out; processing rows stay until an operator resolves them.
        cutoff = (now or _utc_now()) - timedelta(days=retention_days)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(IdempotencyRecord).where(
                    IdempotencyRecord.status.in_(TERMINAL_STATUSES),
                    IdempotencyRecord.created_at < cutoff,
                )
            )
            await session.commit()
        purged = int(result.rowcount or 0)
        logger.info("ledger_purged count=%s retention_days=%s", purged, retention_days)
        return purged

    async def settle(self, key: str, operation: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
        """Run ``operation`` for a key that already returned ``Started`` and record its outcome.

        Transient infrastructure errors release the key; every other error marks it failed.
        Raw connection-level storage errors count as transient and surface as
        ``StorageUnavailableError``; everything else is re-raised unchanged.
        """
        try:
            result = await operation()
        except TransientInfrastructureError:
            await self.release(key)
            raise
        except TenantPlaneError as exc:
            await self.fail(key, exc.code, exc.message)
            raise
        except Exception as exc:
            if not is_transient_storage_error(exc):
                await self.fail(key, "INTERNAL_ERROR", "Operation failed unexpectedly")
                raise
            logger.warning("ledger_operation_storage_error key=%s error=%s", key, type(exc).__name__)
            await self.release(key)
            raise StorageUnavailableError("Storage is temporarily unavailable") from exc
        await self.complete(key, result)
        return result
