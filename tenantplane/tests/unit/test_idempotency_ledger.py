from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from tenantplane.core.errors import (
    IntegrationUnavailableError,
    LedgerUnavailableError,
    StorageUnavailableError,
    ValidationError,
)
from tenantplane.domain.models import IdempotencyRecord
from tenantplane.services.idempotency import (
    AlreadyCompleted,
    AlreadyFailed,
    AlreadyProcessing,
    IdempotencyLedger,
    Started,
    idempotency_key,
    operation_of,
    is_transient_storage_error,
)
from tenantplane.services.telemetry import counters_snapshot


async def _row_count(session_factory, key: str) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(func.count()).select_from(IdempotencyRecord).where(IdempotencyRecord.idem_key == key)
        )
        return int(result.scalar_one())


def test_keys_are_namespaced_by_operation() -> None:
    key = idempotency_key("registration", "k1")
    assert key == "registration:k1"
    assert operation_of(key) == "registration"
    assert idempotency_key("user.created", "msg_1") != idempotency_key("organization.created", "msg_1")


async def test_concurrent_begin_yields_exactly_one_started(ledger: IdempotencyLedger, session_factory) -> None:
    # The unique insert decides the winner; everyone else sees the in-flight row.
    key = idempotency_key("registration", "race")
    outcomes = await asyncio.gather(*(ledger.begin(key) for _ in range(8)))
    started = [outcome for outcome in outcomes if isinstance(outcome, Started)]
    assert len(started) == 1
    assert all(
        isinstance(outcome, (Started, AlreadyProcessing)) for outcome in outcomes
    )
    assert await _row_count(session_factory, key) == 1


async def test_completed_key_replays_stored_result(ledger: IdempotencyLedger) -> None:
    key = idempotency_key("registration", "done")
    assert isinstance(await ledger.begin(key), Started)
    await ledger.complete(key, {"tenant_id": "t1"})

    outcome = await ledger.begin(key)
    assert isinstance(outcome, AlreadyCompleted)
    assert outcome.result == {"tenant_id": "t1"}
    assert counters_snapshot().get("ledger_replayed_total") == 1


async def test_failed_key_is_terminal(ledger: IdempotencyLedger) -> None:
    key = idempotency_key("registration", "broken")
    await ledger.begin(key)
    await ledger.fail(key, "PROVISIONING_FAILED", "Tenant provisioning failed")

    outcome = await ledger.begin(key)
    assert isinstance(outcome, AlreadyFailed)
    assert outcome.error_code == "PROVISIONING_FAILED"

    # A late complete never rewrites a terminal row.
    await ledger.complete(key, {"tenant_id": "late"})
    entry = await ledger.lookup(key)
    assert entry is not None
    assert entry.status == "failed"
    assert entry.result is None


async def test_release_lets_the_same_key_start_again(ledger: IdempotencyLedger) -> None:
    key = idempotency_key("registration", "transient")
    await ledger.begin(key)
    await ledger.release(key)
    assert await ledger.lookup(key) is None
    assert isinstance(await ledger.begin(key), Started)


async def test_settle_maps_outcomes(ledger: IdempotencyLedger) -> None:
    ok_key = idempotency_key("op", "ok")
    await ledger.begin(ok_key)

    async def _ok() -> dict:
        return {"action": "done"}

    assert await ledger.settle(ok_key, _ok) == {"action": "done"}
    assert (await ledger.lookup(ok_key)).status == "completed"

    transient_key = idempotency_key("op", "transient")
    await ledger.begin(transient_key)

    async def _unavailable() -> dict:
        raise IntegrationUnavailableError("queue down")

    with pytest.raises(IntegrationUnavailableError):
        await ledger.settle(transient_key, _unavailable)
    assert await ledger.lookup(transient_key) is None

    domain_key = idempotency_key("op", "domain")
    await ledger.begin(domain_key)

    async def _invalid() -> dict:
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        await ledger.settle(domain_key, _invalid)
    entry = await ledger.lookup(domain_key)
    assert entry.status == "failed"
    assert entry.error_code == "VALIDATION_ERROR"

    crash_key = idempotency_key("op", "crash")
    await ledger.begin(crash_key)

    async def _crash() -> dict:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await ledger.settle(crash_key, _crash)
    entry = await ledger.lookup(crash_key)
    assert entry.status == "failed"
    assert entry.error_code == "INTERNAL_ERROR"
    # Internal detail never reaches the stored message.
    assert "boom" not in (entry.error_message or "")


def _connection_lost() -> OperationalError:
    return OperationalError("INSERT INTO global_users", {}, ConnectionResetError("server closed the connection"))


class _UnreachableSession:
    async def __aenter__(self):
        raise _connection_lost()

    async def __aexit__(self, *exc_info) -> bool:
        return False


def test_storage_error_classification() -> None:
    assert is_transient_storage_error(_connection_lost())
    assert is_transient_storage_error(TimeoutError())
    assert not is_transient_storage_error(RuntimeError("boom"))


async def test_storage_blip_releases_the_key(ledger: IdempotencyLedger) -> None:
    key = idempotency_key("user.created", "evt_9")
    await ledger.begin(key)

    async def _dropped_connection() -> dict:
        raise _connection_lost()

    with pytest.raises(StorageUnavailableError) as excinfo:
        await ledger.settle(key, _dropped_connection)
    assert excinfo.value.status_code == 503
    # No failed row: the redelivery runs the handler again.
    assert await ledger.lookup(key) is None
    assert isinstance(await ledger.begin(key), Started)


async def test_begin_storage_failure_is_unavailable_not_in_flight() -> None:
    ledger = IdempotencyLedger(lambda: _UnreachableSession())
    with pytest.raises(LedgerUnavailableError):
        await ledger.begin(idempotency_key("registration", "k1"))


async def test_expired_processing_lease_is_reported_not_rerun(session_factory) -> None:
    ledger = IdempotencyLedger(session_factory, processing_lease_s=1)
    key = idempotency_key("registration", "stuck")
    await ledger.begin(key)
    async with session_factory() as session:
        await session.execute(
            update(IdempotencyRecord)
            .where(IdempotencyRecord.idem_key == key)
            .values(locked_until=datetime.now(timezone.utc) - timedelta(minutes=5))
        )
        await session.commit()

    outcome = await ledger.begin(key)
    assert isinstance(outcome, AlreadyProcessing)
    assert outcome.stale is True

    stuck = await ledger.find_stuck()
    assert [entry.key for entry in stuck] == [key]
    assert stuck[0].as_dict()["stale"] is True


async def test_purge_removes_only_old_terminal_rows(ledger: IdempotencyLedger, session_factory) -> None:
    await ledger.begin("op:old-done")
    await ledger.complete("op:old-done", {"ok": True})
    await ledger.begin("op:old-failed")
    await ledger.fail("op:old-failed", "X", "x")
    await ledger.begin("op:old-processing")
    await ledger.begin("op:fresh-done")
    await ledger.complete("op:fresh-done", {"ok": True})

    old = datetime.now(timezone.utc) - timedelta(days=45)
    async with session_factory() as session:
        await session.execute(
            update(IdempotencyRecord)
            .where(IdempotencyRecord.idem_key.in_(["op:old-done", "op:old-failed", "op:old-processing"]))
            .values(created_at=old)
        )
        await session.commit()

    purged = await ledger.purge(retention_days=30)
    assert purged == 2
    assert await ledger.lookup("op:old-done") is None
    assert await ledger.lookup("op:old-failed") is None
    assert (await ledger.lookup("op:old-processing")).status == "processing"
    assert (await ledger.lookup("op:fresh-done")).status == "completed"
