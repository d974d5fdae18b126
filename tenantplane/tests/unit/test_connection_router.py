from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from sqlalchemy import text

from tenantplane.persistence.connections import ConnectionRouter


async def test_concurrent_requests_share_one_engine(tmp_path: Path) -> None:
    # Many first requests for the same tenant must not race into duplicate pools.
    router = ConnectionRouter(pool_size=2, max_overflow=0)
    descriptor = f"sqlite+aiosqlite:///{tmp_path / 'tenant_acme.db'}"
    try:
        engines = await asyncio.gather(*(router.pool(descriptor) for _ in range(20)))
        assert len({id(engine) for engine in engines}) == 1
        assert len(router) == 1
        assert descriptor in router

        async with engines[0].connect() as conn:
            assert (await conn.execute(text("SELECT 1"))).scalar_one() == 1
    finally:
        await router.dispose_all()


async def test_distinct_descriptors_get_distinct_engines(tmp_path: Path) -> None:
    router = ConnectionRouter()
    first = f"sqlite+aiosqlite:///{tmp_path / 'tenant_a.db'}"
    second = f"sqlite+aiosqlite:///{tmp_path / 'tenant_b.db'}"
    try:
        engine_a = await router.pool(first)
        engine_b = await router.pool(second)
        assert engine_a is not engine_b
        assert set(router.stats()) == {str(tmp_path / "tenant_a.db"), str(tmp_path / "tenant_b.db")}
    finally:
        await router.dispose_all()


async def test_evict_drops_cached_engine(tmp_path: Path) -> None:
    router = ConnectionRouter()
    descriptor = f"sqlite+aiosqlite:///{tmp_path / 'tenant_a.db'}"
    try:
        engine = await router.pool(descriptor)
        await router.evict(descriptor)
        assert descriptor not in router
        assert await router.pool(descriptor) is not engine
    finally:
        await router.dispose_all()


async def test_router_refuses_new_pools_after_shutdown(tmp_path: Path) -> None:
    router = ConnectionRouter()
    await router.dispose_all()
    with pytest.raises(RuntimeError):
        await router.pool(f"sqlite+aiosqlite:///{tmp_path / 'tenant_a.db'}")
