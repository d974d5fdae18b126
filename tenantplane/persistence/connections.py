from __future__ import annotations

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from tenantplane.persistence.db import build_engine, pool_stats


logger = logging.getLogger(__name__)


class ConnectionRouter:
    """Process-scoped cache of per-tenant engines keyed by connection descriptor.

    Engines are created lazily on first use. Concurrent callers asking for the same
    descriptor share one engine; the lock only guards create-if-absent. The router
    never reads or writes the tenant registry.
    """

    def __init__(self, *, pool_size: int = 5, max_overflow: int = 5) -> None:
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._engines: dict[str, AsyncEngine] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._closed = False

    async def pool(self, descriptor: str) -> AsyncEngine:
        if self._closed:
            raise RuntimeError("connection router is shut down")
        engine = self._engines.get(descriptor)
        if engine is not None:
            return engine
        lock = self._locks.setdefault(descriptor, asyncio.Lock())
        async with lock:
            engine = self._engines.get(descriptor)
            if engine is None:
                engine = build_engine(
                    descriptor,
                    pool_size=self._pool_size,
                    max_overflow=self._max_overflow,
                )
                self._engines[descriptor] = engine
                logger.info("tenant_pool_opened database=%s", engine.url.database)
        return engine

    def __contains__(self, descriptor: str) -> bool:
        return descriptor in self._engines

    def __len__(self) -> int:
        return len(self._engines)

    def stats(self) -> dict[str, dict[str, int | None]]:
        return {
            str(engine.url.database): pool_stats(engine) for engine in self._engines.values()
        }

    async def evict(self, descriptor: str) -> None:
        engine = self._engines.pop(descriptor, None)
        self._locks.pop(descriptor, None)
        if engine is not None:
            await engine.dispose()

    async def dispose_all(self) -> None:
        self._closed = True
        engines = list(self._engines.values())
        self._engines.clear()
        self._locks.clear()
        for engine in engines:
            await engine.dispose()
        logger.info("tenant_pools_disposed count=%s", len(engines))
