from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tenantplane.apps.api.main import create_app
from tenantplane.core.config import Settings
from tenantplane.domain.models import Base
from tenantplane.persistence.connections import ConnectionRouter
from tenantplane.services.auth.tokens import TokenMinter
from tenantplane.services.container import ServiceContainer, build_container
from tenantplane.services.idempotency import IdempotencyLedger
from tenantplane.services.provisioning.state_machine import Provisioner
from tenantplane.services.provisioning.stores import SqliteFileAllocator
from tenantplane.services.telemetry import reset_telemetry
from tenantplane.services.workspace.initializer import SeedingWorkspaceInitializer
from tenantplane.tests.utils.identity import (
    ADMIN_TOKEN,
    DOWNSTREAM_SECRET,
    IDP_SHARED_SECRET,
    WEBHOOK_SECRET,
)


@pytest.fixture(autouse=True)
def reset_telemetry_between_tests() -> None:
    # Counters and latency samples are process-global; keep tests independent.
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    # Sqlite catalog and tenant stores keep the suite free of external services.
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}",
        tenant_store_backend="sqlite",
        tenant_sqlite_dir=str(tmp_path / "tenants"),
        provisioning_execution_mode="inline",
        registration_wait_timeout_s=10.0,
        webhook_signing_secret=WEBHOOK_SECRET,
        webhook_allow_unsigned=False,
        idp_secret_key=None,
        idp_jwks_url=None,
        idp_shared_secret=IDP_SHARED_SECRET,
        downstream_jwt_secret=DOWNSTREAM_SECRET,
        admin_api_token=ADMIN_TOKEN,
    )


@pytest.fixture
async def catalog_engine(settings: Settings) -> AsyncEngine:
    engine = create_async_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(catalog_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(catalog_engine, expire_on_commit=False)


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> IdempotencyLedger:
    return IdempotencyLedger(session_factory, processing_lease_s=900)


@pytest.fixture
def minter() -> TokenMinter:
    return TokenMinter(
        secret=DOWNSTREAM_SECRET,
        access_ttl_s=24 * 60 * 60,
        refresh_ttl_s=30 * 24 * 60 * 60,
        admin_ttl_s=7 * 24 * 60 * 60,
        auth_provider="clerk",
    )


@pytest.fixture
async def router() -> ConnectionRouter:
    router = ConnectionRouter(pool_size=2, max_overflow=2)
    yield router
    await router.dispose_all()


@pytest.fixture
def provisioner(
    session_factory: async_sessionmaker[AsyncSession],
    router: ConnectionRouter,
    minter: TokenMinter,
    settings: Settings,
) -> Provisioner:
    return Provisioner(
        session_factory=session_factory,
        router=router,
        allocator=SqliteFileAllocator(directory=settings.tenant_sqlite_dir),
        initializer=SeedingWorkspaceInitializer(),
        minter=minter,
        workspace_features=settings.enabled_workspace_features(),
        slug_max_attempts=settings.slug_max_attempts,
    )


@pytest.fixture
async def container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> ServiceContainer:
    container = build_container(
        settings=settings,
        session_factory=session_factory,
        http_client=httpx.AsyncClient(),
    )
    yield container
    await container.aclose()


@pytest.fixture
async def client(container: ServiceContainer) -> AsyncClient:
    # ASGITransport skips lifespan, so the app runs on the injected container.
    app = create_app(container=container)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
