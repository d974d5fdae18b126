from __future__ import annotations

from dataclasses import dataclass, field
import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.config import Settings, get_settings
from tenantplane.persistence.connections import ConnectionRouter
from tenantplane.services.auth.credentials import CredentialChain, build_credential_chain
from tenantplane.services.auth.token_bridge import TokenBridge
from tenantplane.services.auth.tokens import TokenMinter
from tenantplane.services.idempotency import IdempotencyLedger
from tenantplane.services.provisioning.state_machine import Provisioner
from tenantplane.services.provisioning.stores import DataStoreAllocator, build_allocator
from tenantplane.services.registration import RegistrationService
from tenantplane.services.webhooks.router import EventRouter
from tenantplane.services.workspace.initializer import SeedingWorkspaceInitializer, WorkspaceInitializer


logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Process-scoped collaborators, built once at startup and closed at shutdown."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    ledger: IdempotencyLedger
    router: ConnectionRouter
    minter: TokenMinter
    provisioner: Provisioner
    registration: RegistrationService
    token_bridge: TokenBridge
    http_client: httpx.AsyncClient
    # Set by build_container; handlers need the finished container.
    events: EventRouter = field(init=False, repr=False)

    async def aclose(self) -> None:
        await self.registration.drain(timeout_s=self.settings.registration_wait_timeout_s)
        await self.router.dispose_all()
        await self.http_client.aclose()
        logger.info("service_container_closed")


def build_container(
    *,
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    allocator: DataStoreAllocator | None = None,
    initializer: WorkspaceInitializer | None = None,
    credentials: CredentialChain | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ServiceContainer:
    settings = settings or get_settings()
    if session_factory is None:
        from tenantplane.persistence.db import SessionLocal

        session_factory = SessionLocal
    client = http_client or httpx.AsyncClient(timeout=settings.ext_call_timeout_ms / 1000)
    ledger = IdempotencyLedger(
        session_factory,
        processing_lease_s=settings.idempotency_processing_lease_s,
    )
    router = ConnectionRouter(
        pool_size=settings.tenant_pool_size,
        max_overflow=settings.tenant_pool_max_overflow,
    )
    minter = TokenMinter.from_settings(settings)
    provisioner = Provisioner(
        session_factory=session_factory,
        router=router,
        allocator=allocator or build_allocator(settings),
        initializer=initializer or SeedingWorkspaceInitializer(),
        minter=minter,
        workspace_features=settings.enabled_workspace_features(),
        slug_max_attempts=settings.slug_max_attempts,
    )
    container = ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        ledger=ledger,
        router=router,
        minter=minter,
        provisioner=provisioner,
        registration=RegistrationService(
            ledger=ledger,
            provisioner=provisioner,
            wait_timeout_s=settings.registration_wait_timeout_s,
        ),
        token_bridge=TokenBridge(
            session_factory=session_factory,
            router=router,
            credentials=credentials or build_credential_chain(settings, client=client),
            minter=minter,
        ),
        http_client=client,
    )
    container.events = EventRouter(
        container=container,
        ledger=ledger,
        signing_secret=settings.webhook_signing_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
        allow_unsigned=settings.webhook_allow_unsigned,
    )
    return container
