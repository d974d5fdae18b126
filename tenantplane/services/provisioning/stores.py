from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from tenantplane.core.config import Settings
from tenantplane.core.errors import DataStoreAllocationError, ValidationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllocatedStore:
    connection_descriptor: str
    database_name: str


class DataStoreAllocator(Protocol):
    async def allocate(self, *, tenant_id: str, slug: str) -> AllocatedStore:
        ...


def database_name_for(slug: str) -> str:
    # Postgres identifiers cannot hold dashes unquoted; keep names portable.
    return f"tenant_{slug.replace('-', '_')}"


class PostgresDatabaseAllocator:
    """Allocate one Postgres database per tenant via CREATE DATABASE."""

    def __init__(self, *, admin_url: str, url_template: str) -> None:
        if "{database}" not in url_template:
            raise ValidationError("tenant_database_url_template must contain {database}")
        self._admin_url = admin_url
        self._url_template = url_template

    async def allocate(self, *, tenant_id: str, slug: str) -> AllocatedStore:
        database_name = database_name_for(slug)
        # CREATE DATABASE cannot run inside a transaction block.
        engine = create_async_engine(self._admin_url, isolation_level="AUTOCOMMIT")
        try:
            async with engine.connect() as conn:
                exists = await conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"),
                    {"name": database_name},
                )
                if exists.scalar_one_or_none() is None:
                    quoted = engine.dialect.identifier_preparer.quote(database_name)
                    await conn.execute(text(f"CREATE DATABASE {quoted}"))
                    logger.info("tenant_database_created tenant_id=%s database=%s", tenant_id, database_name)
                else:
                    logger.info("tenant_database_exists tenant_id=%s database=%s", tenant_id, database_name)
        except (SQLAlchemyError, OSError) as exc:
            raise DataStoreAllocationError(f"Could not create database {database_name}") from exc
        finally:
            await engine.dispose()
        return AllocatedStore(
            connection_descriptor=self._url_template.format(database=database_name),
            database_name=database_name,
        )


class SqliteFileAllocator:
    """Allocate one SQLite file per tenant; used by development installs and tests."""

    def __init__(self, *, directory: str | Path) -> None:
        self._directory = Path(directory)

    async def allocate(self, *, tenant_id: str, slug: str) -> AllocatedStore:
        database_name = database_name_for(slug)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DataStoreAllocationError(f"Could not create {self._directory}") from exc
        path = (self._directory / f"{database_name}.db").resolve()
        logger.info("tenant_sqlite_store_allocated tenant_id=%s path=%s", tenant_id, path)
        return AllocatedStore(
            connection_descriptor=f"sqlite+aiosqlite:///{path}",
            database_name=database_name,
        )


def build_allocator(settings: Settings) -> DataStoreAllocator:
    backend = settings.tenant_store_backend.lower()
    if backend == "sqlite":
        return SqliteFileAllocator(directory=settings.tenant_sqlite_dir)
    if backend == "postgres":
        return PostgresDatabaseAllocator(
            admin_url=settings.tenant_admin_database_url,
            url_template=settings.tenant_database_url_template,
        )
    raise ValidationError(f"Unknown tenant_store_backend: {settings.tenant_store_backend}")
