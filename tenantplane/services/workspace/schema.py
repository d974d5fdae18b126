from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    insert,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine


# Minimal downstream workspace schema: only what linkage and seeding touch.
metadata = MetaData()

workspace = Table(
    "workspace",
    metadata,
    Column("id", String, primary_key=True),
    Column("display_name", String, nullable=False),
    Column("activation_status", String, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

users = Table(
    "users",
    metadata,
    Column("id", String, primary_key=True),
    Column("email", String, nullable=False),
    Column("first_name", String, nullable=True),
    Column("last_name", String, nullable=True),
    Column("default_workspace_id", String, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("email", name="uq_users_email"),
)

user_workspace = Table(
    "user_workspace",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=False),
    Column("workspace_id", String, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("user_id", "workspace_id", name="uq_user_workspace_user_workspace"),
)

role = Table(
    "role",
    metadata,
    Column("id", String, primary_key=True),
    Column("workspace_id", String, nullable=False),
    Column("label", String, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("workspace_id", "label", name="uq_role_workspace_label"),
)

user_role = Table(
    "user_role",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_workspace_id", String, nullable=False),
    Column("role_id", String, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("user_workspace_id", "role_id", name="uq_user_role_assignment"),
)

key_value_pair = Table(
    "key_value_pair",
    metadata,
    Column("id", String, primary_key=True),
    Column("workspace_id", String, nullable=False),
    Column("key", String, nullable=False),
    Column("value", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("workspace_id", "key", name="uq_key_value_pair_workspace_key"),
)

workspace_setting = Table(
    "workspace_setting",
    metadata,
    Column("id", String, primary_key=True),
    Column("workspace_id", String, nullable=False),
    Column("key", String, nullable=False),
    Column("value", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("workspace_id", "key", name="uq_workspace_setting_workspace_key"),
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def find_row_id(engine: AsyncEngine, table: Table, match: dict[str, Any]) -> str | None:
    query = select(table.c.id)
    for column, value in match.items():
        query = query.where(table.c[column] == value)
    async with engine.connect() as conn:
        result = await conn.execute(query.limit(1))
        return result.scalar_one_or_none()


async def ensure_row(
    engine: AsyncEngine,
    table: Table,
    *,
    match: dict[str, Any],
    values: dict[str, Any] | None = None,
    row_id: str | None = None,
) -> tuple[str, bool]:
    """Return ``(id, created)`` for the row identified by ``match``, inserting it if absent.

    ``match`` must cover a unique constraint of ``table``. The insert runs in its own
    transaction so a concurrent writer's IntegrityError leaves nothing half-applied;
    the loser reloads the winner's row instead.
    """
    existing = await find_row_id(engine, table, match)
    if existing is not None:
        return existing, False
    new_id = row_id or uuid4().hex
    row = {"id": new_id, "created_at": _utc_now(), **match, **(values or {})}
    try:
        async with engine.begin() as conn:
            await conn.execute(insert(table).values(**row))
    except IntegrityError:
        existing = await find_row_id(engine, table, match)
        if existing is None:
            raise
        return existing, False
    return new_id, True


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
