from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tenantplane.core.errors import LinkageFailureError
from tenantplane.services.workspace import schema


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkspaceLinkage:
    user_id: str
    workspace_id: str
    user_workspace_id: str
    created_user: bool
    created_link: bool


async def resolve_workspace_id(engine: AsyncEngine, tenant_id: str) -> str:
    # Workspaces are created with id == tenant_id; fall back to it if the row is missing.
    try:
        async with engine.connect() as conn:
            result = await conn.execute(
                select(schema.workspace.c.id).where(schema.workspace.c.id == tenant_id).limit(1)
            )
            workspace_id = result.scalar_one_or_none()
            if workspace_id is None:
                result = await conn.execute(select(schema.workspace.c.id).limit(1))
                workspace_id = result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise LinkageFailureError("Tenant workspace could not be read") from exc
    return workspace_id or tenant_id


async def ensure_user_linkage(
    engine: AsyncEngine,
    *,
    workspace_id: str,
    email: str,
    first_name: str | None = None,
    last_name: str | None = None,
    user_id: str | None = None,
) -> WorkspaceLinkage:
    """Materialize the downstream user and its workspace membership.

    A new downstream user row takes ``user_id`` (the global user id) as its primary key.
    Safe under concurrent calls for the same identity: both rows are keyed by unique
    constraints and the losing writer reloads the winner's row.
    """
    normalized = email.strip().lower()
    try:
        # A row already keyed by the global id wins over an email match (the email may have changed).
        row_id = await schema.find_row_id(engine, schema.users, {"id": user_id}) if user_id else None
        created_user = False
        if row_id is None:
            row_id, created_user = await schema.ensure_row(
                engine,
                schema.users,
                match={"email": normalized},
                values={
                    "first_name": first_name,
                    "last_name": last_name,
                    "default_workspace_id": workspace_id,
                },
                row_id=user_id,
            )
        user_workspace_id, created_link = await schema.ensure_row(
            engine,
            schema.user_workspace,
            match={"user_id": row_id, "workspace_id": workspace_id},
        )
    except SQLAlchemyError as exc:
        logger.exception("workspace_linkage_failed workspace_id=%s", workspace_id)
        raise LinkageFailureError("Downstream user linkage failed") from exc
    if created_user or created_link:
        logger.info(
            "workspace_user_linked workspace_id=%s user_id=%s created_user=%s",
            workspace_id,
            row_id,
            created_user,
        )
    return WorkspaceLinkage(
        user_id=row_id,
        workspace_id=workspace_id,
        user_workspace_id=user_workspace_id,
        created_user=created_user,
        created_link=created_link,
    )
