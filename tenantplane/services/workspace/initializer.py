from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Protocol

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tenantplane.core.errors import WorkspaceInitializationError
from tenantplane.services.workspace import schema


logger = logging.getLogger(__name__)

APPLIED = "applied"
ALREADY_PRESENT = "already_present"
SKIPPED = "skipped"

# Steps run in this order; "workspace" is always requested because linkage depends on it.
WORKSPACE_STEPS = (
    "schema",
    "workspace",
    "roles",
    "admin_user",
    "pipelines",
    "object_metadata",
    "permissions",
    "onboarding",
    "settings",
)
REQUIRED_STEPS = frozenset({"workspace"})

DEFAULT_ROLES = ("ADMIN", "EDITOR", "VIEWER")
PENDING_ONBOARDING_KEYS = (
    "ONBOARDING_CREATE_PROFILE_PENDING",
    "ONBOARDING_CONNECT_ACCOUNT_PENDING",
    "ONBOARDING_INVITE_TEAM_PENDING",
    "ONBOARDING_BOOK_ONBOARDING_PENDING",
)
DEFAULT_SETTINGS: dict[str, Any] = {
    "timezone": "UTC",
    "locale": "en-US",
    "currency": "USD",
    "date_format": "MM/DD/YYYY",
    "time_format": "12h",
    "week_start_day": "SUNDAY",
}


@dataclass(frozen=True)
class StepOutcome:
    step: str
    status: str
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"step": self.step, "status": self.status}
        if self.reason:
            payload["reason"] = self.reason
        return payload


@dataclass
class InitializationReport:
    tenant_id: str
    workspace_id: str
    admin_user_id: str | None = None
    steps: list[StepOutcome] = field(default_factory=list)

    def add(self, step: str, status: str, reason: str | None = None) -> None:
        self.steps.append(StepOutcome(step=step, status=status, reason=reason))

    def as_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "admin_user_id": self.admin_user_id,
            "steps": [step.as_dict() for step in self.steps],
        }


class WorkspaceInitializer(Protocol):
    """Contract for preparing a freshly allocated tenant store.

    Implementations must be idempotent: running twice for the same tenant converges
    on the same rows. ``features`` declares which steps the implementation can do;
    requested steps outside that set are reported as skipped/not_supported.
    """

    features: frozenset[str]

    async def initialize(
        self,
        engine: AsyncEngine,
        *,
        tenant_id: str,
        display_name: str,
        admin_email: str | None,
        requested: frozenset[str],
        admin_user_id: str | None = None,
    ) -> InitializationReport:
        ...


class SeedingWorkspaceInitializer:
    """Seed the downstream workspace schema and default records."""

    features = frozenset(
        {"schema", "workspace", "roles", "admin_user", "onboarding", "settings"}
    )

    async def initialize(
        self,
        engine: AsyncEngine,
        *,
        tenant_id: str,
        display_name: str,
        admin_email: str | None,
        requested: frozenset[str],
        admin_user_id: str | None = None,
    ) -> InitializationReport:
        # Workspace id mirrors the tenant id so token claims stay stable across reprovisioning.
        report = InitializationReport(tenant_id=tenant_id, workspace_id=tenant_id)
        wanted = requested | REQUIRED_STEPS
        for step in WORKSPACE_STEPS:
            if step not in wanted:
                continue
            if step not in self.features:
                logger.info("workspace_step_not_supported tenant_id=%s step=%s", tenant_id, step)
                report.add(step, SKIPPED, "not_supported")
                continue
            handler = getattr(self, f"_step_{step}")
            try:
                await handler(
                    engine,
                    report=report,
                    display_name=display_name,
                    admin_email=admin_email,
                    admin_user_id=admin_user_id,
                )
            except SQLAlchemyError as exc:
                logger.exception("workspace_step_failed tenant_id=%s step=%s", tenant_id, step)
                raise WorkspaceInitializationError(f"Workspace step {step} failed") from exc
        return report

    async def _step_schema(self, engine: AsyncEngine, *, report: InitializationReport, **_: Any) -> None:
        await schema.create_schema(engine)
        report.add("schema", APPLIED)

    async def _step_workspace(
        self, engine: AsyncEngine, *, report: InitializationReport, display_name: str, **_: Any
    ) -> None:
        _, created = await schema.ensure_row(
            engine,
            schema.workspace,
            match={"id": report.workspace_id},
            values={"display_name": display_name, "activation_status": "ACTIVE"},
            row_id=report.workspace_id,
        )
        report.add("workspace", APPLIED if created else ALREADY_PRESENT)

    async def _step_roles(self, engine: AsyncEngine, *, report: InitializationReport, **_: Any) -> None:
        created_any = False
        for label in DEFAULT_ROLES:
            _, created = await schema.ensure_row(
                engine,
                schema.role,
                match={"workspace_id": report.workspace_id, "label": label},
            )
            if not created:
                logger.info("workspace_role_exists workspace_id=%s label=%s", report.workspace_id, label)
            created_any = created_any or created
        report.add("roles", APPLIED if created_any else ALREADY_PRESENT)

    async def _step_admin_user(
        self,
        engine: AsyncEngine,
        *,
        report: InitializationReport,
        admin_email: str | None,
        admin_user_id: str | None = None,
        **_: Any,
    ) -> None:
        if not admin_email:
            report.add("admin_user", SKIPPED, "no_admin_email")
            return
        user_id, created = await schema.ensure_row(
            engine,
            schema.users,
            match={"email": admin_email.strip().lower()},
            values={"default_workspace_id": report.workspace_id},
            row_id=admin_user_id,
        )
        user_workspace_id, _ = await schema.ensure_row(
            engine,
            schema.user_workspace,
            match={"user_id": user_id, "workspace_id": report.workspace_id},
        )
        admin_role_id = await schema.find_row_id(
            engine, schema.role, {"workspace_id": report.workspace_id, "label": "ADMIN"}
        )
        if admin_role_id is not None:
            await schema.ensure_row(
                engine,
                schema.user_role,
                match={"user_workspace_id": user_workspace_id, "role_id": admin_role_id},
            )
        report.admin_user_id = user_id
        report.add("admin_user", APPLIED if created else ALREADY_PRESENT)

    async def _step_onboarding(self, engine: AsyncEngine, *, report: InitializationReport, **_: Any) -> None:
        async with engine.begin() as conn:
            await conn.execute(
                delete(schema.key_value_pair).where(
                    schema.key_value_pair.c.workspace_id == report.workspace_id,
                    schema.key_value_pair.c.key.in_(PENDING_ONBOARDING_KEYS),
                )
            )
        _, created = await schema.ensure_row(
            engine,
            schema.key_value_pair,
            match={"workspace_id": report.workspace_id, "key": "ONBOARDING_COMPLETED"},
            values={"value": {"completed_at": datetime.now(timezone.utc).isoformat()}},
        )
        report.add("onboarding", APPLIED if created else ALREADY_PRESENT)

    async def _step_settings(self, engine: AsyncEngine, *, report: InitializationReport, **_: Any) -> None:
        created_any = False
        for key, value in DEFAULT_SETTINGS.items():
            _, created = await schema.ensure_row(
                engine,
                schema.workspace_setting,
                match={"workspace_id": report.workspace_id, "key": key},
                values={"value": value},
            )
            created_any = created_any or created
        report.add("settings", APPLIED if created_any else ALREADY_PRESENT)
