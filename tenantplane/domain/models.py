from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping sqlite-backed tests on the generic JSON type.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class TenantRegistryEntry(Base):
    __tablename__ = "tenant_registry"
    __table_args__ = (
        UniqueConstraint("slug", name="uq_tenant_registry_slug"),
        UniqueConstraint("external_org_id", name="uq_tenant_registry_external_org"),
        Index("ix_tenant_registry_status", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    slug: Mapped[str] = mapped_column(String(64))
    display_name: Mapped[str] = mapped_column(String(255))
    # Link to the identity provider organization; unique only when present.
    external_org_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Opaque locator for the tenant's isolated store, recorded once allocation succeeds.
    connection_descriptor: Mapped[str | None] = mapped_column(Text, nullable=True)
    database_name: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String(32))
    plan: Mapped[str] = mapped_column(String(32))
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class GlobalUser(Base):
    __tablename__ = "global_users"
    __table_args__ = (
        UniqueConstraint("email", name="uq_global_users_email"),
        UniqueConstraint("external_user_id", name="uq_global_users_external_user"),
    )

    # Cross-tenant identity anchor; users may exist before any tenant link.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Stored lower-cased so lookups stay case-insensitive.
    email: Mapped[str] = mapped_column(String(320))
    external_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("tenant_registry.id"), nullable=True, index=True
    )
    role: Mapped[str] = mapped_column(String(32), default="member")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("idem_key", name="uq_idempotency_records_key"),
        Index("ix_idempotency_records_status_created", "status", "created_at"),
    )

    # One row per logical operation instance; the unique key is the exactly-once primitive.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    idem_key: Mapped[str] = mapped_column(String(512))
    operation: Mapped[str] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(32))
    result_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Processing lease; rows past it are reported as stuck rather than re-run.
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
