from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantplane.core.errors import ConflictError
from tenantplane.domain.models import GlobalUser


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def get_user(session: AsyncSession, user_id: str) -> GlobalUser | None:
    result = await session.execute(select(GlobalUser).where(GlobalUser.id == user_id))
    return result.scalar_one_or_none()


async def find_by_external_id(session: AsyncSession, external_user_id: str) -> GlobalUser | None:
    result = await session.execute(
        select(GlobalUser).where(GlobalUser.external_user_id == external_user_id)
    )
    return result.scalar_one_or_none()


async def find_by_email(session: AsyncSession, email: str) -> GlobalUser | None:
    result = await session.execute(
        select(GlobalUser).where(GlobalUser.email == normalize_email(email))
    )
    return result.scalar_one_or_none()


async def find_by_identity(
    session: AsyncSession,
    *,
    external_user_id: str | None,
    email: str | None,
) -> GlobalUser | None:
    # External id wins; email is the fallback for users created before their first provider event.
    if external_user_id:
        user = await find_by_external_id(session, external_user_id)
        if user is not None:
            return user
    if email:
        return await find_by_email(session, email)
    return None


async def create_user(
    session: AsyncSession,
    *,
    email: str,
    external_user_id: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    tenant_id: str | None = None,
    role: str = "member",
    password_hash: str | None = None,
    user_id: str | None = None,
) -> tuple[GlobalUser, bool]:
    user = GlobalUser(
        email=normalize_email(email),
        external_user_id=external_user_id,
        first_name=first_name,
        last_name=last_name,
        tenant_id=tenant_id,
        role=role,
        password_hash=password_hash,
    )
    if user_id:
        user.id = user_id
    session.add(user)
    try:
        await session.commit()
    except IntegrityError as exc:
        # Another writer created the same identity first; converge on its row.
        await session.rollback()
        existing = await find_by_identity(session, external_user_id=external_user_id, email=email)
        if existing is None:
            raise ConflictError("global user insert failed unexpectedly") from exc
        return existing, False
    return user, True


async def upsert_admin_user(
    session: AsyncSession,
    *,
    email: str,
    tenant_id: str,
    password_hash: str,
    user_id: str | None = None,
) -> GlobalUser:
    user = await find_by_email(session, email)
    if user is None:
        user, created = await create_user(
            session,
            email=email,
            tenant_id=tenant_id,
            role="admin",
            password_hash=password_hash,
            user_id=user_id,
        )
        if created:
            return user
    user.tenant_id = tenant_id
    user.role = "admin"
    user.password_hash = password_hash
    user.is_active = True
    await session.commit()
    return user


async def link_tenant(session: AsyncSession, user: GlobalUser, tenant_id: str) -> GlobalUser:
    user.tenant_id = tenant_id
    await session.commit()
    return user


async def unlink_tenant(session: AsyncSession, user: GlobalUser) -> GlobalUser:
    user.tenant_id = None
    await session.commit()
    return user


async def update_profile(
    session: AsyncSession,
    user: GlobalUser,
    *,
    email: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
) -> GlobalUser:
    if email:
        user.email = normalize_email(email)
    if first_name is not None:
        user.first_name = first_name
    if last_name is not None:
        user.last_name = last_name
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(f"Email {email} belongs to another user") from exc
    return user


async def attach_external_id(session: AsyncSession, user: GlobalUser, external_user_id: str) -> GlobalUser:
    if user.external_user_id == external_user_id:
        return user
    user.external_user_id = external_user_id
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(f"External user {external_user_id} belongs to another user") from exc
    return user


async def touch_login(session: AsyncSession, user: GlobalUser) -> None:
    user.last_login_at = datetime.now(timezone.utc)
    await session.commit()
