from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ssogate.domain.models import STATUS_ACTIVE, Client, Tenant, User


async def get_tenant(session: AsyncSession, tenant_id: int) -> Tenant | None:
    return await session.get(Tenant, tenant_id)


async def get_tenant_by_name(session: AsyncSession, name: str) -> Tenant | None:
    # Tenant names are matched case-insensitively everywhere they are typed by humans.
    result = await session.execute(
        select(Tenant).where(func.lower(Tenant.name) == name.strip().lower())
    )
    return result.scalars().first()


async def get_user(session: AsyncSession, user_id: int) -> User | None:
    return await session.get(User, user_id)


async def get_user_by_username(session: AsyncSession, tenant_id: int, username: str) -> User | None:
    result = await session.execute(
        select(User).where(User.tenant_id == tenant_id, User.username == username)
    )
    return result.scalar_one_or_none()


async def find_directory_user(session: AsyncSession, tenant_id: int, username: str) -> User | None:
    # Directory clients send uid values in any case; an exact-case match wins over a folded one.
    result = await session.execute(
        select(User)
        .where(User.tenant_id == tenant_id, func.lower(User.username) == username.lower())
        .order_by((User.username == username).desc(), User.id)
    )
    return result.scalars().first()


async def get_user_by_email(session: AsyncSession, tenant_id: int, email: str) -> User | None:
    result = await session.execute(
        select(User)
        .where(User.tenant_id == tenant_id, func.lower(User.email) == email.lower())
        .order_by(User.id)
    )
    return result.scalars().first()


async def list_active_users(session: AsyncSession, tenant_id: int, *, limit: int | None = None) -> list[User]:
    stmt = (
        select(User)
        .where(User.tenant_id == tenant_id, User.status == STATUS_ACTIVE)
        .order_by(User.id)
    )
    if limit:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_client(session: AsyncSession, client_id: str) -> Client | None:
    result = await session.execute(select(Client).where(Client.client_id == client_id))
    return result.scalar_one_or_none()


async def list_clients_by_root_prefix(session: AsyncSession, origin: str) -> list[Client]:
    # Narrow candidates in SQL; callers apply the exact scheme+host comparison.
    result = await session.execute(
        select(Client)
        .where(
            Client.root_url.is_not(None),
            func.lower(Client.root_url).startswith(origin.lower(), autoescape=True),
        )
        .order_by(Client.id)
    )
    return list(result.scalars().all())


async def touch_last_login(session: AsyncSession, user_id: int) -> None:
    await session.execute(
        update(User).where(User.id == user_id).values(last_login_at=datetime.now(timezone.utc))
    )
