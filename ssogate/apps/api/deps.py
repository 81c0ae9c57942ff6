from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ssogate.domain.models import User
from ssogate.persistence.db import get_session
from ssogate.services.container import IdentityServices
from ssogate.services.sso.identity import resolve_session_user


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_services(request: Request) -> IdentityServices:
    return request.app.state.services


async def get_session_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> User | None:
    # Resolve the browser's sso_session cookie; anything invalid means anonymous.
    token = request.cookies.get(services.settings.sso_session_cookie_name)
    return await resolve_session_user(db, services.codec, token)
