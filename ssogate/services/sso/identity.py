from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ssogate.core.errors import CryptoError
from ssogate.domain.models import STATUS_ACTIVE, Client, Tenant, User
from ssogate.persistence.repos import identity as identity_repo
from ssogate.services.auth.session_tokens import SessionTokenCodec
from ssogate.services.sso.urls import url_origin


logger = logging.getLogger(__name__)


def is_active(entity: Tenant | User | Client | None) -> bool:
    return entity is not None and entity.status == STATUS_ACTIVE


def user_matches_client(user: User, client: Client) -> bool:
    # A user may only ever be bound to clients registered in their own tenant.
    return user.tenant_id == client.tenant_id


async def load_active_user(session: AsyncSession, user_id: int) -> User | None:
    user = await identity_repo.get_user(session, user_id)
    if not is_active(user):
        return None
    tenant = await identity_repo.get_tenant(session, user.tenant_id)
    if not is_active(tenant):
        return None
    return user


async def resolve_session_user(
    session: AsyncSession,
    codec: SessionTokenCodec,
    token: str | None,
) -> User | None:
    # Missing, tampered and expired sso_session cookies all mean "not logged in".
    if not token:
        return None
    try:
        user_id = codec.parse(token)
    except CryptoError as exc:
        logger.info("sso_session_rejected reason=%s", exc)
        return None
    return await load_active_user(session, user_id)


async def find_service_client(session: AsyncSession, service: str) -> Client | None:
    # CAS services match a registered root_url on exact scheme+host only.
    origin = url_origin(service)
    if origin is None:
        return None
    for client in await identity_repo.list_clients_by_root_prefix(session, origin):
        if is_active(client) and url_origin(client.root_url or "") == origin:
            return client
    return None
