from __future__ import annotations

from dataclasses import dataclass
import logging
from urllib.parse import urlsplit

from sqlalchemy.ext.asyncio import AsyncSession

from ssogate.core.errors import AuthenticationFailure, ClientError, SessionTokenInvalid
from ssogate.domain.models import Client, User
from ssogate.persistence.repos import identity as identity_repo
from ssogate.services.auth.passwords import verify_password
from ssogate.services.auth.session_tokens import SessionTokenCodec
from ssogate.services.sso.identity import find_service_client, is_active
from ssogate.services.sso.urls import query_param, same_origin


logger = logging.getLogger(__name__)

INVALID_LOGIN_MESSAGE = "invalid username or password"


@dataclass(frozen=True)
class LoginResult:
    user: User
    session_token: str
    redirect: str


async def resolve_redirect_client(session: AsyncSession, redirect: str | None) -> Client | None:
    # The post-login redirect names its client by client_id, or by service for CAS logins.
    if not redirect:
        return None
    client_id = query_param(redirect, "client_id")
    if client_id:
        client = await identity_repo.get_client(session, client_id)
        if not is_active(client):
            raise ClientError("unknown client")
        return client
    if urlsplit(redirect).path.endswith("/cas/login"):
        service = query_param(redirect, "service")
        if service:
            client = await find_service_client(session, service)
            if client is None:
                raise ClientError("unregistered service")
            return client
    return None


class LoginService:
    """Password login shared by the OIDC and CAS flows; issues the sso_session cookie value."""

    def __init__(self, *, codec: SessionTokenCodec, issuer: str) -> None:
        self._codec = codec
        self._issuer = issuer

    def _is_local_redirect(self, redirect: str) -> bool:
        # Only paths on this IdP are followed after login; RPs are reached via authorize/cas login.
        if redirect.startswith("/") and not redirect.startswith("//"):
            return True
        return same_origin(redirect, self._issuer)

    async def login(
        self,
        session: AsyncSession,
        *,
        tenant: str | None,
        username: str,
        password: str,
        redirect: str | None = None,
    ) -> LoginResult:
        if redirect and not self._is_local_redirect(redirect):
            raise ClientError("redirect must stay on this identity provider")
        client = await resolve_redirect_client(session, redirect)
        if tenant:
            tenant_row = await identity_repo.get_tenant_by_name(session, tenant)
        elif client is not None:
            tenant_row = await identity_repo.get_tenant(session, client.tenant_id)
        else:
            tenant_row = None
        # Every failure below surfaces identically to the caller.
        if not is_active(tenant_row):
            logger.info("sso_login_denied reason=tenant")
            raise AuthenticationFailure(INVALID_LOGIN_MESSAGE)
        if client is not None and client.tenant_id != tenant_row.id:
            logger.warning("sso_login_denied reason=tenant_mismatch client_id=%s", client.client_id)
            raise AuthenticationFailure(INVALID_LOGIN_MESSAGE)
        user = await identity_repo.get_user_by_username(session, tenant_row.id, username)
        if not is_active(user) or not verify_password(password, user.password_hash):
            logger.info("sso_login_denied reason=credentials tenant_id=%s", tenant_row.id)
            raise AuthenticationFailure(INVALID_LOGIN_MESSAGE)
        try:
            session_token = self._codec.generate(user.id)
        except SessionTokenInvalid:
            logger.warning("sso_login_denied reason=user_id_range user_id=%s", user.id)
            raise AuthenticationFailure(INVALID_LOGIN_MESSAGE) from None
        await identity_repo.touch_last_login(session, user.id)
        await session.commit()
        logger.info("sso_login_succeeded user_id=%s tenant_id=%s", user.id, user.tenant_id)
        return LoginResult(
            user=user,
            session_token=session_token,
            redirect=redirect or "/",
        )
