from __future__ import annotations

from dataclasses import dataclass, field
import logging
from urllib.parse import urlencode

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ssogate.core.errors import ArtifactError, AudienceMismatch, SsoGateError, TransientError
from ssogate.domain.models import ArtifactKind, Client, CredentialKind, User
from ssogate.persistence.repos import identity as identity_repo
from ssogate.services.auth.session_tokens import SessionTokenCodec
from ssogate.services.sso import cas_xml
from ssogate.services.sso.identity import (
    find_service_client,
    is_active,
    load_active_user,
    resolve_session_user,
    user_matches_client,
)
from ssogate.services.sso.slo_queue import LogoutNotifier
from ssogate.services.sso.urls import append_query_params, url_origin
from ssogate.services.tickets.engine import ArtifactExtras, IssuanceEngine, generate_token


logger = logging.getLogger(__name__)

PGT_IOU_PREFIX = "PGTIOU-"
LOGIN_SUCCESS_MESSAGE = "Login successful"
LOGOUT_SUCCESS_MESSAGE = "Logout successful"


class CasError(SsoGateError):
    """CAS protocol failure carrying the code rendered into the response."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(frozen=True)
class CasLoginOutcome:
    redirect_url: str | None = None
    message: str | None = None
    set_tgc: str | None = None
    clear_tgc: bool = False
    clear_session: bool = False


@dataclass(frozen=True)
class ServiceValidation:
    user: User
    client: Client
    attributes: dict[str, list[str]] = field(default_factory=dict)
    pgt_iou: str | None = None
    proxies: list[str] = field(default_factory=list)


def build_attributes(user: User) -> dict[str, list[str]]:
    # Released on p3/serviceValidate and samlValidate; empty values are omitted.
    attributes: dict[str, list[str]] = {}
    if user.email:
        attributes["email"] = [user.email]
    if user.display_name:
        attributes["displayName"] = [user.display_name]
    if user.phone:
        attributes["phone"] = [user.phone]
    groups = sorted(group.name for group in user.groups if is_active(group))
    if groups:
        attributes["memberOf"] = groups
    return attributes


class CasProvider:
    """CAS 1.0/2.0/3.0 server with proxy and SAML 1.1 validation."""

    def __init__(
        self,
        *,
        engine: IssuanceEngine,
        codec: SessionTokenCodec,
        notifier: LogoutNotifier,
        login_path: str = "/sso/login",
        error_path: str = "/sso/error",
        single_logout_enabled: bool = True,
        callback_timeout_s: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._engine = engine
        self._codec = codec
        self._notifier = notifier
        self._login_path = login_path
        self._error_path = error_path
        self._single_logout_enabled = single_logout_enabled
        self._callback_timeout_s = callback_timeout_s
        self.transport = transport

    def login_page_url(self, service: str | None) -> str:
        # Round-trip through the shared login form back to /cas/login.
        cas_login = "/cas/login"
        if service:
            cas_login = f"{cas_login}?{urlencode({'service': service})}"
        return f"{self._login_path}?{urlencode({'redirect': cas_login})}"

    async def _issue_service_ticket(
        self,
        session: AsyncSession,
        *,
        client: Client,
        user: User,
        service: str,
        session_id: str,
    ) -> str:
        ticket = await self._engine.create_artifact(
            session,
            kind=ArtifactKind.SERVICE_TICKET,
            client_id=client.client_id,
            user_id=user.id,
            audience=service,
            extras=ArtifactExtras(session_id=session_id),
        )
        logger.info("cas_service_ticket_issued client_id=%s user_id=%s", client.client_id, user.id)
        return append_query_params(service, {"ticket": ticket})

    async def login(
        self,
        session: AsyncSession,
        *,
        service: str | None,
        renew: bool = False,
        gateway: bool = False,
        tgc: str | None = None,
        sso_session: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> CasLoginOutcome:
        client = None
        if service:
            client = await find_service_client(session, service)
            if client is None:
                logger.info("cas_login_denied reason=unregistered_service")
                return CasLoginOutcome(
                    redirect_url=f"{self._error_path}?{urlencode({'type': 'invalid_service'})}"
                )

        clear_tgc = False
        if tgc and not renew:
            try:
                tgt = await self._engine.validate_session(session, tgc)
            except ArtifactError:
                tgt = None
            user = await load_active_user(session, tgt.user_id) if tgt is not None else None
            if user is None:
                clear_tgc = True
            elif client is not None and not user_matches_client(user, client):
                logger.warning(
                    "cas_login_denied reason=tenant_mismatch client_id=%s user_id=%s",
                    client.client_id,
                    user.id,
                )
                return CasLoginOutcome(redirect_url=self.login_page_url(service), clear_tgc=True)
            elif service and client is not None:
                redirect = await self._issue_service_ticket(
                    session, client=client, user=user, service=service, session_id=tgt.session_id
                )
                return CasLoginOutcome(redirect_url=redirect)
            else:
                return CasLoginOutcome(message=LOGIN_SUCCESS_MESSAGE)

        if sso_session and not renew:
            user = await resolve_session_user(session, self._codec, sso_session)
            if user is None:
                return self._fallback(service, gateway, clear_tgc=clear_tgc, clear_session=True)
            if client is not None and not user_matches_client(user, client):
                logger.warning(
                    "cas_login_denied reason=tenant_mismatch client_id=%s user_id=%s",
                    client.client_id,
                    user.id,
                )
                return CasLoginOutcome(
                    redirect_url=self.login_page_url(service),
                    clear_tgc=clear_tgc,
                    clear_session=True,
                )
            tgt = await self._engine.create_session(
                session,
                user_id=user.id,
                client_id=client.client_id if client is not None else None,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            if service and client is not None:
                redirect = await self._issue_service_ticket(
                    session, client=client, user=user, service=service, session_id=tgt.session_id
                )
                return CasLoginOutcome(redirect_url=redirect, set_tgc=tgt.session_id)
            return CasLoginOutcome(message=LOGIN_SUCCESS_MESSAGE, set_tgc=tgt.session_id)

        return self._fallback(service, gateway, clear_tgc=clear_tgc)

    def _fallback(
        self,
        service: str | None,
        gateway: bool,
        *,
        clear_tgc: bool = False,
        clear_session: bool = False,
    ) -> CasLoginOutcome:
        # gateway=true never prompts; the service gets the user back without a ticket.
        if gateway and service:
            return CasLoginOutcome(redirect_url=service, clear_tgc=clear_tgc, clear_session=clear_session)
        return CasLoginOutcome(
            redirect_url=self.login_page_url(service),
            clear_tgc=clear_tgc,
            clear_session=clear_session,
        )

    async def logout(self, session: AsyncSession, *, tgc: str | None) -> int:
        # Revoke the TGT and queue LogoutRequests for every service ticket minted under it.
        if not tgc:
            return 0
        tgt = await self._engine.revoke_session(session, tgc)
        if tgt is None:
            return 0
        logger.info("cas_logout user_id=%s", tgt.user_id)
        if not self._single_logout_enabled:
            return 0
        user = await identity_repo.get_user(session, tgt.user_id)
        name_id = user.username if user is not None else "@NOT_USED@"
        queued = 0
        for ticket in await self._engine.list_session_tickets(session, tgc):
            if self._notifier.submit(ticket.audience, cas_xml.logout_request(ticket.token, name_id=name_id)):
                queued += 1
        return queued

    async def validate_ticket(
        self,
        session: AsyncSession,
        *,
        ticket: str | None,
        service: str | None,
        allow_proxy: bool = False,
        pgt_url: str | None = None,
    ) -> ServiceValidation:
        if not ticket or not service:
            raise CasError("INVALID_REQUEST", "ticket and service parameters are required")
        kinds = (ArtifactKind.SERVICE_TICKET,)
        if ticket.startswith(ArtifactKind.PROXY_TICKET.prefix):
            if not allow_proxy:
                raise CasError("INVALID_TICKET_SPEC", "proxy tickets are not accepted here")
            kinds = (ArtifactKind.PROXY_TICKET,)
        try:
            artifact = await self._engine.consume_artifact(session, ticket, service, kinds=kinds)
        except AudienceMismatch as exc:
            raise CasError("INVALID_SERVICE", f"ticket was not issued for {service}") from exc
        except ArtifactError as exc:
            logger.info("cas_ticket_rejected reason=%s", type(exc).__name__)
            raise CasError("INVALID_TICKET", f"ticket {ticket} not recognized") from exc

        client = await identity_repo.get_client(session, artifact.client_id)
        user = await load_active_user(session, artifact.user_id)
        if not is_active(client) or user is None or not user_matches_client(user, client):
            raise CasError("INVALID_TICKET", f"ticket {ticket} not recognized")

        proxies: list[str] = []
        if artifact.kind is ArtifactKind.PROXY_TICKET and artifact.parent_token:
            pgt = await self._engine.find_credential(session, artifact.parent_token)
            if pgt is not None and pgt.audience:
                proxies.append(pgt.audience)
                proxies.extend(pgt.proxy_chain or [])

        pgt_iou = None
        if pgt_url:
            pgt_iou = await self.grant_proxy_granting_ticket(
                session, user=user, client=client, pgt_url=pgt_url, proxy_chain=proxies
            )
        return ServiceValidation(
            user=user,
            client=client,
            attributes=build_attributes(user),
            pgt_iou=pgt_iou,
            proxies=proxies,
        )

    async def grant_proxy_granting_ticket(
        self,
        session: AsyncSession,
        *,
        user: User,
        client: Client,
        pgt_url: str,
        proxy_chain: list[str] | None = None,
    ) -> str | None:
        # The PGT is only disclosed (via its IOU) once the callback has accepted it.
        if url_origin(pgt_url) is None or not pgt_url.lower().startswith("https://"):
            logger.info("cas_pgt_refused reason=insecure_callback client_id=%s", client.client_id)
            return None
        pgt = await self._engine.issue_credential(
            session,
            kind=CredentialKind.PROXY_GRANTING_TICKET,
            client_id=client.client_id,
            user_id=user.id,
            scopes="",
            ttl_seconds=self._engine.session_ttl_seconds,
            audience=pgt_url,
            proxy_chain=proxy_chain,
        )
        pgt_iou = generate_token(PGT_IOU_PREFIX)
        try:
            await self._deliver_pgt(pgt_url, pgt.token, pgt_iou)
        except TransientError as exc:
            logger.warning("cas_pgt_callback_failed client_id=%s error=%s", client.client_id, exc)
            await self._engine.revoke_chain(session, pgt.token)
            return None
        return pgt_iou

    async def _deliver_pgt(self, pgt_url: str, pgt_id: str, pgt_iou: str) -> None:
        url = append_query_params(pgt_url, {"pgtId": pgt_id, "pgtIou": pgt_iou})
        try:
            async with httpx.AsyncClient(timeout=self._callback_timeout_s, transport=self.transport) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise TransientError(f"callback unreachable: {type(exc).__name__}") from exc
        if not response.is_success:
            raise TransientError(f"callback returned status {response.status_code}")

    async def proxy(self, session: AsyncSession, *, pgt: str | None, target_service: str | None) -> str:
        if not pgt or not target_service:
            raise CasError("INVALID_REQUEST", "pgt and targetService parameters are required")
        try:
            credential = await self._engine.validate_long_lived(
                session, pgt, kinds=(CredentialKind.PROXY_GRANTING_TICKET,)
            )
        except ArtifactError as exc:
            raise CasError("INVALID_TICKET", f"pgt {pgt} not recognized") from exc
        client = await find_service_client(session, target_service)
        if client is None:
            raise CasError("INVALID_SERVICE", f"service {target_service} is not registered")
        user = await load_active_user(session, credential.user_id) if credential.user_id else None
        if user is None:
            raise CasError("INVALID_TICKET", f"pgt {pgt} not recognized")
        if not user_matches_client(user, client):
            logger.warning(
                "cas_proxy_denied reason=tenant_mismatch client_id=%s user_id=%s",
                client.client_id,
                user.id,
            )
            raise CasError("UNAUTHORIZED_SERVICE_PROXY", "service is not authorized for this proxy")
        return await self._engine.create_artifact(
            session,
            kind=ArtifactKind.PROXY_TICKET,
            client_id=client.client_id,
            user_id=user.id,
            audience=target_service,
            extras=ArtifactExtras(parent_token=credential.token),
        )

    async def saml_validate(
        self,
        session: AsyncSession,
        *,
        target: str | None,
        body: str,
    ) -> ServiceValidation:
        if not target:
            raise CasError("INVALID_REQUEST", "TARGET parameter is required")
        ticket = cas_xml.extract_assertion_artifact(body)
        if not ticket:
            raise CasError("INVALID_REQUEST", "AssertionArtifact not found")
        return await self.validate_ticket(session, ticket=ticket, service=target)
