from __future__ import annotations

import asyncio

import pytest

from ssogate.core.errors import (
    ArtifactExpired,
    ArtifactNotFound,
    ArtifactReplayed,
    AudienceMismatch,
    CredentialRevoked,
)
from ssogate.domain.models import ArtifactKind, CredentialKind
from ssogate.persistence.db import SessionLocal
from ssogate.services.tickets.engine import ArtifactExtras, IssuanceEngine
from ssogate.tests.utils.identity import create_client, create_tenant, create_user


SERVICE = "https://app.example/home"


async def _service_ticket(engine: IssuanceEngine, user_id: int, *, ttl_seconds: int | None = None) -> str:
    async with SessionLocal() as session:
        return await engine.create_artifact(
            session,
            kind=ArtifactKind.SERVICE_TICKET,
            client_id="svc",
            user_id=user_id,
            audience=SERVICE,
            extras=ArtifactExtras(session_id="TGT-test"),
            ttl_seconds=ttl_seconds,
        )


@pytest.mark.asyncio
async def test_concurrent_consumers_get_exactly_one_success() -> None:
    # Parallel validations of one ticket must let exactly one caller through.
    engine = IssuanceEngine()
    ticket = await _service_ticket(engine, user_id=1)

    async def _consume() -> str:
        async with SessionLocal() as session:
            try:
                await engine.consume_artifact(session, ticket, SERVICE, kinds=(ArtifactKind.SERVICE_TICKET,))
            except ArtifactReplayed:
                return "replayed"
            return "ok"

    outcomes = await asyncio.gather(*[_consume() for _ in range(5)])
    assert outcomes.count("ok") == 1
    assert outcomes.count("replayed") == 4


@pytest.mark.asyncio
async def test_consume_returns_ticket_context() -> None:
    # The consumed view carries the session binding used for single logout.
    engine = IssuanceEngine()
    ticket = await _service_ticket(engine, user_id=7)
    assert ticket.startswith("ST-")
    async with SessionLocal() as session:
        consumed = await engine.consume_artifact(
            session, ticket, "https://APP.example/other", kinds=(ArtifactKind.SERVICE_TICKET,)
        )
    assert consumed.user_id == 7
    assert consumed.session_id == "TGT-test"
    assert consumed.audience == SERVICE


@pytest.mark.asyncio
async def test_expired_ticket_reports_expired_even_after_use() -> None:
    # Expiry is checked before the replay flag.
    engine = IssuanceEngine()
    ticket = await _service_ticket(engine, user_id=1, ttl_seconds=-1)
    async with SessionLocal() as session:
        with pytest.raises(ArtifactExpired):
            await engine.consume_artifact(session, ticket, SERVICE, kinds=(ArtifactKind.SERVICE_TICKET,))


@pytest.mark.asyncio
async def test_audience_mismatch_still_burns_ticket() -> None:
    # A ticket presented for the wrong service cannot be retried for the right one.
    engine = IssuanceEngine()
    ticket = await _service_ticket(engine, user_id=1)
    async with SessionLocal() as session:
        with pytest.raises(AudienceMismatch):
            await engine.consume_artifact(
                session, ticket, "https://evil.example/", kinds=(ArtifactKind.SERVICE_TICKET,)
            )
        with pytest.raises(ArtifactReplayed):
            await engine.consume_artifact(session, ticket, SERVICE, kinds=(ArtifactKind.SERVICE_TICKET,))


@pytest.mark.asyncio
async def test_authorization_code_requires_exact_redirect_uri() -> None:
    # Codes bind to the full redirect_uri, not just its origin.
    engine = IssuanceEngine()
    async with SessionLocal() as session:
        code = await engine.create_artifact(
            session,
            kind=ArtifactKind.OIDC_CODE,
            client_id="rp",
            user_id=1,
            audience="https://rp.example/cb",
            scopes="openid",
        )
        with pytest.raises(AudienceMismatch):
            await engine.consume_artifact(
                session, code, "https://rp.example/other", kinds=(ArtifactKind.OIDC_CODE,)
            )


@pytest.mark.asyncio
async def test_wrong_kind_is_not_found() -> None:
    # Service tickets are not accepted where proxy tickets are expected.
    engine = IssuanceEngine()
    ticket = await _service_ticket(engine, user_id=1)
    async with SessionLocal() as session:
        with pytest.raises(ArtifactNotFound):
            await engine.consume_artifact(session, ticket, SERVICE, kinds=(ArtifactKind.PROXY_TICKET,))
        with pytest.raises(ArtifactNotFound):
            await engine.consume_artifact(session, "ST-missing", SERVICE, kinds=(ArtifactKind.SERVICE_TICKET,))


@pytest.mark.asyncio
async def test_revoking_refresh_token_revokes_its_access_token() -> None:
    # Refresh and access tokens issued together are revoked together.
    engine = IssuanceEngine()
    async with SessionLocal() as session:
        pair = await engine.issue_token_pair(
            session,
            client_id="rp",
            user_id=1,
            scopes="openid",
            access_ttl_seconds=60,
            refresh_ttl_seconds=120,
        )
        assert pair.refresh.access_token_id == pair.access.id
        assert await engine.revoke_chain(session, pair.refresh.token) is True
        with pytest.raises(CredentialRevoked):
            await engine.validate_long_lived(session, pair.access.token, kinds=(CredentialKind.ACCESS_TOKEN,))
        assert await engine.revoke_chain(session, "unknown-token") is False


@pytest.mark.asyncio
async def test_expired_credential_is_rejected() -> None:
    # Long-lived credentials stop validating at their expiry.
    engine = IssuanceEngine()
    async with SessionLocal() as session:
        credential = await engine.issue_credential(
            session,
            kind=CredentialKind.PROXY_GRANTING_TICKET,
            client_id="svc",
            user_id=1,
            scopes="",
            ttl_seconds=-1,
            audience="https://app.example/pgt",
        )
        assert credential.token.startswith("PGT-")
        with pytest.raises(ArtifactExpired):
            await engine.validate_long_lived(
                session, credential.token, kinds=(CredentialKind.PROXY_GRANTING_TICKET,)
            )


@pytest.mark.asyncio
async def test_revoke_user_credentials_scopes_to_client() -> None:
    # Logout for one client leaves the user's tokens at other clients alone.
    engine = IssuanceEngine()
    async with SessionLocal() as session:
        first = await engine.issue_token_pair(
            session, client_id="rp-1", user_id=5, scopes="openid", access_ttl_seconds=60, refresh_ttl_seconds=60
        )
        second = await engine.issue_token_pair(
            session, client_id="rp-2", user_id=5, scopes="openid", access_ttl_seconds=60, refresh_ttl_seconds=60
        )
        revoked = await engine.revoke_user_credentials(session, user_id=5, client_id="rp-1")
        assert revoked == 2
        with pytest.raises(CredentialRevoked):
            await engine.validate_long_lived(session, first.access.token, kinds=(CredentialKind.ACCESS_TOKEN,))
        still_valid = await engine.validate_long_lived(
            session, second.access.token, kinds=(CredentialKind.ACCESS_TOKEN,)
        )
        assert still_valid.client_id == "rp-2"


@pytest.mark.asyncio
async def test_session_revocation_happens_once() -> None:
    # Only the first revoke reports the session; later validation sees it revoked.
    tenant = await create_tenant()
    user = await create_user(tenant)
    await create_client(tenant, root_url="https://app.example")
    engine = IssuanceEngine()
    async with SessionLocal() as session:
        sso_session = await engine.create_session(session, user_id=user.id, user_agent="x" * 600)
        assert sso_session.session_id.startswith("TGT-")
        assert len(sso_session.user_agent) == 512
        validated = await engine.validate_session(session, sso_session.session_id)
        assert validated.user_id == user.id
        revoked = await engine.revoke_session(session, sso_session.session_id)
        assert revoked is not None and revoked.user_id == user.id
        assert await engine.revoke_session(session, sso_session.session_id) is None
        with pytest.raises(CredentialRevoked):
            await engine.validate_session(session, sso_session.session_id)
