from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import Iterable

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ssogate.core.errors import (
    ArtifactExpired,
    ArtifactNotFound,
    ArtifactReplayed,
    AudienceMismatch,
    CredentialRevoked,
)
from ssogate.domain.models import (
    SESSION_PREFIX,
    Artifact,
    ArtifactKind,
    Credential,
    CredentialKind,
    SsoSession,
)
from ssogate.services.crypto.encoding import base64url_encode
from ssogate.services.sso.urls import same_origin


logger = logging.getLogger(__name__)

_TOKEN_ENTROPY_BYTES = 32
_OAUTH_CREDENTIALS = (CredentialKind.ACCESS_TOKEN, CredentialKind.REFRESH_TOKEN)


def _utc_now() -> datetime:
    # Keep ticket timestamps in UTC for consistent expiry checks.
    return datetime.now(timezone.utc)


def generate_token(prefix: str = "") -> str:
    return f"{prefix}{base64url_encode(secrets.token_bytes(_TOKEN_ENTROPY_BYTES))}"


def audience_matches(kind: ArtifactKind, stored: str, presented: str) -> bool:
    # Authorization codes bind to the exact redirect_uri; CAS tickets to the service origin.
    if kind is ArtifactKind.OIDC_CODE:
        return stored == presented
    return same_origin(stored, presented)


@dataclass(frozen=True)
class ArtifactExtras:
    state: str | None = None
    nonce: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    parent_token: str | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class ConsumedArtifact:
    kind: ArtifactKind
    token: str
    client_id: str
    user_id: int
    audience: str
    scopes: str
    nonce: str | None
    code_challenge: str | None
    code_challenge_method: str | None
    parent_token: str | None
    session_id: str | None


@dataclass(frozen=True)
class TokenPair:
    access: Credential
    refresh: Credential


class IssuanceEngine:
    """Lifecycle of single-use artifacts, long-lived credentials and login sessions.

    Every mutation commits before returning so consumption and revocation are
    visible to the next validation on any connection.
    """

    def __init__(
        self,
        *,
        code_ttl_seconds: int = 600,
        ticket_ttl_seconds: int = 300,
        session_ttl_seconds: int = 28800,
    ) -> None:
        self.code_ttl_seconds = code_ttl_seconds
        self.ticket_ttl_seconds = ticket_ttl_seconds
        self.session_ttl_seconds = session_ttl_seconds

    def _artifact_ttl(self, kind: ArtifactKind) -> int:
        if kind is ArtifactKind.OIDC_CODE:
            return self.code_ttl_seconds
        return self.ticket_ttl_seconds

    async def create_artifact(
        self,
        session: AsyncSession,
        *,
        kind: ArtifactKind,
        client_id: str,
        user_id: int,
        audience: str,
        scopes: str = "",
        extras: ArtifactExtras | None = None,
        ttl_seconds: int | None = None,
    ) -> str:
        extras = extras or ArtifactExtras()
        token = generate_token(kind.prefix)
        ttl = ttl_seconds if ttl_seconds is not None else self._artifact_ttl(kind)
        session.add(
            Artifact(
                kind=kind,
                token=token,
                client_id=client_id,
                user_id=user_id,
                audience=audience,
                scopes=scopes,
                state=extras.state,
                nonce=extras.nonce,
                code_challenge=extras.code_challenge,
                code_challenge_method=extras.code_challenge_method,
                parent_token=extras.parent_token,
                session_id=extras.session_id,
                expires_at=_utc_now() + timedelta(seconds=ttl),
                used=False,
            )
        )
        await session.commit()
        return token

    async def consume_artifact(
        self,
        session: AsyncSession,
        token: str,
        expected_audience: str,
        *,
        kinds: Iterable[ArtifactKind],
    ) -> ConsumedArtifact:
        result = await session.execute(
            select(Artifact).where(Artifact.token == token).execution_options(populate_existing=True)
        )
        artifact = result.scalar_one_or_none()
        if artifact is None or artifact.kind not in set(kinds):
            raise ArtifactNotFound("unknown ticket")
        # Expiry wins over replay so stale tickets always report as expired.
        if artifact.expires_at <= _utc_now():
            raise ArtifactExpired("ticket expired")
        if artifact.used:
            raise ArtifactReplayed("ticket already used")
        # Conditional write: of concurrent consumers exactly one flips used=false.
        outcome = await session.execute(
            update(Artifact)
            .where(Artifact.id == artifact.id, Artifact.used.is_(False))
            .values(used=True)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if outcome.rowcount != 1:
            raise ArtifactReplayed("ticket already used")
        # The ticket stays burned on an audience mismatch; a presented ticket is never reusable.
        if not audience_matches(artifact.kind, artifact.audience, expected_audience):
            logger.info("artifact_audience_mismatch kind=%s client_id=%s", artifact.kind.value, artifact.client_id)
            raise AudienceMismatch("ticket issued for a different audience")
        return ConsumedArtifact(
            kind=artifact.kind,
            token=artifact.token,
            client_id=artifact.client_id,
            user_id=artifact.user_id,
            audience=artifact.audience,
            scopes=artifact.scopes,
            nonce=artifact.nonce,
            code_challenge=artifact.code_challenge,
            code_challenge_method=artifact.code_challenge_method,
            parent_token=artifact.parent_token,
            session_id=artifact.session_id,
        )

    async def issue_credential(
        self,
        session: AsyncSession,
        *,
        kind: CredentialKind,
        client_id: str,
        user_id: int | None,
        scopes: str,
        ttl_seconds: int,
        audience: str | None = None,
        proxy_chain: list[str] | None = None,
    ) -> Credential:
        credential = Credential(
            kind=kind,
            token=generate_token(kind.prefix),
            client_id=client_id,
            user_id=user_id,
            scopes=scopes,
            audience=audience,
            proxy_chain=proxy_chain or None,
            expires_at=_utc_now() + timedelta(seconds=ttl_seconds),
            revoked=False,
        )
        session.add(credential)
        await session.commit()
        return credential

    async def issue_token_pair(
        self,
        session: AsyncSession,
        *,
        client_id: str,
        user_id: int,
        scopes: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
    ) -> TokenPair:
        now = _utc_now()
        access = Credential(
            kind=CredentialKind.ACCESS_TOKEN,
            token=generate_token(),
            client_id=client_id,
            user_id=user_id,
            scopes=scopes,
            expires_at=now + timedelta(seconds=access_ttl_seconds),
            revoked=False,
        )
        session.add(access)
        # The refresh token links to the access row id for cascading revocation.
        await session.flush()
        refresh = Credential(
            kind=CredentialKind.REFRESH_TOKEN,
            token=generate_token(),
            client_id=client_id,
            user_id=user_id,
            scopes=scopes,
            access_token_id=access.id,
            expires_at=now + timedelta(seconds=refresh_ttl_seconds),
            revoked=False,
        )
        session.add(refresh)
        await session.commit()
        return TokenPair(access=access, refresh=refresh)

    async def find_credential(self, session: AsyncSession, token: str) -> Credential | None:
        # Bulk revocations bypass the identity map, so rows are always reloaded.
        result = await session.execute(
            select(Credential).where(Credential.token == token).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def validate_long_lived(
        self,
        session: AsyncSession,
        token: str,
        *,
        kinds: Iterable[CredentialKind],
    ) -> Credential:
        credential = await self.find_credential(session, token)
        if credential is None or credential.kind not in set(kinds):
            raise ArtifactNotFound("unknown token")
        if credential.revoked:
            raise CredentialRevoked("token revoked")
        if credential.expires_at <= _utc_now():
            raise ArtifactExpired("token expired")
        return credential

    async def revoke_chain(self, session: AsyncSession, token: str) -> bool:
        # Revoke a credential together with its access/refresh partner.
        credential = await self.find_credential(session, token)
        if credential is None:
            return False
        conditions = [Credential.id == credential.id]
        if credential.kind is CredentialKind.REFRESH_TOKEN and credential.access_token_id is not None:
            conditions.append(Credential.id == credential.access_token_id)
        elif credential.kind is CredentialKind.ACCESS_TOKEN:
            conditions.append(
                and_(
                    Credential.kind == CredentialKind.REFRESH_TOKEN,
                    Credential.access_token_id == credential.id,
                )
            )
        await session.execute(
            update(Credential)
            .where(or_(*conditions))
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return True

    async def rotate_refresh(self, session: AsyncSession, refresh: Credential) -> bool:
        # Only the caller whose UPDATE flips the refresh row may mint the next pair.
        result = await session.execute(
            update(Credential)
            .where(Credential.id == refresh.id, Credential.revoked.is_(False))
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            return False
        if refresh.access_token_id is not None:
            await session.execute(
                update(Credential)
                .where(Credential.id == refresh.access_token_id)
                .values(revoked=True)
                .execution_options(synchronize_session=False)
            )
        await session.commit()
        return True

    async def revoke_user_credentials(
        self,
        session: AsyncSession,
        *,
        user_id: int,
        client_id: str | None = None,
    ) -> int:
        stmt = update(Credential).where(
            Credential.user_id == user_id,
            Credential.kind.in_(_OAUTH_CREDENTIALS),
            Credential.revoked.is_(False),
        )
        if client_id is not None:
            stmt = stmt.where(Credential.client_id == client_id)
        result = await session.execute(
            stmt.values(revoked=True).execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount or 0

    async def create_session(
        self,
        session: AsyncSession,
        *,
        user_id: int,
        client_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SsoSession:
        sso_session = SsoSession(
            session_id=generate_token(SESSION_PREFIX),
            user_id=user_id,
            client_id=client_id,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512] or None,
            expires_at=_utc_now() + timedelta(seconds=self.session_ttl_seconds),
            revoked=False,
        )
        session.add(sso_session)
        await session.commit()
        return sso_session

    async def validate_session(self, session: AsyncSession, session_id: str) -> SsoSession:
        result = await session.execute(
            select(SsoSession)
            .where(SsoSession.session_id == session_id)
            .execution_options(populate_existing=True)
        )
        sso_session = result.scalar_one_or_none()
        if sso_session is None:
            raise ArtifactNotFound("unknown session")
        if sso_session.revoked:
            raise CredentialRevoked("session revoked")
        if sso_session.expires_at <= _utc_now():
            raise ArtifactExpired("session expired")
        return sso_session

    async def revoke_session(self, session: AsyncSession, session_id: str) -> SsoSession | None:
        # Returns the session only when this call performed the revocation.
        result = await session.execute(
            update(SsoSession)
            .where(SsoSession.session_id == session_id, SsoSession.revoked.is_(False))
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount != 1:
            return None
        lookup = await session.execute(
            select(SsoSession)
            .where(SsoSession.session_id == session_id)
            .execution_options(populate_existing=True)
        )
        return lookup.scalar_one_or_none()

    async def list_session_tickets(self, session: AsyncSession, session_id: str) -> list[Artifact]:
        result = await session.execute(
            select(Artifact)
            .where(
                Artifact.kind == ArtifactKind.SERVICE_TICKET,
                Artifact.session_id == session_id,
            )
            .order_by(Artifact.id)
        )
        return list(result.scalars().all())
