from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ssogate.core.config import Settings
from ssogate.services.auth.session_tokens import SessionTokenCodec
from ssogate.services.crypto.jwk import JwkManager
from ssogate.services.ldap.directory import DirectoryBridge
from ssogate.services.sso.cas_provider import CasProvider
from ssogate.services.sso.login import LoginService
from ssogate.services.sso.oidc_provider import OidcProvider
from ssogate.services.sso.slo_queue import LogoutNotifier
from ssogate.services.tickets.cleanup import TokenCleanupJob
from ssogate.services.tickets.engine import IssuanceEngine


@dataclass
class IdentityServices:
    settings: Settings
    keys: JwkManager
    codec: SessionTokenCodec
    engine: IssuanceEngine
    login: LoginService
    oidc: OidcProvider
    cas: CasProvider
    notifier: LogoutNotifier
    directory: DirectoryBridge
    cleanup: TokenCleanupJob


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> IdentityServices:
    # Wire every protocol service explicitly; handlers receive these instances, never globals.
    keys = JwkManager(key_size=settings.jwk_key_size)
    keys.generate_key_pair()
    codec = SessionTokenCodec(settings.jwt_secret)
    engine = IssuanceEngine(
        code_ttl_seconds=settings.oidc_code_ttl_seconds,
        ticket_ttl_seconds=settings.cas_ticket_ttl_seconds,
        session_ttl_seconds=settings.cas_tgt_ttl_seconds,
    )
    callback_timeout_s = settings.cas_callback_timeout_ms / 1000
    notifier = LogoutNotifier(
        max_size=settings.cas_slo_queue_size,
        workers=settings.cas_slo_workers,
        timeout_s=callback_timeout_s,
    )
    return IdentityServices(
        settings=settings,
        keys=keys,
        codec=codec,
        engine=engine,
        login=LoginService(codec=codec, issuer=settings.sso_issuer),
        oidc=OidcProvider(
            issuer=settings.sso_issuer,
            engine=engine,
            keys=keys,
            login_path=settings.sso_login_path,
            error_path=settings.sso_error_path,
        ),
        cas=CasProvider(
            engine=engine,
            codec=codec,
            notifier=notifier,
            login_path=settings.sso_login_path,
            error_path=settings.sso_error_path,
            single_logout_enabled=settings.cas_single_logout_enabled,
            callback_timeout_s=callback_timeout_s,
        ),
        notifier=notifier,
        directory=DirectoryBridge(
            session_factory=session_factory,
            base_dn=settings.ldap_base_dn,
            admin_dn=settings.ldap_admin_dn,
            admin_password=settings.ldap_admin_password,
        ),
        cleanup=TokenCleanupJob(session_factory, interval_seconds=settings.cleanup_interval_seconds),
    )
