from __future__ import annotations

from fastapi import Response

from ssogate.core.config import Settings
from ssogate.services.auth.session_tokens import SESSION_TOKEN_TTL


def set_session_cookie(response: Response, settings: Settings, token: str) -> None:
    response.set_cookie(
        settings.sso_session_cookie_name,
        token,
        max_age=int(SESSION_TOKEN_TTL.total_seconds()),
        path="/",
        httponly=True,
        secure=settings.sso_cookie_secure,
        samesite="lax",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.sso_session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.sso_cookie_secure,
        samesite="lax",
    )


def set_tgc_cookie(response: Response, settings: Settings, tgt: str) -> None:
    # The TGC is only ever sent back to /cas endpoints.
    response.set_cookie(
        settings.cas_tgc_cookie_name,
        tgt,
        max_age=settings.cas_tgt_ttl_seconds,
        path="/cas",
        httponly=True,
        secure=settings.sso_cookie_secure,
        samesite="lax",
    )


def clear_tgc_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.cas_tgc_cookie_name,
        path="/cas",
        httponly=True,
        secure=settings.sso_cookie_secure,
        samesite="lax",
    )
