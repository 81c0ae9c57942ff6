from __future__ import annotations

import base64
import binascii
from typing import Any
from urllib.parse import unquote

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ssogate.apps.api.cookies import clear_session_cookie
from ssogate.apps.api.deps import get_db, get_services, get_session_user
from ssogate.domain.models import User
from ssogate.services.container import IdentityServices
from ssogate.services.sso.oidc_provider import AuthorizeRequest, OAuthError, TokenRequest

router = APIRouter(tags=["oidc"])


def _basic_credentials(request: Request) -> tuple[str | None, str | None]:
    # client_secret_basic: form-urlencoded id and secret inside an HTTP Basic header.
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "basic" or not value:
        return None, None
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise OAuthError("invalid_client", status_code=401) from None
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise OAuthError("invalid_client", status_code=401)
    return unquote(client_id), unquote(client_secret)


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


@router.get("/.well-known/openid-configuration")
async def openid_configuration(services: IdentityServices = Depends(get_services)) -> dict[str, Any]:
    return services.oidc.discovery()


@router.get("/.well-known/jwks.json")
async def jwks(services: IdentityServices = Depends(get_services)) -> dict[str, Any]:
    return services.oidc.jwks()


@router.get("/oauth/authorize")
async def authorize(
    request: Request,
    client_id: str | None = Query(default=None),
    redirect_uri: str | None = Query(default=None),
    response_type: str | None = Query(default=None),
    scope: str | None = Query(default=None),
    state: str | None = Query(default=None),
    nonce: str | None = Query(default=None),
    code_challenge: str | None = Query(default=None),
    code_challenge_method: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
    session_user: User | None = Depends(get_session_user),
) -> RedirectResponse:
    # The login page sends the browser back to this exact authorize request.
    authorize_url = f"{request.url.path}?{request.url.query}"
    outcome = await services.oidc.authorize(
        db,
        AuthorizeRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            response_type=response_type,
            scope=scope,
            state=state,
            nonce=nonce,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        ),
        session_user=session_user,
        authorize_url=authorize_url,
    )
    response = RedirectResponse(outcome.redirect_url, status_code=302)
    stale_cookie = session_user is None and services.settings.sso_session_cookie_name in request.cookies
    if outcome.clear_session or stale_cookie:
        clear_session_cookie(response, services.settings)
    return response


@router.post("/oauth/token")
async def token(
    request: Request,
    grant_type: str | None = Form(default=None),
    code: str | None = Form(default=None),
    redirect_uri: str | None = Form(default=None),
    code_verifier: str | None = Form(default=None),
    refresh_token: str | None = Form(default=None),
    scope: str | None = Form(default=None),
    client_id: str | None = Form(default=None),
    client_secret: str | None = Form(default=None),
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> JSONResponse:
    basic_id, basic_secret = _basic_credentials(request)
    payload = await services.oidc.token(
        db,
        TokenRequest(
            grant_type=grant_type,
            code=code,
            redirect_uri=redirect_uri,
            code_verifier=code_verifier,
            refresh_token=refresh_token,
            scope=scope,
            client_id=basic_id or client_id,
            client_secret=basic_secret or client_secret,
        ),
    )
    # Token responses must never be cached by intermediaries.
    return JSONResponse(payload, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})


@router.api_route("/oauth/userinfo", methods=["GET", "POST"])
async def userinfo(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> dict[str, Any]:
    return await services.oidc.userinfo(db, _bearer_token(request))


@router.post("/oauth/revoke")
async def revoke(
    token: str | None = Form(default=None),
    token_type_hint: str | None = Form(default=None),
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> dict[str, Any]:
    await services.oidc.revoke(db, token)
    return {}


@router.post("/oauth/introspect")
async def introspect(
    token: str | None = Form(default=None),
    token_type_hint: str | None = Form(default=None),
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> dict[str, Any]:
    return await services.oidc.introspect(db, token)


@router.api_route("/oauth/logout", methods=["GET", "POST"])
async def logout(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
    session_user: User | None = Depends(get_session_user),
):
    params: dict[str, str] = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({key: value for key, value in form.items() if isinstance(value, str)})
    outcome = await services.oidc.logout(
        db,
        id_token_hint=params.get("id_token_hint"),
        client_id=params.get("client_id"),
        post_logout_redirect_uri=params.get("post_logout_redirect_uri"),
        state=params.get("state"),
        session_user=session_user,
    )
    if outcome.redirect_url:
        response = RedirectResponse(outcome.redirect_url, status_code=302)
    else:
        response = JSONResponse({"message": "logged out"})
    clear_session_cookie(response, services.settings)
    return response
