from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import logging
from typing import Any
from urllib.parse import urlencode

from sqlalchemy.ext.asyncio import AsyncSession

from ssogate.core.errors import (
    ArtifactError,
    ClientError,
    CryptoError,
)
from ssogate.domain.models import ArtifactKind, Client, CredentialKind, User
from ssogate.persistence.repos import identity as identity_repo
from ssogate.services.crypto.encoding import base64url_encode
from ssogate.services.crypto.jwk import SIGNING_ALGORITHM, JwkManager
from ssogate.services.sso.identity import is_active, load_active_user, user_matches_client
from ssogate.services.sso.urls import append_query_params
from ssogate.services.tickets.engine import ArtifactExtras, IssuanceEngine


logger = logging.getLogger(__name__)

SUPPORTED_SCOPES = ("openid", "profile", "email", "groups")
SUPPORTED_GRANT_TYPES = ("authorization_code", "client_credentials", "refresh_token")
PKCE_METHODS = ("plain", "S256")
DEFAULT_SCOPE = "openid"


class OAuthError(ClientError):
    """RFC 6749 error rendered as ``{"error": ...}``."""

    def __init__(self, error: str, status_code: int = 400, description: str | None = None) -> None:
        super().__init__(description or error)
        self.error = error
        self.status_code = status_code
        self.description = description


def _utc_now() -> datetime:
    # Keep token timestamps in UTC for consistent expiry claims.
    return datetime.now(timezone.utc)


def build_code_challenge(verifier: str) -> str:
    # Hash PKCE verifier to generate the S256 code challenge.
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64url_encode(digest)


def verify_code_verifier(verifier: str, challenge: str, method: str | None) -> bool:
    if method == "S256":
        expected = build_code_challenge(verifier)
    elif method in (None, "", "plain"):
        expected = verifier
    else:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), challenge.encode("utf-8"))


def scope_claims(user: User, scopes: set[str]) -> dict[str, Any]:
    # Scope-gated identity claims shared by the ID token and UserInfo.
    claims: dict[str, Any] = {}
    if "profile" in scopes:
        claims["preferred_username"] = user.username
        claims["name"] = user.display_name or user.username
        if user.display_name:
            claims["display_name"] = user.display_name
    if "email" in scopes and user.email:
        claims["email"] = user.email
    if "groups" in scopes:
        claims["groups"] = sorted(group.name for group in user.groups if is_active(group))
    return claims


@dataclass(frozen=True)
class AuthorizeRequest:
    client_id: str | None
    redirect_uri: str | None
    response_type: str | None
    scope: str | None = None
    state: str | None = None
    nonce: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None


@dataclass(frozen=True)
class AuthorizeOutcome:
    redirect_url: str
    clear_session: bool = False


@dataclass(frozen=True)
class TokenRequest:
    grant_type: str | None
    code: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None
    scope: str | None = None
    client_id: str | None = None
    client_secret: str | None = None


@dataclass(frozen=True)
class LogoutOutcome:
    redirect_url: str | None
    revoked: int


class OidcProvider:
    """OAuth2 / OpenID Connect authorization server."""

    def __init__(
        self,
        *,
        issuer: str,
        engine: IssuanceEngine,
        keys: JwkManager,
        login_path: str = "/sso/login",
        error_path: str = "/sso/error",
    ) -> None:
        self.issuer = issuer.rstrip("/")
        self._engine = engine
        self._keys = keys
        self._login_path = login_path
        self._error_path = error_path

    def discovery(self) -> dict[str, Any]:
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/oauth/authorize",
            "token_endpoint": f"{self.issuer}/oauth/token",
            "userinfo_endpoint": f"{self.issuer}/oauth/userinfo",
            "jwks_uri": f"{self.issuer}/.well-known/jwks.json",
            "revocation_endpoint": f"{self.issuer}/oauth/revoke",
            "introspection_endpoint": f"{self.issuer}/oauth/introspect",
            "end_session_endpoint": f"{self.issuer}/oauth/logout",
            "response_types_supported": ["code"],
            "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": [SIGNING_ALGORITHM],
            "scopes_supported": list(SUPPORTED_SCOPES),
            "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
            "code_challenge_methods_supported": list(PKCE_METHODS),
            "claims_supported": [
                "sub",
                "iss",
                "aud",
                "exp",
                "iat",
                "nonce",
                "name",
                "preferred_username",
                "display_name",
                "email",
                "groups",
            ],
        }

    def jwks(self) -> dict[str, Any]:
        return self._keys.get_jwks()

    def _error_redirect(self, error_type: str) -> AuthorizeOutcome:
        return AuthorizeOutcome(redirect_url=f"{self._error_path}?{urlencode({'type': error_type})}")

    def _login_redirect(self, authorize_url: str, *, clear_session: bool = False) -> AuthorizeOutcome:
        return AuthorizeOutcome(
            redirect_url=f"{self._login_path}?{urlencode({'redirect': authorize_url})}",
            clear_session=clear_session,
        )

    async def authorize(
        self,
        session: AsyncSession,
        request: AuthorizeRequest,
        *,
        session_user: User | None,
        authorize_url: str,
    ) -> AuthorizeOutcome:
        if not request.client_id or not request.redirect_uri or not request.response_type:
            return self._error_redirect("invalid_request")
        # Client and redirect_uri are validated before anything is sent back to the RP.
        client = await identity_repo.get_client(session, request.client_id)
        if not is_active(client):
            return self._error_redirect("invalid_client")
        if request.redirect_uri not in (client.redirect_uris or []):
            logger.info("oidc_authorize_denied reason=redirect_uri client_id=%s", client.client_id)
            return self._error_redirect("invalid_redirect_uri")
        if request.response_type != "code":
            return self._error_redirect("unsupported_response_type")
        if request.code_challenge_method and request.code_challenge_method not in PKCE_METHODS:
            return self._error_redirect("invalid_request")
        scopes = (request.scope or DEFAULT_SCOPE).split()
        if not set(scopes) <= client.allowed_scope_set():
            return self._error_redirect("invalid_scope")

        if session_user is None:
            return self._login_redirect(authorize_url)
        if not user_matches_client(session_user, client):
            # Another tenant's login is never narrowed or reused; force a fresh login.
            logger.warning(
                "oidc_authorize_denied reason=tenant_mismatch client_id=%s user_id=%s",
                client.client_id,
                session_user.id,
            )
            return self._login_redirect(authorize_url, clear_session=True)

        code = await self._engine.create_artifact(
            session,
            kind=ArtifactKind.OIDC_CODE,
            client_id=client.client_id,
            user_id=session_user.id,
            audience=request.redirect_uri,
            scopes=" ".join(scopes),
            extras=ArtifactExtras(
                state=request.state,
                nonce=request.nonce,
                code_challenge=request.code_challenge,
                code_challenge_method=(request.code_challenge_method or "plain")
                if request.code_challenge
                else None,
            ),
        )
        params = {"code": code}
        if request.state:
            params["state"] = request.state
        return AuthorizeOutcome(redirect_url=append_query_params(request.redirect_uri, params))

    async def authenticate_client(
        self,
        session: AsyncSession,
        client_id: str | None,
        client_secret: str | None,
    ) -> Client:
        if not client_id or not client_secret:
            raise OAuthError("invalid_client", status_code=401)
        client = await identity_repo.get_client(session, client_id)
        if not is_active(client) or not hmac.compare_digest(
            client.client_secret.encode("utf-8"), client_secret.encode("utf-8")
        ):
            logger.info("oidc_client_auth_failed client_id=%s", client_id)
            raise OAuthError("invalid_client", status_code=401)
        return client

    async def token(self, session: AsyncSession, request: TokenRequest) -> dict[str, Any]:
        client = await self.authenticate_client(session, request.client_id, request.client_secret)
        if request.grant_type == "authorization_code":
            return await self._authorization_code_grant(session, client, request)
        if request.grant_type == "client_credentials":
            return await self._client_credentials_grant(session, client, request)
        if request.grant_type == "refresh_token":
            return await self._refresh_token_grant(session, client, request)
        raise OAuthError("unsupported_grant_type")

    async def _authorization_code_grant(
        self,
        session: AsyncSession,
        client: Client,
        request: TokenRequest,
    ) -> dict[str, Any]:
        if not request.code or not request.redirect_uri:
            raise OAuthError("invalid_request")
        try:
            artifact = await self._engine.consume_artifact(
                session,
                request.code,
                request.redirect_uri,
                kinds=(ArtifactKind.OIDC_CODE,),
            )
        except ArtifactError as exc:
            logger.info("oidc_code_rejected client_id=%s reason=%s", client.client_id, type(exc).__name__)
            raise OAuthError("invalid_grant") from exc
        if artifact.client_id != client.client_id:
            raise OAuthError("invalid_grant")
        if artifact.code_challenge:
            if not request.code_verifier or not verify_code_verifier(
                request.code_verifier, artifact.code_challenge, artifact.code_challenge_method
            ):
                raise OAuthError("invalid_grant", description="PKCE verification failed")
        user = await load_active_user(session, artifact.user_id)
        if user is None or not user_matches_client(user, client):
            raise OAuthError("invalid_grant")
        return await self._issue_user_tokens(
            session, client=client, user=user, scopes=artifact.scopes, nonce=artifact.nonce
        )

    async def _client_credentials_grant(
        self,
        session: AsyncSession,
        client: Client,
        request: TokenRequest,
    ) -> dict[str, Any]:
        allowed = client.allowed_scope_set()
        requested = request.scope.split() if request.scope else sorted(allowed - {"openid"})
        if not set(requested) <= allowed:
            raise OAuthError("invalid_scope")
        scopes = " ".join(requested)
        access = await self._engine.issue_credential(
            session,
            kind=CredentialKind.ACCESS_TOKEN,
            client_id=client.client_id,
            user_id=None,
            scopes=scopes,
            ttl_seconds=client.access_token_ttl,
        )
        return {
            "access_token": access.token,
            "token_type": "Bearer",
            "expires_in": client.access_token_ttl,
            "scope": scopes,
        }

    async def _refresh_token_grant(
        self,
        session: AsyncSession,
        client: Client,
        request: TokenRequest,
    ) -> dict[str, Any]:
        if not request.refresh_token:
            raise OAuthError("invalid_request")
        try:
            refresh = await self._engine.validate_long_lived(
                session, request.refresh_token, kinds=(CredentialKind.REFRESH_TOKEN,)
            )
        except ArtifactError as exc:
            raise OAuthError("invalid_grant") from exc
        if refresh.client_id != client.client_id or refresh.user_id is None:
            raise OAuthError("invalid_grant")
        # Rotation: the presented refresh token and its access token die together.
        if not await self._engine.rotate_refresh(session, refresh):
            raise OAuthError("invalid_grant")
        user = await load_active_user(session, refresh.user_id)
        if user is None or not user_matches_client(user, client):
            raise OAuthError("invalid_grant")
        return await self._issue_user_tokens(session, client=client, user=user, scopes=refresh.scopes)

    async def _issue_user_tokens(
        self,
        session: AsyncSession,
        *,
        client: Client,
        user: User,
        scopes: str,
        nonce: str | None = None,
    ) -> dict[str, Any]:
        pair = await self._engine.issue_token_pair(
            session,
            client_id=client.client_id,
            user_id=user.id,
            scopes=scopes,
            access_ttl_seconds=client.access_token_ttl,
            refresh_ttl_seconds=client.refresh_token_ttl,
        )
        payload: dict[str, Any] = {
            "access_token": pair.access.token,
            "token_type": "Bearer",
            "expires_in": client.access_token_ttl,
            "refresh_token": pair.refresh.token,
            "scope": scopes,
        }
        if "openid" in scopes.split():
            payload["id_token"] = self.build_id_token(client=client, user=user, scopes=scopes, nonce=nonce)
        return payload

    def build_id_token(
        self,
        *,
        client: Client,
        user: User,
        scopes: str,
        nonce: str | None = None,
    ) -> str:
        now = _utc_now()
        claims: dict[str, Any] = {
            "iss": self.issuer,
            "sub": str(user.id),
            "aud": client.client_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=client.access_token_ttl)).timestamp()),
        }
        if nonce:
            claims["nonce"] = nonce
        claims.update(scope_claims(user, set(scopes.split())))
        return self._keys.sign_token(claims)

    async def userinfo(self, session: AsyncSession, access_token: str | None) -> dict[str, Any]:
        if not access_token:
            raise OAuthError("invalid_token", status_code=401)
        try:
            credential = await self._engine.validate_long_lived(
                session, access_token, kinds=(CredentialKind.ACCESS_TOKEN,)
            )
        except ArtifactError as exc:
            raise OAuthError("invalid_token", status_code=401) from exc
        # client_credentials tokens carry no end user.
        if credential.user_id is None:
            raise OAuthError("invalid_token", status_code=401)
        user = await load_active_user(session, credential.user_id)
        if user is None:
            raise OAuthError("invalid_token", status_code=401)
        claims: dict[str, Any] = {"sub": str(user.id)}
        claims.update(scope_claims(user, set(credential.scopes.split())))
        return claims

    async def revoke(self, session: AsyncSession, token: str | None) -> None:
        # Unknown tokens are accepted silently so callers cannot probe for existence.
        if not token:
            raise OAuthError("invalid_request")
        credential = await self._engine.find_credential(session, token)
        if credential is None or credential.kind not in (
            CredentialKind.ACCESS_TOKEN,
            CredentialKind.REFRESH_TOKEN,
        ):
            return
        await self._engine.revoke_chain(session, token)
        logger.info("oidc_token_revoked client_id=%s kind=%s", credential.client_id, credential.kind.value)

    async def introspect(self, session: AsyncSession, token: str | None) -> dict[str, Any]:
        if not token:
            raise OAuthError("invalid_request")
        try:
            credential = await self._engine.validate_long_lived(
                session,
                token,
                kinds=(CredentialKind.ACCESS_TOKEN, CredentialKind.REFRESH_TOKEN),
            )
        except ArtifactError:
            return {"active": False}
        payload: dict[str, Any] = {
            "active": True,
            "scope": credential.scopes,
            "client_id": credential.client_id,
            "token_type": credential.kind.value,
            "exp": int(credential.expires_at.timestamp()),
            "iat": int(credential.created_at.timestamp()),
        }
        if credential.user_id is not None:
            payload["sub"] = str(credential.user_id)
        return payload

    def _verify_id_token_hint(self, id_token_hint: str | None) -> dict[str, Any] | None:
        # Logout hints may be expired ID tokens; only the signature has to hold.
        if not id_token_hint:
            return None
        try:
            claims = self._keys.verify_token(id_token_hint, issuer=self.issuer, verify_exp=False)
        except CryptoError as exc:
            logger.info("oidc_logout_hint_rejected reason=%s", exc)
            return None
        return claims

    async def logout(
        self,
        session: AsyncSession,
        *,
        id_token_hint: str | None,
        client_id: str | None,
        post_logout_redirect_uri: str | None,
        state: str | None,
        session_user: User | None,
    ) -> LogoutOutcome:
        claims = self._verify_id_token_hint(id_token_hint)
        user_id: int | None = session_user.id if session_user is not None else None
        if claims is not None:
            audience = claims.get("aud")
            if isinstance(audience, list):
                audience = audience[0] if audience else None
            if client_id and audience and client_id != audience:
                raise OAuthError("invalid_request", description="client_id does not match id_token_hint")
            client_id = client_id or audience
            try:
                user_id = int(str(claims.get("sub")), 10)
            except ValueError:
                user_id = None

        client = await identity_repo.get_client(session, client_id) if client_id else None
        revoked = 0
        if client is not None and user_id is not None:
            revoked = await self._engine.revoke_user_credentials(
                session, user_id=user_id, client_id=client.client_id
            )
            logger.info("oidc_logout client_id=%s user_id=%s revoked=%s", client.client_id, user_id, revoked)

        redirect_url = None
        if post_logout_redirect_uri:
            trusted = claims is not None
            if not trusted:
                registered = client.post_logout_redirect_uris if client is not None else []
                trusted = post_logout_redirect_uri in (registered or [])
            if not trusted:
                raise OAuthError("invalid_request", description="unregistered post_logout_redirect_uri")
            redirect_url = post_logout_redirect_uri
            if state:
                redirect_url = append_query_params(redirect_url, {"state": state})
        return LogoutOutcome(redirect_url=redirect_url, revoked=revoked)
