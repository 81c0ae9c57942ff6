from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from ssogate.apps.api.errors import (
    http_exception_handler,
    oauth_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from ssogate.apps.api.routes.cas import router as cas_router
from ssogate.apps.api.routes.health import router as health_router
from ssogate.apps.api.routes.login import router as login_router
from ssogate.apps.api.routes.oidc import router as oidc_router
from ssogate.apps.ldap.server import LdapServer
from ssogate.core.config import get_settings
from ssogate.core.logging import configure_logging
from ssogate.persistence.db import SessionLocal
from ssogate.services.container import IdentityServices, build_services
from ssogate.services.sso.oidc_provider import OAuthError


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Background parts only; request handling works without them.
    services: IdentityServices = app.state.services
    settings = services.settings
    services.notifier.start()
    if settings.cleanup_enabled:
        services.cleanup.start()
    ldap_server: LdapServer | None = None
    if settings.ldap_enabled:
        ldap_server = LdapServer(services.directory, host=settings.ldap_host, port=settings.ldap_port)
        await ldap_server.start()
    logger.info("ssogate_started issuer=%s", settings.sso_issuer)
    try:
        yield
    finally:
        if ldap_server is not None:
            await ldap_server.stop()
        await services.cleanup.stop()
        await services.notifier.stop()
        logger.info("ssogate_stopped")


def create_app(services: IdentityServices | None = None) -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.services = services or build_services(settings, SessionLocal)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(OAuthError)
    async def _oauth_exception_handler(request: Request, exc: OAuthError):
        return await oauth_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    app.include_router(health_router)
    # OIDC discovery, authorization server and RP-initiated logout.
    app.include_router(oidc_router)
    # CAS 1.0/2.0/3.0 protocol endpoints under /cas.
    app.include_router(cas_router)
    # Shared password login backing both protocols.
    app.include_router(login_router)

    return app
