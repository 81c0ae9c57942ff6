from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ssogate.services.sso.oidc_provider import OAuthError


logger = logging.getLogger(__name__)


async def oauth_exception_handler(request: Request, exc: OAuthError) -> JSONResponse:
    # RFC 6749 error body; invalid_client and invalid_token also advertise their auth scheme.
    payload = {"error": exc.error}
    if exc.description:
        payload["error_description"] = exc.description
    headers = None
    if exc.status_code == 401:
        scheme = "Bearer" if exc.error == "invalid_token" else "Basic"
        headers = {"WWW-Authenticate": f'{scheme} error="{exc.error}"'}
    return JSONResponse(
        content=payload,
        status_code=exc.status_code,
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Malformed protocol requests map onto the OAuth2 invalid_request code.
    return JSONResponse(content={"error": "invalid_request"}, status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; store and crypto failures surface as a generic error.
    logger.exception("unhandled_request_error path=%s", request.url.path)
    return JSONResponse(content={"error": "server_error"}, status_code=500)
