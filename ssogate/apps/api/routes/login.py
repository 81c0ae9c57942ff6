from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ssogate.apps.api.cookies import set_session_cookie
from ssogate.apps.api.deps import get_db, get_services
from ssogate.core.errors import AuthenticationFailure, ClientError
from ssogate.services.container import IdentityServices
from ssogate.services.sso.login import INVALID_LOGIN_MESSAGE


router = APIRouter(prefix="/sso", tags=["sso"])


class LoginRequest(BaseModel):
    tenant: str | None = None
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    redirect: str | None = None


class LoginResponse(BaseModel):
    redirect: str


def _invalid_credentials() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "INVALID_CREDENTIALS", "message": INVALID_LOGIN_MESSAGE},
    )


def _invalid_redirect(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "INVALID_REDIRECT", "message": message},
    )


@router.post("/login", response_model=LoginResponse)
async def sso_login(
    payload: LoginRequest,
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> JSONResponse:
    # Shared login form backend; the cookie it sets is trusted by OIDC authorize and CAS login.
    try:
        result = await services.login.login(
            db,
            tenant=payload.tenant,
            username=payload.username,
            password=payload.password,
            redirect=payload.redirect,
        )
    except AuthenticationFailure as exc:
        raise _invalid_credentials() from exc
    except ClientError as exc:
        raise _invalid_redirect(str(exc)) from exc
    response = JSONResponse(LoginResponse(redirect=result.redirect).model_dump())
    set_session_cookie(response, services.settings, result.session_token)
    return response
