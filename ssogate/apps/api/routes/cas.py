from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse, RedirectResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ssogate.apps.api.cookies import clear_session_cookie, clear_tgc_cookie, set_tgc_cookie
from ssogate.apps.api.deps import get_db, get_services
from ssogate.services.container import IdentityServices
from ssogate.services.sso import cas_xml
from ssogate.services.sso.cas_provider import LOGOUT_SUCCESS_MESSAGE, CasError, ServiceValidation
from ssogate.services.sso.identity import find_service_client


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cas", tags=["cas"])

_XML_MEDIA_TYPE = "application/xml"


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in ("true", "1", "yes")


def _xml(body: str) -> Response:
    # CAS failures are reported in-band; the HTTP status is always 200.
    return Response(content=body, media_type=_XML_MEDIA_TYPE)


@router.get("/login")
async def cas_login(
    request: Request,
    service: str | None = Query(default=None),
    renew: str | None = Query(default=None),
    gateway: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> Response:
    settings = services.settings
    outcome = await services.cas.login(
        db,
        service=service,
        renew=_flag(renew),
        gateway=_flag(gateway),
        tgc=request.cookies.get(settings.cas_tgc_cookie_name),
        sso_session=request.cookies.get(settings.sso_session_cookie_name),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )
    if outcome.redirect_url:
        response: Response = RedirectResponse(outcome.redirect_url, status_code=302)
    else:
        response = PlainTextResponse(outcome.message or "")
    if outcome.set_tgc:
        set_tgc_cookie(response, settings, outcome.set_tgc)
    elif outcome.clear_tgc:
        clear_tgc_cookie(response, settings)
    if outcome.clear_session:
        clear_session_cookie(response, settings)
    return response


@router.get("/logout")
async def cas_logout(
    request: Request,
    service: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> Response:
    settings = services.settings
    queued = await services.cas.logout(db, tgc=request.cookies.get(settings.cas_tgc_cookie_name))
    logger.info("cas_logout_completed slo_queued=%s", queued)
    # Only registered services are followed to avoid an open redirect.
    if service and await find_service_client(db, service) is not None:
        response: Response = RedirectResponse(service, status_code=302)
    else:
        response = PlainTextResponse(LOGOUT_SUCCESS_MESSAGE)
    clear_tgc_cookie(response, settings)
    return response


@router.get("/validate")
async def cas_validate(
    ticket: str | None = Query(default=None),
    service: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> PlainTextResponse:
    # CAS 1.0: two-line plain text answer, no error detail.
    try:
        result = await services.cas.validate_ticket(db, ticket=ticket, service=service)
    except CasError:
        return PlainTextResponse("no\n")
    except SQLAlchemyError:
        logger.exception("cas_validate_failed")
        return PlainTextResponse("no\n")
    return PlainTextResponse(f"yes\n{result.user.username}\n")


async def _service_validate(
    db: AsyncSession,
    services: IdentityServices,
    *,
    ticket: str | None,
    service: str | None,
    pgt_url: str | None,
    allow_proxy: bool,
    release_attributes: bool,
) -> Response:
    try:
        result: ServiceValidation = await services.cas.validate_ticket(
            db,
            ticket=ticket,
            service=service,
            allow_proxy=allow_proxy,
            pgt_url=pgt_url,
        )
    except CasError as exc:
        return _xml(cas_xml.service_failure(exc.code, exc.message))
    except SQLAlchemyError:
        logger.exception("cas_service_validate_failed")
        return _xml(cas_xml.service_failure("INTERNAL_ERROR", "ticket store unavailable"))
    return _xml(
        cas_xml.service_success(
            result.user.username,
            attributes=result.attributes if release_attributes else None,
            pgt_iou=result.pgt_iou,
            proxies=result.proxies,
        )
    )


@router.get("/serviceValidate")
async def cas_service_validate(
    ticket: str | None = Query(default=None),
    service: str | None = Query(default=None),
    pgt_url: str | None = Query(default=None, alias="pgtUrl"),
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> Response:
    return await _service_validate(
        db, services, ticket=ticket, service=service, pgt_url=pgt_url, allow_proxy=False, release_attributes=False
    )


@router.get("/p3/serviceValidate")
async def cas_p3_service_validate(
    ticket: str | None = Query(default=None),
    service: str | None = Query(default=None),
    pgt_url: str | None = Query(default=None, alias="pgtUrl"),
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> Response:
    return await _service_validate(
        db, services, ticket=ticket, service=service, pgt_url=pgt_url, allow_proxy=False, release_attributes=True
    )


@router.get("/proxyValidate")
async def cas_proxy_validate(
    ticket: str | None = Query(default=None),
    service: str | None = Query(default=None),
    pgt_url: str | None = Query(default=None, alias="pgtUrl"),
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> Response:
    return await _service_validate(
        db, services, ticket=ticket, service=service, pgt_url=pgt_url, allow_proxy=True, release_attributes=False
    )


@router.get("/p3/proxyValidate")
async def cas_p3_proxy_validate(
    ticket: str | None = Query(default=None),
    service: str | None = Query(default=None),
    pgt_url: str | None = Query(default=None, alias="pgtUrl"),
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> Response:
    return await _service_validate(
        db, services, ticket=ticket, service=service, pgt_url=pgt_url, allow_proxy=True, release_attributes=True
    )


@router.get("/proxy")
async def cas_proxy(
    pgt: str | None = Query(default=None),
    target_service: str | None = Query(default=None, alias="targetService"),
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> Response:
    try:
        proxy_ticket = await services.cas.proxy(db, pgt=pgt, target_service=target_service)
    except CasError as exc:
        return _xml(cas_xml.proxy_failure(exc.code, exc.message))
    except SQLAlchemyError:
        logger.exception("cas_proxy_failed")
        return _xml(cas_xml.proxy_failure("INTERNAL_ERROR", "ticket store unavailable"))
    return _xml(cas_xml.proxy_success(proxy_ticket))


@router.post("/samlValidate")
async def cas_saml_validate(
    request: Request,
    target: str | None = Query(default=None, alias="TARGET"),
    db: AsyncSession = Depends(get_db),
    services: IdentityServices = Depends(get_services),
) -> Response:
    body = (await request.body()).decode("utf-8", errors="replace")
    try:
        result = await services.cas.saml_validate(db, target=target, body=body)
    except CasError as exc:
        payload = cas_xml.saml_failure(exc.message)
    except SQLAlchemyError:
        logger.exception("cas_saml_validate_failed")
        payload = cas_xml.saml_failure("ticket store unavailable")
    else:
        payload = cas_xml.saml_success(
            result.user.username,
            issuer=services.settings.sso_issuer,
            attributes=result.attributes,
        )
    return Response(content=payload, media_type="text/xml")
