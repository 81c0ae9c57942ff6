"""Explicit formatters for CAS 2.0/3.0, SAML 1.1 and SLO payloads.

Layouts mirror what deployed CAS clients already parse; keep element order
and namespaces stable when editing.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import re
import secrets
from xml.sax.saxutils import escape


CAS_NAMESPACE = "http://www.yale.edu/tp/cas"
SAML_ATTRIBUTE_NAMESPACE = "http://www.ja-sig.org/products/cas/"
_SAML_CLOCK_SKEW = timedelta(minutes=5)
_ASSERTION_ARTIFACT = re.compile(
    r"<(?:[\w.-]+:)?AssertionArtifact\b[^>]*>\s*([^<\s]+)\s*</(?:[\w.-]+:)?AssertionArtifact>",
    re.IGNORECASE,
)


def _attr(value: str) -> str:
    return escape(value, {'"': "&quot;"})


def _instant(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def service_success(
    username: str,
    *,
    attributes: dict[str, list[str]] | None = None,
    pgt_iou: str | None = None,
    proxies: list[str] | None = None,
) -> str:
    body = f"    <cas:user>{escape(username)}</cas:user>\n"
    if attributes:
        body += "    <cas:attributes>\n"
        for name, values in attributes.items():
            for value in values:
                body += f"      <cas:{name}>{escape(value)}</cas:{name}>\n"
        body += "    </cas:attributes>\n"
    if pgt_iou:
        body += f"    <cas:proxyGrantingTicket>{escape(pgt_iou)}</cas:proxyGrantingTicket>\n"
    if proxies:
        body += "    <cas:proxies>\n"
        for proxy in proxies:
            body += f"      <cas:proxy>{escape(proxy)}</cas:proxy>\n"
        body += "    </cas:proxies>\n"
    return (
        f'<cas:serviceResponse xmlns:cas="{CAS_NAMESPACE}">\n'
        "  <cas:authenticationSuccess>\n"
        f"{body}"
        "  </cas:authenticationSuccess>\n"
        "</cas:serviceResponse>"
    )


def service_failure(code: str, message: str) -> str:
    return (
        f'<cas:serviceResponse xmlns:cas="{CAS_NAMESPACE}">\n'
        f'  <cas:authenticationFailure code="{_attr(code)}">\n'
        f"    {escape(message)}\n"
        "  </cas:authenticationFailure>\n"
        "</cas:serviceResponse>"
    )


def proxy_success(proxy_ticket: str) -> str:
    return (
        f'<cas:serviceResponse xmlns:cas="{CAS_NAMESPACE}">\n'
        "  <cas:proxySuccess>\n"
        f"    <cas:proxyTicket>{escape(proxy_ticket)}</cas:proxyTicket>\n"
        "  </cas:proxySuccess>\n"
        "</cas:serviceResponse>"
    )


def proxy_failure(code: str, message: str) -> str:
    return (
        f'<cas:serviceResponse xmlns:cas="{CAS_NAMESPACE}">\n'
        f'  <cas:proxyFailure code="{_attr(code)}">\n'
        f"    {escape(message)}\n"
        "  </cas:proxyFailure>\n"
        "</cas:serviceResponse>"
    )


def saml_success(
    username: str,
    *,
    issuer: str,
    attributes: dict[str, list[str]] | None = None,
    now: datetime | None = None,
) -> str:
    now = now or datetime.now(timezone.utc)
    issue_instant = _instant(now)
    attribute_xml = ""
    for name, values in (attributes or {}).items():
        for value in values:
            attribute_xml += (
                f'        <saml1:Attribute AttributeName="{_attr(name)}" '
                f'AttributeNamespace="{SAML_ATTRIBUTE_NAMESPACE}">\n'
                f"          <saml1:AttributeValue>{escape(value)}</saml1:AttributeValue>\n"
                "        </saml1:Attribute>\n"
            )
    return (
        '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/">\n'
        "  <SOAP-ENV:Body>\n"
        '    <saml1p:Response xmlns:saml1p="urn:oasis:names:tc:SAML:1.0:protocol" '
        f'IssueInstant="{issue_instant}" MajorVersion="1" MinorVersion="1">\n'
        "      <saml1p:Status>\n"
        '        <saml1p:StatusCode Value="saml1p:Success"/>\n'
        "      </saml1p:Status>\n"
        '      <saml1:Assertion xmlns:saml1="urn:oasis:names:tc:SAML:1.0:assertion" '
        f'IssueInstant="{issue_instant}" Issuer="{_attr(issuer)}" MajorVersion="1" MinorVersion="1">\n'
        f'        <saml1:Conditions NotBefore="{_instant(now - _SAML_CLOCK_SKEW)}" '
        f'NotOnOrAfter="{_instant(now + _SAML_CLOCK_SKEW)}">\n'
        "          <saml1:AudienceRestrictionCondition>\n"
        f"            <saml1:Audience>{escape(issuer)}</saml1:Audience>\n"
        "          </saml1:AudienceRestrictionCondition>\n"
        "        </saml1:Conditions>\n"
        f'        <saml1:AuthenticationStatement AuthenticationInstant="{issue_instant}" '
        'AuthenticationMethod="urn:oasis:names:tc:SAML:1.0:am:password">\n'
        "          <saml1:Subject>\n"
        f"            <saml1:NameIdentifier>{escape(username)}</saml1:NameIdentifier>\n"
        "            <saml1:SubjectConfirmation>\n"
        "              <saml1:ConfirmationMethod>urn:oasis:names:tc:SAML:1.0:cm:artifact</saml1:ConfirmationMethod>\n"
        "            </saml1:SubjectConfirmation>\n"
        "          </saml1:Subject>\n"
        "        </saml1:AuthenticationStatement>\n"
        "        <saml1:AttributeStatement>\n"
        "          <saml1:Subject>\n"
        f"            <saml1:NameIdentifier>{escape(username)}</saml1:NameIdentifier>\n"
        "          </saml1:Subject>\n"
        f"{attribute_xml}"
        "        </saml1:AttributeStatement>\n"
        "      </saml1:Assertion>\n"
        "    </saml1p:Response>\n"
        "  </SOAP-ENV:Body>\n"
        "</SOAP-ENV:Envelope>"
    )


def saml_failure(message: str) -> str:
    return (
        '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/">\n'
        "  <SOAP-ENV:Body>\n"
        '    <saml1p:Response xmlns:saml1p="urn:oasis:names:tc:SAML:1.0:protocol">\n'
        "      <saml1p:Status>\n"
        '        <saml1p:StatusCode Value="saml1p:RequestDenied"/>\n'
        f"        <saml1p:StatusMessage>{escape(message)}</saml1p:StatusMessage>\n"
        "      </saml1p:Status>\n"
        "    </saml1p:Response>\n"
        "  </SOAP-ENV:Body>\n"
        "</SOAP-ENV:Envelope>"
    )


def logout_request(session_index: str, *, name_id: str = "@NOT_USED@", now: datetime | None = None) -> str:
    request_id = f"LR-{secrets.token_hex(16)}"
    return (
        '<samlp:LogoutRequest xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol" '
        'xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion" '
        f'ID="{request_id}" Version="2.0" IssueInstant="{_instant(now or datetime.now(timezone.utc))}">\n'
        f"  <saml:NameID>{escape(name_id)}</saml:NameID>\n"
        f"  <samlp:SessionIndex>{escape(session_index)}</samlp:SessionIndex>\n"
        "</samlp:LogoutRequest>"
    )


def extract_assertion_artifact(body: str) -> str | None:
    # Prefix-agnostic: clients send samlp:AssertionArtifact or a bare AssertionArtifact.
    match = _ASSERTION_ARTIFACT.search(body or "")
    return match.group(1) if match else None
