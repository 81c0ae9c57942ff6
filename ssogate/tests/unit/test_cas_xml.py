from __future__ import annotations

from datetime import datetime, timezone
from xml.etree import ElementTree

from ssogate.services.sso import cas_xml


CAS = "{http://www.yale.edu/tp/cas}"


def test_service_success_renders_attributes_and_proxies() -> None:
    body = cas_xml.service_success(
        "alice",
        attributes={"email": ["alice@acme.test"], "memberOf": ["admins", "staff"]},
        pgt_iou="PGTIOU-1",
        proxies=["https://proxy.example/cb"],
    )
    root = ElementTree.fromstring(body)
    success = root.find(f"{CAS}authenticationSuccess")
    assert success is not None
    assert success.findtext(f"{CAS}user") == "alice"
    attributes = success.find(f"{CAS}attributes")
    assert attributes.findtext(f"{CAS}email") == "alice@acme.test"
    assert [node.text for node in attributes.findall(f"{CAS}memberOf")] == ["admins", "staff"]
    assert success.findtext(f"{CAS}proxyGrantingTicket") == "PGTIOU-1"
    assert success.find(f"{CAS}proxies").findtext(f"{CAS}proxy") == "https://proxy.example/cb"


def test_service_success_without_extras_is_minimal() -> None:
    root = ElementTree.fromstring(cas_xml.service_success("bob"))
    success = root.find(f"{CAS}authenticationSuccess")
    assert [child.tag for child in success] == [f"{CAS}user"]


def test_service_failure_escapes_message() -> None:
    root = ElementTree.fromstring(cas_xml.service_failure("INVALID_TICKET", "ticket <ST-1> & more"))
    failure = root.find(f"{CAS}authenticationFailure")
    assert failure.get("code") == "INVALID_TICKET"
    assert failure.text.strip() == "ticket <ST-1> & more"


def test_usernames_are_escaped() -> None:
    root = ElementTree.fromstring(cas_xml.service_success("a<b>&c"))
    assert root.find(f"{CAS}authenticationSuccess").findtext(f"{CAS}user") == "a<b>&c"


def test_proxy_envelopes() -> None:
    success = ElementTree.fromstring(cas_xml.proxy_success("PT-abc"))
    assert success.find(f"{CAS}proxySuccess").findtext(f"{CAS}proxyTicket") == "PT-abc"
    failure = ElementTree.fromstring(cas_xml.proxy_failure("INVALID_REQUEST", "missing pgt"))
    assert failure.find(f"{CAS}proxyFailure").get("code") == "INVALID_REQUEST"


def test_saml_success_carries_name_and_attributes() -> None:
    now = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
    body = cas_xml.saml_success(
        "alice",
        issuer="http://idp.test",
        attributes={"email": ["alice@acme.test"]},
        now=now,
    )
    assert 'Value="saml1p:Success"' in body
    assert "<saml1:NameIdentifier>alice</saml1:NameIdentifier>" in body
    assert 'AttributeName="email"' in body
    assert 'NotBefore="2026-05-01T11:55:00Z"' in body
    assert 'NotOnOrAfter="2026-05-01T12:05:00Z"' in body
    ElementTree.fromstring(body)


def test_saml_failure_is_request_denied() -> None:
    body = cas_xml.saml_failure("ticket not recognized")
    assert 'Value="saml1p:RequestDenied"' in body
    assert "ticket not recognized" in body


def test_logout_request_names_session_index() -> None:
    body = cas_xml.logout_request("ST-123", name_id="alice")
    root = ElementTree.fromstring(body)
    assert root.findtext("{urn:oasis:names:tc:SAML:2.0:protocol}SessionIndex") == "ST-123"
    assert root.findtext("{urn:oasis:names:tc:SAML:2.0:assertion}NameID") == "alice"
    assert root.get("ID").startswith("LR-")


def test_extract_assertion_artifact_accepts_any_prefix() -> None:
    prefixed = (
        '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/"><SOAP-ENV:Body>'
        '<samlp:Request xmlns:samlp="urn:oasis:names:tc:SAML:1.0:protocol">'
        "<samlp:AssertionArtifact>\n  ST-abc\n</samlp:AssertionArtifact>"
        "</samlp:Request></SOAP-ENV:Body></SOAP-ENV:Envelope>"
    )
    assert cas_xml.extract_assertion_artifact(prefixed) == "ST-abc"
    assert cas_xml.extract_assertion_artifact("<AssertionArtifact>ST-xyz</AssertionArtifact>") == "ST-xyz"
    assert cas_xml.extract_assertion_artifact("<Request/>") is None
