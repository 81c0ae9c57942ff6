from __future__ import annotations

import asyncio
from typing import Any

from pyasn1.codec.ber import decoder
from pyasn1_modules.rfc2251 import BindRequest, LDAPMessage, SearchRequest, UnbindRequest
import pytest

from ssogate.apps.ldap.server import LdapServer, encode_message, message_length
from ssogate.persistence.db import SessionLocal
from ssogate.services.ldap.directory import DirectoryBridge
from ssogate.tests.utils.identity import create_tenant, create_user


BASE_DN = "dc=ssogate,dc=local"
ALICE_DN = f"uid=alice,ou=users,o=acme,{BASE_DN}"


def _bind_request(dn: str, password: str) -> BindRequest:
    request = BindRequest()
    request["version"] = 3
    request["name"] = dn.encode("utf-8")
    request.setComponentByName("authentication").getComponentByName("authentication").setComponentByName(
        "simple", password.encode("utf-8")
    )
    return request


def _search_request(base_dn: str, attribute: str, value: str, requested: list[str]) -> SearchRequest:
    request = SearchRequest()
    request["baseObject"] = base_dn.encode("utf-8")
    request["scope"] = 2
    request["derefAliases"] = 0
    request["sizeLimit"] = 0
    request["timeLimit"] = 0
    request["typesOnly"] = False
    search_filter = request.setComponentByName("filter").getComponentByName("filter")
    match = search_filter.setComponentByName("equalityMatch").getComponentByName("equalityMatch")
    match["attributeDesc"] = attribute.encode("utf-8")
    match["assertionValue"] = value.encode("utf-8")
    attributes = request.setComponentByName("attributes").getComponentByName("attributes").clear()
    for name in requested:
        attributes.append(name.encode("utf-8"))
    return request


async def _read_message(reader: asyncio.StreamReader) -> Any:
    header = await reader.readexactly(2)
    if header[1] & 0x80:
        header += await reader.readexactly(header[1] & 0x7F)
    body = await reader.readexactly(message_length(header) - len(header))
    message, _rest = decoder.decode(header + body, asn1Spec=LDAPMessage())
    return message


async def _exchange(writer: asyncio.StreamWriter, reader: asyncio.StreamReader, raw: bytes) -> Any:
    writer.write(raw)
    await writer.drain()
    return await _read_message(reader)


@pytest.fixture
async def ldap_server():
    tenant = await create_tenant("acme")
    await create_user(tenant, email="alice@acme.test", groups=("staff",))
    bridge = DirectoryBridge(session_factory=SessionLocal, base_dn=BASE_DN)
    server = LdapServer(bridge, host="127.0.0.1", port=0)
    await server.start()
    yield server
    await server.stop()


@pytest.mark.asyncio
async def test_bind_search_and_unbind_over_tcp(ldap_server: LdapServer) -> None:
    # A simple bind followed by a search streams entries and a success result.
    reader, writer = await asyncio.open_connection("127.0.0.1", ldap_server.port)
    try:
        bind = await _exchange(
            writer, reader, encode_message(1, "bindRequest", _bind_request(ALICE_DN, "correct-horse"))
        )
        assert int(bind["messageID"]) == 1
        assert bind["protocolOp"].getName() == "bindResponse"
        assert int(bind["protocolOp"].getComponent()["resultCode"]) == 0

        search = _search_request(f"o=acme,{BASE_DN}", "uid", "alice", ["mail", "memberOf"])
        writer.write(encode_message(2, "searchRequest", search))
        await writer.drain()
        entry_message = await _read_message(reader)
        assert entry_message["protocolOp"].getName() == "searchResEntry"
        entry = entry_message["protocolOp"].getComponent()
        assert entry["objectName"].asOctets() == ALICE_DN.encode("utf-8")
        attributes = {
            attribute["type"].asOctets(): [value.asOctets() for value in attribute["vals"]]
            for attribute in entry["attributes"]
        }
        assert attributes == {
            b"mail": [b"alice@acme.test"],
            b"memberOf": [f"cn=staff,ou=groups,o=acme,{BASE_DN}".encode("utf-8")],
        }
        done = await _read_message(reader)
        assert int(done["messageID"]) == 2
        assert done["protocolOp"].getName() == "searchResDone"
        assert int(done["protocolOp"].getComponent()["resultCode"]) == 0

        writer.write(encode_message(3, "unbindRequest", UnbindRequest("")))
        await writer.drain()
        assert await reader.read() == b""
    finally:
        writer.close()


@pytest.mark.asyncio
async def test_failed_bind_and_anonymous_search(ldap_server: LdapServer) -> None:
    # Wrong passwords get invalidCredentials and the connection falls back to anonymous.
    reader, writer = await asyncio.open_connection("127.0.0.1", ldap_server.port)
    try:
        bind = await _exchange(writer, reader, encode_message(1, "bindRequest", _bind_request(ALICE_DN, "nope")))
        assert int(bind["protocolOp"].getComponent()["resultCode"]) == 49

        done = await _exchange(
            writer,
            reader,
            encode_message(2, "searchRequest", _search_request(f"o=acme,{BASE_DN}", "uid", "alice", [])),
        )
        assert done["protocolOp"].getName() == "searchResDone"
        assert int(done["protocolOp"].getComponent()["resultCode"]) == 50
    finally:
        writer.close()


@pytest.mark.asyncio
async def test_write_operations_are_refused(ldap_server: LdapServer) -> None:
    # The directory is read-only; delete requests get unwillingToPerform and the connection stays up.
    reader, writer = await asyncio.open_connection("127.0.0.1", ldap_server.port)
    try:
        # delRequest is a primitive [APPLICATION 10] LDAPDN.
        response = await _exchange(writer, reader, b"\x30\x06\x02\x01\x04\x4a\x01x")
        assert int(response["messageID"]) == 4
        assert response["protocolOp"].getName() == "delResponse"
        assert int(response["protocolOp"].getComponent()["resultCode"]) == 53

        bind = await _exchange(
            writer, reader, encode_message(5, "bindRequest", _bind_request(ALICE_DN, "correct-horse"))
        )
        assert int(bind["protocolOp"].getComponent()["resultCode"]) == 0
    finally:
        writer.close()
