from __future__ import annotations

import asyncio
import logging
from typing import Any

from pyasn1.codec.ber import decoder, encoder
from pyasn1.error import PyAsn1Error
from pyasn1_modules.rfc2251 import (
    AddResponse,
    BindResponse,
    CompareResponse,
    DelResponse,
    ExtendedResponse,
    LDAPMessage,
    ModifyDNResponse,
    ModifyResponse,
    SearchResultDone,
    SearchResultEntry,
)

from ssogate.services.ldap.directory import (
    ANONYMOUS,
    BindIdentity,
    DirectoryBridge,
    DirectoryEntry,
    LdapOperationError,
    LdapResultCode,
)
from ssogate.services.ldap.filters import escape_filter_value, parse_search_filter


logger = logging.getLogger(__name__)

_MAX_MESSAGE_BYTES = 1 << 20
# Write operations are answered with unwillingToPerform in their own response type.
_WRITE_RESPONSES: dict[str, tuple[str, type]] = {
    "modifyRequest": ("modifyResponse", ModifyResponse),
    "addRequest": ("addResponse", AddResponse),
    "delRequest": ("delResponse", DelResponse),
    "modDNRequest": ("modDNResponse", ModifyDNResponse),
    "compareRequest": ("compareResponse", CompareResponse),
    "extendedReq": ("extendedResp", ExtendedResponse),
}
# Primitive-encoded operations the LDAPv3 module cannot decode, keyed by raw protocolOp tag.
_DEL_REQUEST_TAG = 0x4A
_ABANDON_REQUEST_TAG = 0x50
_FILTER_OPERATORS = {"equalityMatch": "=", "greaterOrEqual": ">=", "lessOrEqual": "<=", "approxMatch": "~="}


def message_length(buffer: bytes) -> int:
    """Total size of the first BER element in ``buffer``, or -1 if the header is incomplete."""
    if len(buffer) < 2:
        return -1
    if buffer[0] != 0x30:
        raise ValueError("LDAP messages must be BER sequences")
    first = buffer[1]
    if first < 0x80:
        return 2 + first
    count = first & 0x7F
    if count == 0 or count > 4:
        raise ValueError("unsupported BER length encoding")
    if len(buffer) < 2 + count:
        return -1
    return 2 + count + int.from_bytes(buffer[2 : 2 + count], "big")


def peek_operation(raw: bytes) -> tuple[int, int] | None:
    # (messageID, protocolOp tag byte) read straight from the BER bytes.
    header = 2 if raw[1] < 0x80 else 2 + (raw[1] & 0x7F)
    if len(raw) < header + 2 or raw[header] != 0x02:
        return None
    id_length = raw[header + 1]
    op_index = header + 2 + id_length
    if id_length == 0 or id_length > 4 or len(raw) <= op_index:
        return None
    return int.from_bytes(raw[header + 2 : op_index], "big"), raw[op_index]


def _text(value: Any) -> str:
    return value.asOctets().decode("utf-8", errors="replace")


def filter_to_string(search_filter: Any) -> str:
    # Render the decoded Filter choice as an RFC 4515 string.
    name = search_filter.getName()
    component = search_filter.getComponent()
    if name in ("and", "or"):
        symbol = "&" if name == "and" else "|"
        return f"({symbol}{''.join(filter_to_string(item) for item in component)})"
    if name == "not":
        return f"(!{filter_to_string(component)})"
    if name == "present":
        return f"({_text(component)}=*)"
    if name in _FILTER_OPERATORS:
        value = _text(component["assertionValue"])
        return f"({_text(component['attributeDesc'])}{_FILTER_OPERATORS[name]}{escape_filter_value(value)})"
    return "(?=unsupported)"


def _ldap_result(response_cls: type, code: LdapResultCode, message: str = "") -> Any:
    response = response_cls()
    response["resultCode"] = int(code)
    response["matchedDN"] = b""
    response["errorMessage"] = message.encode("utf-8")
    return response


def _search_entry(entry: DirectoryEntry, requested: list[str]) -> Any:
    wanted = {name.lower() for name in requested}
    select_all = not wanted or "*" in wanted
    response = SearchResultEntry()
    response["objectName"] = entry.dn.encode("utf-8")
    # clear() turns the schema into an empty value so entries without attributes still encode.
    attributes = response.setComponentByName("attributes").getComponentByName("attributes").clear()
    for name, values in entry.attributes.items():
        if not values or (not select_all and name.lower() not in wanted):
            continue
        attribute = attributes.componentType.clone()
        attribute["type"] = name.encode("utf-8")
        vals = attribute.setComponentByName("vals").getComponentByName("vals")
        for index, value in enumerate(values):
            vals.setComponentByPosition(index, value.encode("utf-8"))
        attributes.append(attribute)
    return response


def encode_message(message_id: int, operation: str, payload: Any) -> bytes:
    message = LDAPMessage()
    message["messageID"] = message_id
    message.setComponentByName("protocolOp").getComponentByName("protocolOp").setComponentByName(
        operation, payload
    )
    return encoder.encode(message)


class LdapConnection:
    """One client connection; bind state is per connection."""

    def __init__(self, bridge: DirectoryBridge, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._bridge = bridge
        self._reader = reader
        self._writer = writer
        self._identity: BindIdentity = ANONYMOUS
        self._peer = writer.get_extra_info("peername")

    async def _read_frame(self, buffer: bytearray) -> bytes | None:
        while True:
            try:
                size = message_length(bytes(buffer))
            except ValueError:
                return None
            if size > _MAX_MESSAGE_BYTES:
                return None
            if size != -1 and len(buffer) >= size:
                raw = bytes(buffer[:size])
                del buffer[:size]
                return raw
            chunk = await self._reader.read(65536)
            if not chunk:
                return None
            buffer.extend(chunk)

    async def _send(self, message_id: int, operation: str, payload: Any) -> None:
        self._writer.write(encode_message(message_id, operation, payload))
        await self._writer.drain()

    async def _handle_undecodable(self, raw: bytes) -> bool:
        # Returns True when the frame was a known primitive operation and the connection stays up.
        peeked = peek_operation(raw)
        if peeked is None:
            return False
        message_id, op_tag = peeked
        if op_tag == _ABANDON_REQUEST_TAG:
            return True
        if op_tag == _DEL_REQUEST_TAG:
            await self._send(
                message_id,
                "delResponse",
                _ldap_result(DelResponse, LdapResultCode.UNWILLING_TO_PERFORM, "directory is read-only"),
            )
            return True
        return False

    async def serve(self) -> None:
        buffer = bytearray()
        try:
            while True:
                raw = await self._read_frame(buffer)
                if raw is None:
                    break
                try:
                    message, _rest = decoder.decode(raw, asn1Spec=LDAPMessage())
                except PyAsn1Error:
                    if await self._handle_undecodable(raw):
                        continue
                    logger.info("ldap_protocol_error peer=%s", self._peer)
                    break
                message_id = int(message["messageID"])
                protocol_op = message["protocolOp"]
                operation = protocol_op.getName()
                request = protocol_op.getComponent()
                if operation == "unbindRequest":
                    break
                if operation == "bindRequest":
                    await self._handle_bind(message_id, request)
                elif operation == "searchRequest":
                    await self._handle_search(message_id, request)
                elif operation in _WRITE_RESPONSES:
                    response_name, response_cls = _WRITE_RESPONSES[operation]
                    await self._send(
                        message_id,
                        response_name,
                        _ldap_result(response_cls, LdapResultCode.UNWILLING_TO_PERFORM, "directory is read-only"),
                    )
                else:
                    logger.info("ldap_unsupported_operation operation=%s", operation)
                    break
        except (ConnectionError, asyncio.IncompleteReadError):
            logger.info("ldap_connection_lost peer=%s", self._peer)
        finally:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except ConnectionError:
                pass

    async def _handle_bind(self, message_id: int, request: Any) -> None:
        dn = _text(request["name"])
        authentication = request["authentication"]
        if authentication.getName() != "simple":
            self._identity = ANONYMOUS
            await self._send(
                message_id,
                "bindResponse",
                _ldap_result(BindResponse, LdapResultCode.AUTH_METHOD_NOT_SUPPORTED, "only simple bind is supported"),
            )
            return
        password = _text(authentication.getComponent())
        try:
            self._identity = await self._bridge.bind(dn, password)
        except LdapOperationError as exc:
            self._identity = ANONYMOUS
            await self._send(message_id, "bindResponse", _ldap_result(BindResponse, exc.result_code))
            return
        except Exception:  # noqa: BLE001 - store failures map to a generic LDAP error for the client.
            logger.exception("ldap_bind_failed")
            self._identity = ANONYMOUS
            await self._send(message_id, "bindResponse", _ldap_result(BindResponse, LdapResultCode.OTHER))
            return
        await self._send(message_id, "bindResponse", _ldap_result(BindResponse, LdapResultCode.SUCCESS))

    async def _handle_search(self, message_id: int, request: Any) -> None:
        base_dn = _text(request["baseObject"])
        filter_text = filter_to_string(request["filter"])
        requested = [_text(attribute) for attribute in request["attributes"]]
        size_limit = int(request["sizeLimit"])
        try:
            entries = await self._bridge.search(
                self._identity,
                base_dn,
                parse_search_filter(filter_text),
                size_limit=size_limit,
            )
        except LdapOperationError as exc:
            await self._send(message_id, "searchResDone", _ldap_result(SearchResultDone, exc.result_code, exc.message))
            return
        except Exception:  # noqa: BLE001 - store failures map to a generic LDAP error for the client.
            logger.exception("ldap_search_failed")
            await self._send(message_id, "searchResDone", _ldap_result(SearchResultDone, LdapResultCode.OTHER))
            return
        if "1.1" in requested:
            requested = ["1.1"]
        for entry in entries:
            await self._send(message_id, "searchResEntry", _search_entry(entry, requested))
        await self._send(message_id, "searchResDone", _ldap_result(SearchResultDone, LdapResultCode.SUCCESS))


class LdapServer:
    """asyncio TCP listener bridging LDAP bind/search onto the credential store."""

    def __init__(self, bridge: DirectoryBridge, *, host: str = "0.0.0.0", port: int = 389) -> None:
        self._bridge = bridge
        self._host = host
        self._port = port
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    @property
    def port(self) -> int:
        # Actual bound port; differs from the configured one when port 0 was requested.
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        try:
            await LdapConnection(self._bridge, reader, writer).serve()
        finally:
            self._writers.discard(writer)

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, self._host, self._port)
        logger.info("ldap_server_started host=%s port=%s base_dn=%s", self._host, self.port, self._bridge.base_dn)

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        # wait_closed also waits for open client connections.
        for writer in list(self._writers):
            writer.close()
        await server.wait_closed()
        logger.info("ldap_server_stopped")

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()
