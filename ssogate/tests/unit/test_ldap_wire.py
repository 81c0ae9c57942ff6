from __future__ import annotations

from pyasn1.codec.ber import decoder
from pyasn1_modules.rfc2251 import BindResponse, LDAPMessage
import pytest

from ssogate.apps.ldap.server import _ldap_result, _search_entry, encode_message, message_length
from ssogate.services.ldap.directory import DirectoryEntry, LdapResultCode


def test_message_length_short_and_long_forms() -> None:
    assert message_length(b"\x30") == -1
    assert message_length(b"\x30\x05abcde") == 7
    assert message_length(b"\x30\x82\x01") == -1
    assert message_length(b"\x30\x82\x01\x00") == 4 + 256


def test_message_length_rejects_non_sequences() -> None:
    with pytest.raises(ValueError):
        message_length(b"\x04\x01a")
    with pytest.raises(ValueError):
        message_length(b"\x30\x80")


def test_encoded_bind_response_decodes() -> None:
    raw = encode_message(3, "bindResponse", _ldap_result(BindResponse, LdapResultCode.INVALID_CREDENTIALS))
    assert message_length(raw) == len(raw)
    message, rest = decoder.decode(raw, asn1Spec=LDAPMessage())
    assert rest == b""
    assert int(message["messageID"]) == 3
    response = message["protocolOp"].getComponent()
    assert int(response["resultCode"]) == 49


def test_search_entry_honours_requested_attributes() -> None:
    entry = DirectoryEntry(
        dn="uid=alice,ou=users,o=acme,dc=ssogate,dc=local",
        attributes={"uid": ["alice"], "mail": ["alice@acme.test"], "cn": ["alice"]},
    )
    selected = _search_entry(entry, ["MAIL"])
    names = [attribute["type"].asOctets() for attribute in selected["attributes"]]
    assert names == [b"mail"]
    everything = _search_entry(entry, [])
    assert len(everything["attributes"]) == 3
    assert len(_search_entry(entry, ["1.1"])["attributes"]) == 0
