from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ssogate.core.errors import SessionTokenExpired, SessionTokenInvalid
from ssogate.services.auth.session_tokens import MAX_USER_ID, SessionTokenCodec
from ssogate.services.crypto.encoding import base64url_decode, base64url_encode


def test_session_token_round_trips_user_id() -> None:
    # A freshly generated token parses back to the same user.
    codec = SessionTokenCodec("secret")
    token = codec.generate(42)
    assert codec.parse(token) == 42


def test_session_token_rejects_other_secret() -> None:
    # Tokens signed with a rotated secret no longer validate.
    token = SessionTokenCodec("old-secret").generate(7)
    with pytest.raises(SessionTokenInvalid):
        SessionTokenCodec("new-secret").parse(token)


def test_session_token_rejects_tampered_payload() -> None:
    codec = SessionTokenCodec("secret")
    payload, signature = codec.generate(7).split(".")
    raw = bytearray(base64url_decode(payload))
    raw[3] ^= 0x01
    with pytest.raises(SessionTokenInvalid):
        codec.parse(f"{base64url_encode(bytes(raw))}.{signature}")


@pytest.mark.parametrize(
    "token",
    ["", "no-dot", "a.b.c", "!!!.???", "AAAA.AAAA"],
)
def test_session_token_rejects_malformed_values(token: str) -> None:
    with pytest.raises(SessionTokenInvalid):
        SessionTokenCodec("secret").parse(token)


def test_session_token_expires_after_ttl() -> None:
    # Age beyond the TTL is reported as expiry, not as a bad signature.
    codec = SessionTokenCodec("secret", ttl=timedelta(hours=24))
    issued = datetime(2026, 1, 1, tzinfo=timezone.utc)
    token = codec.generate(5, now=issued)
    assert codec.parse(token, now=issued + timedelta(hours=23)) == 5
    with pytest.raises(SessionTokenExpired):
        codec.parse(token, now=issued + timedelta(hours=24, seconds=1))


def test_session_tokens_are_unique_per_login() -> None:
    codec = SessionTokenCodec("secret")
    assert codec.generate(1) != codec.generate(1)


def test_session_token_codec_requires_secret() -> None:
    with pytest.raises(ValueError):
        SessionTokenCodec("")


def test_base64url_decode_rejects_non_canonical_input() -> None:
    # "AB" and "AA" decode to the same byte; only the canonical form is accepted.
    assert base64url_decode("AA") == b"\x00"
    with pytest.raises(ValueError):
        base64url_decode("AB")


def test_session_token_rejects_out_of_range_user_ids() -> None:
    # User ids must fit the unsigned 32-bit payload field.
    codec = SessionTokenCodec("secret")
    assert codec.parse(codec.generate(MAX_USER_ID)) == MAX_USER_ID
    for user_id in (MAX_USER_ID + 1, -1):
        with pytest.raises(SessionTokenInvalid):
            codec.generate(user_id)
