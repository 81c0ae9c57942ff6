from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import secrets
import struct

from ssogate.core.errors import SessionTokenExpired, SessionTokenInvalid
from ssogate.services.crypto.encoding import base64url_decode, base64url_encode


SESSION_TOKEN_TTL = timedelta(hours=24)
# user id (uint32) | issued-at unix seconds (int64) | 16 random bytes
_PAYLOAD = struct.Struct(">Iq")
_PAYLOAD_SIZE = _PAYLOAD.size + 16
MAX_USER_ID = 0xFFFFFFFF


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionTokenCodec:
    """Stateless HMAC-signed value of the ``sso_session`` cookie.

    The token cannot be revoked individually; rotating the secret invalidates
    every outstanding token at once.
    """

    def __init__(self, secret: str, *, ttl: timedelta = SESSION_TOKEN_TTL) -> None:
        if not secret:
            raise ValueError("session token secret must not be empty")
        self._secret = secret.encode("utf-8")
        self._ttl = ttl

    def _sign(self, payload: bytes) -> bytes:
        return hmac.new(self._secret, payload, hashlib.sha256).digest()

    def generate(self, user_id: int, *, now: datetime | None = None) -> str:
        if not 0 <= user_id <= MAX_USER_ID:
            raise SessionTokenInvalid(f"user id {user_id} does not fit in a session token")
        issued_at = int((now or _utc_now()).timestamp())
        payload = _PAYLOAD.pack(user_id, issued_at) + secrets.token_bytes(16)
        return f"{base64url_encode(payload)}.{base64url_encode(self._sign(payload))}"

    def parse(self, token: str, *, now: datetime | None = None) -> int:
        parts = token.split(".")
        if len(parts) != 2:
            raise SessionTokenInvalid("malformed session token")
        try:
            payload = base64url_decode(parts[0])
            signature = base64url_decode(parts[1])
        except ValueError as exc:
            raise SessionTokenInvalid("malformed session token") from exc
        if len(payload) != _PAYLOAD_SIZE:
            raise SessionTokenInvalid("malformed session token")
        # Authenticate before any payload field is trusted.
        if not hmac.compare_digest(signature, self._sign(payload)):
            raise SessionTokenInvalid("session token signature mismatch")
        user_id, issued_at = _PAYLOAD.unpack(payload[: _PAYLOAD.size])
        age = (now or _utc_now()).timestamp() - issued_at
        if age > self._ttl.total_seconds():
            raise SessionTokenExpired("session token expired")
        return user_id
