from __future__ import annotations

import base64
import binascii


def base64url_encode(raw: bytes) -> str:
    # Produce base64url strings without padding for tokens, kids and PKCE.
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def base64url_decode(value: str) -> bytes:
    # Reject non-canonical encodings so that a decoded value maps to exactly one string.
    try:
        raw = base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))
    except (binascii.Error, ValueError) as exc:
        raise ValueError("invalid base64url value") from exc
    if base64url_encode(raw) != value:
        raise ValueError("non-canonical base64url value")
    return raw
