from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import secrets
import threading
from typing import Any

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

from ssogate.core.errors import CryptoError
from ssogate.services.crypto.encoding import base64url_encode


logger = logging.getLogger(__name__)

SIGNING_ALGORITHM = "RS256"
_RSA_ALGORITHMS = {"RS256", "RS384", "RS512"}


@dataclass(frozen=True)
class KeyPair:
    kid: str
    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey
    created_at: datetime


class JwkManager:
    """RSA signing keys for ID tokens.

    Every generated key is retained for verification so rotating the signing
    key never invalidates tokens issued under an earlier one. Only the newest
    key signs.
    """

    def __init__(self, *, key_size: int = 2048) -> None:
        self._key_size = key_size
        self._lock = threading.Lock()
        self._keys: dict[str, KeyPair] = {}
        self._current: KeyPair | None = None

    def generate_key_pair(self) -> KeyPair:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=self._key_size)
        pair = KeyPair(
            kid=base64url_encode(secrets.token_bytes(16)),
            private_key=private_key,
            public_key=private_key.public_key(),
            created_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._keys[pair.kid] = pair
            self._current = pair
        logger.info("jwk_key_generated kid=%s", pair.kid)
        return pair

    def current_key(self) -> KeyPair:
        with self._lock:
            current = self._current
        if current is None:
            raise CryptoError("no signing key available")
        return current

    def get_jwks(self) -> dict[str, Any]:
        with self._lock:
            pairs = list(self._keys.values())
        keys = []
        for pair in pairs:
            jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(pair.public_key))
            jwk.update({"kid": pair.kid, "use": "sig", "alg": SIGNING_ALGORITHM})
            keys.append(jwk)
        return {"keys": keys}

    def sign_token(self, claims: dict[str, Any]) -> str:
        pair = self.current_key()
        return jwt.encode(
            claims,
            pair.private_key,
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": pair.kid},
        )

    def verify_token(
        self,
        token: str,
        *,
        audience: str | None = None,
        issuer: str | None = None,
        verify_exp: bool = True,
    ) -> dict[str, Any]:
        # Select the verification key by kid; anything but RSA signatures is refused.
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise CryptoError("malformed token") from exc
        alg = header.get("alg")
        if alg not in _RSA_ALGORITHMS:
            raise CryptoError("unsupported signing algorithm")
        with self._lock:
            pair = self._keys.get(header.get("kid") or "")
        if pair is None:
            raise CryptoError("unknown signing key")
        options = {"verify_exp": verify_exp, "verify_aud": audience is not None}
        try:
            return jwt.decode(
                token,
                pair.public_key,
                algorithms=[alg],
                audience=audience,
                issuer=issuer,
                options=options,
            )
        except jwt.PyJWTError as exc:
            raise CryptoError("token verification failed") from exc
