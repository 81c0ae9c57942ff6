from __future__ import annotations


class SsoGateError(Exception):
    """Base error for ssogate."""


class ClientError(SsoGateError):
    """Bad or missing request parameters, unregistered client, or redirect/service mismatch."""


class AuthenticationFailure(SsoGateError):
    """Bad credentials, disabled account, or tenant mismatch."""


class ArtifactError(SsoGateError):
    """A ticket or token cannot be used."""


class ArtifactNotFound(ArtifactError):
    """No ticket or token of the expected kind exists for the presented value."""


class ArtifactExpired(ArtifactError):
    """The ticket or token is past its expiry."""


class ArtifactReplayed(ArtifactError):
    """A single-use ticket was already consumed."""


class AudienceMismatch(ArtifactError):
    """The ticket was issued for a different redirect URI or service."""


class CredentialRevoked(ArtifactError):
    """A long-lived token was revoked."""


class CryptoError(SsoGateError):
    """Signature creation or verification failure."""


class SessionTokenInvalid(CryptoError):
    """Malformed or tampered sso_session token."""


class SessionTokenExpired(CryptoError):
    """sso_session token is older than its TTL window."""


class TransientError(SsoGateError):
    """Outbound callback or store failure that may succeed on retry."""
