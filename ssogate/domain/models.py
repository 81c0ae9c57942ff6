from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


STATUS_ACTIVE = "active"
STATUS_DISABLED = "disabled"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware DateTime that always round-trips as UTC.

    SQLite drops tzinfo on the way back; expiry checks compare against aware
    ``datetime.now(timezone.utc)`` values, so results are re-tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class ArtifactKind(str, Enum):
    """Single-use tickets consumed exactly once."""

    OIDC_CODE = "oidc_code"
    SERVICE_TICKET = "cas_st"
    PROXY_TICKET = "cas_pt"

    @property
    def prefix(self) -> str:
        return _ARTIFACT_PREFIXES[self]


class CredentialKind(str, Enum):
    """Long-lived tokens validated until they expire or are revoked."""

    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"
    PROXY_GRANTING_TICKET = "cas_pgt"

    @property
    def prefix(self) -> str:
        return _CREDENTIAL_PREFIXES[self]


_ARTIFACT_PREFIXES = {
    ArtifactKind.OIDC_CODE: "",
    ArtifactKind.SERVICE_TICKET: "ST-",
    ArtifactKind.PROXY_TICKET: "PT-",
}
_CREDENTIAL_PREFIXES = {
    CredentialKind.ACCESS_TOKEN: "",
    CredentialKind.REFRESH_TOKEN: "",
    CredentialKind.PROXY_GRANTING_TICKET: "PGT-",
}
SESSION_PREFIX = "TGT-"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    pass


user_groups = Table(
    "user_groups",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("group_id", Integer, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
)


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Lookups by name are case-insensitive; uniqueness is enforced on the raw value.
    name: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=STATUS_ACTIVE)
    settings_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, ForeignKey("tenants.id"), index=True)
    username: Mapped[str] = mapped_column(String(128))
    password_hash: Mapped[str] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=STATUS_ACTIVE)
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)

    # Group names feed CAS memberOf, OIDC groups claims and LDAP entries; load eagerly.
    groups: Mapped[list[Group]] = relationship(secondary=user_groups, lazy="selectin")


class Group(Base):
    __tablename__ = "groups"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_groups_tenant_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(16), default=STATUS_ACTIVE)


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, ForeignKey("tenants.id"), index=True)
    client_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    client_secret: Mapped[str] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255), default="")
    # OIDC redirect URIs are matched exactly against this list.
    redirect_uris: Mapped[list[str]] = mapped_column(JSON, default=list)
    post_logout_redirect_uris: Mapped[list[str]] = mapped_column(JSON, default=list)
    # CAS services match on scheme+host of this URL only.
    root_url: Mapped[str | None] = mapped_column(String(512), nullable=True, index=True)
    allowed_scopes: Mapped[str] = mapped_column(String(512), default="openid profile email")
    access_token_ttl: Mapped[int] = mapped_column(Integer, default=3600)
    refresh_token_ttl: Mapped[int] = mapped_column(Integer, default=86400)
    status: Mapped[str] = mapped_column(String(16), default=STATUS_ACTIVE)

    def allowed_scope_set(self) -> set[str]:
        return set((self.allowed_scopes or "").split())


class Artifact(Base):
    __tablename__ = "sso_artifacts"
    __table_args__ = (Index("ix_sso_artifacts_session", "session_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[ArtifactKind] = mapped_column(
        SAEnum(ArtifactKind, native_enum=False, length=32, values_callable=_enum_values)
    )
    token: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    client_id: Mapped[str] = mapped_column(String(128), index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    # redirect_uri for authorization codes, service URL for CAS tickets.
    audience: Mapped[str] = mapped_column(Text)
    scopes: Mapped[str] = mapped_column(String(512), default="")
    state: Mapped[str | None] = mapped_column(Text, nullable=True)
    nonce: Mapped[str | None] = mapped_column(Text, nullable=True)
    code_challenge: Mapped[str | None] = mapped_column(String(255), nullable=True)
    code_challenge_method: Mapped[str | None] = mapped_column(String(16), nullable=True)
    # PGT a proxy ticket was minted from.
    parent_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # TGT a service ticket was minted under; drives single logout.
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    used: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class Credential(Base):
    __tablename__ = "sso_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[CredentialKind] = mapped_column(
        SAEnum(CredentialKind, native_enum=False, length=32, values_callable=_enum_values)
    )
    token: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    client_id: Mapped[str] = mapped_column(String(128), index=True)
    # Null for client_credentials access tokens.
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    scopes: Mapped[str] = mapped_column(String(512), default="")
    # Proxy callback URL for PGTs.
    audience: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Earlier proxy hops of a PGT obtained by validating a proxy ticket, most recent first.
    proxy_chain: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    # Refresh tokens point at the access token they were issued with.
    access_token_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class SsoSession(Base):
    __tablename__ = "sso_sessions"

    # Backs CAS ticket-granting tickets.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    client_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
