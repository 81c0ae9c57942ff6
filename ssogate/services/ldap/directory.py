from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
import hmac
import logging
import re

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ssogate.core.errors import SsoGateError
from ssogate.domain.models import Tenant, User
from ssogate.persistence.repos import identity as identity_repo
from ssogate.services.auth.passwords import verify_password
from ssogate.services.ldap.filters import DirectoryQuery
from ssogate.services.sso.identity import is_active


logger = logging.getLogger(__name__)

_ATTRIBUTE_TYPE = re.compile(r"^(?:[A-Za-z][A-Za-z0-9-]*|\d+(?:\.\d+)*)$")
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
USER_OBJECT_CLASSES = ["inetOrgPerson", "organizationalPerson", "person", "top"]


class LdapResultCode(IntEnum):
    SUCCESS = 0
    OPERATIONS_ERROR = 1
    PROTOCOL_ERROR = 2
    AUTH_METHOD_NOT_SUPPORTED = 7
    NO_SUCH_OBJECT = 32
    INVALID_DN_SYNTAX = 34
    INVALID_CREDENTIALS = 49
    INSUFFICIENT_ACCESS_RIGHTS = 50
    UNWILLING_TO_PERFORM = 53
    OTHER = 80


class LdapOperationError(SsoGateError):
    """Directory operation refused with an RFC 4511 result code."""

    def __init__(self, result_code: LdapResultCode, message: str = "") -> None:
        super().__init__(message or result_code.name)
        self.result_code = result_code
        self.message = message


@dataclass(frozen=True)
class BindIdentity:
    dn: str
    is_admin: bool = False
    tenant_id: int | None = None
    user_id: int | None = None

    @property
    def is_anonymous(self) -> bool:
        return not self.dn


ANONYMOUS = BindIdentity(dn="")


@dataclass(frozen=True)
class DirectoryEntry:
    dn: str
    attributes: dict[str, list[str]]


class InvalidDnError(ValueError):
    """Distinguished name does not follow the RFC 4514 string form."""


def _split_rdns(dn: str) -> list[str]:
    rdns: list[str] = []
    current: list[str] = []
    chars = iter(dn)
    for char in chars:
        if char == "\\":
            escaped = next(chars, None)
            if escaped is None:
                raise InvalidDnError("dangling escape in DN")
            current.append(char + escaped)
        elif char in ",;":
            rdns.append("".join(current))
            current = []
        elif char == "+":
            raise InvalidDnError("multi-valued RDNs are not supported")
        else:
            current.append(char)
    rdns.append("".join(current))
    return rdns


def _unescape_dn_value(raw: str) -> str:
    # Hex pairs are UTF-8 bytes; unescaped leading and trailing spaces are dropped.
    value = raw.lstrip(" ")
    out = bytearray()
    significant = 0
    index = 0
    while index < len(value):
        char = value[index]
        if char == "\\":
            pair = value[index + 1 : index + 3]
            if len(pair) == 2 and all(item in _HEX_DIGITS for item in pair):
                out.append(int(pair, 16))
                index += 3
            elif index + 1 < len(value):
                out.extend(value[index + 1].encode("utf-8"))
                index += 2
            else:
                raise InvalidDnError("dangling escape in DN")
            significant = len(out)
            continue
        out.extend(char.encode("utf-8"))
        index += 1
        if char != " ":
            significant = len(out)
    try:
        return bytes(out[:significant]).decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidDnError("DN value is not valid UTF-8") from None


def escape_dn_value(value: str) -> str:
    # RFC 4514 escaping for attribute values placed into DNs.
    escaped = "".join(f"\\{char}" if char in ',+"\\<>;=' else char for char in value)
    if escaped.startswith((" ", "#")):
        escaped = f"\\{escaped}"
    if escaped.endswith(" "):
        escaped = f"{escaped[:-1]}\\ "
    return escaped


def split_dn(dn: str) -> list[tuple[str, str]]:
    # (lowercased attribute type, unescaped value) pairs; raises InvalidDnError.
    if not dn.strip():
        return []
    components: list[tuple[str, str]] = []
    for rdn in _split_rdns(dn):
        attr, sep, raw_value = rdn.partition("=")
        attr = attr.strip()
        if not sep or not _ATTRIBUTE_TYPE.match(attr):
            raise InvalidDnError(f"malformed RDN {rdn!r}")
        components.append((attr.lower(), _unescape_dn_value(raw_value)))
    return components


def _normalized(components: list[tuple[str, str]]) -> list[tuple[str, str]]:
    return [(attr, value.lower()) for attr, value in components]


class DirectoryBridge:
    """Read-only LDAP view of tenants and users.

    User DNs follow ``uid={username},ou=users,o={tenant},{base_dn}``. Binds
    authenticate straight against the credential store.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        base_dn: str,
        admin_dn: str = "",
        admin_password: str = "",
    ) -> None:
        self._session_factory = session_factory
        self.base_dn = base_dn
        self._base_components = _normalized(split_dn(base_dn))
        self._admin_components = _normalized(split_dn(admin_dn)) if admin_dn else None
        self._admin_password = admin_password

    def _is_admin_dn(self, components: list[tuple[str, str]]) -> bool:
        return self._admin_components is not None and _normalized(components) == self._admin_components

    def _tenant_from_components(self, components: list[tuple[str, str]]) -> str | None:
        # The o= component directly above the base DN names the tenant.
        base_len = len(self._base_components)
        if len(components) <= base_len or _normalized(components[-base_len:]) != self._base_components:
            return None
        attr, value = components[-base_len - 1]
        return value if attr == "o" else None

    def user_dn(self, tenant: Tenant, user: User) -> str:
        return (
            f"uid={escape_dn_value(user.username)},ou=users,"
            f"o={escape_dn_value(tenant.name)},{self.base_dn}"
        )

    def group_dn(self, tenant: Tenant, group_name: str) -> str:
        return f"cn={escape_dn_value(group_name)},ou=groups,o={escape_dn_value(tenant.name)},{self.base_dn}"

    async def bind(self, dn: str, password: str) -> BindIdentity:
        # Every failure is reported as invalidCredentials so no lookup stage leaks.
        denied = LdapOperationError(LdapResultCode.INVALID_CREDENTIALS)
        if not dn and not password:
            return ANONYMOUS
        if not dn or not password:
            raise denied
        try:
            components = split_dn(dn)
        except InvalidDnError:
            logger.info("ldap_bind_denied reason=dn_syntax")
            raise denied from None
        if self._is_admin_dn(components):
            if hmac.compare_digest(password.encode("utf-8"), self._admin_password.encode("utf-8")):
                logger.info("ldap_bind_admin")
                return BindIdentity(dn=dn, is_admin=True)
            logger.info("ldap_bind_denied reason=admin_password")
            raise denied

        tenant_name = self._tenant_from_components(components)
        if (
            tenant_name is None
            or len(components) != len(self._base_components) + 3
            or components[0][0] != "uid"
            or _normalized([components[1]]) != [("ou", "users")]
        ):
            logger.info("ldap_bind_denied reason=dn_shape")
            raise denied
        username = components[0][1]
        async with self._session_factory() as session:
            tenant = await identity_repo.get_tenant_by_name(session, tenant_name)
            user = (
                await identity_repo.find_directory_user(session, tenant.id, username)
                if is_active(tenant)
                else None
            )
            if not is_active(user) or not verify_password(password, user.password_hash):
                logger.info("ldap_bind_denied reason=credentials")
                raise denied
        logger.info("ldap_bind_user user_id=%s tenant_id=%s", user.id, tenant.id)
        return BindIdentity(dn=dn, tenant_id=tenant.id, user_id=user.id)

    def build_entry(self, tenant: Tenant, user: User) -> DirectoryEntry:
        attributes: dict[str, list[str]] = {
            "objectClass": list(USER_OBJECT_CLASSES),
            "uid": [user.username],
            "cn": [user.username],
            "sn": [user.username],
        }
        if user.email:
            attributes["mail"] = [user.email]
        if user.display_name:
            attributes["displayName"] = [user.display_name]
        if user.phone:
            attributes["telephoneNumber"] = [user.phone]
        groups = sorted(group.name for group in user.groups if is_active(group))
        if groups:
            attributes["memberOf"] = [self.group_dn(tenant, name) for name in groups]
        return DirectoryEntry(dn=self.user_dn(tenant, user), attributes=attributes)

    async def search(
        self,
        identity: BindIdentity,
        base_dn: str,
        query: DirectoryQuery | None,
        *,
        size_limit: int = 0,
    ) -> list[DirectoryEntry]:
        if identity.is_anonymous:
            raise LdapOperationError(LdapResultCode.INSUFFICIENT_ACCESS_RIGHTS, "anonymous search is not allowed")
        try:
            tenant_name = self._tenant_from_components(split_dn(base_dn))
        except InvalidDnError:
            raise LdapOperationError(LdapResultCode.INVALID_DN_SYNTAX, "invalid search base") from None
        if tenant_name is None:
            raise LdapOperationError(LdapResultCode.NO_SUCH_OBJECT, "search base names no tenant")
        async with self._session_factory() as session:
            tenant = await identity_repo.get_tenant_by_name(session, tenant_name)
            if not is_active(tenant):
                raise LdapOperationError(LdapResultCode.NO_SUCH_OBJECT, "unknown tenant")
            # Tenant users only see their own tenant; the admin DN sees every tenant.
            if not identity.is_admin and identity.tenant_id != tenant.id:
                raise LdapOperationError(LdapResultCode.INSUFFICIENT_ACCESS_RIGHTS, "tenant not visible")
            if query is None:
                return []
            users = await self._find_users(session, tenant, query, size_limit=size_limit)
            return [self.build_entry(tenant, user) for user in users]

    async def _find_users(
        self,
        session: AsyncSession,
        tenant: Tenant,
        query: DirectoryQuery,
        *,
        size_limit: int,
    ) -> list[User]:
        if query.matches_all:
            return await identity_repo.list_active_users(session, tenant.id, limit=size_limit or None)
        if query.attribute == "mail":
            user = await identity_repo.get_user_by_email(session, tenant.id, query.value or "")
        else:
            user = await identity_repo.find_directory_user(session, tenant.id, query.value or "")
        return [user] if is_active(user) else []
