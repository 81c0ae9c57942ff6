from __future__ import annotations

import pytest

from ssogate.domain.models import STATUS_DISABLED
from ssogate.persistence.db import SessionLocal
from ssogate.services.ldap.directory import ANONYMOUS, DirectoryBridge, LdapOperationError, LdapResultCode
from ssogate.services.ldap.filters import parse_search_filter
from ssogate.tests.utils.identity import create_tenant, create_user


BASE_DN = "dc=ssogate,dc=local"
ADMIN_DN = "cn=admin,dc=ssogate,dc=local"


def _bridge() -> DirectoryBridge:
    return DirectoryBridge(
        session_factory=SessionLocal,
        base_dn=BASE_DN,
        admin_dn=ADMIN_DN,
        admin_password="admin-secret",
    )


async def _seed():
    acme = await create_tenant("acme")
    globex = await create_tenant("globex")
    alice = await create_user(
        acme,
        email="alice@acme.test",
        display_name="Alice Liddell",
        phone="+1-555-0100",
        groups=("staff",),
    )
    await create_user(acme, "bob", email="bob@acme.test")
    await create_user(acme, "carol", status=STATUS_DISABLED)
    await create_user(globex, "mallory")
    return acme, globex, alice


@pytest.mark.asyncio
async def test_user_bind_and_own_tenant_search() -> None:
    # A bound user sees their tenant's entries with the inetOrgPerson attribute set.
    await _seed()
    bridge = _bridge()
    identity = await bridge.bind(f"uid=alice,ou=users,o=acme,{BASE_DN}", "correct-horse")
    assert not identity.is_admin
    entries = await bridge.search(identity, f"ou=users,o=acme,{BASE_DN}", parse_search_filter("(uid=alice)"))
    assert len(entries) == 1
    entry = entries[0]
    assert entry.dn == f"uid=alice,ou=users,o=acme,{BASE_DN}"
    assert entry.attributes["mail"] == ["alice@acme.test"]
    assert entry.attributes["displayName"] == ["Alice Liddell"]
    assert entry.attributes["telephoneNumber"] == ["+1-555-0100"]
    assert entry.attributes["memberOf"] == [f"cn=staff,ou=groups,o=acme,{BASE_DN}"]
    assert "inetOrgPerson" in entry.attributes["objectClass"]

    by_mail = await bridge.search(
        identity, f"o=acme,{BASE_DN}", parse_search_filter("(&(objectClass=person)(mail=bob@acme.test))")
    )
    assert [item.attributes["uid"] for item in by_mail] == [["bob"]]

    everyone = await bridge.search(identity, f"o=ACME,{BASE_DN}", parse_search_filter("(objectClass=*)"))
    assert sorted(item.attributes["uid"][0] for item in everyone) == ["alice", "bob"]

    limited = await bridge.search(
        identity, f"o=acme,{BASE_DN}", parse_search_filter("(objectClass=*)"), size_limit=1
    )
    assert len(limited) == 1

    unsupported = await bridge.search(identity, f"o=acme,{BASE_DN}", parse_search_filter("(uid=al*)"))
    assert unsupported == []


@pytest.mark.asyncio
async def test_bind_failures_are_invalid_credentials() -> None:
    # Every failing bind reports invalidCredentials.
    await _seed()
    bridge = _bridge()
    failures = [
        (f"uid=alice,ou=users,o=acme,{BASE_DN}", "wrong"),
        (f"uid=carol,ou=users,o=acme,{BASE_DN}", "correct-horse"),
        (f"uid=alice,ou=users,o=missing,{BASE_DN}", "correct-horse"),
        (f"uid=alice,ou=people,o=acme,{BASE_DN}", "correct-horse"),
        ("uid=alice,,broken", "correct-horse"),
        (ADMIN_DN, "wrong"),
        (f"uid=alice,ou=users,o=acme,{BASE_DN}", ""),
    ]
    for dn, password in failures:
        with pytest.raises(LdapOperationError) as excinfo:
            await bridge.bind(dn, password)
        assert excinfo.value.result_code is LdapResultCode.INVALID_CREDENTIALS

    assert await bridge.bind("", "") == ANONYMOUS


@pytest.mark.asyncio
async def test_search_access_rules() -> None:
    # Anonymous binds see nothing, users see only their tenant and the admin sees all.
    await _seed()
    bridge = _bridge()
    with pytest.raises(LdapOperationError) as anonymous:
        await bridge.search(ANONYMOUS, f"o=acme,{BASE_DN}", parse_search_filter("(uid=alice)"))
    assert anonymous.value.result_code is LdapResultCode.INSUFFICIENT_ACCESS_RIGHTS

    alice = await bridge.bind(f"uid=alice,ou=users,o=acme,{BASE_DN}", "correct-horse")
    with pytest.raises(LdapOperationError) as foreign:
        await bridge.search(alice, f"o=globex,{BASE_DN}", parse_search_filter("(uid=mallory)"))
    assert foreign.value.result_code is LdapResultCode.INSUFFICIENT_ACCESS_RIGHTS

    admin = await bridge.bind("CN=Admin, DC=ssogate, DC=local", "admin-secret")
    assert admin.is_admin
    entries = await bridge.search(admin, f"o=globex,{BASE_DN}", parse_search_filter("(uid=mallory)"))
    assert [entry.attributes["uid"] for entry in entries] == [["mallory"]]

    with pytest.raises(LdapOperationError) as missing:
        await bridge.search(admin, f"o=initech,{BASE_DN}", parse_search_filter("(uid=x)"))
    assert missing.value.result_code is LdapResultCode.NO_SUCH_OBJECT

    with pytest.raises(LdapOperationError) as outside:
        await bridge.search(admin, "dc=example,dc=com", parse_search_filter("(uid=x)"))
    assert outside.value.result_code is LdapResultCode.NO_SUCH_OBJECT

    with pytest.raises(LdapOperationError) as malformed:
        await bridge.search(admin, "o=acme,,dc=local", parse_search_filter("(uid=x)"))
    assert malformed.value.result_code is LdapResultCode.INVALID_DN_SYNTAX


@pytest.mark.asyncio
async def test_disabled_tenant_is_invisible() -> None:
    # Users of a disabled tenant can neither bind nor be found.
    tenant = await create_tenant("dormant", status=STATUS_DISABLED)
    await create_user(tenant)
    bridge = _bridge()
    with pytest.raises(LdapOperationError):
        await bridge.bind(f"uid=alice,ou=users,o=dormant,{BASE_DN}", "correct-horse")
    admin = await bridge.bind(ADMIN_DN, "admin-secret")
    with pytest.raises(LdapOperationError) as excinfo:
        await bridge.search(admin, f"o=dormant,{BASE_DN}", parse_search_filter("(uid=alice)"))
    assert excinfo.value.result_code is LdapResultCode.NO_SUCH_OBJECT


@pytest.mark.asyncio
async def test_usernames_and_mail_match_case_insensitively() -> None:
    # Directory clients may send uid, cn and mail values in any case.
    await _seed()
    bridge = _bridge()
    identity = await bridge.bind(f"uid=Alice,ou=users,o=acme,{BASE_DN}", "correct-horse")
    assert identity.user_id is not None

    base = f"o=acme,{BASE_DN}"
    for search_filter in ("(uid=ALICE)", "(cn=Alice)", "(mail=Alice@ACME.test)"):
        entries = await bridge.search(identity, base, parse_search_filter(search_filter))
        assert [entry.attributes["uid"] for entry in entries] == [["alice"]]
