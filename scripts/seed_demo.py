from __future__ import annotations

import asyncio
from dataclasses import dataclass

from sqlalchemy import select

from ssogate.domain.models import Client, Group, Tenant, User
from ssogate.persistence.db import SessionLocal
from ssogate.persistence.repos import identity as identity_repo
from ssogate.services.auth.passwords import hash_password


DEMO_TENANT = "acme"
DEMO_GROUPS = ("engineering", "staff")


@dataclass(frozen=True)
class DemoUser:
    username: str
    password: str
    email: str
    display_name: str
    groups: tuple[str, ...]


@dataclass(frozen=True)
class DemoClient:
    client_id: str
    client_secret: str
    name: str
    redirect_uris: tuple[str, ...] = ()
    post_logout_redirect_uris: tuple[str, ...] = ()
    root_url: str | None = None
    allowed_scopes: str = "openid profile email groups"


def build_demo_users() -> tuple[DemoUser, ...]:
    return (
        DemoUser("alice", "alice-password", "alice@acme.test", "Alice Example", ("engineering", "staff")),
        DemoUser("bob", "bob-password", "bob@acme.test", "Bob Example", ("staff",)),
    )


def build_demo_clients() -> tuple[DemoClient, ...]:
    # One OIDC relying party and one CAS service on a separate origin.
    return (
        DemoClient(
            client_id="demo-oidc",
            client_secret="demo-oidc-secret",
            name="Demo OIDC app",
            redirect_uris=("http://localhost:3000/callback",),
            post_logout_redirect_uris=("http://localhost:3000/",),
        ),
        DemoClient(
            client_id="demo-cas",
            client_secret="demo-cas-secret",
            name="Demo CAS app",
            root_url="http://localhost:4000",
        ),
    )


async def seed_demo() -> int:
    # Idempotent: existing rows are left untouched.
    created = 0
    async with SessionLocal() as session:
        tenant = await identity_repo.get_tenant_by_name(session, DEMO_TENANT)
        if tenant is None:
            tenant = Tenant(name=DEMO_TENANT, domain="acme.test")
            session.add(tenant)
            await session.flush()
            created += 1
        existing = await session.execute(select(Group).where(Group.tenant_id == tenant.id))
        groups: dict[str, Group] = {group.name: group for group in existing.scalars()}
        for name in DEMO_GROUPS:
            if name not in groups:
                groups[name] = Group(tenant_id=tenant.id, name=name)
                session.add(groups[name])
                created += 1
        for demo in build_demo_users():
            if await identity_repo.get_user_by_username(session, tenant.id, demo.username) is not None:
                continue
            session.add(
                User(
                    tenant_id=tenant.id,
                    username=demo.username,
                    password_hash=hash_password(demo.password),
                    email=demo.email,
                    display_name=demo.display_name,
                    groups=[groups[name] for name in demo.groups],
                )
            )
            created += 1
        for demo in build_demo_clients():
            if await identity_repo.get_client(session, demo.client_id) is not None:
                continue
            session.add(
                Client(
                    tenant_id=tenant.id,
                    client_id=demo.client_id,
                    client_secret=demo.client_secret,
                    name=demo.name,
                    redirect_uris=list(demo.redirect_uris),
                    post_logout_redirect_uris=list(demo.post_logout_redirect_uris),
                    root_url=demo.root_url,
                    allowed_scopes=demo.allowed_scopes,
                )
            )
            created += 1
        await session.commit()
    return created


if __name__ == "__main__":
    count = asyncio.run(seed_demo())
    print(f"seeded_rows={count}")
