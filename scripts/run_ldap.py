from __future__ import annotations

import argparse
import asyncio

from ssogate.apps.ldap.server import LdapServer
from ssogate.core.config import get_settings
from ssogate.core.logging import configure_logging
from ssogate.persistence.db import SessionLocal
from ssogate.services.ldap.directory import DirectoryBridge


def parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Run the read-only LDAP directory bridge.")
    parser.add_argument("--host", default=settings.ldap_host)
    parser.add_argument("--port", type=int, default=settings.ldap_port)
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    configure_logging()
    settings = get_settings()
    bridge = DirectoryBridge(
        session_factory=SessionLocal,
        base_dn=settings.ldap_base_dn,
        admin_dn=settings.ldap_admin_dn,
        admin_password=settings.ldap_admin_password,
    )
    server = LdapServer(bridge, host=args.host, port=args.port)
    await server.serve_forever()


if __name__ == "__main__":
    asyncio.run(main())
