from __future__ import annotations

import asyncio

from ssogate.persistence.db import SessionLocal
from ssogate.services.tickets.cleanup import TokenCleanupJob


async def prune() -> None:
    counts = await TokenCleanupJob(SessionLocal).run_once()
    for table, deleted in counts.items():
        print(f"pruned_{table}={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
