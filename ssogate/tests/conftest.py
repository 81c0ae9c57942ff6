from __future__ import annotations

import os
import tempfile

# Point the shared engine at a throwaway SQLite file before any ssogate module reads settings.
_DB_DIR = tempfile.mkdtemp(prefix="ssogate-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/ssogate.db")
os.environ.setdefault("JWT_SECRET", "test-session-secret")
os.environ.setdefault("SSO_ISSUER", "http://idp.test")
os.environ.setdefault("CLEANUP_ENABLED", "false")

import pytest
from sqlalchemy import delete

from ssogate.core.config import get_settings
from ssogate.domain.models import Base
from ssogate.persistence.db import SessionLocal, engine


@pytest.fixture(autouse=True)
async def reset_identity_tables_between_tests() -> None:
    # Each test starts with empty tables and releases connections bound to its loop.
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield
    async with SessionLocal() as session:
        for table in reversed(Base.metadata.sorted_tables):
            await session.execute(delete(table))
        await session.commit()
    await engine.dispose()
    get_settings.cache_clear()
