from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Awaitable, Callable

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ssogate.domain.models import Artifact, Credential, SsoSession


logger = logging.getLogger(__name__)


async def prune_artifacts(session: AsyncSession, now: datetime) -> int:
    # Remove expired codes and tickets; service tickets of live TGTs are kept for single logout.
    live_sessions = select(SsoSession.session_id).where(
        SsoSession.expires_at >= now,
        SsoSession.revoked.is_(False),
    )
    result = await session.execute(
        delete(Artifact).where(
            Artifact.expires_at < now,
            or_(Artifact.session_id.is_(None), Artifact.session_id.not_in(live_sessions)),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def prune_credentials(session: AsyncSession, now: datetime) -> int:
    # Remove expired access/refresh tokens and proxy-granting tickets.
    result = await session.execute(delete(Credential).where(Credential.expires_at < now))
    return result.rowcount or 0


async def prune_sessions(session: AsyncSession, now: datetime) -> int:
    # Remove expired ticket-granting sessions.
    result = await session.execute(delete(SsoSession).where(SsoSession.expires_at < now))
    return result.rowcount or 0


_SWEEPS: tuple[tuple[str, Callable[[AsyncSession, datetime], Awaitable[int]]], ...] = (
    ("sso_artifacts", prune_artifacts),
    ("sso_credentials", prune_credentials),
    ("sso_sessions", prune_sessions),
)


class TokenCleanupJob:
    """Periodic deletion of expired tickets, tokens and sessions.

    Storage hygiene only: every validation path checks expiry itself, so a
    missed sweep never extends a token's life.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        interval_seconds: int = 3600,
    ) -> None:
        self._session_factory = session_factory
        self._interval_seconds = max(1, int(interval_seconds))
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def run_once(self) -> dict[str, int]:
        now = datetime.now(timezone.utc)
        counts: dict[str, int] = {}
        for table, sweep in _SWEEPS:
            # One table failing must not keep the others from being swept.
            try:
                async with self._session_factory() as session:
                    deleted = await sweep(session, now)
                    await session.commit()
            except SQLAlchemyError:
                logger.exception("sso_cleanup_failed table=%s", table)
                continue
            counts[table] = deleted
            if deleted:
                logger.info("sso_cleanup_deleted table=%s count=%s", table, deleted)
        return counts

    async def run_forever(self) -> None:
        # Sweep immediately, then on every interval until stop() is requested.
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception:  # noqa: BLE001 - keep the sweeper alive while surfacing failures in logs.
                logger.exception("sso_cleanup_sweep_failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        # Let an in-flight sweep finish; the loop exits at its next stop check.
        self._stop.set()
        task, self._task = self._task, None
        if task is not None:
            await task
