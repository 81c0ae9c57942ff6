from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging

import httpx


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogoutNotification:
    service_url: str
    payload: str


class LogoutNotifier:
    """Bounded background queue delivering CAS single-logout requests.

    Delivery is best effort: failures are logged and never reach the logout
    response, and a full queue drops the notification.
    """

    def __init__(
        self,
        *,
        max_size: int = 1000,
        workers: int = 2,
        timeout_s: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._queue: asyncio.Queue[LogoutNotification] = asyncio.Queue(maxsize=max(1, max_size))
        self._workers = max(1, workers)
        self._timeout_s = timeout_s
        self.transport = transport
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, service_url: str, payload: str) -> bool:
        try:
            self._queue.put_nowait(LogoutNotification(service_url=service_url, payload=payload))
        except asyncio.QueueFull:
            logger.warning("cas_slo_dropped reason=queue_full service=%s", service_url)
            return False
        return True

    async def deliver(self, client: httpx.AsyncClient, notification: LogoutNotification) -> None:
        try:
            response = await client.post(
                notification.service_url,
                data={"logoutRequest": notification.payload},
            )
        except httpx.HTTPError as exc:
            logger.warning("cas_slo_failed service=%s error=%s", notification.service_url, exc)
            return
        if response.is_success:
            logger.info("cas_slo_delivered service=%s", notification.service_url)
        else:
            logger.warning(
                "cas_slo_rejected service=%s status=%s",
                notification.service_url,
                response.status_code,
            )

    async def _worker(self) -> None:
        async with httpx.AsyncClient(timeout=self._timeout_s, transport=self.transport) as client:
            while True:
                notification = await self._queue.get()
                try:
                    await self.deliver(client, notification)
                except Exception:  # noqa: BLE001 - SLO is observability-only; keep the worker alive.
                    logger.exception("cas_slo_worker_failed service=%s", notification.service_url)
                finally:
                    self._queue.task_done()

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [asyncio.create_task(self._worker()) for _ in range(self._workers)]

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
