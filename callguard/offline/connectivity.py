"""Connectivity detection for the offline queue.

``ConnectivityMonitor`` owns the current ``ConnectionStatus``.  It learns
about changes from a polling probe (``start()``) and from the host
application (``notify_online()``/``notify_offline()``).  Listeners are
told about every actual change.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from callguard.core.config import Settings
from callguard.offline.models import ConnectionStatus

logger = logging.getLogger(__name__)

ConnectivityProbe = Callable[[], Awaitable[bool]]
StatusListener = Callable[[ConnectionStatus, ConnectionStatus], None]


class HttpConnectivityProbe:
    """Probe that requests *url*; any HTTP response counts as online.

    Args:
        url:     Endpoint to request (HEAD).
        timeout: Seconds before the request counts as offline.
        client:  Optional shared ``httpx.AsyncClient`` (e.g. with a mock
                 transport in tests).
    """

    def __init__(
        self,
        url: str = "https://www.gstatic.com/generate_204",
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpConnectivityProbe":
        return cls(settings.CONNECTIVITY_PROBE_URL, settings.CONNECTIVITY_PROBE_TIMEOUT)

    async def __call__(self) -> bool:
        try:
            if self._client is not None:
                await self._client.head(self.url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    await client.head(self.url, timeout=self.timeout)
        except httpx.TransportError as exc:
            logger.debug("Connectivity probe to %s failed: %s", self.url, exc)
            return False
        return True


class ConnectivityMonitor:
    """Tracks connectivity and polls *probe* every *check_interval* seconds."""

    def __init__(
        self,
        probe: ConnectivityProbe | None = None,
        check_interval: float = 30.0,
    ) -> None:
        if check_interval <= 0:
            raise ValueError("check_interval must be positive")
        self.probe = probe
        self.check_interval = check_interval
        self._status = ConnectionStatus.UNKNOWN
        self._listeners: list[StatusListener] = []
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    # ── Status updates ───────────────────────────────────────────────

    async def check(self) -> ConnectionStatus:
        """Run the probe once and update the status.

        Without a probe the status is left as is.  A probe that raises
        counts as offline.
        """
        if self.probe is None:
            return self._status
        try:
            online = await self.probe()
        except Exception:
            logger.warning("Connectivity probe raised; assuming offline", exc_info=True)
            online = False
        self.set_status(ConnectionStatus.ONLINE if online else ConnectionStatus.OFFLINE)
        return self._status

    def set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        old_status = self._status
        self._status = status
        logger.info("Connection status changed from %s to %s", old_status.value, status.value)
        for listener in list(self._listeners):
            try:
                listener(old_status, status)
            except Exception:
                logger.exception("Connectivity listener failed")

    def notify_online(self) -> None:
        self.set_status(ConnectionStatus.ONLINE)

    def notify_offline(self) -> None:
        self.set_status(ConnectionStatus.OFFLINE)

    # ── Polling ──────────────────────────────────────────────────────

    def start(self) -> None:
        """Poll every ``check_interval`` seconds in the background.

        No-op without a probe.  The first check happens after one interval;
        call ``check()`` for an immediate reading.
        """
        if self.probe is None or self.running:
            return
        self._poll_task = asyncio.ensure_future(self._poll())

    def stop(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            await self.check()
