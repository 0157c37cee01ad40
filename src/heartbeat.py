from __future__ import annotations

import time
from typing import TYPE_CHECKING, Callable, Optional

import httpx

from config import Config, get_logger

if TYPE_CHECKING:
    from connection import ConnectionManager

logger = get_logger(service="heartbeat")


class HeartbeatReporter:
    """Fire-and-forget liveness report to ``POST {base_url}/heartbeat``.

    Triggered by its own timer and by shard ready/resume events. Calls within
    ``debounce`` seconds of the last report are ignored so coinciding triggers
    produce one request.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        debounce: float = 5.0,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connection = connection
        self.url = f"{base_url.rstrip('/')}/heartbeat"
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self.debounce = debounce
        self._clock = clock
        self._last_sent: Optional[float] = None
        self.sent = 0
        self.failures = 0

    @classmethod
    def from_config(cls, cfg: Config, connection: ConnectionManager) -> HeartbeatReporter:
        return cls(
            connection=connection,
            base_url=cfg.heartbeat_base_url,
            debounce=cfg.heartbeat_debounce_seconds,
            timeout=cfg.heartbeat_timeout_seconds,
        )

    def _debounced(self) -> bool:
        now = self._clock()
        if self._last_sent is not None and now - self._last_sent < self.debounce:
            return True
        self._last_sent = now
        return False

    async def beat(self) -> bool:
        """Send one heartbeat. Returns True if the monitor answered with a 2xx."""
        if self._debounced():
            logger.debug("Heartbeat debounced")
            return False

        payload = self._connection.status_info()
        try:
            response = await self._http.post(self.url, json=payload)
        except httpx.HTTPError as e:
            self.failures += 1
            logger.exception(f"Error sending heartbeat: {e}", extra={"url": self.url})
            return False

        if not response.is_success:
            self.failures += 1
            logger.error(f"Heartbeat failed: {response.status_code}", extra={"url": self.url})
            return False

        self.sent += 1
        logger.debug("Heartbeat sent", extra={"status": payload["status"], "guilds": payload["guilds"]})
        return True

    async def aclose(self) -> None:
        await self._http.aclose()
