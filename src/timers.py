from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from config import get_logger

logger = get_logger(service="timers")


class RecurringTimer:
    """Fire ``callback`` every ``interval`` seconds, setInterval style.

    Each tick runs as its own task and is not awaited by the timer, so a slow
    callback never delays the next tick. Callbacks decide themselves what to do
    with overlapping ticks.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[object]],
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._sleep = sleep or asyncio.sleep
        self._task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the timer. Returns False if it was already running."""
        if self.running:
            return False
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"timer:{self.name}")
        logger.info(f"Timer {self.name} started", extra={"interval": self.interval})
        return True

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval)
            self.ticks += 1
            task = asyncio.get_running_loop().create_task(self._fire(), name=f"timer:{self.name}:tick")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _fire(self) -> None:
        try:
            await self._callback()
        except Exception as e:
            logger.exception(f"Timer {self.name} callback failed: {e}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info(f"Timer {self.name} stopped")
