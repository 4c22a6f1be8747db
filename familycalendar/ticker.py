from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable


logger = logging.getLogger(__name__)


class Ticker:
    """Run ``callback`` every ``interval`` seconds on the host's event loop.

    The ticker only schedules; whatever the callback renders is computed
    fresh on each call.  ``stop`` takes effect before the next invocation.
    """

    def __init__(self, callback: Callable[[], Awaitable[None]], interval: float):
        if interval <= 0:
            raise ValueError("Ticker interval must be positive")
        self.callback = callback
        self.interval = interval
        self.ticks = 0
        self._stopped = asyncio.Event()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def stop(self) -> None:
        self._stopped.set()

    async def run(self) -> None:
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if self._stopped.is_set():
                break
            self.ticks += 1
            try:
                await self.callback()
            except Exception:
                logger.exception("Ticker callback failed on tick %d", self.ticks)
        logger.debug("Ticker stopped after %d ticks", self.ticks)
