"""In-process heartbeat scheduler.

Each tick re-enters the dispatch loop as the system identity. A tick that
finds the previous heartbeat still running is dropped, never queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from agentgate.auth.service import SYSTEM_IDENTITY, Identity

logger = logging.getLogger(__name__)


class HeartbeatTarget(Protocol):
    def is_busy(self, identity: Identity) -> bool: ...

    async def dispatch_heartbeat(self) -> Any: ...


class HeartbeatScheduler:
    def __init__(
        self,
        target: HeartbeatTarget,
        interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._target = target
        self._interval = max(1.0, float(interval_seconds))
        self._clock = clock
        self._shutdown = asyncio.Event()
        self._current: asyncio.Task[Any] | None = None
        self._runner: asyncio.Task[None] | None = None
        self.fired = 0
        self.skipped = 0

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def tick(self) -> bool:
        """Start a heartbeat cycle unless one is in flight. Returns True when started."""
        in_flight = self._current is not None and not self._current.done()
        if in_flight or self._target.is_busy(SYSTEM_IDENTITY):
            self.skipped += 1
            logger.info(
                "Heartbeat skipped; previous cycle still running (%d skipped)", self.skipped
            )
            return False
        self.fired += 1
        self._current = asyncio.create_task(self._beat(), name="agentgate-heartbeat")
        return True

    async def _beat(self) -> None:
        try:
            outcome = await self._target.dispatch_heartbeat()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Heartbeat cycle crashed")
            return
        if outcome is None:
            self.skipped += 1
            return
        logger.info("Heartbeat finished in state %s", getattr(outcome, "state", outcome))

    async def run(self) -> None:
        next_run = self._clock() + self._interval
        while not self._shutdown.is_set():
            now = self._clock()
            if now >= next_run:
                self.tick()
                next_run = now + self._interval
            try:
                await asyncio.wait_for(
                    self._shutdown.wait(), timeout=min(1.0, max(0.0, next_run - now))
                )
            except TimeoutError:
                continue

    def start(self) -> None:
        if self.running:
            return
        self._shutdown.clear()
        self._runner = asyncio.create_task(self.run(), name="agentgate-heartbeat-loop")

    async def shutdown(self, timeout_s: float = 5.0) -> None:
        self._shutdown.set()
        if self._runner is not None:
            await self._runner
            self._runner = None
        current = self._current
        if current is not None and not current.done():
            try:
                await asyncio.wait_for(asyncio.shield(current), timeout=timeout_s)
            except TimeoutError:
                current.cancel()
                await asyncio.gather(current, return_exceptions=True)
                logger.warning("Heartbeat cycle cancelled at shutdown")
