"""
Background Matching Worker
==========================

A pool of ``worker_concurrency`` tasks, each pulling match jobs from the
queue and handing them to the ``Dispatcher``.

Concurrency safety
------------------
Workers share nothing but the queue.  Two workers never receive the same
delivery (the dequeue is atomic), and two workers on *different* rides
cannot offer the same driver because the dispatcher takes a per-driver
reservation before touching a ride.  Redelivery after a crash is harmless:
the dispatcher checks the ride's ``retry_count`` and status first.

Loop per task
-------------
1. Process jobs back-to-back while any is due.
2. When the queue is empty, sleep ``worker_poll_interval_seconds`` or until
   stop is signalled.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ridedispatch.config import Settings
from ridedispatch.services.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


class MatchWorker:
    def __init__(self, dispatcher: Dispatcher, settings: Settings):
        self.dispatcher = dispatcher
        self.concurrency = max(1, settings.worker_concurrency)
        self.poll_interval = settings.worker_poll_interval_seconds
        self._tasks: list[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    # ── Public API ────────────────────────────────────────────────────

    async def start(self) -> None:
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._loop(n), name=f"match-worker-{n}")
            for n in range(self.concurrency)
        ]
        logger.info(
            "Matching worker started (tasks=%d, poll=%.1fs)",
            self.concurrency,
            self.poll_interval,
        )

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Matching worker stopped")

    async def run_until_idle(self, max_jobs: int = 1000) -> int:
        """Process due jobs inline until none is due.  Returns the count."""
        processed = 0
        while processed < max_jobs and await self.dispatcher.process_next():
            processed += 1
        return processed

    # ── Internals ─────────────────────────────────────────────────────

    async def _loop(self, worker_no: int) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                if await self.dispatcher.process_next():
                    continue
            except Exception:
                logger.exception("Unhandled error in match worker %d", worker_no)
            # Wait for the interval or until stop is signalled
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
                break
            except asyncio.TimeoutError:
                pass  # poll again
