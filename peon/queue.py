"""Serial asyncio job queue."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object]]


class SerialQueue:
    """
    Run async jobs one after the other, in submission order.

    A failing job is logged and does not prevent the following jobs from
    running. Must be used from within a running event loop.
    """

    def __init__(self, name: str = "queue"):
        self.name = name
        self._tail: Optional[asyncio.Future] = None

    @property
    def idle(self) -> bool:
        return self._tail is None or self._tail.done()

    def run(self, job: Job) -> asyncio.Future:
        """Append a job; returns a future resolved when the job is done."""
        previous = self._tail

        async def chained() -> None:
            if previous is not None:
                await asyncio.wait([previous])
            try:
                await job()
            except Exception:
                logger.exception(f"job failed in {self.name}")

        self._tail = asyncio.ensure_future(chained())
        return self._tail

    async def join(self) -> None:
        """Wait until every job queued so far, and any queued meanwhile, is done."""
        while self._tail is not None and not self._tail.done():
            await asyncio.wait([self._tail])
