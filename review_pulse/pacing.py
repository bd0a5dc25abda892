"""
Page numbering and politeness delay for the fetch workers.

Both helpers are meant to be used from a single asyncio event loop; the
sequencer relies on that for collision-free numbering.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from loguru import logger


class SequencerExhausted(Exception):
    """Raised once the sequencer has handed out ``max_pages`` identifiers."""


class PageSequencer:
    def __init__(self, max_pages: Optional[int] = None, start: int = 1):
        if start < 1:
            raise ValueError("page identifiers start at 1")
        self._next = start
        self.max_pages = max_pages

    @property
    def issued(self) -> int:
        """Highest identifier handed out so far (0 before the first call)."""
        return self._next - 1

    def next(self) -> int:
        if self.max_pages is not None and self._next > self.max_pages:
            raise SequencerExhausted(f"page limit {self.max_pages} reached")
        page_id = self._next
        self._next += 1
        return page_id


class RateLimiter:
    """Fixed delay applied before every fetch dispatch."""

    def __init__(self, delay_seconds: float):
        if delay_seconds < 0:
            raise ValueError("delay must be >= 0")
        self.delay_seconds = delay_seconds
        self.waits = 0

    async def wait(self) -> None:
        self.waits += 1
        if self.delay_seconds:
            logger.debug("Rate limiter sleeping {}s", self.delay_seconds)
        await asyncio.sleep(self.delay_seconds)
