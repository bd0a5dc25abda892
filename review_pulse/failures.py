"""
Per-page failure bookkeeping with user-initiated retry.

A failed page stays in the ledger until the user dismisses it or a retry
reaches a terminal outcome. There is no automatic retry.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List, Set

from loguru import logger

from .errors import RetryInFlightError, UnknownFailureError
from .pipeline_types import FailureRecord, FetchOutcome

RetryHandler = Callable[[int], Awaitable[FetchOutcome]]


class FailureLedger:
    def __init__(self, retry_handler: RetryHandler):
        self._retry_handler = retry_handler
        self._entries: Dict[int, FailureRecord] = {}
        self._retrying: Set[int] = set()

    def __contains__(self, page_id: int) -> bool:
        return page_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> List[FailureRecord]:
        return [self._entries[p] for p in sorted(self._entries)]

    def as_status_map(self) -> Dict[int, int]:
        return {p: rec.status for p, rec in sorted(self._entries.items())}

    @property
    def retrying(self) -> Set[int]:
        return set(self._retrying)

    def record(self, page_id: int, status: int, detail: str = "") -> FailureRecord:
        previous = self._entries.get(page_id)
        attempts = previous.attempts + 1 if previous else 1
        entry = FailureRecord(page_id=page_id, status=status, detail=detail, attempts=attempts)
        self._entries[page_id] = entry
        logger.warning("errorCode for page {}: {} {}", page_id, status, detail)
        return entry

    def dismiss(self, page_id: int) -> FailureRecord:
        if page_id in self._retrying:
            raise RetryInFlightError(f"page {page_id} is being retried")
        try:
            entry = self._entries.pop(page_id)
        except KeyError:
            raise UnknownFailureError(page_id) from None
        logger.info("Dismissed failure for page {}", page_id)
        return entry

    def retry(self, page_id: int) -> "asyncio.Task[FetchOutcome]":
        """Schedule a one-off refetch of a failed page and return its task."""
        if page_id not in self._entries:
            raise UnknownFailureError(page_id)
        if page_id in self._retrying:
            raise RetryInFlightError(f"page {page_id} is already being retried")
        self._retrying.add(page_id)
        logger.info("Retrying page {}", page_id)
        return asyncio.create_task(self._run_retry(page_id), name=f"retry-{page_id}")

    async def _run_retry(self, page_id: int) -> FetchOutcome:
        try:
            outcome = await self._retry_handler(page_id)
        except Exception as e:
            logger.exception("Retry of page {} crashed", page_id)
            outcome = FetchOutcome.failure(self._entries[page_id].status, f"retry error: {e}")
        finally:
            self._retrying.discard(page_id)

        if outcome.ok:
            self._entries.pop(page_id, None)
            logger.info("Retry of page {} succeeded", page_id)
        else:
            self.record(page_id, outcome.status, outcome.detail)
        return outcome
