"""Session-wide, append-only store of scored reviews."""

from __future__ import annotations

from typing import Callable, Iterator, List, Sequence, Tuple

from loguru import logger

from .config import ScoredReview

Listener = Callable[[Tuple[ScoredReview, ...]], None]


class ResultStore:
    def __init__(self) -> None:
        self._items: List[ScoredReview] = []
        self._listeners: List[Listener] = []

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[ScoredReview]:
        return iter(tuple(self._items))

    def snapshot(self) -> Tuple[ScoredReview, ...]:
        return tuple(self._items)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def extend(self, reviews: Sequence[ScoredReview]) -> None:
        """Append a batch in order, then notify listeners once with everything."""
        if not reviews:
            return
        self._items.extend(reviews)
        snapshot = self.snapshot()
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception:
                # results are already stored
                logger.exception("Result listener {} failed", listener)

    def clear(self) -> None:
        """Drop everything. Only called on explicit user request, never mid-run."""
        logger.info("Clearing {} stored reviews", len(self._items))
        self._items = []
