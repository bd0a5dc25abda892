"""Typed containers shared across pipeline modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .config import STATUS_OK, Review


@dataclass(frozen=True)
class FetchOutcome:
    """Result of one page fetch; ``records`` is set iff the fetch succeeded."""

    status: int
    records: Optional[List[Review]] = None
    detail: str = ""

    def __post_init__(self) -> None:
        if (self.status == STATUS_OK) != (self.records is not None):
            raise ValueError(f"status {self.status} inconsistent with records={self.records!r}")

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    @property
    def is_empty(self) -> bool:
        return self.ok and not self.records

    @classmethod
    def success(cls, records: List[Review]) -> "FetchOutcome":
        return cls(status=STATUS_OK, records=list(records))

    @classmethod
    def failure(cls, status: int, detail: str = "") -> "FetchOutcome":
        return cls(status=status, records=None, detail=detail)


@dataclass
class FailureRecord:
    page_id: int
    status: int
    detail: str = ""
    attempts: int = 1


@dataclass
class RunCounters:
    pages_fetched: int = 0
    pages_scored: int = 0
    pages_dropped: int = 0
    reviews_scored: int = 0
    workers_started: int = 0
    workers_failed: int = 0
    consecutive_failures: int = 0
    dispatched: List[int] = field(default_factory=list)
