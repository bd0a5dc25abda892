from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable, List, Sequence

from loguru import logger

from .config import SCORE_SCALE, Review, ScoredReview
from .results import ResultStore

if TYPE_CHECKING:
    from .pipeline import PipelineState

Scorer = Callable[[str], Awaitable[float]]


def _to_scale(probability: float) -> float:
    p = float(probability)
    if not 0.0 <= p <= 1.0:
        raise ValueError(f"scorer returned {p!r}, expected a value in [0, 1]")
    return p * SCORE_SCALE


async def score_review(scorer: Scorer, review: Review) -> ScoredReview:
    pro, con = await asyncio.gather(scorer(review.pros), scorer(review.cons))
    return ScoredReview.from_review(review, _to_scale(pro), _to_scale(con))


class ScoringStage:
    """
    Scores one page of reviews at a time and appends them to the store.

    Pages are independent: whichever page finishes first is appended first.
    Within a page the original review order is kept.
    """

    def __init__(self, scorer: Scorer, state: "PipelineState", store: ResultStore):
        self.scorer = scorer
        self.state = state
        self.store = store

    async def score(self, page_id: int, reviews: Sequence[Review]) -> bool:
        state = self.state
        state.in_flight_analyzing.add(page_id)
        logger.info("Analyzing page {} ({} reviews)", page_id, len(reviews))
        try:
            scored: List[ScoredReview] = list(
                await asyncio.gather(*(score_review(self.scorer, r) for r in reviews))
            )
        except Exception:
            # dropped, not retried
            logger.exception("Scoring failed for page {}; dropping {} reviews", page_id, len(reviews))
            state.in_flight_analyzing.discard(page_id)
            state.counters.pages_dropped += 1
            return False

        state.in_flight_analyzing.discard(page_id)
        state.counters.pages_scored += 1
        state.counters.reviews_scored += len(scored)
        self.store.extend(scored)
        logger.info("Page {} scored; {} reviews stored", page_id, len(self.store))
        return True
