"""
Bounded-concurrency pagination pipeline.

    PageSequencer -> RateLimiter -> TransportBridge -> ScoringStage -> ResultStore -> renderer

``PipelineController.start`` launches N workers. Each worker loops:

  - claim the next page id, wait out the rate limit, fetch through the bridge
  - 200 with reviews: hand the page to scoring (not awaited) and loop
  - 200 with no reviews: trip the termination flag for every worker and exit
  - anything else: record the page in the failure ledger and exit; a fresh
    worker takes the slot unless ``respawn_failed_workers`` is off or more
    than N pages in a row have failed, and the run ends once no worker is left

Everything runs on one asyncio loop, so the shared sets and flags in
``PipelineState`` need no locking. ``stop`` only prevents new fetches; use
``drain`` to wait for in-flight fetches, retries, scoring and the chart
render to finish. Charts are drawn in a worker thread.

Results are session scoped: they live in the controller's ``ResultStore``
and survive stop/start. Everything else is rebuilt on each ``start``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Coroutine, Optional, Sequence, Set

from loguru import logger

from .config import DEFAULT_DURATION_DAYS, PipelineSettings, ScoredReview, StatusResponse
from .errors import PipelineBusyError, PipelineError
from .failures import FailureLedger
from .pacing import PageSequencer, RateLimiter, SequencerExhausted
from .pipeline_types import FetchOutcome, RunCounters
from .results import ResultStore
from .scoring import Scorer, ScoringStage
from .transport import TransportBridge

Renderer = Callable[[Sequence[ScoredReview], int, date, bool], str]


@dataclass
class PipelineState:
    """Mutable state of a single run. Discarded when the next run starts."""

    run_id: int
    duration_in_days: int
    min_date: date
    sequencer: PageSequencer
    workers: int = 0
    failures: FailureLedger = field(init=False)
    in_flight_fetching: Set[int] = field(default_factory=set)
    in_flight_analyzing: Set[int] = field(default_factory=set)
    terminated: bool = False
    counters: RunCounters = field(default_factory=RunCounters)
    tasks: Set[asyncio.Task] = field(default_factory=set)

    def terminate(self, reason: str) -> None:
        if not self.terminated:
            logger.info("Run {} terminating: {}", self.run_id, reason)
        self.terminated = True

    @property
    def active(self) -> bool:
        return any(not t.done() for t in self.tasks)


class PipelineController:
    def __init__(
        self,
        bridge: TransportBridge,
        scorer: Scorer,
        settings: Optional[PipelineSettings] = None,
        store: Optional[ResultStore] = None,
        renderer: Optional[Renderer] = None,
        clock: Callable[[], date] = date.today,
    ):
        self.bridge = bridge
        self.scorer = scorer
        self.settings = settings or PipelineSettings()
        self.store = store if store is not None else ResultStore()
        self.renderer = renderer
        self.clock = clock

        self.duration_in_days = DEFAULT_DURATION_DAYS
        self.merge_charts = True
        self.latest_chart: Optional[str] = None
        self.state: Optional[PipelineState] = None
        self._runs = 0
        self._scoring: Optional[ScoringStage] = None
        self._rate_limiter = RateLimiter(self.settings.delay_seconds)
        self._render_task: Optional[asyncio.Task] = None
        self._render_requested = False
        self._chart_generation = 0

        self.store.subscribe(self._render)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self.state is not None and self.state.active

    def min_date(self) -> date:
        return self.clock() - timedelta(days=self.duration_in_days)

    async def start(self, duration_in_days: Optional[int] = None, concurrency: Optional[int] = None) -> PipelineState:
        """Begin a fresh run. A stopped run that is still draining is awaited first."""
        if self.state is not None and self.state.active:
            if not self.state.terminated:
                raise PipelineBusyError("a run is already in progress")
            await self.drain()

        if duration_in_days is not None:
            self.duration_in_days = duration_in_days
        workers = concurrency or self.settings.concurrency
        if workers < 1:
            raise PipelineError("concurrency must be >= 1")

        self._runs += 1
        state = PipelineState(
            run_id=self._runs,
            duration_in_days=self.duration_in_days,
            min_date=self.min_date(),
            sequencer=PageSequencer(max_pages=self.settings.max_pages),
            workers=workers,
        )
        state.failures = FailureLedger(retry_handler=lambda page_id: self._fetch(state, page_id))
        self.state = state
        self._scoring = ScoringStage(self.scorer, state, self.store)

        logger.info(
            "Run {} starting: {} workers, reviews since {}",
            state.run_id, workers, state.min_date.isoformat(),
        )
        for n in range(workers):
            self._spawn_worker(state, n + 1)
        return state

    def stop(self) -> None:
        """Stop dispatching new fetches. In-flight work drains on its own."""
        if self.state is None:
            return
        self.state.terminate("stopped by user")

    async def drain(self) -> None:
        """Wait until every worker, retry and scoring task of the current run, and any chart render, is done."""
        state = self.state
        while True:
            pending = [t for t in state.tasks if not t.done()] if state else []
            if self._render_task is not None and not self._render_task.done():
                pending.append(self._render_task)
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        if state is None:
            return
        logger.info(
            "Run {} drained: {} pages fetched, {} scored, {} dropped, {} failures",
            state.run_id,
            state.counters.pages_fetched,
            state.counters.pages_scored,
            state.counters.pages_dropped,
            len(state.failures),
        )

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def retry_page(self, page_id: int) -> "asyncio.Task[FetchOutcome]":
        state = self._require_state()
        task = state.failures.retry(page_id)
        self._track(state, task)
        return task

    def dismiss_page(self, page_id: int) -> None:
        self._require_state().failures.dismiss(page_id)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def set_merge_preference(self, merge: bool) -> None:
        self.merge_charts = merge
        self.refresh_chart()

    def set_duration(self, duration_in_days: int) -> None:
        """Applies to the chart window now and to the extractor cutoff on the next start."""
        self.duration_in_days = duration_in_days
        self.refresh_chart()

    def refresh_chart(self) -> None:
        self._render(self.store.snapshot())

    def clear_results(self) -> None:
        self.store.clear()
        self._chart_generation += 1
        self._render_requested = False
        self.latest_chart = None

    async def wait_for_chart(self) -> Optional[str]:
        """Let an in-progress render finish, then return the newest chart."""
        if self._render_task is not None and not self._render_task.done():
            await asyncio.gather(self._render_task, return_exceptions=True)
        return self.latest_chart

    async def aclose(self) -> None:
        """Stop the run, wait for it to drain and release the transport."""
        self.stop()
        await self.drain()
        await self.bridge.close()

    def _render(self, results: Optional[Sequence[ScoredReview]] = None) -> None:
        # only the newest snapshot matters; bursts collapse into one render
        if self.renderer is None:
            return
        self._render_requested = True
        if self._render_task is None or self._render_task.done():
            self._render_task = asyncio.create_task(self._render_latest(), name="render-chart")

    async def _render_latest(self) -> None:
        while self._render_requested:
            self._render_requested = False
            generation = self._chart_generation
            results = self.store.snapshot()
            try:
                chart = await asyncio.to_thread(
                    self.renderer, results, self.duration_in_days, self.min_date(), self.merge_charts
                )
            except Exception:
                logger.exception("Chart render failed for {} reviews", len(results))
                continue
            if generation == self._chart_generation:
                self.latest_chart = chart

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> StatusResponse:
        state = self.state
        return StatusResponse(
            running=self.running,
            terminated=state.terminated if state else False,
            fetching_pages=sorted(state.in_flight_fetching) if state else [],
            analyzing_pages=sorted(state.in_flight_analyzing) if state else [],
            failures=state.failures.as_status_map() if state else {},
            result_count=len(self.store),
            duration_in_days=self.duration_in_days,
            merge_charts=self.merge_charts,
        )

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _require_state(self) -> PipelineState:
        if self.state is None:
            raise PipelineError("pipeline has not been started")
        return self.state

    def _track(self, state: PipelineState, task: asyncio.Task) -> asyncio.Task:
        state.tasks.add(task)
        task.add_done_callback(state.tasks.discard)
        return task

    def _spawn(self, state: PipelineState, coro: Coroutine, name: str) -> asyncio.Task:
        return self._track(state, asyncio.create_task(coro, name=name))

    def _spawn_worker(self, state: PipelineState, worker_no: int) -> None:
        state.counters.workers_started += 1
        self._spawn(state, self._worker(state, worker_no), f"run{state.run_id}-worker{worker_no}")

    async def _worker(self, state: PipelineState, worker_no: int) -> None:
        while not state.terminated:
            await self._rate_limiter.wait()
            if state.terminated:
                break

            try:
                page_id = state.sequencer.next()
            except SequencerExhausted as e:
                state.terminate(str(e))
                break

            outcome = await self._fetch(state, page_id)
            if outcome.ok:
                state.counters.consecutive_failures = 0
                if outcome.is_empty:
                    break
                continue

            counters = state.counters
            counters.workers_failed += 1
            counters.consecutive_failures += 1
            state.failures.record(page_id, outcome.status, outcome.detail)
            # no replacement once more than `workers` pages in a row have failed
            if (
                self.settings.respawn_failed_workers
                and not state.terminated
                and counters.consecutive_failures <= state.workers
            ):
                logger.info("Worker {} lost on page {}; starting a replacement", worker_no, page_id)
                self._spawn_worker(state, counters.workers_started + 1)
                return

            live = counters.workers_started - counters.workers_failed
            logger.warning(
                "Worker {} lost on page {}; pool degraded to {} ({} failures in a row)",
                worker_no, page_id, live, counters.consecutive_failures,
            )
            if live == 0:
                state.terminate("every worker failed")
            return

        logger.debug("Worker {} exiting", worker_no)

    async def _fetch(self, state: PipelineState, page_id: int) -> FetchOutcome:
        """One fetch attempt, shared by workers and manual retries."""
        state.in_flight_fetching.add(page_id)
        state.counters.dispatched.append(page_id)
        try:
            outcome = await self.bridge.request(page_id, {"min_date": state.min_date.isoformat()})
        finally:
            state.in_flight_fetching.discard(page_id)

        if not outcome.ok:
            return outcome

        state.counters.pages_fetched += 1
        if outcome.is_empty:
            state.terminate(f"page {page_id} returned no reviews")
            return outcome

        logger.info("Fetched page {} with {} reviews", page_id, len(outcome.records))
        self._spawn(state, self._scoring.score(page_id, outcome.records), f"score-{page_id}")
        return outcome
