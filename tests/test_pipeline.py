import asyncio
import threading
import time

import pytest

from fakes import ScriptedExtractor, build_controller, make_reviews
from review_pulse.errors import PipelineBusyError, PipelineError, UnknownFailureError
from review_pulse.pipeline_types import FetchOutcome


def _record_dispatches(controller):
    """Wrap bridge.request so each dispatch notes whether the run was already terminated."""
    seen = []
    original = controller.bridge.request

    async def request(page_id, params=None):
        seen.append((page_id, controller.state.terminated))
        return await original(page_id, params)

    controller.bridge.request = request
    return seen


@pytest.mark.asyncio
async def test_three_full_pages_then_empty_page(three_pages):
    extractor = ScriptedExtractor(three_pages)
    controller = build_controller(extractor, concurrency=2)

    state = await controller.start()
    await controller.drain()

    assert len(controller.store) == 15
    assert state.terminated is True
    assert len(state.failures) == 0
    assert state.in_flight_fetching == set()
    assert state.in_flight_analyzing == set()
    assert not controller.running


@pytest.mark.asyncio
async def test_no_dispatch_after_termination(three_pages):
    controller = build_controller(ScriptedExtractor(three_pages), concurrency=3)
    seen = _record_dispatches(controller)

    await controller.start()
    await controller.drain()

    assert seen
    assert all(not terminated for _, terminated in seen)


@pytest.mark.asyncio
async def test_page_ids_claimed_once_and_increasing_per_run():
    pages = {p: FetchOutcome.success(make_reviews(p, 1)) for p in range(1, 9)}
    controller = build_controller(ScriptedExtractor(pages), concurrency=3)

    state = await controller.start()
    await controller.drain()

    dispatched = state.counters.dispatched
    assert len(dispatched) == len(set(dispatched))
    assert sorted(dispatched) == list(range(1, len(dispatched) + 1))
    assert len(controller.store) == 8


@pytest.mark.asyncio
async def test_failed_page_recorded_and_other_worker_continues():
    pages = {p: FetchOutcome.success(make_reviews(p)) for p in (1, 3, 4, 5)}
    pages[2] = [FetchOutcome.failure(429, "Too Many Requests"), FetchOutcome.success(make_reviews(2))]
    extractor = ScriptedExtractor(pages)
    controller = build_controller(extractor, concurrency=2, respawn_failed_workers=False)

    state = await controller.start()
    await controller.drain()

    assert state.failures.as_status_map() == {2: 429}
    assert state.counters.workers_failed == 1
    assert state.counters.workers_started == 2
    assert len(controller.store) == 20
    assert all(r.page != 2 for r in controller.store)

    outcome = await controller.retry_page(2)
    await controller.drain()

    assert outcome.ok
    assert 2 not in state.failures
    page2 = [r for r in controller.store if r.page == 2]
    assert len(page2) == 5
    assert len(controller.store) == 25


@pytest.mark.asyncio
async def test_failed_worker_is_replaced_when_respawn_enabled():
    pages = {p: FetchOutcome.success(make_reviews(p, 2)) for p in (1, 3, 4, 5, 6)}
    pages[2] = FetchOutcome.failure(503)
    controller = build_controller(ScriptedExtractor(pages), concurrency=2, respawn_failed_workers=True)

    state = await controller.start()
    await controller.drain()

    assert state.counters.workers_started == 3
    assert state.failures.as_status_map() == {2: 503}
    assert len(controller.store) == 10


@pytest.mark.asyncio
async def test_replacements_stop_when_every_page_fails():
    pages = {p: FetchOutcome.failure(429, "Too Many Requests") for p in range(1, 201)}
    extractor = ScriptedExtractor(pages)
    controller = build_controller(extractor, concurrency=2, respawn_failed_workers=True, max_pages=200)

    state = await controller.start()
    await controller.drain()

    # two originals plus one replacement for each of the first two failures
    assert state.counters.workers_started == 4
    assert sorted(extractor.calls) == [1, 2, 3, 4]
    assert state.failures.as_status_map() == {1: 429, 2: 429, 3: 429, 4: 429}
    assert state.terminated
    assert not controller.running
    assert len(controller.store) == 0


@pytest.mark.asyncio
async def test_success_resets_the_replacement_budget():
    pages = {p: FetchOutcome.success(make_reviews(p, 1)) for p in range(1, 8)}
    pages[2] = FetchOutcome.failure(503)
    pages[5] = FetchOutcome.failure(503)
    controller = build_controller(ScriptedExtractor(pages), concurrency=1, respawn_failed_workers=True)

    state = await controller.start()
    await controller.drain()

    assert state.counters.workers_started == 3
    assert state.failures.as_status_map() == {2: 503, 5: 503}
    assert len(controller.store) == 5


@pytest.mark.asyncio
async def test_repeated_retry_failure_keeps_entry_with_new_status():
    pages = {1: FetchOutcome.success(make_reviews(1)), 2: [FetchOutcome.failure(429), FetchOutcome.failure(500)]}
    controller = build_controller(ScriptedExtractor(pages), concurrency=2)

    state = await controller.start()
    await controller.drain()
    outcome = await controller.retry_page(2)

    assert outcome.status == 500
    entry = state.failures.entries()[0]
    assert (entry.page_id, entry.status, entry.attempts) == (2, 500, 2)


@pytest.mark.asyncio
async def test_retry_and_dismiss_unknown_page_rejected(three_pages):
    controller = build_controller(ScriptedExtractor(three_pages))
    with pytest.raises(PipelineError):
        controller.retry_page(1)

    await controller.start()
    await controller.drain()
    with pytest.raises(UnknownFailureError):
        controller.retry_page(7)
    with pytest.raises(UnknownFailureError):
        controller.dismiss_page(7)


@pytest.mark.asyncio
async def test_scoring_failure_drops_only_that_page(three_pages):
    async def flaky_scorer(text):
        await asyncio.sleep(0)
        if "page 2 " in text:
            raise RuntimeError("model exploded")
        return 0.5

    controller = build_controller(ScriptedExtractor(three_pages), scorer=flaky_scorer)
    state = await controller.start()
    await controller.drain()

    assert len(controller.store) == 10
    assert state.counters.pages_dropped == 1
    assert state.in_flight_analyzing == set()
    assert len(state.failures) == 0


@pytest.mark.asyncio
async def test_stop_before_workers_run_dispatches_nothing(three_pages):
    extractor = ScriptedExtractor(three_pages)
    controller = build_controller(extractor)

    state = await controller.start()
    controller.stop()
    await controller.drain()

    assert state.terminated
    assert state.counters.dispatched == []
    assert extractor.calls == []


@pytest.mark.asyncio
async def test_stop_mid_run_lets_in_flight_pages_drain():
    pages = {p: FetchOutcome.success(make_reviews(p, 2)) for p in range(1, 50)}
    extractor = ScriptedExtractor(pages, delay=0.01)
    controller = build_controller(extractor, concurrency=2)
    seen = _record_dispatches(controller)

    state = await controller.start()
    while len(controller.store) < 4:
        await asyncio.sleep(0.005)
    controller.stop()
    in_flight = set(state.in_flight_fetching)
    await controller.drain()

    assert all(not terminated for _, terminated in seen)
    assert state.in_flight_fetching == set()
    # everything that was already dispatched got scored
    assert len(controller.store) == 2 * state.counters.pages_fetched
    assert in_flight <= set(state.counters.dispatched)
    assert max(state.counters.dispatched) < 49


@pytest.mark.asyncio
async def test_results_survive_restart_but_state_is_fresh(three_pages):
    controller = build_controller(ScriptedExtractor(three_pages))

    first = await controller.start()
    await controller.drain()
    second = await controller.start()
    await controller.drain()

    assert second is not first
    assert second.run_id == first.run_id + 1
    assert min(second.counters.dispatched) == 1
    assert len(second.failures) == 0
    assert len(controller.store) == 30

    controller.clear_results()
    assert len(controller.store) == 0


@pytest.mark.asyncio
async def test_start_while_running_is_rejected(three_pages):
    controller = build_controller(ScriptedExtractor(three_pages, delay=0.02))
    await controller.start()
    with pytest.raises(PipelineBusyError):
        await controller.start()
    controller.stop()
    await controller.drain()


@pytest.mark.asyncio
async def test_start_after_stop_waits_for_drain(three_pages):
    extractor = ScriptedExtractor(three_pages, delay=0.02)
    controller = build_controller(extractor)

    first = await controller.start()
    await asyncio.sleep(0)
    controller.stop()
    second = await controller.start()

    assert not first.active
    await controller.drain()
    assert second.terminated


@pytest.mark.asyncio
async def test_page_limit_terminates_run():
    pages = {p: FetchOutcome.success(make_reviews(p, 1)) for p in range(1, 20)}
    controller = build_controller(ScriptedExtractor(pages), concurrency=2, max_pages=4)

    state = await controller.start()
    await controller.drain()

    assert sorted(state.counters.dispatched) == [1, 2, 3, 4]
    assert state.terminated
    assert len(controller.store) == 4


@pytest.mark.asyncio
async def test_renderer_called_with_full_results_and_preferences(three_pages):
    calls = []

    def renderer(results, duration_in_days, min_date, merge):
        calls.append((len(results), duration_in_days, merge))
        return f"<svg n='{len(results)}'/>"

    controller = build_controller(ScriptedExtractor(three_pages), renderer=renderer)
    await controller.start(duration_in_days=30)
    await controller.drain()

    counts = [n for n, _, _ in calls]
    assert counts == sorted(counts)
    assert counts[-1] == 15
    assert all(d == 30 and merge is True for _, d, merge in calls)
    assert controller.latest_chart == "<svg n='15'/>"

    controller.set_merge_preference(False)
    await controller.wait_for_chart()
    assert calls[-1] == (15, 30, False)

    controller.set_duration(7)
    await controller.wait_for_chart()
    assert calls[-1] == (15, 7, False)
    assert controller.duration_in_days == 7


@pytest.mark.asyncio
async def test_charts_render_off_the_event_loop(three_pages):
    loop_thread = threading.get_ident()
    threads = set()

    def renderer(results, duration_in_days, min_date, merge):
        threads.add(threading.get_ident())
        return "<svg/>"

    controller = build_controller(ScriptedExtractor(three_pages), renderer=renderer)
    await controller.start()
    await controller.drain()

    assert threads
    assert loop_thread not in threads


@pytest.mark.asyncio
async def test_slow_renderer_does_not_hold_up_scoring():
    pages = {p: FetchOutcome.success(make_reviews(p)) for p in range(1, 11)}
    calls = []

    def slow_renderer(results, duration_in_days, min_date, merge):
        time.sleep(0.1)
        calls.append(len(results))
        return f"<svg n='{len(results)}'/>"

    controller = build_controller(ScriptedExtractor(pages), renderer=slow_renderer)
    await controller.start()
    while len(controller.store) < 50:
        await asyncio.sleep(0.005)

    # every page was scored while the first render was still sleeping
    assert calls == []
    await controller.drain()
    assert 1 <= len(calls) <= 2
    assert calls[-1] == 50
    assert controller.latest_chart == "<svg n='50'/>"


@pytest.mark.asyncio
async def test_clearing_results_discards_render_in_progress(three_pages):
    def slow_renderer(results, duration_in_days, min_date, merge):
        time.sleep(0.05)
        return f"<svg n='{len(results)}'/>"

    controller = build_controller(ScriptedExtractor(three_pages), renderer=slow_renderer)
    await controller.start()
    while len(controller.store) < 15:
        await asyncio.sleep(0.005)
    controller.clear_results()
    await controller.drain()

    assert controller.latest_chart is None


@pytest.mark.asyncio
async def test_status_reports_failures_and_counts():
    pages = {1: FetchOutcome.success(make_reviews(1)), 2: FetchOutcome.failure(429)}
    controller = build_controller(ScriptedExtractor(pages))
    await controller.start()
    await controller.drain()

    status = controller.status()
    assert status.failures == {2: 429}
    assert status.result_count == 5
    assert status.running is False
    assert status.fetching_pages == []
