"""Tests for the dispatch loop: concurrency bound, dedupe, throttling and retries."""

import asyncio
import time
from typing import Any

import pytest

from sift.config import CrawlerSettings
from sift.progress import SafeSink
from sift.scheduler import Scheduler, WorkItem
from sift.state import SessionState


class RecordingProcessor:
    """Processor that records dispatch order and time, holding each item briefly."""

    def __init__(self, state: SessionState, hold: float = 0.02) -> None:
        self.state = state
        self.hold = hold
        self.calls: list[tuple[str, float]] = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, item: WorkItem) -> None:
        self.calls.append((item.url, time.monotonic()))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.hold)
            self.state.mark_visited(item.url)
            self.state.record_success(100)
        finally:
            self.active -= 1


def make_scheduler(
    state: SessionState,
    sink: SafeSink,
    settings: CrawlerSettings,
    processor: Any,
) -> tuple[Scheduler, asyncio.Event]:
    idle = asyncio.Event()

    async def on_idle() -> None:
        idle.set()

    scheduler = Scheduler(state, sink, settings, processor=processor, on_idle=on_idle)
    return scheduler, idle


async def test_concurrency_is_bounded(
    make_state: Any, safe_sink: SafeSink, fast_settings: CrawlerSettings
) -> None:
    state = make_state(max_concurrent_requests=2, max_pages=20)
    processor = RecordingProcessor(state, hold=0.05)
    scheduler, idle = make_scheduler(state, safe_sink, fast_settings, processor)

    # Distinct domains so throttling does not serialize dispatch
    for i in range(6):
        scheduler.enqueue(WorkItem(url=f"https://site{i}.example/", depth=0))
    scheduler.start()
    await asyncio.wait_for(idle.wait(), timeout=5)

    assert len(processor.calls) == 6
    assert processor.max_active == 2
    assert scheduler.max_active_observed <= 2


async def test_enqueue_filters_duplicates(
    make_state: Any, safe_sink: SafeSink, fast_settings: CrawlerSettings
) -> None:
    state = make_state()
    scheduler = Scheduler(state, safe_sink, fast_settings)

    assert scheduler.enqueue(WorkItem(url="https://example.com/a", depth=1))
    assert not scheduler.enqueue(WorkItem(url="https://example.com/a", depth=2))

    state.mark_visited("https://example.com/b")
    assert not scheduler.enqueue(WorkItem(url="https://example.com/b", depth=1))
    assert scheduler.queue_length == 1


async def test_enqueue_allows_duplicates_when_filter_off(
    make_state: Any, safe_sink: SafeSink, fast_settings: CrawlerSettings
) -> None:
    state = make_state(filter_duplicates=False)
    scheduler = Scheduler(state, safe_sink, fast_settings)

    scheduler.enqueue(WorkItem(url="https://example.com/a", depth=1))
    scheduler.enqueue(WorkItem(url="https://example.com/a", depth=1))

    assert scheduler.queue_length == 2


async def test_same_domain_dispatches_are_spaced(
    make_state: Any, safe_sink: SafeSink, fast_settings: CrawlerSettings
) -> None:
    state = make_state(crawl_delay=200, max_concurrent_requests=5)
    processor = RecordingProcessor(state, hold=0.0)
    scheduler, idle = make_scheduler(state, safe_sink, fast_settings, processor)

    for i in range(3):
        scheduler.enqueue(WorkItem(url=f"https://example.com/p{i}", depth=1))
    scheduler.start()
    await asyncio.wait_for(idle.wait(), timeout=5)

    times = [t for _, t in processor.calls]
    assert len(times) == 3
    gaps = [b - a for a, b in zip(times, times[1:], strict=False)]
    # Allow a little scheduler jitter
    assert all(gap >= 0.19 for gap in gaps)


async def test_throttled_domain_does_not_block_others(
    make_state: Any, safe_sink: SafeSink, fast_settings: CrawlerSettings
) -> None:
    state = make_state(crawl_delay=200, max_concurrent_requests=5)
    state.set_domain_delay("slow.example", 2000)
    processor = RecordingProcessor(state, hold=0.0)
    scheduler, _ = make_scheduler(state, safe_sink, fast_settings, processor)

    scheduler.enqueue(WorkItem(url="https://slow.example/1", depth=1))
    scheduler.enqueue(WorkItem(url="https://slow.example/2", depth=1))
    scheduler.enqueue(WorkItem(url="https://fast.example/1", depth=1))
    scheduler.start()
    await asyncio.sleep(0.3)

    dispatched = [url for url, _ in processor.calls]
    assert "https://fast.example/1" in dispatched
    assert "https://slow.example/2" not in dispatched

    state.stop()
    await scheduler.await_idle()


async def test_budget_exhaustion_drops_queue(
    make_state: Any, safe_sink: SafeSink, fast_settings: CrawlerSettings
) -> None:
    state = make_state(max_pages=1, max_concurrent_requests=1)
    processor = RecordingProcessor(state, hold=0.0)
    scheduler, idle = make_scheduler(state, safe_sink, fast_settings, processor)

    for i in range(3):
        scheduler.enqueue(WorkItem(url=f"https://site{i}.example/", depth=0))
    scheduler.schedule_retry(WorkItem(url="https://retry.example/", depth=0, retry_count=1), 5000)
    scheduler.start()
    await asyncio.wait_for(idle.wait(), timeout=5)

    assert len(processor.calls) == 1
    assert scheduler.queue_length == 0
    assert scheduler.pending_retries == 0


async def test_retry_is_reenqueued_after_delay(
    make_state: Any, safe_sink: SafeSink, fast_settings: CrawlerSettings
) -> None:
    state = make_state()
    processor = RecordingProcessor(state, hold=0.0)
    scheduler, idle = make_scheduler(state, safe_sink, fast_settings, processor)

    started = time.monotonic()
    scheduler.schedule_retry(WorkItem(url="https://example.com/r", depth=1, retry_count=1), 50)
    assert scheduler.pending_retries == 1
    scheduler.start()
    await asyncio.wait_for(idle.wait(), timeout=5)

    assert [url for url, _ in processor.calls] == ["https://example.com/r"]
    assert processor.calls[0][1] - started >= 0.045


async def test_clear_retries_cancels_timers(
    make_state: Any, safe_sink: SafeSink, fast_settings: CrawlerSettings
) -> None:
    state = make_state()
    processor = RecordingProcessor(state, hold=0.0)
    scheduler = Scheduler(state, safe_sink, fast_settings, processor=processor)

    scheduler.schedule_retry(WorkItem(url="https://example.com/r", depth=1), 20)
    scheduler.clear_retries()
    await asyncio.sleep(0.05)

    assert scheduler.pending_retries == 0
    assert scheduler.queue_length == 0
    assert scheduler.is_idle()


async def test_retry_after_stop_is_not_enqueued(
    make_state: Any, safe_sink: SafeSink, fast_settings: CrawlerSettings
) -> None:
    state = make_state()
    scheduler = Scheduler(state, safe_sink, fast_settings)

    scheduler.schedule_retry(WorkItem(url="https://example.com/r", depth=1), 10)
    state.stop()
    await asyncio.sleep(0.05)

    assert scheduler.queue_length == 0


async def test_processor_errors_count_as_failures(
    make_state: Any, safe_sink: SafeSink, fast_settings: CrawlerSettings
) -> None:
    state = make_state()

    async def broken(item: WorkItem) -> None:
        raise RuntimeError("boom")

    scheduler, idle = make_scheduler(state, safe_sink, fast_settings, broken)
    scheduler.enqueue(WorkItem(url="https://example.com/", depth=0))
    scheduler.start()
    await asyncio.wait_for(idle.wait(), timeout=5)

    assert state.stats.failure_count == 1
    assert scheduler.active_count == 0


async def test_start_requires_processor(
    make_state: Any, safe_sink: SafeSink, fast_settings: CrawlerSettings
) -> None:
    scheduler = Scheduler(make_state(), safe_sink, fast_settings)
    with pytest.raises(RuntimeError, match="no processor"):
        scheduler.start()


async def test_start_is_idempotent(
    make_state: Any, safe_sink: SafeSink, fast_settings: CrawlerSettings
) -> None:
    state = make_state()
    scheduler, idle = make_scheduler(
        state, safe_sink, fast_settings, RecordingProcessor(state, hold=0.0)
    )
    scheduler.enqueue(WorkItem(url="https://example.com/", depth=0))

    assert scheduler.start() is scheduler.start()
    await asyncio.wait_for(idle.wait(), timeout=5)


async def test_progress_snapshots_are_emitted(
    make_state: Any, recording_sink: Any, safe_sink: SafeSink, fast_settings: CrawlerSettings
) -> None:
    state = make_state()
    scheduler, idle = make_scheduler(
        state, safe_sink, fast_settings, RecordingProcessor(state, hold=0.0)
    )
    scheduler.enqueue(WorkItem(url="https://example.com/", depth=0))
    scheduler.start()
    await asyncio.wait_for(idle.wait(), timeout=5)

    queue_updates = [u for u in recording_sink.updates if u.queue is not None]
    assert queue_updates
    assert queue_updates[-1].queue.queue_length == 0
    assert queue_updates[-1].stats["pages_scanned"] == 1
