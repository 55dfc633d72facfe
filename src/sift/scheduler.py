"""Work-queue scheduler with bounded concurrency and per-domain throttling.

The scheduler owns a FIFO of WorkItems and a dispatch loop that starts one
pipeline task per item, subject to three limits:

- no more than options.max_concurrent_requests tasks in flight
- no two dispatches to the same domain closer than that domain's delay
- nothing new once the session is stopped or the page budget is spent

Items blocked by a domain delay are rotated to the tail of the queue; each pass
looks at every queued item at most once, so one slow domain never starves the
others and never causes a busy loop. Failed fetches come back through
schedule_retry(), which arms a one-shot timer.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sift.config import CrawlerSettings
from sift.progress import SafeSink, StatsUpdate
from sift.state import SessionState
from sift.utils import domain_of

logger = logging.getLogger(__name__)


@dataclass
class WorkItem:
    """One queued (url, depth, retry count) tuple awaiting processing."""

    url: str
    depth: int
    retry_count: int = 0
    parent_url: str | None = None


Processor = Callable[[WorkItem], Awaitable[None]]
IdleCallback = Callable[[], Awaitable[None]]


class Scheduler:
    """Bounded-concurrency dispatch loop over a FIFO of work items.

    Example:
        >>> scheduler = Scheduler(state, sink, settings)
        >>> scheduler.processor = pipeline
        >>> scheduler.enqueue(WorkItem(url="https://example.com/", depth=0))
        >>> scheduler.start()
    """

    def __init__(
        self,
        state: SessionState,
        sink: SafeSink,
        settings: CrawlerSettings | None = None,
        processor: Processor | None = None,
        on_idle: IdleCallback | None = None,
    ) -> None:
        """Initialize scheduler.

        Args:
            state: Shared session state (read for options, delays and the active flag)
            sink: Progress sink receiving a snapshot after every dispatch pass
            settings: Runtime settings (sleep intervals, domain sweep limits)
            processor: Coroutine function invoked once per dispatched item
            on_idle: Called when the loop runs out of work while the session is active
        """
        self.state = state
        self.sink = sink
        self.settings = settings or CrawlerSettings()
        self.processor = processor
        self.on_idle = on_idle

        self._queue: deque[WorkItem] = deque()
        self._queued_urls: set[str] = set()
        self._in_flight_urls: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._retries: set[asyncio.TimerHandle] = set()
        self._next_allowed: dict[str, float] = {}  # domain -> monotonic time
        self._loop_task: asyncio.Task[None] | None = None
        self._wakeup = asyncio.Event()
        self.max_active_observed = 0

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def pending_retries(self) -> int:
        return len(self._retries)

    def is_idle(self) -> bool:
        """True when nothing is queued, in flight, or waiting on a retry timer."""
        return not self._queue and not self._tasks and not self._retries

    def enqueue(self, item: WorkItem, *, from_retry: bool = False) -> bool:
        """Append an item to the tail of the queue.

        The item is dropped if its URL was already visited, or, with duplicate
        filtering on, if the URL is already queued or in flight.

        Args:
            item: Work item to queue
            from_retry: The item is a retry of a fetch that just failed

        Returns:
            True if the item was queued
        """
        if self.state.has_visited(item.url):
            return False
        if self.state.options.filter_duplicates:
            if item.url in self._queued_urls:
                return False
            if item.url in self._in_flight_urls and not from_retry:
                return False
        self._queue.append(item)
        self._queued_urls.add(item.url)
        self._wakeup.set()
        return True

    def schedule_retry(self, item: WorkItem, delay_ms: int) -> asyncio.TimerHandle:
        """Re-enqueue item after delay_ms, provided the session is still active.

        Returns:
            Timer handle; cancelled by clear_retries()
        """
        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._retries.discard(handle)
            if self.state.is_active:
                self.enqueue(item, from_retry=True)
            self._wakeup.set()

        handle = loop.call_later(delay_ms / 1000, fire)
        self._retries.add(handle)
        return handle

    def clear_retries(self) -> None:
        """Cancel every pending retry timer."""
        for handle in self._retries:
            handle.cancel()
        self._retries.clear()
        self._wakeup.set()

    def start(self) -> asyncio.Task[None]:
        """Launch the dispatch loop, or return the already running one.

        Returns:
            The loop task; awaiting it resolves when the loop exits
        """
        if self._loop_task is None:
            if self.processor is None:
                raise RuntimeError("Scheduler has no processor")
            self._loop_task = asyncio.create_task(self._run(), name="sift-scheduler")
        return self._loop_task

    async def await_idle(self) -> None:
        """Wait for the dispatch loop to exit and every in-flight task to finish.

        Safe to call from inside the loop's own idle callback.
        """
        current = asyncio.current_task()
        if self._loop_task is not None and self._loop_task is not current:
            await asyncio.wait({self._loop_task})
        while True:
            pending = {t for t in self._tasks if t is not current}
            if not pending:
                return
            await asyncio.wait(pending)

    async def _run(self) -> None:
        while self.state.is_active and not self.is_idle():
            if not self.state.can_process_more():
                self._drop_remaining()

            deferred_ms = self._dispatch_ready()
            self._emit_progress()

            if deferred_ms is not None:
                delay_ms = max(
                    min(deferred_ms, float(self.state.options.crawl_delay)),
                    float(self.settings.min_sleep_ms),
                )
            else:
                delay_ms = float(self.settings.idle_sleep_ms)
            await self._sleep(delay_ms / 1000)

        self._emit_progress()
        if self.state.is_active and self.on_idle is not None:
            logger.debug("Work queue drained, signalling idle")
            try:
                await self.on_idle()
            except Exception as e:
                logger.error(f"Idle callback failed: {e}", exc_info=True)

    async def _sleep(self, seconds: float) -> None:
        self._wakeup.clear()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def _dispatch_ready(self) -> float | None:
        """Start as many ready items as the concurrency limit allows.

        Returns:
            Shortest remaining wait in ms among items deferred by a domain delay,
            or None if nothing was deferred
        """
        limit = self.state.options.max_concurrent_requests
        deferred_ms: float | None = None
        remaining = len(self._queue)

        while (
            remaining > 0
            and self._queue
            and len(self._tasks) < limit
            and self.state.is_active
        ):
            remaining -= 1
            item = self._queue.popleft()
            domain = domain_of(item.url)
            now = time.monotonic()
            next_allowed = self._next_allowed.get(domain, 0.0)

            if now < next_allowed:
                self._queue.append(item)
                wait_ms = (next_allowed - now) * 1000
                deferred_ms = wait_ms if deferred_ms is None else min(deferred_ms, wait_ms)
                continue

            self._next_allowed[domain] = now + self.state.get_domain_delay(domain) / 1000
            self._queued_urls.discard(item.url)
            self._launch(item)

        self._sweep_domains()
        return deferred_ms

    def _launch(self, item: WorkItem) -> None:
        task = asyncio.create_task(self._process(item), name=f"sift-page:{item.url}")
        self._tasks.add(task)
        self._in_flight_urls.add(item.url)
        self.max_active_observed = max(self.max_active_observed, len(self._tasks))

    async def _process(self, item: WorkItem) -> None:
        assert self.processor is not None
        try:
            await self.processor(item)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.state.record_failure()
            logger.error(f"Unhandled error processing {item.url}: {e}", exc_info=True)
        finally:
            self._in_flight_urls.discard(item.url)
            task = asyncio.current_task()
            if task is not None:
                self._tasks.discard(task)
            self._wakeup.set()

    def _drop_remaining(self) -> None:
        """Discard queued work and pending retries once the page budget is spent."""
        if self._queue or self._retries:
            logger.debug(
                f"Page budget reached, dropping {len(self._queue)} queued items "
                f"and {len(self._retries)} pending retries"
            )
        self._queue.clear()
        self._queued_urls.clear()
        for handle in self._retries:
            handle.cancel()
        self._retries.clear()

    def _sweep_domains(self) -> None:
        """Forget domains whose next allowed dispatch time passed long ago."""
        if len(self._next_allowed) <= self.settings.domain_sweep_threshold:
            return
        cutoff = time.monotonic() - self.settings.domain_entry_expiry
        stale = [d for d, t in self._next_allowed.items() if t < cutoff]
        for domain in stale:
            del self._next_allowed[domain]
        if stale:
            logger.debug(f"Swept {len(stale)} stale domain entries")

    def _emit_progress(self) -> None:
        queue = self.state.snapshot_queue_metrics(len(self._tasks), len(self._queue))
        self.sink.emit_stats(StatsUpdate.of(self.state.stats, queue=queue))
