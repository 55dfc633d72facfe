"""Progress events and sinks.

The crawl core reports progress through a ProgressSink: a stats update after
every scheduler pass and every processed page, a full page envelope for each
stored page, and a single session-end event. Delivery is best-effort; a sink
that raises is logged and otherwise ignored.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from sift.state import CrawlStats, FinalStats, QueueStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageSummary:
    """Short description of the most recently processed page."""

    url: str
    word_count: int
    quality_score: int
    language: str
    media_count: int
    links_count: int


@dataclass(frozen=True)
class StatsUpdate:
    """Progress snapshot: counters plus optional queue metrics, log line and page summary."""

    stats: dict[str, int]
    queue: QueueStats | None = None
    log: str | None = None
    last_processed: PageSummary | None = None

    @classmethod
    def of(cls, stats: CrawlStats, **kwargs: Any) -> "StatsUpdate":
        return cls(stats=stats.to_dict(), **kwargs)


@dataclass(frozen=True)
class PageEnvelope:
    """A stored page as delivered to the caller."""

    id: int
    url: str
    title: str
    description: str
    content_type: str
    domain: str
    processed_data: dict[str, Any] = field(default_factory=dict)


ProgressEvent = StatsUpdate | PageEnvelope | FinalStats


class ProgressSink(Protocol):
    """Receiver of crawl progress events."""

    def emit_stats(self, update: StatsUpdate) -> None:
        """Deliver a stats snapshot."""
        ...

    def emit_page(self, page: PageEnvelope) -> None:
        """Deliver a processed page."""
        ...

    def emit_session_end(self, stats: FinalStats) -> None:
        """Deliver the final summary. Called exactly once per session."""
        ...


class SafeSink:
    """Wraps a sink so that a failing consumer never disturbs the crawl."""

    def __init__(self, sink: ProgressSink) -> None:
        self._sink = sink

    def emit_stats(self, update: StatsUpdate) -> None:
        try:
            self._sink.emit_stats(update)
        except Exception as e:
            logger.debug(f"Progress sink dropped stats update: {e}")

    def emit_page(self, page: PageEnvelope) -> None:
        try:
            self._sink.emit_page(page)
        except Exception as e:
            logger.debug(f"Progress sink dropped page {page.url}: {e}")

    def emit_session_end(self, stats: FinalStats) -> None:
        try:
            self._sink.emit_session_end(stats)
        except Exception as e:
            logger.warning(f"Progress sink failed to deliver session end: {e}")

    def log(self, message: str, stats: CrawlStats, level: int = logging.INFO) -> None:
        """Log a human-readable line and forward it with the current counters."""
        logger.log(level, message)
        self.emit_stats(StatsUpdate.of(stats, log=message))


class LoggingSink:
    """Default sink: page events go to the debug log, the summary to info."""

    def emit_stats(self, update: StatsUpdate) -> None:
        pass

    def emit_page(self, page: PageEnvelope) -> None:
        logger.debug(f"Stored page {page.id}: {page.url}")

    def emit_session_end(self, stats: FinalStats) -> None:
        logger.info(
            f"Session finished: {stats.pages_scanned} pages, {stats.links_found} links, "
            f"{stats.total_data}KB, success rate {stats.success_rate}"
        )


class QueueSink:
    """Buffers events in an asyncio.Queue for a consumer iterating events().

    Example:
        >>> sink = QueueSink()
        >>> session = await start_session(options, storage=storage, sink=sink)
        >>> async for event in sink.events():
        ...     print(event)
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _put(self, event: ProgressEvent | None) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    def emit_stats(self, update: StatsUpdate) -> None:
        self._put(update)

    def emit_page(self, page: PageEnvelope) -> None:
        self._put(page)

    def emit_session_end(self, stats: FinalStats) -> None:
        self._put(stats)
        self._put(None)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events until the session-end event has been delivered."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class RichSink:
    """Prints log lines and the final summary to a Rich console."""

    def __init__(self, console: Console | None = None, show_pages: bool = False) -> None:
        self.console = console or Console()
        self.show_pages = show_pages

    def emit_stats(self, update: StatsUpdate) -> None:
        if update.log:
            style = "red" if "Error" in update.log or "Failed" in update.log else "cyan"
            self.console.print(update.log, style=style, markup=False, highlight=False)

    def emit_page(self, page: PageEnvelope) -> None:
        if self.show_pages:
            self.console.print(f"[dim]Stored #{page.id}[/dim] {escape(page.title or page.url)}")

    def emit_session_end(self, stats: FinalStats) -> None:
        table = Table(title="Crawl Summary")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white")

        elapsed = stats.elapsed_time
        table.add_row("Pages scanned", str(stats.pages_scanned))
        table.add_row("Links found", str(stats.links_found))
        table.add_row("Data", f"{stats.total_data} KB")
        table.add_row("Media files", str(stats.media_files))
        table.add_row("Succeeded", str(stats.success_count))
        table.add_row("Failed", str(stats.failure_count))
        table.add_row("Skipped", str(stats.skipped_count))
        table.add_row(
            "Elapsed", f"{elapsed['hours']}h {elapsed['minutes']}m {elapsed['seconds']}s"
        )
        table.add_row("Pages/second", stats.pages_per_second)
        table.add_row("Success rate", stats.success_rate)
        self.console.print(table)
