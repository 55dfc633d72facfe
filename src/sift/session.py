"""Crawl session: the composition root.

A Session wires options, state, render engine, robots cache, scheduler and
page pipeline together and owns the start/stop lifecycle. Process-level
concerns (signal handling, logging setup) belong to the caller; the CLI shows
one way to do it.

Example:
    >>> storage = create_storage("crawl.db")
    >>> session = await start_session({"target": "example.com", "max_pages": 20}, storage=storage)
    >>> stats = await session.wait_closed()
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

import httpx

from sift.analysis import Analyzer
from sift.backends.base import Storage
from sift.config import CrawlerSettings, SessionOptions
from sift.http_client import create_http_client
from sift.pipeline import PagePipeline
from sift.progress import LoggingSink, ProgressSink, SafeSink
from sift.renderer import RenderEngine
from sift.robots import RobotsCache
from sift.scheduler import Scheduler, WorkItem
from sift.state import CrawlStats, FinalStats, SessionState
from sift.urls import normalize_url
from sift.utils import domain_of

logger = logging.getLogger(__name__)


class Session:
    """One crawl from a seed URL to natural exhaustion or an explicit stop()."""

    def __init__(
        self,
        options: SessionOptions | Mapping[str, Any],
        *,
        storage: Storage,
        sink: ProgressSink | None = None,
        client: httpx.AsyncClient | None = None,
        renderer: RenderEngine | None = None,
        analyzer: Analyzer | None = None,
        settings: CrawlerSettings | None = None,
    ) -> None:
        """Initialize session.

        Args:
            options: Validated options, or a raw mapping to validate and clamp
            storage: Storage backend (initialized by start() if needed)
            sink: Progress sink (defaults to LoggingSink)
            client: HTTP client; one is created and owned by the session if omitted
            renderer: Render engine; created from settings if omitted
            analyzer: Content analysis function (defaults to ContentAnalyzer)
            settings: Runtime settings (defaults to CrawlerSettings.from_env())

        Raises:
            ConfigError: If the target URL is missing or invalid
        """
        if isinstance(options, SessionOptions):
            self.options = options
        else:
            self.options = SessionOptions.parse(dict(options))
        self.settings = settings or CrawlerSettings.from_env()
        self.storage = storage
        self.sink = SafeSink(sink or LoggingSink())
        self.state = SessionState(self.options)

        self._owns_client = client is None
        self.client = client or create_http_client(
            self.settings, max_connections=self.options.max_concurrent_requests * 2
        )
        self.renderer = renderer or RenderEngine(self.settings, enabled=self.options.dynamic)
        self.robots = (
            RobotsCache(
                self.client,
                storage,
                user_agent=self.settings.user_agent,
                timeout=self.settings.robots_timeout,
                max_entries=self.settings.robots_cache_size,
                ttl=self.settings.robots_cache_ttl,
            )
            if self.options.respect_robots
            else None
        )
        self.scheduler = Scheduler(self.state, self.sink, self.settings, on_idle=self._on_idle)
        self.pipeline = PagePipeline(
            self.state,
            self.scheduler,
            self.sink,
            storage,
            self.client,
            renderer=self.renderer,
            robots=self.robots,
            analyzer=analyzer,
            settings=self.settings,
        )
        self.scheduler.processor = self.pipeline

        self.final_stats: FinalStats | None = None
        self._started = False
        self._ended = asyncio.Event()

    @property
    def stats(self) -> CrawlStats:
        return self.state.stats

    @property
    def is_active(self) -> bool:
        return self.state.is_active

    @property
    def is_closed(self) -> bool:
        return self._ended.is_set()

    async def start(self) -> None:
        """Initialize rendering, check the target's robots.txt and seed the queue.

        Returns once the dispatch loop is running (or the session has already
        ended because the target is disallowed). Calling start() again is a no-op.
        """
        if self._started:
            return
        self._started = True

        await self.storage.initialize()

        init = await self.renderer.initialize()
        if init.fallback_log:
            self.sink.log(f"[Crawler] {init.fallback_log}", self.stats)

        target = normalize_url(self.options.target)
        domain = domain_of(target)

        if self.robots is not None:
            rules = await self.robots.get_rules(domain, strict=self.settings.strict_robots)
            if rules is None or not rules.is_allowed(target, self.robots.user_agent):
                self.sink.log(
                    f"[Crawler] Crawling disallowed by robots.txt for {target}",
                    self.stats,
                    logging.WARNING,
                )
                try:
                    await self.storage.set_domain_allowed(domain, False)
                except Exception as e:
                    logger.error(f"Failed to record disallowed domain {domain}: {e}")
                await self.stop()
                return

            crawl_delay = rules.get_crawl_delay(self.robots.user_agent)
            if crawl_delay:
                delay_ms = max(int(crawl_delay * 1000), self.options.crawl_delay)
                self.state.set_domain_delay(domain, delay_ms)
                self.sink.log(
                    f"[Crawler] Using robots.txt crawl-delay of {delay_ms}ms for {domain}",
                    self.stats,
                )

        self.sink.log(
            f"[Crawler] Starting crawl of {target} (depth {self.options.crawl_depth}, "
            f"max {self.options.max_pages} pages, method {self.options.crawl_method})",
            self.stats,
        )
        self.scheduler.enqueue(WorkItem(url=target, depth=0))
        self.scheduler.start()

    async def stop(self) -> FinalStats:
        """Stop the session and wait for in-flight pages to drain.

        Idempotent: later calls wait for the first one to finish and return the
        same summary. The session-end event is emitted exactly once.

        Returns:
            Final session statistics
        """
        if not self.state.stop():
            await self._ended.wait()
            assert self.final_stats is not None
            return self.final_stats

        logger.debug("Stopping session")
        self.final_stats = self.state.build_final_stats()
        try:
            self.scheduler.clear_retries()
            await self.scheduler.await_idle()
            self.final_stats = self.state.build_final_stats()

            await self.renderer.close()
            if self._owns_client:
                try:
                    await self.client.aclose()
                except Exception as e:
                    logger.warning(f"Failed to close HTTP client: {e}")

            stats = self.final_stats
            self.sink.log(
                f"[Crawler] Crawl finished: {stats.pages_scanned} pages, "
                f"{stats.links_found} links, {stats.total_data}KB, "
                f"{stats.failure_count} failures, {stats.skipped_count} skipped",
                self.stats,
            )
            self.sink.emit_session_end(stats)
        finally:
            self._ended.set()
        return self.final_stats

    async def wait_closed(self) -> FinalStats:
        """Wait until the session has ended and return its summary."""
        await self._ended.wait()
        assert self.final_stats is not None
        return self.final_stats

    async def run(self) -> FinalStats:
        """Start the session and wait for it to end."""
        await self.start()
        return await self.wait_closed()

    async def _on_idle(self) -> None:
        await self.stop()


async def start_session(
    options: SessionOptions | Mapping[str, Any],
    *,
    storage: Storage,
    sink: ProgressSink | None = None,
    client: httpx.AsyncClient | None = None,
    renderer: RenderEngine | None = None,
    analyzer: Analyzer | None = None,
    settings: CrawlerSettings | None = None,
) -> Session:
    """Create and start a session.

    Raises:
        ConfigError: If the target URL is missing or invalid
    """
    session = Session(
        options,
        storage=storage,
        sink=sink,
        client=client,
        renderer=renderer,
        analyzer=analyzer,
        settings=settings,
    )
    await session.start()
    return session
