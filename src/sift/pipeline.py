"""Per-page processing pipeline.

Each dispatched WorkItem runs through:

1. Early exit when the page budget is spent, the URL was visited, or the
   session stopped
2. Fetch: render engine first, static HTTP as fallback
3. Mark visited and count the page (only after a successful fetch)
4. Sanitize and analyze (analysis failures yield a fallback result)
5. Persist the page and its outbound links
6. Evaluate discovered links against depth, scope, robots and dedupe policy,
   then enqueue survivors at depth + 1
7. Emit a stats update and the page envelope

A failed fetch is counted, logged, and retried with exponential backoff until
the retry limit is reached.
"""

import asyncio
import inspect
import logging
from collections.abc import Iterator
from dataclasses import dataclass, replace

import httpx

from sift.analysis import (
    Analyzer,
    ContentAnalyzer,
    ExtractedLink,
    ProcessedContent,
    fallback_processed_content,
    is_media_content_type,
)
from sift.backends.base import LinkRecord, PageRecord, Storage
from sift.config import CrawlerSettings
from sift.http_client import fetch_static
from sift.markup import extract_metadata, sanitize_html
from sift.progress import PageEnvelope, PageSummary, SafeSink, StatsUpdate
from sift.renderer import RenderEngine
from sift.robots import RobotsCache
from sift.scheduler import Scheduler, WorkItem
from sift.state import SessionState
from sift.urls import is_crawlable, normalize_url
from sift.utils import domain_of

logger = logging.getLogger(__name__)


@dataclass
class FetchedPage:
    """Content of a successfully fetched page, from either fetch path."""

    url: str
    content: str
    status_code: int
    content_type: str
    content_length: int
    title: str = ""
    description: str = ""
    last_modified: str | None = None
    is_dynamic: bool = False
    final_url: str | None = None

    @property
    def is_html(self) -> bool:
        return "html" in self.content_type.lower()


class PagePipeline:
    """Processes one WorkItem end to end. Instances are callable.

    Example:
        >>> pipeline = PagePipeline(state, scheduler, sink, storage, client)
        >>> scheduler.processor = pipeline
    """

    def __init__(
        self,
        state: SessionState,
        scheduler: Scheduler,
        sink: SafeSink,
        storage: Storage,
        client: httpx.AsyncClient,
        renderer: RenderEngine | None = None,
        robots: RobotsCache | None = None,
        analyzer: Analyzer | None = None,
        settings: CrawlerSettings | None = None,
    ) -> None:
        """Initialize pipeline.

        Args:
            state: Shared session state
            scheduler: Receives discovered links and retries
            sink: Progress sink
            storage: Page and link persistence
            client: HTTP client for static fetches
            renderer: Render engine (None = static fetching only)
            robots: robots.txt cache (None = robots checks off)
            analyzer: Content analysis function (defaults to ContentAnalyzer)
            settings: Runtime settings
        """
        self.state = state
        self.scheduler = scheduler
        self.sink = sink
        self.storage = storage
        self.client = client
        self.renderer = renderer
        self.robots = robots
        self.analyzer: Analyzer = analyzer or ContentAnalyzer()
        self.settings = settings or CrawlerSettings()
        self.target_domain = domain_of(state.options.target)

    async def __call__(self, item: WorkItem) -> None:
        await self.process(item)

    async def process(self, item: WorkItem) -> None:
        """Run one work item through the pipeline. Never raises for fetch failures."""
        if (
            not self.state.can_process_more()
            or self.state.has_visited(item.url)
            or not self.state.is_active
        ):
            return

        try:
            page = await self.fetch(item)
        except Exception as e:
            self._handle_fetch_failure(item, e)
            return

        # A page already in flight when the session stops still drains
        if self.state.budget_spent or self.state.has_visited(item.url):
            logger.debug(f"Discarding {item.url}: page budget reached or already visited")
            return

        self.state.mark_visited(item.url)
        final_url = self._final_url(page)
        if final_url is not None:
            if self.state.has_visited(final_url):
                logger.debug(f"Discarding {item.url}: redirected to visited {final_url}")
                return
            self.state.mark_visited(final_url)
        self.state.record_success(page.content_length)
        await self._process_page(item, page)

    async def fetch(self, item: WorkItem) -> FetchedPage:
        """Fetch a page, preferring the render engine.

        Raises:
            FetchError: Static fetch returned a non-2xx status or too large a body
            httpx.HTTPError: Static fetch transport error
            TimeoutError: Static fetch deadline expired
            Exception: Non-recoverable render error
        """
        page: FetchedPage | None = None

        if self.renderer is not None and self.state.options.dynamic:
            rendered = await self.renderer.render(item.url)
            if rendered is not None and not 200 <= rendered.status_code < 300:
                logger.debug(
                    f"Rendered {item.url} returned {rendered.status_code}, trying static fetch"
                )
                rendered = None
            if rendered is not None:
                page = FetchedPage(
                    url=item.url,
                    content=rendered.content,
                    status_code=rendered.status_code,
                    content_type=rendered.content_type or "text/html",
                    content_length=rendered.content_length,
                    title=rendered.title,
                    description=rendered.description,
                    last_modified=rendered.last_modified,
                    is_dynamic=True,
                    final_url=rendered.final_url,
                )

        if page is None:
            result = await fetch_static(
                self.client,
                item.url,
                timeout=self.settings.static_fetch_timeout,
                max_bytes=self.settings.max_response_bytes,
            )
            page = FetchedPage(
                url=item.url,
                content=result.content,
                status_code=result.status_code,
                content_type=result.content_type,
                content_length=result.content_length or len(result.content.encode("utf-8")),
                last_modified=result.last_modified,
                is_dynamic=False,
                final_url=result.final_url,
            )

        if page.is_html and (not page.title or not page.description):
            metadata = extract_metadata(page.content)
            page.title = page.title or metadata.title
            page.description = page.description or metadata.description
        return page

    def _final_url(self, page: FetchedPage) -> str | None:
        """Normalized post-redirect URL, or None when the fetch did not move."""
        if not page.final_url:
            return None
        try:
            final_url = normalize_url(page.final_url)
        except ValueError:
            return None
        return None if final_url == page.url else final_url

    async def analyze(self, html: str, url: str, content_type: str) -> ProcessedContent:
        """Run the analyzer, substituting a fallback result if it raises."""
        try:
            result = self.analyzer(html, url, content_type)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            logger.warning(f"Content analysis failed for {url}: {e}")
            return fallback_processed_content(url, content_type, e)

    async def _process_page(self, item: WorkItem, page: FetchedPage) -> None:
        options = self.state.options
        domain = domain_of(item.url)

        body = sanitize_html(page.content) if page.is_html else page.content
        processed = await self.analyze(body, item.url, page.content_type)
        analysis = processed.analysis
        links = processed.links
        self.state.add_links(len(links))

        if (
            options.save_media
            and options.crawl_method in ("media", "full")
            and is_media_content_type(page.content_type)
        ):
            self.state.add_media()

        record = PageRecord(
            url=item.url,
            domain=domain,
            status_code=page.status_code,
            content_type=page.content_type,
            data_length=page.content_length,
            title=page.title or processed.metadata.get("title", ""),
            description=page.description or processed.metadata.get("description", ""),
            content=None if options.content_only else body,
            is_dynamic=page.is_dynamic,
            last_modified=page.last_modified,
            main_content=None if options.content_only else processed.main_content,
            word_count=analysis.word_count,
            reading_time=analysis.reading_time,
            language=analysis.language,
            keywords=[str(k.get("word", "")) for k in analysis.keywords],
            quality_score=analysis.quality_score,
            structured_data=processed.extracted_data,
            media_count=len(processed.media),
            internal_links_count=sum(1 for link in links if link.is_internal),
            external_links_count=sum(1 for link in links if not link.is_internal),
        )

        page_id: int | None = None
        try:
            page_id = await self.storage.upsert_page(record)
            if links:
                await self.storage.insert_links_if_absent(
                    page_id, [LinkRecord(url=link.url, text=link.text) for link in links]
                )
        except Exception as e:
            logger.error(f"Failed to store {item.url}: {e}", exc_info=True)
            self.sink.log(
                f"[Crawler] Failed to store {item.url}: {e}", self.state.stats, logging.ERROR
            )

        if page.is_html and links and item.depth < options.crawl_depth:
            await self.enqueue_links(item, links)

        log_line = (
            f"[Crawler] Crawled {item.url} ({page.status_code}) | "
            f"{page.content_length // 1024}KB | {analysis.word_count} words | "
            f"Lang: {analysis.language} | Quality: {analysis.quality_score}/100 | "
            f"{len(links)} links | {len(processed.media)} media"
        )
        logger.info(log_line)
        self.sink.emit_stats(
            StatsUpdate.of(
                self.state.stats,
                log=log_line,
                last_processed=PageSummary(
                    url=item.url,
                    word_count=analysis.word_count,
                    quality_score=analysis.quality_score,
                    language=analysis.language,
                    media_count=len(processed.media),
                    links_count=len(links),
                ),
            )
        )

        if page_id is not None:
            self.sink.emit_page(
                PageEnvelope(
                    id=page_id,
                    url=item.url,
                    title=record.title,
                    description=record.description,
                    content_type=page.content_type,
                    domain=domain,
                    processed_data=processed.to_dict(),
                )
            )

    async def enqueue_links(self, item: WorkItem, links: list[ExtractedLink]) -> None:
        """Filter discovered links and enqueue survivors at item.depth + 1.

        Links are evaluated by a small fixed pool of workers so robots.txt
        lookups for a large page do not fan out all at once.
        """
        crawl_external = self.state.options.crawl_method == "full"
        candidates: list[ExtractedLink] = []
        for link in links:
            try:
                url = normalize_url(link.url)
            except ValueError:
                continue
            if not is_crawlable(url):
                continue
            if not crawl_external and not link.is_internal:
                continue
            if self.state.has_visited(url):
                continue
            candidates.append(replace(link, url=url))

        if not candidates:
            return

        current_domain = domain_of(item.url)
        pending: Iterator[ExtractedLink] = iter(candidates)

        async def worker() -> None:
            for link in pending:
                if not self.state.is_active:
                    return
                await self._evaluate_link(item, link, current_domain)

        workers = min(self.settings.link_workers, len(candidates))
        await asyncio.gather(*(worker() for _ in range(workers)))

    async def _evaluate_link(self, item: WorkItem, link: ExtractedLink, current_domain: str) -> None:
        options = self.state.options
        domain = domain_of(link.url)

        if (
            options.respect_robots
            and self.robots is not None
            and domain not in (current_domain, self.target_domain)
        ):
            try:
                rules = await self.robots.get_rules(domain, strict=self.settings.strict_robots)
            except Exception as e:
                logger.warning(f"robots.txt lookup failed for {domain}: {e}")
                rules = None

            user_agent = self.robots.user_agent
            if rules is None or not rules.is_allowed(link.url, user_agent):
                self.state.record_skip()
                self.sink.log(
                    f"[Crawler] Skipping {link.url} (disallowed by robots.txt)", self.state.stats
                )
                return

            if not self.state.has_domain_delay(domain):
                crawl_delay = rules.get_crawl_delay(user_agent)
                delay_ms = options.crawl_delay
                if crawl_delay:
                    delay_ms = max(int(crawl_delay * 1000), options.crawl_delay)
                    logger.info(f"Using robots.txt crawl-delay of {delay_ms}ms for {domain}")
                self.state.set_domain_delay(domain, delay_ms)

        self.scheduler.enqueue(WorkItem(url=link.url, depth=item.depth + 1, parent_url=item.url))

    def _handle_fetch_failure(self, item: WorkItem, error: Exception) -> None:
        options = self.state.options
        self.state.record_failure()
        reason = str(error) or type(error).__name__
        self.sink.log(
            f"[Crawler] Error fetching {item.url}: {reason}", self.state.stats, logging.WARNING
        )

        if item.retry_count < options.retry_limit and self.state.is_active:
            delay_ms = self.settings.backoff_ms(item.retry_count)
            retry = replace(item, retry_count=item.retry_count + 1)
            self.sink.log(
                f"[Crawler] Retrying {item.url} in {delay_ms}ms "
                f"(attempt {retry.retry_count}/{options.retry_limit})",
                self.state.stats,
            )
            self.scheduler.schedule_retry(retry, delay_ms)
        else:
            logger.info(f"Giving up on {item.url} after {item.retry_count} retries")
