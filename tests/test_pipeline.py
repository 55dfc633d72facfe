"""Tests for per-page processing: fetch paths, persistence, link policy and retries."""

from typing import Any
from unittest.mock import MagicMock

import httpx
from pytest_httpx import HTTPXMock

from conftest import RecordingSink, html_page
from sift.analysis import ProcessedContent
from sift.backends import MemoryStorage, PageRecord
from sift.config import CrawlerSettings
from sift.pipeline import PagePipeline
from sift.progress import SafeSink
from sift.renderer import RenderResult
from sift.robots import RobotsCache
from sift.scheduler import Scheduler, WorkItem
from sift.state import SessionState

ROOT = "https://example.com/"


class FakeRenderer:
    """Stand-in render engine returning a canned result (or None)."""

    def __init__(self, result: RenderResult | None = None) -> None:
        self.result = result
        self.calls: list[str] = []

    async def render(self, url: str) -> RenderResult | None:
        self.calls.append(url)
        return self.result


def rendered(html: str, status: int = 200) -> RenderResult:
    return RenderResult(
        content=html,
        status_code=status,
        content_type="text/html",
        content_length=len(html.encode("utf-8")),
        title="Rendered title",
        description="Rendered description",
    )


def build_pipeline(
    state: SessionState,
    sink: SafeSink,
    settings: CrawlerSettings,
    client: httpx.AsyncClient,
    storage: Any = None,
    **kwargs: Any,
) -> PagePipeline:
    scheduler = Scheduler(state, sink, settings)
    pipeline = PagePipeline(
        state,
        scheduler,
        sink,
        storage if storage is not None else MemoryStorage(),
        client,
        settings=settings,
        **kwargs,
    )
    scheduler.processor = pipeline
    return pipeline


class TestFetchAndStore:
    async def test_static_page_is_stored_and_links_enqueued(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        recording_sink: RecordingSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_response(
            url=ROOT,
            html=html_page(
                "Home page", links=["/a", "/b/", "https://other.org/x", "/style.css", "/a#top"]
            ),
        )
        state = make_state(crawl_depth=2)
        storage = MemoryStorage()
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client, storage)

        await pipeline(WorkItem(url=ROOT, depth=0))

        page = await storage.get_page(ROOT)
        assert page is not None
        assert page.title == "Home page"
        assert page.description == "A page used by the sift test suite."
        assert page.is_dynamic is False
        assert page.content is not None
        assert page.internal_links_count == 3
        assert page.external_links_count == 1

        assert state.has_visited(ROOT)
        assert state.stats.pages_scanned == 1
        assert state.stats.success_count == 1
        assert state.stats.links_found == 4

        queued = sorted(item.url for item in pipeline.scheduler._queue)
        assert queued == ["https://example.com/a", "https://example.com/b"]
        assert all(item.depth == 1 for item in pipeline.scheduler._queue)

        assert len(recording_sink.pages) == 1
        envelope = recording_sink.pages[0]
        assert envelope.url == ROOT
        assert envelope.domain == "example.com"
        assert envelope.processed_data["analysis"]["language"] == "en"
        assert any(
            log.startswith(f"[Crawler] Crawled {ROOT} (200)") for log in recording_sink.logs
        )
        last = recording_sink.updates[-1]
        assert last.last_processed is not None
        assert last.last_processed.links_count == 4

    async def test_links_not_followed_at_max_depth(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_response(url=ROOT, html=html_page(links=["/a"]))
        state = make_state(crawl_depth=1)
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client)

        await pipeline(WorkItem(url=ROOT, depth=1))

        assert pipeline.scheduler.queue_length == 0
        assert state.stats.links_found == 1

    async def test_page_in_flight_at_stop_is_stored(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        recording_sink: RecordingSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        state = make_state()

        def stop_mid_fetch(request: httpx.Request) -> httpx.Response:
            state.stop()
            return httpx.Response(200, html=html_page("Late page", links=["/a"]))

        httpx_mock.add_callback(stop_mid_fetch, url=ROOT)
        storage = MemoryStorage()
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client, storage)

        await pipeline(WorkItem(url=ROOT, depth=0))

        assert ROOT in storage.pages
        assert state.has_visited(ROOT)
        assert state.stats.pages_scanned == 1
        assert len(recording_sink.pages) == 1
        assert pipeline.scheduler.queue_length == 0

    async def test_redirect_target_is_marked_visited(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_response(
            url="https://example.com/old",
            status_code=301,
            headers={"Location": "https://example.com/new"},
        )
        httpx_mock.add_response(url="https://example.com/new", html=html_page("New"))
        state = make_state()
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client)

        await pipeline(WorkItem(url="https://example.com/old", depth=0))
        await pipeline(WorkItem(url="https://example.com/new", depth=0))

        assert state.has_visited("https://example.com/old")
        assert state.has_visited("https://example.com/new")
        assert state.stats.pages_scanned == 1
        assert len(httpx_mock.get_requests()) == 2

    async def test_redirect_to_visited_page_is_discarded(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_response(
            url="https://example.com/old", status_code=301, headers={"Location": ROOT}
        )
        httpx_mock.add_response(url=ROOT, html=html_page())
        state = make_state()
        state.mark_visited(ROOT)
        storage = MemoryStorage()
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client, storage)

        await pipeline(WorkItem(url="https://example.com/old", depth=0))

        assert state.has_visited("https://example.com/old")
        assert state.stats.pages_scanned == 0
        assert storage.pages == {}

    async def test_full_method_follows_external_links(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_response(url=ROOT, html=html_page(links=["https://other.org/x"]))
        state = make_state(crawl_method="full")
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client)

        await pipeline(WorkItem(url=ROOT, depth=0))

        assert [item.url for item in pipeline.scheduler._queue] == ["https://other.org/x"]

    async def test_content_only_omits_body(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_response(url=ROOT, html=html_page(body="some text"))
        storage = MemoryStorage()
        pipeline = build_pipeline(
            make_state(content_only=True), safe_sink, fast_settings, http_client, storage
        )

        await pipeline(WorkItem(url=ROOT, depth=0))

        page = await storage.get_page(ROOT)
        assert page is not None
        assert page.content is None
        assert page.main_content is None
        assert page.word_count > 0

    async def test_media_is_counted_when_enabled(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        url = "https://example.com/logo.png"
        httpx_mock.add_response(url=url, content=b"\x89PNG", headers={"Content-Type": "image/png"})
        state = make_state(save_media=True, crawl_method="media")
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client)

        await pipeline(WorkItem(url=url, depth=1))

        assert state.stats.media_files == 1

    async def test_storage_failure_does_not_stop_processing(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        recording_sink: RecordingSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        class BrokenStorage(MemoryStorage):
            async def upsert_page(self, record: PageRecord) -> int:
                raise RuntimeError("disk full")

        httpx_mock.add_response(url=ROOT, html=html_page(links=["/a"]))
        state = make_state()
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client, BrokenStorage())

        await pipeline(WorkItem(url=ROOT, depth=0))

        assert state.stats.pages_scanned == 1
        assert pipeline.scheduler.queue_length == 1
        assert recording_sink.pages == []
        assert any("Failed to store" in log for log in recording_sink.logs)


class TestEarlyExit:
    async def test_visited_url_is_not_fetched(
        self,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        state = make_state()
        state.mark_visited(ROOT)
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client)

        await pipeline(WorkItem(url=ROOT, depth=0))

        assert state.stats.pages_scanned == 0

    async def test_budget_spent(
        self,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        state = make_state(max_pages=1)
        state.record_success(10)
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client)

        await pipeline(WorkItem(url=ROOT, depth=0))

        assert state.stats.pages_scanned == 1

    async def test_stopped_session(
        self,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        state = make_state()
        state.stop()
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client)

        await pipeline(WorkItem(url=ROOT, depth=0))

        assert not state.has_visited(ROOT)


class TestRenderPath:
    async def test_rendered_page_skips_static_fetch(
        self,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        renderer = FakeRenderer(rendered(html_page("Rendered title")))
        storage = MemoryStorage()
        pipeline = build_pipeline(
            make_state(dynamic=True),
            safe_sink,
            fast_settings,
            http_client,
            storage,
            renderer=renderer,
        )

        await pipeline(WorkItem(url=ROOT, depth=0))

        page = await storage.get_page(ROOT)
        assert page is not None
        assert page.is_dynamic is True
        assert page.title == "Rendered title"
        assert page.description == "Rendered description"
        assert renderer.calls == [ROOT]

    async def test_render_failure_falls_back_to_static(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_response(url=ROOT, html=html_page("Static title"))
        storage = MemoryStorage()
        pipeline = build_pipeline(
            make_state(dynamic=True),
            safe_sink,
            fast_settings,
            http_client,
            storage,
            renderer=FakeRenderer(None),
        )

        await pipeline(WorkItem(url=ROOT, depth=0))

        page = await storage.get_page(ROOT)
        assert page is not None
        assert page.is_dynamic is False
        assert page.title == "Static title"

    async def test_rendered_error_status_falls_back_to_static(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_response(url=ROOT, html=html_page("Static title"))
        storage = MemoryStorage()
        pipeline = build_pipeline(
            make_state(dynamic=True),
            safe_sink,
            fast_settings,
            http_client,
            storage,
            renderer=FakeRenderer(rendered("<html></html>", status=503)),
        )

        await pipeline(WorkItem(url=ROOT, depth=0))

        page = await storage.get_page(ROOT)
        assert page is not None
        assert page.is_dynamic is False
        assert page.status_code == 200

    async def test_renderer_ignored_when_dynamic_off(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_response(url=ROOT, html=html_page())
        renderer = FakeRenderer(rendered(html_page()))
        pipeline = build_pipeline(
            make_state(dynamic=False), safe_sink, fast_settings, http_client, renderer=renderer
        )

        await pipeline(WorkItem(url=ROOT, depth=0))

        assert renderer.calls == []


class TestAnalysis:
    async def test_analyzer_failure_uses_fallback(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        recording_sink: RecordingSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        def broken_analyzer(html: str, url: str, content_type: str) -> ProcessedContent:
            raise ValueError("cannot analyze")

        httpx_mock.add_response(url=ROOT, html=html_page(links=["/a"]))
        state = make_state()
        pipeline = build_pipeline(
            state, safe_sink, fast_settings, http_client, analyzer=broken_analyzer
        )

        await pipeline(WorkItem(url=ROOT, depth=0))

        assert state.stats.pages_scanned == 1
        assert state.stats.links_found == 0
        envelope = recording_sink.pages[0]
        assert envelope.processed_data["errors"] == [
            {"type": "processor_error", "message": "cannot analyze"}
        ]
        assert envelope.processed_data["analysis"]["quality_issues"] == ["Processing failed"]

    async def test_async_analyzer_is_awaited(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        recording_sink: RecordingSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        async def analyzer(html: str, url: str, content_type: str) -> ProcessedContent:
            return ProcessedContent(url=url, content_type=content_type, main_content="custom")

        httpx_mock.add_response(url=ROOT, html=html_page())
        pipeline = build_pipeline(
            make_state(), safe_sink, fast_settings, http_client, analyzer=analyzer
        )

        await pipeline(WorkItem(url=ROOT, depth=0))

        assert recording_sink.pages[0].processed_data["main_content"] == "custom"


class TestRobotsPolicy:
    async def test_disallowed_external_link_is_skipped_once(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        recording_sink: RecordingSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_response(
            url=ROOT,
            html=html_page(
                links=["https://blocked.org/page", "https://open.org/page", "/internal"]
            ),
        )
        storage = MemoryStorage()
        storage.robots["blocked.org"] = "User-agent: *\nDisallow: /"
        storage.robots["open.org"] = "User-agent: *\nDisallow:\nCrawl-delay: 3"
        robots = RobotsCache(http_client, storage, user_agent=fast_settings.user_agent)
        state = make_state(crawl_method="full", respect_robots=True)
        pipeline = build_pipeline(
            state, safe_sink, fast_settings, http_client, storage, robots=robots
        )

        await pipeline(WorkItem(url=ROOT, depth=0))

        queued = sorted(item.url for item in pipeline.scheduler._queue)
        assert queued == ["https://example.com/internal", "https://open.org/page"]
        assert state.stats.skipped_count == 1
        assert state.get_domain_delay("open.org") == 3000
        assert any("disallowed by robots.txt" in log for log in recording_sink.logs)

    async def test_robots_not_checked_when_disabled(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_response(url=ROOT, html=html_page(links=["https://blocked.org/page"]))
        robots = MagicMock()
        state = make_state(crawl_method="full", respect_robots=False)
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client, robots=robots)

        await pipeline(WorkItem(url=ROOT, depth=0))

        robots.get_rules.assert_not_called()
        assert pipeline.scheduler.queue_length == 1


class TestRetries:
    async def test_failed_fetch_schedules_retry_with_backoff(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        recording_sink: RecordingSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_response(url=ROOT, status_code=500, is_reusable=True)
        state = make_state(retry_limit=3)
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client)
        pipeline.scheduler.schedule_retry = MagicMock()  # type: ignore[method-assign]

        for retry_count in range(3):
            await pipeline(WorkItem(url=ROOT, depth=0, retry_count=retry_count))

        calls = pipeline.scheduler.schedule_retry.call_args_list
        assert [c.args[1] for c in calls] == [10, 20, 40]
        assert [c.args[0].retry_count for c in calls] == [1, 2, 3]
        assert state.stats.failure_count == 3
        assert state.stats.pages_scanned == 0
        assert not state.has_visited(ROOT)
        assert any("HTTP error! status: 500" in log for log in recording_sink.logs)

    async def test_no_retry_after_limit(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_response(url=ROOT, status_code=404)
        state = make_state(retry_limit=1)
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client)

        await pipeline(WorkItem(url=ROOT, depth=0, retry_count=1))

        assert pipeline.scheduler.pending_retries == 0
        assert state.stats.failure_count == 1

    async def test_retry_limit_zero(
        self,
        httpx_mock: HTTPXMock,
        http_client: httpx.AsyncClient,
        make_state: Any,
        safe_sink: SafeSink,
        fast_settings: CrawlerSettings,
    ) -> None:
        httpx_mock.add_exception(httpx.ConnectError("refused"), url=ROOT)
        state = make_state(retry_limit=0)
        pipeline = build_pipeline(state, safe_sink, fast_settings, http_client)

        await pipeline(WorkItem(url=ROOT, depth=0))

        assert pipeline.scheduler.pending_retries == 0
        assert state.stats.failure_count == 1
