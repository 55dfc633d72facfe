"""Pytest fixtures for sift tests."""

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import httpx
import pytest

from sift.backends import MemoryStorage, SQLiteStorage
from sift.config import CrawlerSettings, SessionOptions
from sift.memory import MemoryStatus
from sift.progress import PageEnvelope, SafeSink, StatsUpdate
from sift.state import FinalStats, SessionState


class RecordingSink:
    """Progress sink that keeps every event for assertions."""

    def __init__(self) -> None:
        self.updates: list[StatsUpdate] = []
        self.pages: list[PageEnvelope] = []
        self.ends: list[FinalStats] = []

    def emit_stats(self, update: StatsUpdate) -> None:
        self.updates.append(update)

    def emit_page(self, page: PageEnvelope) -> None:
        self.pages.append(page)

    def emit_session_end(self, stats: FinalStats) -> None:
        self.ends.append(stats)

    @property
    def logs(self) -> list[str]:
        return [u.log for u in self.updates if u.log]


def html_page(title: str = "Test Page", body: str = "", links: list[str] | None = None) -> str:
    """Build a small HTML document with optional outbound links."""
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links or [])
    return (
        f'<html lang="en"><head><title>{title}</title>'
        '<meta name="description" content="A page used by the sift test suite."></head>'
        f"<body><h1>{title}</h1><p>{body}</p>{anchors}</body></html>"
    )


@pytest.fixture
def fast_settings() -> CrawlerSettings:
    """Settings with short sleeps and backoff so scheduler tests stay fast."""
    return CrawlerSettings(
        retry_base_delay_ms=10,
        retry_max_delay_ms=40,
        idle_sleep_ms=5,
        min_sleep_ms=5,
        link_workers=4,
    )


@pytest.fixture
def make_options() -> Any:
    """Factory for SessionOptions with test-friendly defaults."""

    def factory(**overrides: Any) -> SessionOptions:
        values: dict[str, Any] = {
            "target": "https://example.com/",
            "dynamic": False,
            "respect_robots": False,
            "crawl_delay": 200,
        }
        values.update(overrides)
        return SessionOptions.model_validate(values)

    return factory


@pytest.fixture
def make_state(make_options: Any) -> Any:
    def factory(**overrides: Any) -> SessionState:
        return SessionState(make_options(**overrides))

    return factory


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def safe_sink(recording_sink: RecordingSink) -> SafeSink:
    return SafeSink(recording_sink)


@pytest.fixture
def memory_storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
async def sqlite_storage(tmp_path: Path) -> AsyncGenerator[SQLiteStorage, None]:
    """Initialized SQLite storage in a temporary directory."""
    storage = SQLiteStorage(tmp_path / "crawl.db")
    await storage.initialize()
    yield storage
    await storage.close()


@pytest.fixture
async def http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(follow_redirects=True) as client:
        yield client


@pytest.fixture
def plenty_of_memory() -> MemoryStatus:
    return MemoryStatus(rss_mb=100.0, percent=1.0, available_mb=4096.0, is_low_memory=False)


@pytest.fixture
def low_memory() -> MemoryStatus:
    return MemoryStatus(rss_mb=900.0, percent=50.0, available_mb=64.0, is_low_memory=True)
