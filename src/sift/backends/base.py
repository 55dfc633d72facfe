"""Storage protocol for crawl results.

Defines the records the page pipeline persists and the interface every storage
backend implements. Page writes are idempotent upserts keyed by URL; link writes
silently ignore duplicates, so at-least-once delivery never produces errors.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class PageRecord:
    """One crawled page as persisted by the pipeline."""

    url: str
    domain: str
    status_code: int
    content_type: str
    data_length: int
    title: str = ""
    description: str = ""
    content: str | None = None
    is_dynamic: bool = False
    last_modified: str | None = None
    main_content: str | None = None
    word_count: int = 0
    reading_time: int = 0
    language: str = "unknown"
    keywords: list[str] = field(default_factory=list)
    quality_score: int = 0
    structured_data: dict[str, Any] = field(default_factory=dict)
    media_count: int = 0
    internal_links_count: int = 0
    external_links_count: int = 0


@dataclass(frozen=True)
class LinkRecord:
    """Outbound link discovered on a page."""

    url: str
    text: str = ""


class Storage(Protocol):
    """Interface for crawl result persistence.

    Implementations handle their own formats while providing a consistent async
    interface. initialize() and close() must be idempotent.
    """

    async def initialize(self) -> None:
        """Open connections and create schema if needed."""
        ...

    async def close(self) -> None:
        """Close connections and release resources."""
        ...

    async def upsert_page(self, record: PageRecord) -> int:
        """Insert or update the page with record.url.

        Returns:
            Stable page id (the same id on every upsert of one URL)
        """
        ...

    async def insert_links_if_absent(self, page_id: int, links: list[LinkRecord]) -> int:
        """Insert (page_id, link.url) pairs, ignoring pairs that already exist.

        Returns:
            Number of links actually inserted
        """
        ...

    async def get_robots_record(self, domain: str) -> str | None:
        """Return the stored robots.txt body for domain, if any."""
        ...

    async def put_robots_record(self, domain: str, text: str) -> None:
        """Store the robots.txt body for domain."""
        ...

    async def set_domain_allowed(self, domain: str, allowed: bool) -> None:
        """Record whether crawling domain is permitted."""
        ...

    async def get_page(self, url: str) -> PageRecord | None:
        """Load a stored page by URL."""
        ...

    async def get_links(self, page_id: int) -> list[LinkRecord]:
        """Load the stored outbound links of a page."""
        ...
