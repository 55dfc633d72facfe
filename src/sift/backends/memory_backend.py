"""In-memory storage backend.

Keeps everything in dictionaries for the lifetime of the process. Used when no
database path is configured and throughout the test suite.
"""

from dataclasses import replace

from sift.backends.base import LinkRecord, PageRecord


class MemoryStorage:
    """Dictionary-backed storage with the same semantics as SQLiteStorage."""

    def __init__(self) -> None:
        self.pages: dict[str, PageRecord] = {}
        self.page_ids: dict[str, int] = {}
        self.links: dict[int, dict[str, LinkRecord]] = {}
        self.robots: dict[str, str] = {}
        self.domain_allowed: dict[str, bool] = {}
        self.upserts = 0
        self._next_id = 1

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def upsert_page(self, record: PageRecord) -> int:
        self.upserts += 1
        self.pages[record.url] = replace(record)
        if record.url not in self.page_ids:
            self.page_ids[record.url] = self._next_id
            self._next_id += 1
        return self.page_ids[record.url]

    async def insert_links_if_absent(self, page_id: int, links: list[LinkRecord]) -> int:
        stored = self.links.setdefault(page_id, {})
        inserted = 0
        for link in links:
            if link.url not in stored:
                stored[link.url] = link
                inserted += 1
        return inserted

    async def get_robots_record(self, domain: str) -> str | None:
        return self.robots.get(domain)

    async def put_robots_record(self, domain: str, text: str) -> None:
        self.robots[domain] = text

    async def set_domain_allowed(self, domain: str, allowed: bool) -> None:
        self.domain_allowed[domain] = allowed

    async def get_page(self, url: str) -> PageRecord | None:
        return self.pages.get(url)

    async def get_links(self, page_id: int) -> list[LinkRecord]:
        return list(self.links.get(page_id, {}).values())
