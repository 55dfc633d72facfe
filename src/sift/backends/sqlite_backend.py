"""SQLite storage backend.

Persists pages, outbound links and per-domain settings (robots.txt bodies,
allow flags) in a single database file using aiosqlite.
"""

import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from sift.backends.base import LinkRecord, PageRecord
from sift.exceptions import StorageError

SCHEMA = """
CREATE TABLE IF NOT EXISTS pages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT UNIQUE NOT NULL,
    domain TEXT,
    crawled_at TEXT NOT NULL,
    last_modified TEXT,
    content_type TEXT,
    status_code INTEGER,
    data_length INTEGER,
    title TEXT,
    description TEXT,
    content TEXT,
    is_dynamic INTEGER DEFAULT 0,
    main_content TEXT,
    word_count INTEGER DEFAULT 0,
    reading_time INTEGER DEFAULT 0,
    language TEXT DEFAULT 'unknown',
    keywords TEXT,
    quality_score INTEGER DEFAULT 0,
    structured_data TEXT,
    media_count INTEGER DEFAULT 0,
    internal_links_count INTEGER DEFAULT 0,
    external_links_count INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL REFERENCES pages(id) ON DELETE CASCADE,
    target_url TEXT NOT NULL,
    text TEXT,
    UNIQUE(source_id, target_url)
);

CREATE TABLE IF NOT EXISTS domain_settings (
    domain TEXT PRIMARY KEY,
    robots_txt TEXT,
    crawl_delay INTEGER DEFAULT 1000,
    last_crawled TEXT,
    allowed INTEGER DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_pages_domain ON pages(domain);
CREATE INDEX IF NOT EXISTS idx_pages_crawled_at ON pages(crawled_at);
CREATE INDEX IF NOT EXISTS idx_links_source ON links(source_id);
CREATE INDEX IF NOT EXISTS idx_links_target ON links(target_url);
"""

PAGE_COLUMNS = (
    "url",
    "domain",
    "crawled_at",
    "last_modified",
    "content_type",
    "status_code",
    "data_length",
    "title",
    "description",
    "content",
    "is_dynamic",
    "main_content",
    "word_count",
    "reading_time",
    "language",
    "keywords",
    "quality_score",
    "structured_data",
    "media_count",
    "internal_links_count",
    "external_links_count",
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


class SQLiteStorage:
    """SQLite-backed storage.

    Schema:
        pages: id (PK), url (unique), fetch metadata, content and analysis columns
        links: source_id -> pages.id, target_url, text; unique per (source_id, target_url)
        domain_settings: domain (PK), robots_txt, crawl_delay, last_crawled, allowed

    Performance optimizations:
        - WAL mode for concurrent readers
        - Indexes on pages.domain, pages.crawled_at and both link columns
    """

    def __init__(self, path: Path | str) -> None:
        """Initialize SQLite storage.

        Args:
            path: Path to SQLite database file (":memory:" for a private database)
        """
        self.path = path
        self._conn: aiosqlite.Connection | None = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageError("Storage not initialized")
        return self._conn

    async def initialize(self) -> None:
        """Open connection and create schema if needed."""
        if self._conn is not None:
            return
        if isinstance(self.path, Path):
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self.path)
        self._conn.row_factory = sqlite3.Row

        await self._conn.execute("PRAGMA journal_mode = WAL")
        await self._conn.execute("PRAGMA synchronous = NORMAL")
        await self._conn.execute("PRAGMA foreign_keys = ON")
        await self._conn.executescript(SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def upsert_page(self, record: PageRecord) -> int:
        """Insert or update a page keyed by URL.

        Returns:
            Row id of the page
        """
        values = (
            record.url,
            record.domain,
            _now(),
            record.last_modified,
            record.content_type,
            record.status_code,
            record.data_length,
            record.title,
            record.description,
            record.content,
            int(record.is_dynamic),
            record.main_content,
            record.word_count,
            record.reading_time,
            record.language,
            json.dumps(record.keywords),
            record.quality_score,
            json.dumps(record.structured_data),
            record.media_count,
            record.internal_links_count,
            record.external_links_count,
        )
        placeholders = ", ".join("?" for _ in PAGE_COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in PAGE_COLUMNS if col != "url")
        cursor = await self.conn.execute(
            f"""
            INSERT INTO pages ({", ".join(PAGE_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT(url) DO UPDATE SET {updates}
            RETURNING id
            """,
            values,
        )
        row = await cursor.fetchone()
        await cursor.close()
        await self.conn.commit()
        assert row is not None
        return int(row["id"])

    async def insert_links_if_absent(self, page_id: int, links: list[LinkRecord]) -> int:
        """Insert outbound links, ignoring (page_id, url) pairs already stored.

        Returns:
            Number of rows inserted
        """
        if not links:
            return 0
        before = self.conn.total_changes
        await self.conn.executemany(
            "INSERT OR IGNORE INTO links (source_id, target_url, text) VALUES (?, ?, ?)",
            [(page_id, link.url, link.text) for link in links],
        )
        await self.conn.commit()
        return self.conn.total_changes - before

    async def get_robots_record(self, domain: str) -> str | None:
        cursor = await self.conn.execute(
            "SELECT robots_txt FROM domain_settings WHERE domain = ?", (domain,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        text: str | None = row["robots_txt"]
        return text

    async def put_robots_record(self, domain: str, text: str) -> None:
        await self.conn.execute(
            """
            INSERT INTO domain_settings (domain, robots_txt, last_crawled)
            VALUES (?, ?, ?)
            ON CONFLICT(domain) DO UPDATE SET
                robots_txt = excluded.robots_txt,
                last_crawled = excluded.last_crawled
            """,
            (domain, text, _now()),
        )
        await self.conn.commit()

    async def set_domain_allowed(self, domain: str, allowed: bool) -> None:
        await self.conn.execute(
            """
            INSERT INTO domain_settings (domain, allowed) VALUES (?, ?)
            ON CONFLICT(domain) DO UPDATE SET allowed = excluded.allowed
            """,
            (domain, int(allowed)),
        )
        await self.conn.commit()

    async def is_domain_allowed(self, domain: str) -> bool | None:
        """Return the stored allow flag for domain, or None if unknown."""
        cursor = await self.conn.execute(
            "SELECT allowed FROM domain_settings WHERE domain = ?", (domain,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        return None if row is None else bool(row["allowed"])

    async def get_page(self, url: str) -> PageRecord | None:
        cursor = await self.conn.execute(
            f"SELECT {', '.join(PAGE_COLUMNS)} FROM pages WHERE url = ?", (url,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        data = {col: row[col] for col in PAGE_COLUMNS if col != "crawled_at"}
        data["is_dynamic"] = bool(data["is_dynamic"])
        data["keywords"] = json.loads(data["keywords"] or "[]")
        data["structured_data"] = json.loads(data["structured_data"] or "{}")
        return PageRecord(**data)

    async def get_links(self, page_id: int) -> list[LinkRecord]:
        cursor = await self.conn.execute(
            "SELECT target_url, text FROM links WHERE source_id = ? ORDER BY id", (page_id,)
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [LinkRecord(url=row["target_url"], text=row["text"] or "") for row in rows]
