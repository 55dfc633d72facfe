"""Session-scoped crawl state.

SessionState is the single mutable record shared by the scheduler and the page
pipeline: the visited set, per-domain delay overrides, running counters, and the
active flag. It performs no I/O.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any

from sift.config import SessionOptions


@dataclass
class CrawlStats:
    """Running counters for a session. Counters only ever increase."""

    pages_scanned: int = 0
    links_found: int = 0
    total_data: int = 0  # KB
    media_files: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    total_bytes: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class QueueStats:
    """Scheduler snapshot emitted on every dispatch pass."""

    active_requests: int
    queue_length: int
    elapsed_time: int  # seconds
    pages_per_second: float


@dataclass(frozen=True)
class FinalStats:
    """Summary reported once when a session ends."""

    pages_scanned: int
    links_found: int
    total_data: int  # KB
    media_files: int
    success_count: int
    failure_count: int
    skipped_count: int
    elapsed_time: dict[str, int]
    pages_per_second: str
    success_rate: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SessionState:
    """Mutable state for one crawl session.

    The active flag transitions from True to False exactly once, via stop().
    The visited set only grows.
    """

    options: SessionOptions
    stats: CrawlStats = field(default_factory=CrawlStats)
    visited: set[str] = field(default_factory=set)
    domain_delays: dict[str, int] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)
    _active: bool = field(default=True, repr=False)

    @property
    def is_active(self) -> bool:
        return self._active

    def stop(self) -> bool:
        """Deactivate the session.

        Returns:
            True on the first call, False if the session was already stopped
        """
        if not self._active:
            return False
        self._active = False
        return True

    def can_process_more(self) -> bool:
        """True while the session is active and the page budget is not exhausted."""
        return self._active and self.stats.pages_scanned < self.options.max_pages

    @property
    def budget_spent(self) -> bool:
        return self.stats.pages_scanned >= self.options.max_pages

    def has_visited(self, url: str) -> bool:
        return url in self.visited

    def mark_visited(self, url: str) -> None:
        self.visited.add(url)

    def set_domain_delay(self, domain: str, delay_ms: int) -> None:
        self.domain_delays[domain] = delay_ms

    def get_domain_delay(self, domain: str) -> int:
        """Delay in ms between dispatches to domain, defaulting to the session crawl delay."""
        return self.domain_delays.get(domain, self.options.crawl_delay)

    def has_domain_delay(self, domain: str) -> bool:
        return domain in self.domain_delays

    def record_success(self, content_length: int) -> None:
        """Count one fetched page of content_length bytes."""
        self.stats.pages_scanned += 1
        self.stats.success_count += 1
        self.stats.total_bytes += content_length
        self.stats.total_data += content_length // 1024

    def record_failure(self) -> None:
        self.stats.failure_count += 1

    def record_skip(self) -> None:
        self.stats.skipped_count += 1

    def add_links(self, count: int) -> None:
        self.stats.links_found += count

    def add_media(self, count: int = 1) -> None:
        self.stats.media_files += count

    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at

    def snapshot_queue_metrics(self, active_requests: int, queue_length: int) -> QueueStats:
        """Build the scheduler progress snapshot."""
        elapsed = self.elapsed_seconds()
        rate = self.stats.pages_scanned / elapsed if elapsed > 0 else 0.0
        return QueueStats(
            active_requests=active_requests,
            queue_length=queue_length,
            elapsed_time=int(elapsed),
            pages_per_second=round(rate, 2),
        )

    def build_final_stats(self) -> FinalStats:
        """Build the end-of-session summary.

        Example:
            >>> state = SessionState(SessionOptions(target="example.com"))
            >>> state.build_final_stats().success_rate
            '0.0%'
        """
        elapsed = self.elapsed_seconds()
        total_seconds = int(elapsed)
        rate = self.stats.pages_scanned / elapsed if elapsed > 0 else 0.0
        attempts = self.stats.success_count + self.stats.failure_count
        success_rate = (
            f"{self.stats.success_count / attempts * 100:.1f}%" if attempts > 0 else "0.0%"
        )
        return FinalStats(
            pages_scanned=self.stats.pages_scanned,
            links_found=self.stats.links_found,
            total_data=self.stats.total_data,
            media_files=self.stats.media_files,
            success_count=self.stats.success_count,
            failure_count=self.stats.failure_count,
            skipped_count=self.stats.skipped_count,
            elapsed_time={
                "hours": total_seconds // 3600,
                "minutes": (total_seconds % 3600) // 60,
                "seconds": total_seconds % 60,
            },
            pages_per_second=f"{rate:.2f}",
            success_rate=success_rate,
        )
