"""robots.txt policy cache.

Resolves crawl permission and crawl-delay per domain. Lookups go to an in-memory
LRU cache first, then to persistent storage, and only then to the network. A
robots.txt that cannot be fetched yields permissive rules, unless strict mode is
requested, in which case the caller gets None and must treat it as disallow.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field

import httpx
from robotexclusionrulesparser import RobotExclusionRulesParser

from sift.backends.base import Storage

logger = logging.getLogger(__name__)


@dataclass
class RobotsRules:
    """Parsed robots.txt for one domain."""

    domain: str
    text: str
    fetched_at: float = field(default_factory=time.time)
    parser: RobotExclusionRulesParser = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.parser = RobotExclusionRulesParser()
        self.parser.parse(self.text)

    def is_allowed(self, url: str, user_agent: str) -> bool:
        return bool(self.parser.is_allowed(user_agent, url))

    def get_crawl_delay(self, user_agent: str) -> float | None:
        """Crawl-delay directive in seconds, or None if unspecified."""
        delay = self.parser.get_crawl_delay(user_agent)
        return float(delay) if delay is not None else None

    @classmethod
    def permissive(cls, domain: str) -> "RobotsRules":
        return cls(domain=domain, text="")


class RobotsCache:
    """Per-domain robots.txt cache backed by storage and HTTP.

    Example:
        >>> cache = RobotsCache(client, storage, user_agent="SiftCrawler/1.0")
        >>> rules = await cache.get_rules("example.com")
        >>> rules.is_allowed("https://example.com/private", cache.user_agent)
        False
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        storage: Storage | None,
        user_agent: str,
        timeout: float = 5.0,
        max_entries: int = 100,
        ttl: float = 3600.0,
    ) -> None:
        """Initialize robots cache.

        Args:
            client: HTTP client for fetching robots.txt files
            storage: Persistent store for fetched robots.txt bodies (optional)
            user_agent: Agent name sent with requests and matched against rules
            timeout: Fetch timeout in seconds
            max_entries: LRU capacity
            ttl: Seconds before a cached entry is refreshed
        """
        self.client = client
        self.storage = storage
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_entries = max_entries
        self.ttl = ttl
        self._cache: OrderedDict[str, tuple[RobotsRules, float]] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def __contains__(self, domain: str) -> bool:
        return self._cached(domain) is not None

    def invalidate(self, domain: str | None = None) -> None:
        """Drop one domain's cached rules, or the whole cache."""
        if domain is None:
            self._cache.clear()
        else:
            self._cache.pop(domain, None)

    async def get_rules(self, domain: str, *, strict: bool = False) -> RobotsRules | None:
        """Resolve rules for a domain.

        Args:
            domain: Hostname (optionally with port)
            strict: Return None instead of permissive rules when robots.txt is unreadable

        Returns:
            RobotsRules, or None in strict mode when the rules are unknown
        """
        cached = self._cached(domain)
        if cached is not None:
            return cached

        # The lock outlives its holder until no caller is queued on it
        lock = self._locks.setdefault(domain, asyncio.Lock())
        self._lock_users[domain] = self._lock_users.get(domain, 0) + 1
        try:
            async with lock:
                cached = self._cached(domain)
                if cached is not None:
                    return cached

                rules = await self._load_from_storage(domain)
                if rules is None:
                    rules = await self._fetch(domain)
                if rules is None:
                    if strict:
                        return None
                    rules = RobotsRules.permissive(domain)

                self._store(domain, rules)
                return rules
        finally:
            self._lock_users[domain] -= 1
            if not self._lock_users[domain]:
                del self._lock_users[domain]
                del self._locks[domain]

    def _cached(self, domain: str) -> RobotsRules | None:
        entry = self._cache.get(domain)
        if entry is None:
            return None
        rules, stored_at = entry
        if time.monotonic() - stored_at > self.ttl:
            del self._cache[domain]
            return None
        self._cache.move_to_end(domain)
        return rules

    def _store(self, domain: str, rules: RobotsRules) -> None:
        self._cache[domain] = (rules, time.monotonic())
        self._cache.move_to_end(domain)
        while len(self._cache) > self.max_entries:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug(f"Evicted robots.txt rules for {evicted}")

    async def _load_from_storage(self, domain: str) -> RobotsRules | None:
        if self.storage is None:
            return None
        try:
            text = await self.storage.get_robots_record(domain)
        except Exception as e:
            logger.warning(f"Failed to read stored robots.txt for {domain}: {e}")
            return None
        if text is None:
            return None
        logger.debug(f"Loaded robots.txt for {domain} from storage")
        return RobotsRules(domain=domain, text=text)

    async def _fetch(self, domain: str) -> RobotsRules | None:
        """Fetch robots.txt over https, then http.

        Returns:
            Parsed rules, or None if neither scheme produced a 200 response
        """
        for scheme in ("https", "http"):
            url = f"{scheme}://{domain}/robots.txt"
            try:
                response = await self.client.get(
                    url,
                    timeout=self.timeout,
                    headers={"User-Agent": self.user_agent},
                    follow_redirects=True,
                )
            except httpx.HTTPError as e:
                logger.debug(f"Failed to fetch {url}: {type(e).__name__}: {e}")
                continue

            if response.status_code != 200:
                logger.debug(f"No robots.txt at {url} (status {response.status_code})")
                continue

            rules = RobotsRules(domain=domain, text=response.text)
            await self._persist(domain, rules.text)
            logger.debug(f"Loaded robots.txt for {domain}")
            return rules

        logger.info(f"robots.txt unavailable for {domain}")
        return None

    async def _persist(self, domain: str, text: str) -> None:
        if self.storage is None:
            return
        try:
            await self.storage.put_robots_record(domain, text)
        except Exception as e:
            logger.warning(f"Failed to persist robots.txt for {domain}: {e}")
