"""Configuration system.

Session options supplied by a caller are validated and clamped by Pydantic models so
that invalid input never propagates into the crawl engine. Process-wide runtime
settings (timeouts, cache sizes, render heuristics) live in CrawlerSettings, which can
be read from the environment or a YAML file. Entry points: SessionOptions,
CrawlerSettings.from_env() and load_config().
"""

import math
import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sift.exceptions import ConfigError
from sift.urls import ensure_scheme

CrawlMethod = Literal["links", "content", "media", "full"]

CRAWL_METHODS: tuple[str, ...] = ("links", "content", "media", "full")

DEFAULT_USER_AGENT = "SiftCrawler/1.0 (+https://github.com/sift-crawler/sift)"

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def _clamp(value: Any, low: int, high: int, fallback: int) -> int:
    """Coerce value to an int within [low, high], or fallback if it is not numeric."""
    if value is None or isinstance(value, bool):
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if math.isnan(number):
        return fallback
    return int(min(max(number, low), high))


def _toggle(value: Any, default: bool) -> bool:
    """Coerce a loosely typed toggle, falling back to default when unrecognized."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off"):
            return False
    if isinstance(value, int):
        return bool(value)
    return default


class SessionOptions(BaseModel):
    """Validated, clamped options for one crawl session.

    Numeric fields are clamped to safe bounds and non-numeric input falls back to the
    default. Only the target URL can make validation fail.

    Example:
        >>> options = SessionOptions(target="example.com", crawl_depth=99)
        >>> options.target, options.crawl_depth
        ('http://example.com', 5)
    """

    model_config = ConfigDict(frozen=True)

    target: str = Field(..., description="Seed URL; http:// is prepended when no scheme")
    crawl_depth: int = Field(default=2, description="Maximum link depth (1-5)")
    max_pages: int = Field(default=50, description="Page budget for the session (1-200)")
    crawl_delay: int = Field(
        default=1000, description="Minimum delay between requests to one domain, ms (200-10000)"
    )
    crawl_method: CrawlMethod = Field(
        default="links",
        description="links, content, media or full (full also follows external links)",
    )
    max_concurrent_requests: int = Field(default=5, description="In-flight page limit (1-10)")
    retry_limit: int = Field(default=3, description="Retries per failed fetch (0-5)")
    dynamic: bool = Field(default=True, description="Render pages in a headless browser")
    respect_robots: bool = Field(default=True, description="Honor robots.txt rules and delays")
    filter_duplicates: bool = Field(
        default=True, description="Skip URLs already queued or in flight"
    )
    save_media: bool = Field(default=False, description="Count media resources")
    content_only: bool = Field(
        default=False, description="Persist metadata only, without the page body"
    )

    @field_validator("target", mode="before")
    @classmethod
    def validate_target(cls, v: Any) -> str:
        """Ensure the target is an absolute http(s) URL with a hostname."""
        if not isinstance(v, str) or not v.strip():
            raise ValueError("Target URL is required")
        url = ensure_scheme(v)
        parsed = urlparse(url)
        if parsed.scheme.lower() not in ("http", "https"):
            raise ValueError(f"Unsupported URL scheme: {parsed.scheme}")
        if not parsed.hostname:
            raise ValueError(f"Target URL has no hostname: {v}")
        return url

    @field_validator("crawl_depth", mode="before")
    @classmethod
    def clamp_depth(cls, v: Any) -> int:
        return _clamp(v, 1, 5, 2)

    @field_validator("max_pages", mode="before")
    @classmethod
    def clamp_max_pages(cls, v: Any) -> int:
        return _clamp(v, 1, 200, 50)

    @field_validator("crawl_delay", mode="before")
    @classmethod
    def clamp_delay(cls, v: Any) -> int:
        return _clamp(v, 200, 10000, 1000)

    @field_validator("max_concurrent_requests", mode="before")
    @classmethod
    def clamp_concurrency(cls, v: Any) -> int:
        return _clamp(v, 1, 10, 5)

    @field_validator("retry_limit", mode="before")
    @classmethod
    def clamp_retries(cls, v: Any) -> int:
        return _clamp(v, 0, 5, 3)

    @field_validator("crawl_method", mode="before")
    @classmethod
    def validate_method(cls, v: Any) -> str:
        if isinstance(v, str) and v.strip().lower() in CRAWL_METHODS:
            return v.strip().lower()
        return "links"

    @field_validator("dynamic", "respect_robots", "filter_duplicates", mode="before")
    @classmethod
    def default_on(cls, v: Any) -> bool:
        return _toggle(v, True)

    @field_validator("save_media", "content_only", mode="before")
    @classmethod
    def default_off(cls, v: Any) -> bool:
        return _toggle(v, False)

    @classmethod
    def parse(cls, raw: dict[str, Any]) -> "SessionOptions":
        """Build options from untrusted input, raising ConfigError on an invalid target.

        Args:
            raw: Mapping of option names to values

        Returns:
            Validated SessionOptions

        Raises:
            ConfigError: If the target URL is missing or invalid
        """
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            errors = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigError(f"Invalid session options: {errors}") from e


class RenderConfig(BaseModel):
    """Headless-browser rendering profile and site heuristics."""

    viewport_width: int = Field(default=1280, ge=320)
    viewport_height: int = Field(default=720, ge=240)
    user_agent: str = Field(default=BROWSER_USER_AGENT)
    extra_headers: dict[str, str] = Field(
        default_factory=lambda: {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
            "DNT": "1",
        }
    )
    complex_navigation_timeout_ms: int = Field(
        default=60000, ge=1000, description="Navigation timeout for JS-heavy sites (networkidle)"
    )
    standard_navigation_timeout_ms: int = Field(
        default=30000, ge=1000, description="Navigation timeout for other sites (domcontentloaded)"
    )
    selector_wait_ms: int = Field(default=15000, ge=0)
    settle_delay_ms: int = Field(
        default=2000, ge=0, description="Fixed wait after the site selector appears"
    )
    recycle_threshold: int = Field(
        default=200, ge=1, description="Pages rendered before the browser is relaunched"
    )
    constrained_recycle_threshold: int = Field(
        default=50, ge=1, description="Recycle threshold on constrained deployment targets"
    )
    isolated_environment: bool = Field(
        default=False,
        description="Running inside a container; disables the browser's own sandbox",
    )
    complex_sites: list[str] = Field(
        default_factory=lambda: [
            "youtube.com",
            "google.com",
            "facebook.com",
            "meta.com",
            "twitter.com",
            "x.com",
            "instagram.com",
            "linkedin.com",
            "discord.com",
            "reddit.com",
            "pinterest.com",
            "tiktok.com",
            "netflix.com",
            "amazon.com",
            "airbnb.com",
            "uber.com",
            "spotify.com",
            "github.com",
            "stackoverflow.com",
            "medium.com",
            "twitch.tv",
            "salesforce.com",
            "slack.com",
            "notion.so",
            "figma.com",
            "canva.com",
            "trello.com",
            "asana.com",
            "dropbox.com",
            "zoom.us",
        ]
    )
    site_selectors: dict[str, str] = Field(
        default_factory=lambda: {
            "youtube.com/watch": "h1.ytd-video-primary-info-renderer",
            "twitter.com": '[data-testid="tweet"]',
            "x.com": '[data-testid="tweet"]',
            "linkedin.com": ".feed-container-theme",
            "instagram.com": '[role="main"]',
            "reddit.com": '[data-testid="post-container"]',
            "facebook.com": '[role="main"]',
            "meta.com": '[role="main"]',
            "github.com": ".js-repo-root, .repository-content",
            "medium.com": "article",
            "stackoverflow.com": ".question, .answer",
        }
    )
    site_cookies: dict[str, list[dict[str, str]]] = Field(
        default_factory=lambda: {
            "youtube.com": [
                {"name": "CONSENT", "value": "YES+"},
                {"name": "PREF", "value": "tz=UTC"},
            ],
            "reddit.com": [{"name": "over18", "value": "1"}],
        }
    )


class CrawlerSettings(BaseModel):
    """Process-wide runtime settings shared by every session."""

    user_agent: str = Field(
        default=DEFAULT_USER_AGENT, description="Agent name used for robots.txt matching"
    )
    db_path: str | None = Field(
        default=None, description="SQLite database path (None = in-memory storage)"
    )
    log_level: str = Field(default="INFO")
    constrained: bool = Field(
        default=False, description="Constrained deployment target (lower recycle threshold)"
    )
    static_fetch_timeout: float = Field(default=15.0, gt=0, description="Static fetch deadline, s")
    max_response_bytes: int = Field(
        default=10 * 1024 * 1024, ge=1024, description="Largest static response accepted"
    )
    max_redirects: int = Field(default=5, ge=0)
    robots_timeout: float = Field(default=5.0, gt=0, description="robots.txt fetch deadline, s")
    robots_cache_size: int = Field(default=100, ge=1)
    robots_cache_ttl: float = Field(default=3600.0, gt=0, description="robots.txt cache TTL, s")
    strict_robots: bool = Field(
        default=False, description="Treat an unreadable robots.txt as disallow"
    )
    link_workers: int = Field(
        default=10, ge=1, description="Workers evaluating discovered links per page"
    )
    retry_base_delay_ms: int = Field(default=1000, ge=1)
    retry_max_delay_ms: int = Field(default=30000, ge=1)
    idle_sleep_ms: int = Field(default=100, ge=1, description="Scheduler sleep with nothing deferred")
    min_sleep_ms: int = Field(default=50, ge=1, description="Scheduler sleep floor")
    domain_sweep_threshold: int = Field(default=500, ge=1)
    domain_entry_expiry: float = Field(default=60.0, gt=0, description="Stale domain entry age, s")
    memory_threshold_mb: int = Field(
        default=400, ge=1, description="Process RSS above which rendering is disabled"
    )
    min_available_mb: int = Field(
        default=256, ge=0, description="System memory below which rendering is disabled"
    )
    render: RenderConfig = Field(default_factory=RenderConfig)

    @property
    def recycle_threshold(self) -> int:
        """Render recycle threshold for the current deployment target."""
        if self.constrained:
            return self.render.constrained_recycle_threshold
        return self.render.recycle_threshold

    def backoff_ms(self, retry_count: int) -> int:
        """Exponential backoff before retry number retry_count + 1.

        Examples:
            >>> settings = CrawlerSettings()
            >>> [settings.backoff_ms(n) for n in range(6)]
            [1000, 2000, 4000, 8000, 16000, 30000]
        """
        return min(self.retry_base_delay_ms * 2**retry_count, self.retry_max_delay_ms)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "CrawlerSettings":
        """Read settings overrides from SIFT_* environment variables.

        Recognized: SIFT_USER_AGENT, SIFT_DB_PATH, SIFT_LOG_LEVEL, SIFT_CONSTRAINED
        (or RENDER, set by the Render platform) and SIFT_CONTAINER.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        if env.get("SIFT_USER_AGENT"):
            values["user_agent"] = env["SIFT_USER_AGENT"]
        if env.get("SIFT_DB_PATH"):
            values["db_path"] = env["SIFT_DB_PATH"]
        if env.get("SIFT_LOG_LEVEL"):
            values["log_level"] = env["SIFT_LOG_LEVEL"].upper()
        values["constrained"] = _toggle(env.get("SIFT_CONSTRAINED"), False) or bool(
            env.get("RENDER")
        )
        isolated = _toggle(env.get("SIFT_CONTAINER"), False) or Path("/.dockerenv").exists()
        values["render"] = RenderConfig(isolated_environment=isolated)
        return cls.model_validate(values)


class SiftConfig(BaseModel):
    """Root configuration loaded from a YAML file.

    Example YAML:
        session:
          target: https://example.com
          crawl_depth: 2
        settings:
          strict_robots: true
    """

    session: dict[str, Any] = Field(default_factory=dict)
    settings: CrawlerSettings = Field(default_factory=CrawlerSettings)

    def session_options(self, **overrides: Any) -> SessionOptions:
        """Merge non-None overrides over the file's session block and validate."""
        raw = dict(self.session)
        raw.update({k: v for k, v in overrides.items() if v is not None})
        return SessionOptions.parse(raw)


def load_config(config_path: Path) -> SiftConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated SiftConfig instance

    Raises:
        ConfigError: If file cannot be read, YAML is invalid, or validation fails
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping, got {type(data).__name__}")

    try:
        return SiftConfig.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = " -> ".join(str(x) for x in error["loc"])
            errors.append(f"  {loc}: {error['msg']}")
        raise ConfigError("Configuration validation failed:\n" + "\n".join(errors)) from e
