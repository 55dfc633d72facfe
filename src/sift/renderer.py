"""Headless-browser render engine.

Wraps a Playwright Chromium process shared by every concurrent render in a
session. Each render gets its own page; the browser itself is relaunched after
a configurable number of pages to bound leaks inside the browser process.

State machine::

    UNINITIALIZED -> LAUNCHING -> READY <-> RENDERING -> CLOSED
                 \\___________ any state ___________/-> DISABLED

DISABLED is absorbing: low memory at startup, a failed launch, or a failed
relaunch all turn rendering off and callers fall back to static fetching.
"""

import asyncio
import contextlib
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

from sift.config import CrawlerSettings
from sift.exceptions import RenderUnavailableError
from sift.memory import MemoryStatus, check_memory, log_memory_status

logger = logging.getLogger(__name__)

HARDENED_ARGS = (
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
    "--disable-extensions",
    "--disable-background-networking",
)

SANDBOX_ARGS = ("--no-sandbox", "--disable-setuid-sandbox")

# Error message fragments that mean "the page went away", not "the site is broken"
RECOVERABLE_SIGNATURES = (
    "target closed",
    "has been closed",
    "session closed",
    "connection closed",
    "browser closed",
    "detached",
    "timeout",
)

EXTRACT_SCRIPT = """
() => {
    const meta = document.querySelector('meta[name="description"]')
        || document.querySelector('meta[property="og:description"]');
    return {
        html: document.documentElement ? document.documentElement.outerHTML : "",
        title: document.title || "",
        description: meta ? (meta.getAttribute("content") || "") : "",
    };
}
"""


class RenderState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    LAUNCHING = "launching"
    READY = "ready"
    RENDERING = "rendering"
    CLOSED = "closed"
    DISABLED = "disabled"


@dataclass
class RenderResult:
    """Post-render snapshot of a page."""

    content: str
    status_code: int
    content_type: str
    content_length: int
    title: str
    description: str
    last_modified: str | None = None
    final_url: str | None = None


@dataclass(frozen=True)
class InitializeResult:
    dynamic_enabled: bool
    fallback_log: str | None = None


def is_recoverable_error(error: BaseException) -> bool:
    """True for transient browser errors that should trigger a static fallback."""
    if type(error).__name__ == "TimeoutError":
        return True
    message = str(error).lower()
    return any(signature in message for signature in RECOVERABLE_SIGNATURES)


def site_matches(url: str, pattern: str) -> bool:
    """Match a URL against a site pattern such as "github.com" or "youtube.com/watch".

    The host part matches the hostname or any subdomain of it; an optional path
    part must prefix the URL path.

    Examples:
        >>> site_matches("https://www.youtube.com/watch?v=1", "youtube.com/watch")
        True
        >>> site_matches("https://netflix.com/", "x.com")
        False
    """
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    site, _, path = pattern.lower().partition("/")
    if host != site and not host.endswith(f".{site}"):
        return False
    return not path or parsed.path.lower().startswith(f"/{path}")


async def _dismiss_dialog(dialog: Any) -> None:
    with contextlib.suppress(Exception):
        await dialog.dismiss()


class RenderEngine:
    """Manages the headless browser used for dynamic rendering.

    Example:
        >>> engine = RenderEngine(settings)
        >>> init = await engine.initialize()
        >>> result = await engine.render("https://example.com/")  # None -> use static fetch
        >>> await engine.close()
    """

    def __init__(
        self,
        settings: CrawlerSettings | None = None,
        enabled: bool = True,
        memory_probe: Callable[[], MemoryStatus] | None = None,
    ) -> None:
        """Initialize render engine.

        Args:
            settings: Runtime settings (render profile, recycle and memory thresholds)
            enabled: False disables rendering up front (static fetching only)
            memory_probe: Returns current memory headroom (defaults to psutil)
        """
        self.settings = settings or CrawlerSettings()
        self.config = self.settings.render
        self.enabled = enabled
        self._memory_probe = memory_probe

        self.state = RenderState.UNINITIALIZED
        self.disabled_reason: str | None = None
        self.playwright: Any | None = None
        self.browser: Any | None = None
        self.pages_since_launch = 0
        self.pages_rendered = 0
        self.launch_count = 0
        self._active_renders = 0
        self._renders_drained = asyncio.Event()
        self._renders_drained.set()
        self._browser_lock = asyncio.Lock()  # Serializes launch/recycle/close against render start

    @property
    def is_available(self) -> bool:
        return self.state in (RenderState.READY, RenderState.RENDERING)

    @property
    def active_renders(self) -> int:
        return self._active_renders

    def launch_args(self) -> list[str]:
        """Chromium flags; the sandbox is dropped only inside an isolated container."""
        args = list(HARDENED_ARGS)
        if self.config.isolated_environment:
            args = [*SANDBOX_ARGS, *args]
        return args

    def is_complex_site(self, url: str) -> bool:
        return any(site_matches(url, site) for site in self.config.complex_sites)

    def selector_for(self, url: str) -> str | None:
        for pattern, selector in self.config.site_selectors.items():
            if site_matches(url, pattern):
                return selector
        return None

    def cookies_for(self, url: str) -> list[dict[str, Any]]:
        """Playwright cookie dicts for every configured site matching url."""
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        cookies: list[dict[str, Any]] = []
        for pattern, entries in self.config.site_cookies.items():
            if site_matches(url, pattern):
                cookies.extend({"name": c["name"], "value": c["value"], "url": origin} for c in entries)
        return cookies

    def disable(self, reason: str) -> None:
        """Turn rendering off for the rest of the session."""
        if self.state is not RenderState.DISABLED:
            logger.warning(f"Dynamic rendering disabled: {reason}")
        self.state = RenderState.DISABLED
        self.disabled_reason = reason

    def _check_memory(self) -> MemoryStatus:
        if self._memory_probe is not None:
            return self._memory_probe()
        return check_memory(self.settings.memory_threshold_mb, self.settings.min_available_mb)

    async def initialize(self) -> InitializeResult:
        """Launch the browser if rendering is wanted and affordable. Never raises.

        Returns:
            InitializeResult with a fallback notice when rendering is unavailable
        """
        if not self.enabled:
            self.disable("dynamic rendering turned off for this session")
            return InitializeResult(False, "Dynamic rendering disabled, using static fetching")

        status = self._check_memory()
        log_memory_status(status)
        if status.is_low_memory:
            self.disable(f"low memory ({status.rss_mb:.0f}MB RSS)")
            return InitializeResult(
                False,
                f"Low memory detected ({status.rss_mb:.0f}MB RSS), "
                "dynamic rendering disabled, using static fetching",
            )

        try:
            await self.launch_browser()
        except Exception as e:
            self.disable(f"browser launch failed: {e}")
            return InitializeResult(
                False, f"Headless browser unavailable ({type(e).__name__}), using static fetching"
            )
        return InitializeResult(True, None)

    async def launch_browser(self) -> None:
        """Start the browser process.

        Raises:
            RenderUnavailableError: If playwright is not installed
        """
        async with self._browser_lock:
            await self._launch()

    async def _launch(self) -> None:
        self.state = RenderState.LAUNCHING
        try:
            from playwright.async_api import async_playwright
        except ImportError as e:
            raise RenderUnavailableError(
                "Playwright is required for dynamic rendering. "
                "Install with: pip install playwright && playwright install chromium"
            ) from e

        if self.playwright is None:
            self.playwright = await async_playwright().start()
        logger.info("Launching headless browser...")
        self.browser = await self.playwright.chromium.launch(
            headless=True, args=self.launch_args()
        )
        self.pages_since_launch = 0
        self.launch_count += 1
        self.state = RenderState.READY

    async def recycle_if_needed(self) -> bool:
        """Relaunch the browser once it has started more than the recycle threshold.

        Holding the browser lock keeps new renders from starting while the ones
        in flight drain; the browser is closed only after they finish. A failed
        close is logged and the relaunch proceeds; low memory or a failed
        relaunch disables rendering instead.

        Returns:
            True if the browser was recycled
        """
        threshold = self.settings.recycle_threshold
        if self.pages_since_launch <= threshold:
            return False

        async with self._browser_lock:
            if self.pages_since_launch <= threshold or not self.is_available:
                return False
            if self._active_renders > 0:
                logger.debug(f"Waiting for {self._active_renders} renders before recycling")
                await self._renders_drained.wait()

            logger.info(f"Recycling browser after {self.pages_since_launch} pages")
            await self._close_browser()

            status = self._check_memory()
            if status.is_low_memory:
                log_memory_status(status)
                await self._stop_playwright()
                self.disable(f"low memory at recycle ({status.rss_mb:.0f}MB RSS)")
                return False

            try:
                await self._launch()
            except Exception as e:
                await self._stop_playwright()
                self.disable(f"browser relaunch failed: {e}")
                return False
            return True

    async def render(self, url: str) -> RenderResult | None:
        """Render a page in the browser.

        Args:
            url: Page URL

        Returns:
            RenderResult, or None when rendering is unavailable or failed with a
            recoverable error (the caller should fetch statically)

        Raises:
            Exception: Any non-recoverable browser error
        """
        # A render arriving mid-recycle waits on the lock for the relaunch
        if not self.is_available and self.state is not RenderState.LAUNCHING:
            return None

        await self.recycle_if_needed()
        async with self._browser_lock:
            if not self.is_available or self.browser is None:
                return None
            browser = self.browser
            self._active_renders += 1
            self._renders_drained.clear()
            self.pages_since_launch += 1
            self.state = RenderState.RENDERING

        page = None
        try:
            page = await browser.new_page(
                user_agent=self.config.user_agent,
                viewport={
                    "width": self.config.viewport_width,
                    "height": self.config.viewport_height,
                },
                extra_http_headers=self.config.extra_headers,
            )
            page.on("dialog", _dismiss_dialog)

            cookies = self.cookies_for(url)
            if cookies:
                await page.context.add_cookies(cookies)

            complex_site = self.is_complex_site(url)
            if complex_site:
                wait_until, timeout = "networkidle", self.config.complex_navigation_timeout_ms
            else:
                wait_until, timeout = "domcontentloaded", self.config.standard_navigation_timeout_ms
            response = await page.goto(url, wait_until=wait_until, timeout=timeout)

            if complex_site:
                await self._wait_for_content(page, url)

            # One round-trip so an SPA route change can't detach the frame mid-extraction
            snapshot = await page.evaluate(EXTRACT_SCRIPT)

            self.pages_rendered += 1

            headers: dict[str, str] = dict(response.headers) if response is not None else {}
            html = snapshot.get("html") or ""
            return RenderResult(
                content=html,
                status_code=response.status if response is not None else 200,
                content_type=headers.get("content-type", "text/html"),
                content_length=len(html.encode("utf-8")),
                title=snapshot.get("title") or "",
                description=snapshot.get("description") or "",
                last_modified=headers.get("last-modified"),
                final_url=page.url,
            )

        except Exception as e:
            if is_recoverable_error(e):
                logger.warning(f"Render failed for {url}, falling back to static fetch: {e}")
                return None
            raise

        finally:
            if page is not None:
                with contextlib.suppress(Exception):
                    await page.close()
            self._active_renders -= 1
            if self._active_renders == 0:
                self._renders_drained.set()
                if self.state is RenderState.RENDERING:
                    self.state = RenderState.READY

    async def _wait_for_content(self, page: Any, url: str) -> None:
        """Wait for a site-specific content selector, then a fixed settle delay."""
        selector = self.selector_for(url)
        try:
            if selector:
                await page.wait_for_selector(selector, timeout=self.config.selector_wait_ms)
                logger.debug(f"Waited for selector {selector} on {url}")
            await asyncio.sleep(self.config.settle_delay_ms / 1000)
        except Exception as e:
            if not is_recoverable_error(e):
                raise
            logger.debug(f"Content selector wait failed for {url}: {e}")

    async def close(self) -> None:
        """Shut the browser down. Never raises."""
        async with self._browser_lock:
            if self.browser is not None:
                logger.info("Closing headless browser...")
            await self._close_browser()
            await self._stop_playwright()
            if self.state is not RenderState.DISABLED:
                self.state = RenderState.CLOSED

    async def _close_browser(self) -> None:
        browser, self.browser = self.browser, None
        if browser is None:
            return
        try:
            await browser.close()
        except Exception as e:
            logger.warning(f"Browser close failed: {e}")

    async def _stop_playwright(self) -> None:
        playwright, self.playwright = self.playwright, None
        if playwright is not None:
            with contextlib.suppress(Exception):
                await playwright.stop()
