"""URL normalization and crawlability checks.

Every URL that enters the visited set or the work queue passes through
normalize_url() so that trivially different spellings of the same page
(case, default port, fragment, trailing slash) are deduplicated.
"""

import re
from urllib.parse import urljoin, urlparse, urlunparse

SAFE_SCHEMES = {"http", "https"}

DEFAULT_PORTS = {
    "http": 80,
    "https": 443,
}

# Resources that are never worth queueing as pages
SKIPPED_EXTENSIONS = re.compile(r"\.(css|js|json|xml|txt|md|csv|svg|ico|git|gitignore)$", re.I)


def ensure_scheme(url: str) -> str:
    """Prepend http:// to a URL that carries no scheme.

    Examples:
        >>> ensure_scheme("example.com/docs")
        'http://example.com/docs'
        >>> ensure_scheme("https://example.com")
        'https://example.com'
    """
    url = url.strip()
    if not re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", url):
        url = f"http://{url}"
    return url


def normalize_url(url: str, base: str | None = None) -> str:
    """Normalize URL for deduplication.

    Normalizations applied:
    - Resolve against base when given
    - Lowercase scheme and hostname, drop default ports
    - Remove fragments
    - Remove a trailing slash, except for the root path

    Args:
        url: URL to normalize
        base: Optional base URL for relative references

    Returns:
        Normalized URL

    Raises:
        ValueError: If URL is empty or has no hostname

    Examples:
        >>> normalize_url("HTTP://Example.COM:80/Path/#top")
        'http://example.com/Path'
        >>> normalize_url("https://example.com")
        'https://example.com/'
    """
    if not url or not url.strip():
        raise ValueError("URL cannot be empty")

    raw = urljoin(base, url.strip()) if base else ensure_scheme(url)
    parsed = urlparse(raw)
    if not parsed.hostname:
        raise ValueError(f"URL has no hostname: {url}")

    scheme = parsed.scheme.lower()
    netloc = parsed.hostname.lower()
    if parsed.port and parsed.port != DEFAULT_PORTS.get(scheme):
        netloc = f"{netloc}:{parsed.port}"

    path = parsed.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    return urlunparse((scheme, netloc, path, parsed.params, parsed.query, ""))


def is_crawlable(url: str) -> bool:
    """Return True for http(s) URLs that do not point at a static resource file."""
    parsed = urlparse(url)
    if parsed.scheme.lower() not in SAFE_SCHEMES or not parsed.hostname:
        return False
    return not SKIPPED_EXTENSIONS.search(parsed.path)
