"""Utility functions."""

import logging
from urllib.parse import urlparse

from rich.logging import RichHandler

NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "aiosqlite", "asyncio")


def setup_logging(verbose: bool = False, level: str | None = None) -> None:
    """Setup logging with RichHandler for console output.

    Args:
        verbose: If True, sets logging to DEBUG level and shows file paths.
                If False, sets logging to INFO level and suppresses noisy loggers.
        level: Explicit level name (e.g. "WARNING"); overrides the verbose default
    """
    resolved = logging.DEBUG if verbose else logging.INFO
    if level and not verbose:
        resolved = logging.getLevelNamesMapping().get(level.upper(), logging.INFO)

    handler = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_time=True,
        show_path=verbose,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    logging.basicConfig(level=resolved, handlers=[handler], force=True)

    if not verbose:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def domain_of(url: str) -> str:
    """Return the lowercase hostname of a URL, or "" when it has none."""
    return (urlparse(url).hostname or "").lower()
