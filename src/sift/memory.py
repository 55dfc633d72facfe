"""Process memory probe used to decide whether headless rendering is affordable."""

import logging
from dataclasses import dataclass

import psutil

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class MemoryStatus:
    """Memory headroom snapshot."""

    rss_mb: float
    percent: float
    available_mb: float
    is_low_memory: bool


def check_memory(threshold_mb: int = 400, min_available_mb: int = 256) -> MemoryStatus:
    """Measure this process's RSS and the system's available memory.

    Args:
        threshold_mb: RSS above which memory is considered low
        min_available_mb: System available memory below which memory is considered low

    Returns:
        MemoryStatus snapshot
    """
    process = psutil.Process()
    rss_mb = process.memory_info().rss / MB
    percent = process.memory_percent()
    available_mb = psutil.virtual_memory().available / MB
    low = rss_mb > threshold_mb or available_mb < min_available_mb
    return MemoryStatus(
        rss_mb=round(rss_mb, 1),
        percent=round(percent, 1),
        available_mb=round(available_mb, 1),
        is_low_memory=low,
    )


def log_memory_status(status: MemoryStatus) -> None:
    level = logging.WARNING if status.is_low_memory else logging.DEBUG
    logger.log(
        level,
        f"Memory: {status.rss_mb:.1f}MB RSS ({status.percent:.1f}%), "
        f"{status.available_mb:.0f}MB available",
    )
