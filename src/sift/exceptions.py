"""Custom exceptions for sift."""


class SiftError(Exception):
    """Base exception for all sift errors."""


class ConfigError(SiftError):
    """Raised when session options or configuration are invalid or cannot be loaded."""


class FetchError(SiftError):
    """Raised when a static fetch fails (non-2xx status or oversized body)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(SiftError):
    """Raised when a storage backend is used before it is initialized."""


class RenderUnavailableError(SiftError):
    """Raised when the headless browser cannot be provided (e.g. Playwright missing)."""
