"""sift - polite, resilient web crawler."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("sift-crawler")
except PackageNotFoundError:
    __version__ = "dev"
