from typing import Optional


class CrawlerError(Exception):
    """Base error for the crawler."""


class ConfigurationError(CrawlerError):
    """Required configuration is missing or invalid; the component refuses to start."""


class PersistenceError(CrawlerError):
    """A write to the remote store failed for a reason other than a duplicate key."""

    def __init__(self, message: str, pid: Optional[str] = None):
        self.pid = pid
        if pid:
            message = f"{message} (pid={pid})"
        super().__init__(message)
