"""
errors.py
Exception hierarchy shared by the indexer, its scripts and the read-only API.
"""

from __future__ import annotations


class DatumError(Exception):
    """Base class for every error the indexer raises on purpose."""


class ConfigError(DatumError):
    """Missing or invalid settings / scan-target configuration. Fatal."""


class ConnectivityError(DatumError):
    """The event source failed the startup probe. Fatal."""


class RunLockError(DatumError):
    """The lock directory or lock file could not be managed at all."""


class CursorNotFound(DatumError):
    def __init__(self, cursor_key: str):
        super().__init__(f"cursor not found: {cursor_key}")
        self.cursor_key = cursor_key


class RateLimited(DatumError):
    """Explicit throttling marker, optionally carrying a retry-after hint in seconds."""

    def __init__(self, message: str = "rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class LogFetchError(DatumError):
    """A window's logs could not be retrieved (retry budget spent or non-retryable)."""

    def __init__(self, log_filter, attempts: int, retryable: bool, cause: BaseException):
        super().__init__(
            f"get_logs failed for blocks {log_filter.from_block}-{log_filter.to_block} "
            f"after {attempts} attempt(s): {cause}"
        )
        self.log_filter = log_filter
        self.attempts = attempts
        self.retryable = retryable
        self.cause = cause


class HeadBlockError(DatumError):
    """The chain head could not be read (retry budget spent or non-retryable)."""

    def __init__(self, attempts: int, retryable: bool, cause: BaseException):
        super().__init__(f"head block lookup failed after {attempts} attempt(s): {cause}")
        self.attempts = attempts
        self.retryable = retryable
        self.cause = cause
