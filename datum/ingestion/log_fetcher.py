"""
ingestion/log_fetcher.py
Fetches one window of raw logs (and the chain head), retrying through provider throttling.

Retry mechanics are tenacity's; what counts as "throttled" is decided by a
pluggable ErrorClassifier so provider-specific error shapes stay in one place.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, Sequence

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from datum.errors import DatumError, HeadBlockError, LogFetchError, RateLimited
from datum.ingestion.event_source import EventSource, LogFilter, RawLog

log = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ErrorVerdict:
    retryable: bool
    retry_after: float | None = None  # seconds, as hinted by the provider


class ErrorClassifier(Protocol):
    def classify(self, exc: BaseException) -> ErrorVerdict: ...


class RateLimitClassifier:
    """
    Recognises throttling across the usual provider error shapes:

    - the explicit `RateLimited` marker
    - "rate limit" / "too many requests" in the message
    - JSON-RPC throttling codes (-32090 on Flare endpoints, -32005 elsewhere)
    - HTTP 429 responses
    - a "retry in N s" message or a Retry-After header, which is also returned as the hint
    """

    PATTERNS = ("rate limit", "too many requests")
    CODES = frozenset({-32090, -32005, 429})
    RETRY_IN = re.compile(r"retry (?:in|after)\s+(\d+(?:\.\d+)?)\s*s", re.IGNORECASE)

    def __init__(self, patterns: Sequence[str] | None = None, codes: Sequence[int] | None = None):
        self.patterns = tuple(p.lower() for p in (patterns or self.PATTERNS))
        self.codes = frozenset(codes) if codes is not None else self.CODES

    def classify(self, exc: BaseException) -> ErrorVerdict:
        retry_after = self._retry_after(exc)

        if isinstance(exc, RateLimited):
            return ErrorVerdict(True, exc.retry_after if exc.retry_after is not None else retry_after)

        message = str(exc).lower()
        throttled = (
            any(p in message for p in self.patterns)
            or self._error_code(exc) in self.codes
            or self._http_status(exc) == 429
        )
        if throttled or retry_after is not None:
            return ErrorVerdict(True, retry_after)
        return ErrorVerdict(False)

    def _retry_after(self, exc: BaseException) -> float | None:
        response = getattr(exc, "response", None)
        headers = getattr(response, "headers", None) or {}
        header = headers.get("Retry-After") if hasattr(headers, "get") else None
        if header is not None:
            try:
                seconds = float(header)
            except ValueError:
                seconds = None
            if seconds is not None and seconds > 0:
                return seconds

        match = self.RETRY_IN.search(str(exc))
        if match:
            seconds = float(match.group(1))
            return seconds if seconds > 0 else None
        return None

    @staticmethod
    def _error_code(exc: BaseException) -> int | None:
        # web3 >= 7 keeps the JSON-RPC response on the exception; older versions
        # raise ValueError({"code": ..., "message": ...}).
        payload: Any = getattr(exc, "rpc_response", None)
        if isinstance(payload, dict):
            payload = payload.get("error", payload)
        elif exc.args and isinstance(exc.args[0], dict):
            payload = exc.args[0]
        if isinstance(payload, dict):
            code = payload.get("code")
            return code if isinstance(code, int) else None
        return None

    @staticmethod
    def _http_status(exc: BaseException) -> int | None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
        return status if isinstance(status, int) else None


class wait_provider_hint:
    """tenacity wait strategy: the provider's retry-after hint wins over `fallback`."""

    def __init__(self, classifier: ErrorClassifier, fallback: Callable[[RetryCallState], float]):
        self.classifier = classifier
        self.fallback = fallback

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if exc is not None:
            hint = self.classifier.classify(exc).retry_after
            if hint is not None:
                return hint
        return self.fallback(retry_state)


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------

class LogFetcher:
    """
    `await fetcher.fetch(log_filter)` returns the window's raw logs or raises
    LogFetchError; `await fetcher.head_block()` likewise raises HeadBlockError.
    Throttling errors are retried with exponential backoff (base delay doubling
    up to the cap) for at most `max_attempts` calls in total; any other error
    fails on the spot.
    """

    def __init__(
        self,
        source: EventSource,
        classifier: ErrorClassifier | None = None,
        max_attempts: int = 6,
        base_delay: float = 0.75,
        max_delay: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.source = source
        self.classifier = classifier or RateLimitClassifier()
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_provider_hint(
                self.classifier,
                wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            ),
            retry=retry_if_exception(lambda exc: self.classifier.classify(exc).retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "fetch.retry",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            delay=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(exc),
        )

    async def _call(
        self,
        fn: Callable[..., Any],
        *args: Any,
        failure: Callable[[int, bool, Exception], DatumError],
        **context: Any,
    ) -> Any:
        """Run a blocking source call under the retry policy; raises `failure(...)` when it gives up."""
        attempts = 0
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = await asyncio.to_thread(fn, *args)
        except Exception as exc:
            retryable = self.classifier.classify(exc).retryable
            log.warning("fetch.failed", attempts=attempts, retryable=retryable, error=str(exc), **context)
            raise failure(attempts, retryable, exc) from exc
        return result

    async def fetch(self, log_filter: LogFilter) -> list[RawLog]:
        logs = await self._call(
            self.source.get_logs,
            log_filter,
            failure=lambda attempts, retryable, exc: LogFetchError(log_filter, attempts, retryable, exc),
            from_block=log_filter.from_block,
            to_block=log_filter.to_block,
        )
        return list(logs)

    async def head_block(self) -> int:
        """Latest block number, under the same throttling policy as `fetch`."""
        return await self._call(self.source.head_block, failure=HeadBlockError, call="head_block")
