"""
tests/test_log_fetcher.py
Throttling classification and the retrying window fetch.
"""

import asyncio
from types import SimpleNamespace

import pytest

from datum.errors import HeadBlockError, LogFetchError, RateLimited
from datum.ingestion.event_source import LogFilter
from datum.ingestion.log_fetcher import LogFetcher, RateLimitClassifier
from tests.builders import NFT_ADDR, FakeEventSource, recording_sleep, transfer_log

WINDOW = LogFilter(NFT_ADDR, 1000, 1499, ())


class ProviderError(Exception):
    def __init__(self, message, response=None):
        super().__init__(message)
        self.response = response


def make_fetcher(source, **kwargs):
    sleep, delays = recording_sleep()
    return LogFetcher(source, sleep=sleep, **kwargs), delays


class TestRateLimitClassifier:
    def setup_method(self):
        self.classifier = RateLimitClassifier()

    def test_explicit_marker(self):
        verdict = self.classifier.classify(RateLimited(retry_after=2.5))
        assert verdict.retryable
        assert verdict.retry_after == 2.5

    def test_message_patterns(self):
        assert self.classifier.classify(ProviderError("429 Too Many Requests")).retryable
        assert self.classifier.classify(ProviderError("Rate limit exceeded")).retryable

    def test_jsonrpc_code(self):
        exc = ValueError({"code": -32090, "message": "request limit reached"})
        assert self.classifier.classify(exc).retryable

    def test_http_status(self):
        exc = ProviderError("bad response", response=SimpleNamespace(status_code=429, headers={}))
        assert self.classifier.classify(exc).retryable

    def test_retry_after_header(self):
        response = SimpleNamespace(status_code=429, headers={"Retry-After": "3"})
        verdict = self.classifier.classify(ProviderError("slow down", response=response))
        assert verdict.retryable
        assert verdict.retry_after == 3.0

    def test_retry_in_message(self):
        verdict = self.classifier.classify(ProviderError("please retry in 4 s"))
        assert verdict.retryable
        assert verdict.retry_after == 4.0

    def test_other_errors_not_retryable(self):
        verdict = self.classifier.classify(ValueError("execution reverted"))
        assert not verdict.retryable
        assert verdict.retry_after is None


class TestLogFetcher:
    def test_success_first_try(self):
        source = FakeEventSource(logs=[transfer_log(1200)])
        fetcher, delays = make_fetcher(source)
        logs = asyncio.run(fetcher.fetch(WINDOW))
        assert len(logs) == 1
        assert len(source.calls) == 1
        assert delays == []

    def test_retries_then_succeeds(self):
        source = FakeEventSource(logs=[transfer_log(1200)])
        source.failures = [RateLimited(), RateLimited()]
        fetcher, delays = make_fetcher(source)
        logs = asyncio.run(fetcher.fetch(WINDOW))
        assert len(logs) == 1
        assert len(source.calls) == 3
        assert delays == [0.75, 1.5]

    def test_exhaustion_after_max_attempts(self):
        source = FakeEventSource()
        source.failures = [RateLimited() for _ in range(10)]
        fetcher, delays = make_fetcher(source)
        with pytest.raises(LogFetchError) as info:
            asyncio.run(fetcher.fetch(WINDOW))
        assert len(source.calls) == 6
        assert info.value.attempts == 6
        assert info.value.retryable
        assert delays == [0.75, 1.5, 3.0, 6.0, 10.0]

    def test_provider_hint_wins(self):
        source = FakeEventSource()
        source.failures = [RateLimited(retry_after=2.0), ProviderError("retry in 7 s")]
        fetcher, delays = make_fetcher(source)
        asyncio.run(fetcher.fetch(WINDOW))
        assert delays == [2.0, 7.0]

    def test_non_retryable_fails_immediately(self):
        source = FakeEventSource()
        source.failures = [ValueError("query returned more than 10000 results")]
        fetcher, delays = make_fetcher(source)
        with pytest.raises(LogFetchError) as info:
            asyncio.run(fetcher.fetch(WINDOW))
        assert len(source.calls) == 1
        assert not info.value.retryable
        assert isinstance(info.value.cause, ValueError)
        assert delays == []

    def test_custom_budget(self):
        source = FakeEventSource()
        source.failures = [RateLimited() for _ in range(5)]
        fetcher, delays = make_fetcher(source, max_attempts=3, base_delay=0.1, max_delay=0.15)
        with pytest.raises(LogFetchError):
            asyncio.run(fetcher.fetch(WINDOW))
        assert len(source.calls) == 3
        assert delays == pytest.approx([0.1, 0.15])


    def test_head_block_retries_throttling(self):
        source = FakeEventSource(head=2500)
        source.head_failures = [RateLimited(), ProviderError("too many requests")]
        fetcher, delays = make_fetcher(source)
        assert asyncio.run(fetcher.head_block()) == 2500
        assert source.head_calls == 3
        assert delays == [0.75, 1.5]

    def test_head_block_failure(self):
        source = FakeEventSource()
        source.head_failures = [ConnectionError("connection reset")]
        fetcher, delays = make_fetcher(source)
        with pytest.raises(HeadBlockError) as info:
            asyncio.run(fetcher.head_block())
        assert source.head_calls == 1
        assert info.value.attempts == 1
        assert not info.value.retryable
        assert delays == []
