"""
ingestion/scanner.py
The incremental window loop for one scan job.

    cursor (read) -> plan windows -> per window:
        fetch logs -> resolve timestamps -> decode -> commit -> advance cursor
    -> stop at head, or at the first window whose fetch fails

A head lookup that still fails after its retries ends the job as truncated
without touching the cursor; the remaining jobs still run.

The cursor only ever moves to the end of a window whose batch has committed,
and never backwards, so an interrupted or truncated run resumes from the last
committed window minus the overlap margin. Rows re-read in that margin are
absorbed by the writer's conflict-ignore insert.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import structlog

from datum.config import CATEGORY_LOANS, CATEGORY_STABILITY_POOL, ScanTarget
from datum.errors import HeadBlockError, LogFetchError
from datum.ingestion.event_source import EventSource, LogFilter
from datum.ingestion.log_fetcher import LogFetcher
from datum.ingestion.timestamps import resolve_block_timestamps
from datum.ingestion.windows import effective_start, plan_windows, window_count
from datum.storage.cursors import CursorStore
from datum.storage.writer import PersistenceWriter
from datum.transform.decoder import (
    STREAM_LOAN_NFT,
    STREAM_STABILITY_POOL,
    STREAM_TROVE_MANAGER,
    EventDecoder,
)

log = structlog.get_logger(__name__)

STATUS_SKIPPED = "skipped"        # nothing between the resume point and head
STATUS_COMPLETED = "completed"    # every window up to head committed
STATUS_TRUNCATED = "truncated"    # the head lookup or a window fetch failed; earlier windows kept


@dataclass(frozen=True)
class ScanJob:
    """One (scan target, event stream) pair with its own cursor."""
    cursor_key: str
    target: ScanTarget
    address: str
    stream: str


@dataclass
class ScanOutcome:
    cursor_key: str
    status: str
    from_block: int
    head_block: int | None  # None when the head lookup failed
    windows_total: int = 0
    windows_committed: int = 0
    logs_fetched: int = 0
    events_decoded: int = 0
    rows_inserted: int = 0
    last_committed_block: int | None = None
    error: str | None = field(default=None, repr=False)


def loan_jobs(targets: list[ScanTarget]) -> list[ScanJob]:
    """All transfer streams first, then the trove-manager streams of targets that have one."""
    jobs = [
        ScanJob(f"loan_nft:{t.key}:transfer", t, t.address, STREAM_LOAN_NFT)
        for t in targets
    ]
    jobs += [
        ScanJob(f"trove_manager:{t.key}:events", t, t.secondary_address, STREAM_TROVE_MANAGER)
        for t in targets
        if t.secondary_address
    ]
    return jobs


def stability_pool_jobs(targets: list[ScanTarget]) -> list[ScanJob]:
    return [ScanJob(f"sp:{t.key}:deposit_ops", t, t.address, STREAM_STABILITY_POOL) for t in targets]


JOB_BUILDERS = {
    CATEGORY_LOANS: loan_jobs,
    CATEGORY_STABILITY_POOL: stability_pool_jobs,
}


class EventScanner:
    """
    Drives the window loop for scan jobs, one at a time.

    Parameters
    ----------
    source : EventSource
        Block timestamp lookups.
    fetcher : LogFetcher
        Head block and window log retrieval with throttling retries.
    cursors, writer :
        Store handles for positions and decoded rows.
    window_size : int
        A window spans [b, b + window_size].
    overlap : int
        Trailing blocks re-scanned on every run.
    pause_seconds : float
        Sleep after each committed window to stay under the provider's rate budget.
    """

    def __init__(
        self,
        source: EventSource,
        fetcher: LogFetcher,
        cursors: CursorStore,
        writer: PersistenceWriter,
        window_size: int,
        overlap: int,
        pause_seconds: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.source = source
        self.fetcher = fetcher
        self.cursors = cursors
        self.writer = writer
        self.window_size = window_size
        self.overlap = overlap
        self.pause_seconds = pause_seconds
        self._sleep = sleep
        self._decoders: dict[str, EventDecoder] = {}

    def decoder_for(self, stream: str) -> EventDecoder:
        if stream not in self._decoders:
            self._decoders[stream] = EventDecoder(stream)
        return self._decoders[stream]

    async def scan(self, job: ScanJob) -> ScanOutcome:
        self.cursors.ensure(job.cursor_key, job.target.default_start_block)
        cursor = self.cursors.read(job.cursor_key)
        from_block = effective_start(cursor.start_block, cursor.last_scanned_block, self.overlap)
        bound = log.bind(cursor=job.cursor_key, stream=job.stream)

        try:
            head = await self.fetcher.head_block()
        except HeadBlockError as exc:
            bound.warning("scan.head_failed", attempts=exc.attempts, retryable=exc.retryable, error=str(exc.cause))
            return ScanOutcome(job.cursor_key, STATUS_TRUNCATED, from_block, None, error=str(exc))

        bound.info(
            "scan.start",
            start_block=cursor.start_block,
            last_scanned=cursor.last_scanned_block,
            from_block=from_block,
            head_block=head,
        )

        if from_block > head:
            bound.info("scan.skipped", reason="up_to_date")
            return ScanOutcome(job.cursor_key, STATUS_SKIPPED, from_block, head)

        decoder = self.decoder_for(job.stream)
        outcome = ScanOutcome(
            job.cursor_key,
            STATUS_COMPLETED,
            from_block,
            head,
            windows_total=window_count(from_block, head, self.window_size),
        )
        bound.debug(
            "scan.plan",
            windows=outcome.windows_total,
            window_size=self.window_size,
            overlap=self.overlap,
            pause_s=self.pause_seconds,
        )
        stored_last = cursor.last_scanned_block

        for index, window in enumerate(plan_windows(from_block, head, self.window_size), start=1):
            bound.debug("scan.window", n=index, of=outcome.windows_total,
                        from_block=window.from_block, to_block=window.to_block)

            log_filter = LogFilter(job.address, window.from_block, window.to_block, decoder.topics)
            try:
                logs = await self.fetcher.fetch(log_filter)
            except LogFetchError as exc:
                outcome.status = STATUS_TRUNCATED
                outcome.error = str(exc)
                bound.warning(
                    "scan.truncated",
                    window_from=window.from_block,
                    window_to=window.to_block,
                    attempts=exc.attempts,
                    retryable=exc.retryable,
                    last_committed=outcome.last_committed_block,
                )
                break

            timestamps = await resolve_block_timestamps(self.source, logs)
            events = decoder.decode_batch(job.target.key, logs, timestamps)
            inserted = self.writer.commit(job.target.key, events)

            # monotonic: the overlap walk must not pull the stored position back
            stored_last = max(stored_last, window.to_block)
            self.cursors.advance(job.cursor_key, stored_last)

            outcome.windows_committed += 1
            outcome.logs_fetched += len(logs)
            outcome.events_decoded += len(events)
            outcome.rows_inserted += inserted
            outcome.last_committed_block = window.to_block
            bound.debug("scan.window_committed", logs=len(logs), decoded=len(events), inserted=inserted)

            if self.pause_seconds > 0:
                await self._sleep(self.pause_seconds)

        if outcome.last_committed_block is not None:
            bound.info(
                "scan.cursor_advanced",
                last_scanned=stored_last,
                blocks=outcome.last_committed_block - from_block + 1,
                inserted=outcome.rows_inserted,
                status=outcome.status,
            )
        return outcome

    async def scan_all(self, jobs: list[ScanJob]) -> list[ScanOutcome]:
        """Sequentially: the jobs share one provider rate budget."""
        outcomes = []
        for job in jobs:
            outcomes.append(await self.scan(job))
        return outcomes
