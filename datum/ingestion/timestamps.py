"""
ingestion/timestamps.py
Block number -> timestamp lookups for the blocks referenced by a log batch.
"""

from __future__ import annotations

import asyncio
from typing import Iterable

import structlog

from datum.ingestion.event_source import EventSource, RawLog

log = structlog.get_logger(__name__)


def unique_blocks(logs: Iterable[RawLog]) -> list[int]:
    seen: dict[int, None] = {}
    for raw in logs:
        bn = raw.block_number
        if isinstance(bn, int) and not isinstance(bn, bool):
            seen.setdefault(bn, None)
    return list(seen)


async def resolve_block_timestamps(source: EventSource, logs: Iterable[RawLog]) -> dict[int, int]:
    """
    Look up every distinct block in one round of concurrent requests.

    Blocks whose lookup fails (or returns no usable timestamp) are left out of the
    map; callers store a null timestamp for them.
    """
    blocks = unique_blocks(logs)
    if not blocks:
        return {}

    results = await asyncio.gather(
        *(asyncio.to_thread(source.get_block_timestamp, bn) for bn in blocks),
        return_exceptions=True,
    )

    resolved: dict[int, int] = {}
    for bn, result in zip(blocks, results):
        if isinstance(result, BaseException):
            log.debug("timestamps.lookup_failed", block=bn, error=str(result))
            continue
        if isinstance(result, int) and not isinstance(result, bool):
            resolved[bn] = result
    return resolved
