"""
ingestion/runner.py
One process invocation: scan every configured target of one category.

    lock -> load targets -> connect + probe -> open store -> register targets
         -> scan jobs sequentially -> release lock

Exit codes: 0 when the run completed, was truncated by fetch failures, or was
skipped because another instance holds the lock; 1 on configuration,
connectivity or store failures.
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

import structlog
from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError

from datum.config import CATEGORIES, CATEGORY_LOANS, ScanTarget, Settings, load_targets
from datum.errors import ConfigError, ConnectivityError, RunLockError
from datum.ingestion.event_source import EventSource, Web3EventSource
from datum.ingestion.log_fetcher import LogFetcher
from datum.ingestion.run_lock import RunLock
from datum.ingestion.scanner import JOB_BUILDERS, EventScanner, ScanOutcome
from datum.storage.cursors import CursorStore
from datum.storage.database import open_engine
from datum.storage.registry import TargetRegistry
from datum.storage.writer import PersistenceWriter

log = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1

SourceFactory = Callable[[Settings], EventSource]


def default_source_factory(settings: Settings) -> EventSource:
    return Web3EventSource(settings.rpc_url)


def lock_name(category: str) -> str:
    return "scan-" + category.replace("_", "-")


@dataclass
class RunContext:
    """Explicit per-run handles; nothing global."""
    settings: Settings
    source: EventSource
    engine: Engine
    cursors: CursorStore
    writer: PersistenceWriter
    registry: TargetRegistry


@contextmanager
def open_run_context(settings: Settings, source: EventSource) -> Iterator[RunContext]:
    engine = open_engine(settings.db_url)
    try:
        yield RunContext(
            settings=settings,
            source=source,
            engine=engine,
            cursors=CursorStore(engine),
            writer=PersistenceWriter(engine),
            registry=TargetRegistry(engine),
        )
    finally:
        engine.dispose()


async def probe_source(source: EventSource, timeout: float) -> int:
    """Startup connectivity check; returns the chain id."""
    try:
        return await asyncio.wait_for(asyncio.to_thread(source.chain_id), timeout=timeout)
    except asyncio.TimeoutError:
        raise ConnectivityError(f"event source did not answer within {timeout:g}s") from None
    except Exception as exc:
        raise ConnectivityError(f"event source probe failed: {exc}") from exc


def register_targets(ctx: RunContext, category: str, targets: list[ScanTarget]) -> list[ScanTarget]:
    """
    Upsert the registry rows. For loan contracts the trove manager comes from the
    config pin, else the registry cache, else one on-chain read that is then cached.
    """
    if category != CATEGORY_LOANS:
        for target in targets:
            ctx.registry.register_stability_pool(target)
        return targets

    registered = []
    for target in targets:
        if target.secondary_address is None:
            target = target.with_secondary(ctx.registry.trove_manager_address(target.key))
        if target.secondary_address is None:
            try:
                manager = ctx.source.trove_manager_of(target.address)
            except Exception as exc:
                raise ConnectivityError(
                    f"cannot resolve trove manager for {target.key}: {exc}"
                ) from exc
            target = target.with_secondary(manager)
        ctx.registry.register_loan_contract(target)
        # the cached row wins when resolution yields nothing this time
        target = target.with_secondary(ctx.registry.trove_manager_address(target.key))
        registered.append(target)
    return registered


async def scan_category(ctx: RunContext, category: str, targets: list[ScanTarget]) -> list[ScanOutcome]:
    settings = ctx.settings
    fetcher = LogFetcher(
        ctx.source,
        max_attempts=settings.max_attempts,
        base_delay=settings.base_delay_ms / 1000.0,
        max_delay=settings.max_delay_ms / 1000.0,
    )
    scanner = EventScanner(
        ctx.source,
        fetcher,
        ctx.cursors,
        ctx.writer,
        window_size=settings.window_size,
        overlap=settings.overlap_blocks,
        pause_seconds=settings.pause_seconds,
    )
    registered = register_targets(ctx, category, targets)
    jobs = JOB_BUILDERS[category](registered)
    for target in registered:
        if category == CATEGORY_LOANS and not target.secondary_address:
            log.warning("run.no_trove_manager", target=target.key)
    return await scanner.scan_all(jobs)


async def _run(category: str, settings: Settings, source_factory: SourceFactory) -> int:
    targets = load_targets(settings.targets_path(category), settings.chain, category)
    source = source_factory(settings)
    chain_id = await probe_source(source, settings.rpc_init_timeout)
    log.info("run.source_ready", chain_id=chain_id, targets=len(targets))

    with open_run_context(settings, source) as ctx:
        outcomes = await scan_category(ctx, category, targets)

    summary = {}
    for outcome in outcomes:
        summary[outcome.status] = summary.get(outcome.status, 0) + 1
    log.info("run.finished", category=category, jobs=len(outcomes), **summary)
    return EXIT_OK


def run(
    category: str,
    settings: Settings,
    source_factory: SourceFactory = default_source_factory,
) -> int:
    """Blocking entry point used by the scripts; returns the process exit code."""
    if category not in CATEGORIES:
        log.error("run.config_error", error=f"unknown scan category: {category!r}")
        return EXIT_FATAL

    try:
        with RunLock(settings.lock_dir, lock_name(category)) as lock:
            if not lock.acquired:
                log.warning("run.locked", category=category, detail="another instance is running, exiting")
                return EXIT_OK
            log.info("run.start", category=category)
            return asyncio.run(_run(category, settings, source_factory))
    except ConfigError as exc:
        log.error("run.config_error", category=category, error=str(exc))
    except ConnectivityError as exc:
        log.error("run.connectivity_error", category=category, error=str(exc))
    except RunLockError as exc:
        log.error("run.lock_error", category=category, error=str(exc))
    except SQLAlchemyError as exc:
        log.error("run.store_error", category=category, error=str(exc))
    return EXIT_FATAL
