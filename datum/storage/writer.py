"""
storage/writer.py
Commits one window's decoded events as a single transaction.

Rows are inserted with ON CONFLICT (key, tx_hash, log_index) DO NOTHING, so
replaying the overlap margin or a retried window leaves existing rows
untouched. Either the whole batch lands or, on any error, none of it does.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable

import structlog
from sqlalchemy import Engine

from datum.storage.database import dialect_insert
from datum.storage.schema import EVENT_TABLES
from datum.transform.events import DecodedEvent

log = structlog.get_logger(__name__)


class PersistenceWriter:
    def __init__(self, engine: Engine):
        self.engine = engine

    def commit(self, scan_target_key: str, events: Iterable[DecodedEvent]) -> int:
        """Insert the batch atomically; returns the number of rows actually inserted."""
        grouped: dict[str, list[dict]] = defaultdict(list)
        key_columns: dict[str, str] = {}
        for ev in events:
            if ev.scan_target_key != scan_target_key:
                raise ValueError(
                    f"event for {ev.scan_target_key!r} in a batch for {scan_target_key!r}"
                )
            grouped[ev.table].append(ev.to_row())
            key_columns[ev.table] = ev.key_column

        if not grouped:
            return 0

        inserted = 0
        dialect = self.engine.dialect.name
        with self.engine.begin() as conn:
            for table_name, rows in grouped.items():
                table = EVENT_TABLES[table_name]
                stmt = dialect_insert(dialect, table).on_conflict_do_nothing(
                    index_elements=[key_columns[table_name], "tx_hash", "log_index"]
                )
                # row-at-a-time keeps rowcount exact on every driver
                for row in rows:
                    inserted += max(conn.execute(stmt, row).rowcount, 0)

        log.debug(
            "writer.committed",
            target=scan_target_key,
            batch=sum(len(r) for r in grouped.values()),
            inserted=inserted,
        )
        return inserted
