"""
storage/cursors.py
Durable cursor_key -> (start_block, last_scanned_block) positions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import Engine, delete, select, update

from datum.errors import CursorNotFound
from datum.storage.database import dialect_insert
from datum.storage.schema import scan_cursors

log = structlog.get_logger(__name__)


def utcnow() -> datetime:
    """Naive UTC, the form DateTime columns store on every backend."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class Cursor:
    cursor_key: str
    start_block: int
    last_scanned_block: int
    updated_at: datetime | None = None


class CursorStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def ensure(self, cursor_key: str, start_block: int) -> None:
        """Create the cursor at last_scanned_block = 0 unless it already exists."""
        stmt = (
            dialect_insert(self.engine.dialect.name, scan_cursors)
            .values(cursor_key=cursor_key, start_block=start_block, last_scanned_block=0, updated_at=utcnow())
            .on_conflict_do_nothing(index_elements=["cursor_key"])
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def read(self, cursor_key: str) -> Cursor:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(scan_cursors).where(scan_cursors.c.cursor_key == cursor_key)
            ).mappings().first()
        if row is None:
            raise CursorNotFound(cursor_key)
        return Cursor(
            cursor_key=row["cursor_key"],
            start_block=int(row["start_block"]),
            last_scanned_block=int(row["last_scanned_block"]),
            updated_at=row["updated_at"],
        )

    def advance(self, cursor_key: str, new_last_block: int) -> None:
        """
        Set last_scanned_block unconditionally. Only call with a block whose window
        has been fully committed; keeping the value monotonic is the caller's job.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                update(scan_cursors)
                .where(scan_cursors.c.cursor_key == cursor_key)
                .values(last_scanned_block=new_last_block, updated_at=utcnow())
            )
        if result.rowcount == 0:
            raise CursorNotFound(cursor_key)
        log.debug("cursor.advanced", cursor=cursor_key, last_scanned_block=new_last_block)

    def reset(self, cursor_key: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(delete(scan_cursors).where(scan_cursors.c.cursor_key == cursor_key))
        removed = result.rowcount > 0
        log.info("cursor.reset", cursor=cursor_key, removed=removed)
        return removed

    def all(self) -> list[Cursor]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(scan_cursors).order_by(scan_cursors.c.cursor_key)).mappings().all()
        return [
            Cursor(r["cursor_key"], int(r["start_block"]), int(r["last_scanned_block"]), r["updated_at"])
            for r in rows
        ]
