"""
api/data_service.py
Read-only view of the indexer store for the API: freshness, cursors, tables.
Everything goes through datum/storage/queries.py; nothing here writes.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import Engine

from datum.storage.database import open_engine
from datum.storage.queries import DEFAULT_STALE_AFTER, StoreReader


class DataService:
    """
    Returns serializable dicts for the API endpoints.

    Usage
    -----
    service = DataService.from_url("sqlite:///data/datum.db")
    service.get_freshness(category="loans")
    """

    def __init__(self, engine: Engine):
        self.reader = StoreReader(engine)

    @classmethod
    def from_url(cls, db_url: str) -> "DataService":
        return cls(open_engine(db_url, create_schema=False))

    def get_freshness(self, category: str | None = None, stale_after_s: float | None = None) -> dict:
        stale_after = timedelta(seconds=stale_after_s) if stale_after_s is not None else DEFAULT_STALE_AFTER
        freshness = self.reader.freshness(category=category, stale_after=stale_after)
        return {
            "category": category or "all",
            "stale_after_s": stale_after.total_seconds(),
            **freshness.to_dict(),
        }

    def get_cursors(self) -> dict:
        cursors = self.reader.cursors()
        return {"count": len(cursors), "cursors": cursors}

    def get_tables(self) -> dict:
        return {"tables": self.reader.table_counts()}
