"""
storage/queries.py
Read-only queries over the indexer store, for downstream consumers.

Queries are built with the SQLGlot expression API and rendered for the
store's dialect, so the same builders serve SQLite (default) and Postgres.
Nothing here writes.

Key tools:
  - SQLGlot : dialect-agnostic query construction
  - Pandas  : tabular previews for the dev inspection script
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import pandas as pd
import sqlglot.expressions as exp
import structlog
from sqlalchemy import Engine, text

from datum.storage.cursors import utcnow
from datum.storage.schema import CATEGORY_CURSOR_PREFIXES, EVENT_TABLES, metadata

log = structlog.get_logger(__name__)

# SQLAlchemy dialect name -> SQLGlot dialect name
SQLGLOT_DIALECTS = {"sqlite": "sqlite", "postgresql": "postgres"}

DEFAULT_STALE_AFTER = timedelta(minutes=30)


# ---------------------------------------------------------------------------
# SQLGlot query builder
# ---------------------------------------------------------------------------

class StoreQueryBuilder:
    """Builds the consumer-facing SQL; every method returns a SQL string."""

    @classmethod
    def freshness(cls, prefixes: tuple[str, ...] = (), dialect: str = "sqlite") -> str:
        query = exp.select(
            exp.Max(this=exp.column("updated_at")).as_("last_updated_at")
        ).from_("scan_cursors")
        if prefixes:
            query = query.where(cls._prefix_condition("cursor_key", prefixes))
        return query.sql(dialect=dialect)

    @classmethod
    def cursors(cls, dialect: str = "sqlite") -> str:
        query = (
            exp.select("cursor_key", "start_block", "last_scanned_block", "updated_at")
            .from_("scan_cursors")
            .order_by(exp.column("cursor_key"))
        )
        return query.sql(dialect=dialect)

    @classmethod
    def row_count(cls, table: str, dialect: str = "sqlite") -> str:
        query = exp.select(exp.Count(this=exp.Star()).as_("row_count")).from_(table)
        return query.sql(dialect=dialect)

    @classmethod
    def newest_rows(cls, table: str, order_column: str, limit: int, dialect: str = "sqlite") -> str:
        query = (
            exp.select(exp.Star())
            .from_(table)
            .order_by(exp.Ordered(this=exp.column(order_column), desc=True))
            .limit(limit)
        )
        return query.sql(dialect=dialect, pretty=True)

    @classmethod
    def build_block_range_query(
        cls,
        start_block: int,
        end_block: int,
        table: str = "loan_nft_transfers",
        key: str | None = None,
        dialect: str = "sqlite",
    ) -> str:
        """Events of one table (optionally one scan target) within a block range."""
        if table not in EVENT_TABLES:
            raise ValueError(f"not an event table: {table!r}")
        condition = exp.column("block_number").between(
            exp.Literal.number(start_block),
            exp.Literal.number(end_block),
        )
        if key is not None:
            key_column = _key_column(table)
            condition = exp.and_(condition, exp.column(key_column).eq(exp.Literal.string(key)))
        query = (
            exp.select(exp.Star())
            .from_(table)
            .where(condition)
            .order_by(exp.column("block_number"), exp.column("log_index"))
        )
        return query.sql(dialect=dialect, pretty=True)

    @staticmethod
    def _prefix_condition(column: str, prefixes: tuple[str, ...]) -> exp.Expression:
        likes = [
            exp.Like(this=exp.column(column), expression=exp.Literal.string(p + "%"))
            for p in prefixes
        ]
        return exp.or_(*likes) if len(likes) > 1 else likes[0]


def _key_column(table: str) -> str:
    columns = EVENT_TABLES[table].c
    return "pool_key" if "pool_key" in columns else "contract_key"


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Freshness:
    """The staleness signal downstream consumers warn on."""
    last_updated_at: datetime | None
    age_seconds: float | None
    is_stale: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_updated_at": self.last_updated_at.isoformat() if self.last_updated_at else None,
            "age_seconds": self.age_seconds,
            "is_stale": self.is_stale,
        }


def _as_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class StoreReader:
    def __init__(self, engine: Engine):
        self.engine = engine
        self.dialect = SQLGLOT_DIALECTS.get(engine.dialect.name, engine.dialect.name)
        self.builder = StoreQueryBuilder()

    def _fetch(self, sql: str) -> list[dict[str, Any]]:
        with self.engine.connect() as conn:
            return [dict(r) for r in conn.execute(text(sql)).mappings().all()]

    def freshness(
        self,
        category: str | None = None,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        now: datetime | None = None,
    ) -> Freshness:
        if category is not None and category not in CATEGORY_CURSOR_PREFIXES:
            raise ValueError(f"unknown scan category: {category!r}")
        prefixes = CATEGORY_CURSOR_PREFIXES[category] if category else ()
        rows = self._fetch(self.builder.freshness(prefixes, dialect=self.dialect))
        last = _as_datetime(rows[0]["last_updated_at"]) if rows else None
        if last is None:
            return Freshness(None, None, True)
        if last.tzinfo is not None:
            last = last.replace(tzinfo=None) - (last.utcoffset() or timedelta(0))
        age = ((now or utcnow()) - last).total_seconds()
        return Freshness(last, age, age > stale_after.total_seconds())

    def cursors(self) -> list[dict[str, Any]]:
        rows = self._fetch(self.builder.cursors(dialect=self.dialect))
        for row in rows:
            updated = _as_datetime(row["updated_at"])
            row["updated_at"] = updated.isoformat() if updated else None
        return rows

    def table_counts(self) -> dict[str, int]:
        counts = {}
        for name in sorted(metadata.tables):
            rows = self._fetch(self.builder.row_count(name, dialect=self.dialect))
            counts[name] = int(rows[0]["row_count"])
        return counts

    def preview(self, table: str, limit: int = 25) -> pd.DataFrame:
        """Newest `limit` rows of a table, oldest first, like a tail."""
        if table not in metadata.tables:
            raise ValueError(f"unknown table: {table!r}")
        columns = metadata.tables[table].c
        order_column = next(
            (c for c in ("id", "block_number", "created_at", "updated_at") if c in columns),
            None,
        )
        if order_column is None:
            sql = exp.select(exp.Star()).from_(table).limit(limit).sql(dialect=self.dialect)
        else:
            sql = self.builder.newest_rows(table, order_column, limit, dialect=self.dialect)

        with self.engine.connect() as conn:
            df = pd.read_sql_query(text(sql), conn)
        if order_column is not None and not df.empty:
            df = df.sort_values(order_column).reset_index(drop=True)
        return df

    def events_in_range(
        self, table: str, start_block: int, end_block: int, key: str | None = None
    ) -> pd.DataFrame:
        sql = self.builder.build_block_range_query(start_block, end_block, table, key, dialect=self.dialect)
        with self.engine.connect() as conn:
            return pd.read_sql_query(text(sql), conn)
