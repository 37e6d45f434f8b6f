"""
storage/database.py
Engine construction, schema initialisation and the reset operation.
"""

from __future__ import annotations

from pathlib import Path

import structlog
from sqlalchemy import Engine, create_engine, delete, event, or_, text
from sqlalchemy.engine import make_url

from datum.storage.schema import (
    CATEGORY_CURSOR_PREFIXES,
    CATEGORY_TABLES,
    EVENT_TABLES,
    metadata,
    scan_cursors,
)

log = structlog.get_logger(__name__)


def open_engine(db_url: str, create_schema: bool = True) -> Engine:
    """
    Create the engine for the indexer store and (by default) its tables.

    For SQLite the parent directory is created and foreign keys are switched on
    for every connection; a write probe fails fast on a read-only file.
    """
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.close()

    if create_schema:
        init_schema(engine)
    return engine


def init_schema(engine: Engine) -> None:
    metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE IF NOT EXISTS __datum_write_test (id INTEGER)"))
        conn.execute(text("DELETE FROM __datum_write_test"))
    log.debug("store.schema_ready", url=engine.url.render_as_string(hide_password=True))


def reset_store(engine: Engine, category: str | None = None) -> dict[str, int]:
    """
    Delete cursors and event rows so the next run rescans from the start blocks.

    With `category`, only that category's cursors and event tables are cleared.
    Returns the number of rows removed per table.
    """
    if category is None:
        tables = list(EVENT_TABLES)
        prefixes: tuple[str, ...] | None = None
    else:
        if category not in CATEGORY_TABLES:
            raise ValueError(f"unknown scan category: {category!r}")
        tables = list(CATEGORY_TABLES[category])
        prefixes = CATEGORY_CURSOR_PREFIXES[category]

    removed: dict[str, int] = {}
    with engine.begin() as conn:
        stmt = delete(scan_cursors)
        if prefixes is not None:
            stmt = stmt.where(or_(*(scan_cursors.c.cursor_key.startswith(p, autoescape=True) for p in prefixes)))
        removed[scan_cursors.name] = conn.execute(stmt).rowcount
        for name in tables:
            removed[name] = conn.execute(delete(EVENT_TABLES[name])).rowcount

    log.info("store.reset", category=category or "all", removed=removed)
    return removed


def dialect_insert(dialect_name: str, table):
    """INSERT construct supporting ON CONFLICT for the store's backend."""
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    elif dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        raise ValueError(f"unsupported store backend: {dialect_name}")
    return insert(table)
