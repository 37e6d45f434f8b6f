"""
scripts/check_db.py
Dev inspection: row counts for every store table plus its newest rows.

Usage:
  python scripts/check_db.py
  python scripts/check_db.py --limit 10 --large 100 --table trove_events
"""

import argparse
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import pandas as pd
import structlog
from dotenv import load_dotenv

from datum.logging_config import configure_logging
from datum.storage.database import open_engine
from datum.storage.queries import StoreReader

log = structlog.get_logger(__name__)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Inspect the Datum store")
    p.add_argument("--db-url", default=None)
    p.add_argument("--limit",  type=int, default=int(os.getenv("CHECKDB_LIMIT", "25")))
    p.add_argument("--large",  type=int, default=int(os.getenv("CHECKDB_LARGE", "50")),
                   help="tables above this many rows only show the newest --limit")
    p.add_argument("--table",  action="append", default=None, help="restrict to these tables")
    return p.parse_args(argv)


def main(argv=None) -> int:
    load_dotenv()
    args = parse_args(argv)
    configure_logging(os.getenv("DATUM_LOG_LEVEL", "INFO"))

    db_url = args.db_url or os.getenv("DATUM_DB_URL")
    if not db_url and os.getenv("DATUM_DB_PATH"):
        db_url = f"sqlite:///{os.environ['DATUM_DB_PATH']}"
    if not db_url:
        log.error("check_db.config_error", error="missing DATUM_DB_PATH / DATUM_DB_URL")
        return 1

    engine = open_engine(db_url, create_schema=False)
    reader = StoreReader(engine)
    try:
        counts = reader.table_counts()
        freshness = reader.freshness()
        log.info("check_db.freshness", **freshness.to_dict())

        with pd.option_context("display.max_columns", None, "display.width", 200):
            for table, count in counts.items():
                if args.table and table not in args.table:
                    continue
                limit = args.limit if count > args.large else max(count, 1)
                print(f"\n== {table}: {count} rows")
                df = reader.preview(table, limit=limit)
                print("(no rows)" if df.empty else df.to_string(index=False))
    finally:
        engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main())
