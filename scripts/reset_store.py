"""
scripts/reset_store.py
Clear scan cursors and event tables so the next run starts from the
configured start blocks again.

Usage:
  python scripts/reset_store.py --yes                        # everything
  python scripts/reset_store.py --category stability_pool --yes
  python scripts/reset_store.py --cursor sp:flr_wflr:deposit_ops --yes
"""

import argparse
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog
from dotenv import load_dotenv

from datum.config import CATEGORIES
from datum.logging_config import configure_logging
from datum.storage.cursors import CursorStore
from datum.storage.database import open_engine, reset_store

log = structlog.get_logger(__name__)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Reset Datum scan state")
    group = p.add_mutually_exclusive_group()
    group.add_argument("--category", choices=CATEGORIES, default=None)
    group.add_argument("--cursor",   default=None, help="delete a single cursor, keep event rows")
    p.add_argument("--db-url",       default=None)
    p.add_argument("--yes",          action="store_true", help="required; this deletes data")
    return p.parse_args(argv)


def main(argv=None) -> int:
    load_dotenv()
    args = parse_args(argv)
    configure_logging(os.getenv("DATUM_LOG_LEVEL", "INFO"))

    db_url = args.db_url or os.getenv("DATUM_DB_URL")
    if not db_url and os.getenv("DATUM_DB_PATH"):
        db_url = f"sqlite:///{os.environ['DATUM_DB_PATH']}"
    if not db_url:
        log.error("reset.config_error", error="missing DATUM_DB_PATH / DATUM_DB_URL")
        return 1
    if not args.yes:
        log.error("reset.refused", detail="pass --yes to confirm")
        return 1

    engine = open_engine(db_url)
    try:
        if args.cursor:
            CursorStore(engine).reset(args.cursor)
        else:
            reset_store(engine, args.category)
    finally:
        engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main())
