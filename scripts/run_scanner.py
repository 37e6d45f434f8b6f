"""
scripts/run_scanner.py
Entry point for one indexer run: scan every configured target of a category.

Usage:
  python scripts/run_scanner.py --category loans
  python scripts/run_scanner.py --category stability_pool --window-size 499 --overlap 5
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from datum.config import CATEGORIES, load_settings
from datum.errors import ConfigError
from datum.ingestion.runner import EXIT_FATAL, run
from datum.logging_config import configure_logging

log = structlog.get_logger(__name__)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Datum on-chain event indexer")
    p.add_argument("--category",    required=True, choices=CATEGORIES)
    p.add_argument("--env-file",    default=None, help="dotenv file (default: ./.env if present)")
    p.add_argument("--rpc-url",     default=None, help="overrides DATUM_FLR_SCAN_RPC")
    p.add_argument("--db-url",      default=None, help="overrides DATUM_DB_PATH / DATUM_DB_URL")
    p.add_argument("--window-size", type=int, default=None, help="overrides DATUM_FLR_SCAN_BLOCKS")
    p.add_argument("--overlap",     type=int, default=None, help="overrides DATUM_SCAN_OVERLAP_BLOCKS")
    p.add_argument("--pause-ms",    type=int, default=None, help="overrides DATUM_FLR_SCAN_PAUSE_MS")
    p.add_argument("--log-level",   default=None)
    return p.parse_args(argv)


def env_overrides(args) -> dict:
    """CLI flags keyed by the env var each one replaces."""
    return {
        "DATUM_FLR_SCAN_RPC":        args.rpc_url,
        "DATUM_DB_URL":              args.db_url,
        "DATUM_FLR_SCAN_BLOCKS":     args.window_size,
        "DATUM_SCAN_OVERLAP_BLOCKS": args.overlap,
        "DATUM_FLR_SCAN_PAUSE_MS":   args.pause_ms,
    }


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or "INFO")

    try:
        settings = load_settings(args.env_file, env_overrides(args))
    except ConfigError as exc:
        log.error("scanner.config_error", error=str(exc))
        return EXIT_FATAL

    configure_logging(args.log_level or settings.log_level)
    return run(args.category, settings)


if __name__ == "__main__":
    sys.exit(main())
