"""
scripts/scan_all.py
Run every scan category in sequence (loans, then stability pools).
Stops at the first category that exits non-zero.

Usage:
  python scripts/scan_all.py
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from datum.config import CATEGORIES, load_settings
from datum.errors import ConfigError
from datum.ingestion.runner import EXIT_FATAL, EXIT_OK, run
from datum.logging_config import configure_logging

log = structlog.get_logger(__name__)


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Datum: scan all categories")
    p.add_argument("--env-file", default=None)
    args = p.parse_args(argv)

    configure_logging()
    try:
        settings = load_settings(args.env_file)
    except ConfigError as exc:
        log.error("scan_all.config_error", error=str(exc))
        return EXIT_FATAL
    configure_logging(settings.log_level)

    for category in CATEGORIES:
        log.info("scan_all.starting", category=category)
        code = run(category, settings)
        if code != EXIT_OK:
            log.error("scan_all.failed", category=category, exit_code=code)
            return EXIT_FATAL
        log.info("scan_all.completed", category=category)

    log.info("scan_all.done")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
