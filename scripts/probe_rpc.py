"""
scripts/probe_rpc.py
Probe the configured RPC with one get_logs call over the newest window.
If this fails or is slow, lower DATUM_FLR_SCAN_BLOCKS or raise the pause.

Usage:
  python scripts/probe_rpc.py
  python scripts/probe_rpc.py --address 0x... --window-size 499
"""

import argparse
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from datum.config import load_settings
from datum.errors import ConfigError
from datum.ingestion.event_source import LogFilter, Web3EventSource
from datum.logging_config import configure_logging

log = structlog.get_logger(__name__)


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Probe eth_getLogs against the configured RPC")
    p.add_argument("--env-file",    default=None)
    p.add_argument("--address",     default=None, help="restrict the probe to one contract")
    p.add_argument("--window-size", type=int, default=None)
    args = p.parse_args(argv)

    configure_logging()
    try:
        settings = load_settings(args.env_file, {"DATUM_FLR_SCAN_BLOCKS": args.window_size})
    except ConfigError as exc:
        log.error("probe.config_error", error=str(exc))
        return 1

    source = Web3EventSource(settings.rpc_url)
    try:
        head = source.head_block()
        from_block = max(0, head - settings.window_size)
        t0 = time.monotonic()
        log.info("probe.start", from_block=from_block, to_block=head, address=args.address)
        if args.address:
            logs = source.get_logs(LogFilter(args.address, from_block, head, ()))
        else:
            logs = source.w3.eth.get_logs({"fromBlock": from_block, "toBlock": head})
        elapsed_ms = int((time.monotonic() - t0) * 1000)
    except Exception as exc:
        log.error("probe.failed", error=str(exc))
        return 1

    log.info("probe.ok", logs=len(logs), elapsed_ms=elapsed_ms, overlap=settings.overlap_blocks)
    return 0


if __name__ == "__main__":
    sys.exit(main())
