"""
config.py
Runtime settings (environment / .env) and the static scan-target lists.

Settings are read once at process start and passed explicitly through the
run context; nothing in the package reads os.environ after that.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

from dotenv import load_dotenv
from web3 import Web3

from datum.errors import ConfigError

CATEGORY_LOANS = "loans"
CATEGORY_STABILITY_POOL = "stability_pool"
CATEGORIES = (CATEGORY_LOANS, CATEGORY_STABILITY_POOL)


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    db_url: str
    window_size: int              # blocks per window beyond the first (to = from + window_size)
    pause_ms: int
    overlap_blocks: int
    lock_dir: Path = Path("locks")
    max_attempts: int = 6
    base_delay_ms: int = 750
    max_delay_ms: int = 10_000
    rpc_init_timeout: float = 15.0
    chain: str = "FLR"
    loan_contracts_path: Path = Path("data/loan_contracts.json")
    stability_pools_path: Path = Path("data/stability_pools.json")
    log_level: str = "INFO"

    @property
    def pause_seconds(self) -> float:
        return self.pause_ms / 1000.0

    def targets_path(self, category: str) -> Path:
        if category == CATEGORY_LOANS:
            return self.loan_contracts_path
        if category == CATEGORY_STABILITY_POOL:
            return self.stability_pools_path
        raise ConfigError(f"unknown scan category: {category!r}")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env

        db_url = _optional(env, "DATUM_DB_URL")
        if db_url is None:
            db_path = _required(env, "DATUM_DB_PATH")
            db_url = f"sqlite:///{db_path}"

        settings = cls(
            rpc_url=_required(env, "DATUM_FLR_SCAN_RPC"),
            db_url=db_url,
            window_size=_int(env, "DATUM_FLR_SCAN_BLOCKS", required=True),
            pause_ms=_int(env, "DATUM_FLR_SCAN_PAUSE_MS", required=True),
            overlap_blocks=_int(env, "DATUM_SCAN_OVERLAP_BLOCKS", required=True),
            lock_dir=Path(_optional(env, "DATUM_LOCK_DIR") or "locks"),
            max_attempts=_int(env, "DATUM_FETCH_MAX_ATTEMPTS", default=6),
            base_delay_ms=_int(env, "DATUM_FETCH_BASE_DELAY_MS", default=750),
            max_delay_ms=_int(env, "DATUM_FETCH_MAX_DELAY_MS", default=10_000),
            rpc_init_timeout=float(_int(env, "DATUM_RPC_INIT_TIMEOUT_S", default=15)),
            chain=_optional(env, "DATUM_CHAIN") or "FLR",
            loan_contracts_path=Path(
                _optional(env, "DATUM_LOAN_CONTRACTS_PATH") or "data/loan_contracts.json"
            ),
            stability_pools_path=Path(
                _optional(env, "DATUM_STABILITY_POOLS_PATH") or "data/stability_pools.json"
            ),
            log_level=(_optional(env, "DATUM_LOG_LEVEL") or "INFO").upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.window_size <= 0:
            raise ConfigError("DATUM_FLR_SCAN_BLOCKS must be a positive integer")
        if self.overlap_blocks < 0:
            raise ConfigError("DATUM_SCAN_OVERLAP_BLOCKS must be a non-negative integer")
        if self.pause_ms < 0:
            raise ConfigError("DATUM_FLR_SCAN_PAUSE_MS must be a non-negative integer")
        if self.max_attempts < 1:
            raise ConfigError("DATUM_FETCH_MAX_ATTEMPTS must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < self.base_delay_ms:
            raise ConfigError("fetch backoff delays must satisfy 0 <= base <= max")


def load_settings(
    env_file: str | os.PathLike | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """
    Load `.env` (if present) into the process environment, then build Settings.

    `overrides` maps env var names to CLI values. Values left unset (None) fall
    back to the environment; the rest satisfy required variables like any other
    source, so a flag alone is enough when the env var is absent.
    """
    load_dotenv(dotenv_path=env_file, override=False)
    env = dict(os.environ)
    env.update({name: str(value) for name, value in (overrides or {}).items() if value is not None})
    return Settings.from_env(env)


def _optional(env: Mapping[str, str], name: str) -> str | None:
    value = env.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _required(env: Mapping[str, str], name: str) -> str:
    value = _optional(env, name)
    if value is None:
        raise ConfigError(f"missing required env var: {name}")
    return value


def _int(env: Mapping[str, str], name: str, default: int | None = None, required: bool = False) -> int:
    raw = _required(env, name) if required else _optional(env, name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


# ---------------------------------------------------------------------------
# Scan targets
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScanTarget:
    """One contract / pool to scan. Immutable for the duration of a run."""
    key: str
    protocol: str
    address: str                          # EIP-55
    default_start_block: int
    secondary_address: str | None = None  # e.g. the trove manager behind a loan NFT
    extras: dict[str, Any] = field(default_factory=dict, compare=False)

    def with_secondary(self, address: str | None) -> "ScanTarget":
        if address is None:
            return self
        return replace(self, secondary_address=Web3.to_checksum_address(address))


def load_targets(path: str | os.PathLike, chain: str, category: str) -> list[ScanTarget]:
    """
    Read the static target list for one category.

    Expected shape::

        {"chains": {"FLR": {"contracts": [{"key": ..., "protocol": ...,
                                           "address": ..., "default_start_block": ...}]}}}
    """
    path = Path(path)
    try:
        cfg = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"target config not found: {path}") from None
    except json.JSONDecodeError as exc:
        raise ConfigError(f"target config is not valid JSON: {path}: {exc}") from None

    entries = _section(cfg, path, "chains", chain, "contracts") or []
    if not isinstance(entries, list):
        raise ConfigError(f"{path}: chains.{chain}.contracts must be a list")
    if not entries:
        raise ConfigError(f"no {category} targets configured for chain {chain} in {path}")

    targets = [_parse_target(entry, category, path) for entry in entries]
    keys = [t.key for t in targets]
    if len(set(keys)) != len(keys):
        raise ConfigError(f"duplicate target keys in {path}")
    return targets


def _section(cfg: Any, path: Path, *keys: str) -> Any:
    node = cfg
    for depth, key in enumerate(keys):
        if node is None:
            return None
        if not isinstance(node, dict):
            where = ".".join(keys[:depth]) or "top level"
            raise ConfigError(f"{path}: {where} must be an object")
        node = node.get(key)
    return node


def _parse_target(entry: Mapping[str, Any], category: str, path: Path) -> ScanTarget:
    if not isinstance(entry, dict):
        raise ConfigError(f"{path}: each target must be an object, got {entry!r}")
    required = ["key", "protocol", "address", "default_start_block"]
    if category == CATEGORY_STABILITY_POOL:
        required += ["coll_symbol", "coll_decimals"]
    missing = [name for name in required if entry.get(name) in (None, "")]
    if missing:
        raise ConfigError(f"{path}: target {entry.get('key', '?')!r} missing {', '.join(missing)}")

    try:
        address = Web3.to_checksum_address(entry["address"])
        start = int(entry["default_start_block"])
        manager = entry.get("trove_manager")
        if manager:
            manager = Web3.to_checksum_address(manager)
        extras = {}
        if category == CATEGORY_STABILITY_POOL:
            extras = {"coll_symbol": str(entry["coll_symbol"]), "coll_decimals": int(entry["coll_decimals"])}
    except (ValueError, TypeError) as exc:
        raise ConfigError(f"{path}: target {entry['key']!r} is invalid: {exc}") from None
    if start < 0:
        raise ConfigError(f"{path}: target {entry['key']!r} has a negative start block")

    return ScanTarget(
        key=str(entry["key"]),
        protocol=str(entry["protocol"]),
        address=address,
        default_start_block=start,
        extras=extras,
        secondary_address=manager or None,
    )
