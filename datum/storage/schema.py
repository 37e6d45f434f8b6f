"""
storage/schema.py
SQLAlchemy Core table definitions for the cursor, registry and event tables.

Event tables share one shape for the envelope and are unique on
(scan target key, tx_hash, log_index); that constraint is what the writer's
ON CONFLICT DO NOTHING targets.
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)

metadata = MetaData()

# ---------------------------------------------------------------------------
# Cursors and registry
# ---------------------------------------------------------------------------

scan_cursors = Table(
    "scan_cursors",
    metadata,
    Column("cursor_key", String(255), primary_key=True),
    Column("start_block", BigInteger, nullable=False, default=0),
    Column("last_scanned_block", BigInteger, nullable=False, default=0),
    Column("updated_at", DateTime, nullable=False, server_default=func.current_timestamp()),
)

loan_contracts = Table(
    "loan_contracts",
    metadata,
    Column("contract_key", String(255), primary_key=True),
    Column("protocol", String(64), nullable=False),
    Column("address_eip55", String(42), nullable=False),
    Column("default_start_block", BigInteger, nullable=False),
    Column("trove_manager_address", String(42)),
    Column("created_at", DateTime, nullable=False, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, nullable=False, server_default=func.current_timestamp()),
)

stability_pools = Table(
    "stability_pools",
    metadata,
    Column("pool_key", String(255), primary_key=True),
    Column("protocol", String(64), nullable=False),
    Column("address_eip55", String(42), nullable=False),
    Column("default_start_block", BigInteger, nullable=False),
    Column("coll_symbol", String(32), nullable=False),
    Column("coll_decimals", Integer, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, nullable=False, server_default=func.current_timestamp()),
)


# ---------------------------------------------------------------------------
# Event tables
# ---------------------------------------------------------------------------

def _event_table(name: str, key_column: str, *columns: Column) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column(key_column, String(255), nullable=False),
        Column("block_number", BigInteger, nullable=False),
        Column("block_timestamp", BigInteger),
        Column("tx_hash", String(66), nullable=False),
        Column("log_index", Integer, nullable=False),
        *columns,
        Column("created_at", DateTime, nullable=False, server_default=func.current_timestamp()),
        UniqueConstraint(key_column, "tx_hash", "log_index", name=f"uq_{name}_identity"),
        Index(f"ix_{name}_key_block", key_column, "block_number"),
    )


loan_nft_transfers = _event_table(
    "loan_nft_transfers",
    "contract_key",
    Column("from_addr", String(42), nullable=False),
    Column("to_addr", String(42), nullable=False),
    Column("token_id", Text, nullable=False),
    Column("is_burned", Boolean, nullable=False, default=False),
)

redemption_events = _event_table(
    "redemption_events",
    "contract_key",
    Column("attempted_bold", Text, nullable=False),
    Column("actual_bold", Text, nullable=False),
    Column("eth_sent", Text, nullable=False),
    Column("eth_fee", Text, nullable=False),
    Column("price", Text, nullable=False),
    Column("redemption_price", Text, nullable=False),
)

trove_events = _event_table(
    "trove_events",
    "contract_key",
    Column("event_name", String(64), nullable=False),
    Column("trove_id", Text, nullable=False),
    Column("data_json", Text, nullable=False),
)

sp_deposit_ops = _event_table(
    "sp_deposit_ops",
    "pool_key",
    Column("depositor", String(42), nullable=False),
    Column("operation", Text, nullable=False),
    Column("deposit_loss", Text, nullable=False),
    Column("topup_or_withdrawal", Text, nullable=False),
    Column("yield_gain_since", Text, nullable=False),
    Column("yield_gain_claimed", Text, nullable=False),
    Column("coll_gain_since", Text, nullable=False),
    Column("coll_gain_claimed", Text, nullable=False),
)

sp_deposit_updates = _event_table(
    "sp_deposit_updates",
    "pool_key",
    Column("depositor", String(42), nullable=False),
    Column("new_deposit", Text, nullable=False),
    Column("stashed_coll", Text, nullable=False),
    Column("snapshot_p", Text, nullable=False),
    Column("snapshot_s", Text, nullable=False),
    Column("snapshot_b", Text, nullable=False),
    Column("snapshot_scale", Text, nullable=False),
)

EVENT_TABLES = {
    t.name: t
    for t in (loan_nft_transfers, redemption_events, trove_events, sp_deposit_ops, sp_deposit_updates)
}

# Event tables and cursor prefixes owned by each scan category.
CATEGORY_TABLES = {
    "loans": ("loan_nft_transfers", "redemption_events", "trove_events"),
    "stability_pool": ("sp_deposit_ops", "sp_deposit_updates"),
}
CATEGORY_CURSOR_PREFIXES = {
    "loans": ("loan_nft:", "trove_manager:"),
    "stability_pool": ("sp:",),
}
