"""
transform/events.py
Typed records produced by the decoder, one dataclass per event table.

Every variant carries the common envelope (scan target, block, timestamp, tx
hash, log index); `table` names where the writer puts it and `key_column` is
the column that holds the scan-target key in that table.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar


@dataclass(frozen=True)
class DecodedEvent:
    scan_target_key: str
    block_number: int
    block_timestamp: int | None
    tx_hash: str
    log_index: int

    table: ClassVar[str] = ""
    key_column: ClassVar[str] = "contract_key"

    @property
    def identity(self) -> tuple[str, str, int]:
        return (self.scan_target_key, self.tx_hash, self.log_index)

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row[self.key_column] = row.pop("scan_target_key")
        return row


@dataclass(frozen=True)
class TransferEvent(DecodedEvent):
    from_addr: str = ""
    to_addr: str = ""
    token_id: str = ""
    is_burned: bool = False

    table: ClassVar[str] = "loan_nft_transfers"


@dataclass(frozen=True)
class RedemptionEvent(DecodedEvent):
    attempted_bold: str = ""
    actual_bold: str = ""
    eth_sent: str = ""
    eth_fee: str = ""
    price: str = ""
    redemption_price: str = ""

    table: ClassVar[str] = "redemption_events"


@dataclass(frozen=True)
class TroveEvent(DecodedEvent):
    """TroveOperation / TroveUpdated / RedemptionFeePaidToTrove, fields kept as JSON."""
    event_name: str = ""
    trove_id: str = ""
    data: dict[str, str] = field(default_factory=dict, hash=False)

    table: ClassVar[str] = "trove_events"

    def to_row(self) -> dict[str, Any]:
        row = super().to_row()
        row["data_json"] = json.dumps(row.pop("data"), sort_keys=True)
        return row


@dataclass(frozen=True)
class DepositOperationEvent(DecodedEvent):
    depositor: str = ""
    operation: str = ""
    deposit_loss: str = ""
    topup_or_withdrawal: str = ""
    yield_gain_since: str = ""
    yield_gain_claimed: str = ""
    coll_gain_since: str = ""
    coll_gain_claimed: str = ""

    table: ClassVar[str] = "sp_deposit_ops"
    key_column: ClassVar[str] = "pool_key"


@dataclass(frozen=True)
class DepositUpdateEvent(DecodedEvent):
    depositor: str = ""
    new_deposit: str = ""
    stashed_coll: str = ""
    snapshot_p: str = ""
    snapshot_s: str = ""
    snapshot_b: str = ""
    snapshot_scale: str = ""

    table: ClassVar[str] = "sp_deposit_updates"
    key_column: ClassVar[str] = "pool_key"
