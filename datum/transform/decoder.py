"""
transform/decoder.py
Raw log -> DecodedEvent, driven by a load-time registry of event signatures.

Each stream (loan_nft, trove_manager, stability_pool) has a fixed table of
expected events keyed by topic0. Decoding is a dictionary lookup followed by
eth_abi decoding of the indexed topics and the data payload; the matched
spec's `build` function turns the decoded fields into the stream's variant.

Logs that match nothing, carry the wrong number of topics, fail ABI decoding,
or lack a tx hash / usable log index are dropped individually. A bad log never
fails the batch.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

import structlog
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from datum.ingestion.event_source import RawLog
from datum.transform.events import (
    DecodedEvent,
    DepositOperationEvent,
    DepositUpdateEvent,
    RedemptionEvent,
    TransferEvent,
    TroveEvent,
)

log = structlog.get_logger(__name__)

STREAM_LOAN_NFT = "loan_nft"
STREAM_TROVE_MANAGER = "trove_manager"
STREAM_STABILITY_POOL = "stability_pool"

BURN_ADDRS = frozenset({
    "0x0000000000000000000000000000000000000000",
    "0x000000000000000000000000000000000000dead",
})


@dataclass(frozen=True)
class EventInput:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSpec:
    name: str
    inputs: tuple[EventInput, ...]
    build: Callable[[dict[str, Any], dict[str, str]], DecodedEvent]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def topic(self) -> str:
        return Web3.to_hex(Web3.keccak(text=self.signature))

    @property
    def indexed(self) -> tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if i.indexed)

    @property
    def non_indexed(self) -> tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if not i.indexed)


# ---------------------------------------------------------------------------
# Variant builders
# ---------------------------------------------------------------------------

def _build_transfer(envelope: dict[str, Any], f: dict[str, str]) -> TransferEvent:
    to_addr = f["to"].lower()
    return TransferEvent(
        **envelope,
        from_addr=f["from"].lower(),
        to_addr=to_addr,
        token_id=f["tokenId"],
        is_burned=to_addr in BURN_ADDRS,
    )


def _build_redemption(envelope: dict[str, Any], f: dict[str, str]) -> RedemptionEvent:
    return RedemptionEvent(
        **envelope,
        attempted_bold=f["_attemptedBoldAmount"],
        actual_bold=f["_actualBoldAmount"],
        eth_sent=f["_ETHSent"],
        eth_fee=f["_ETHFee"],
        price=f["_price"],
        redemption_price=f["_redemptionPrice"],
    )


def _trove_builder(event_name: str) -> Callable[[dict[str, Any], dict[str, str]], TroveEvent]:
    def build(envelope: dict[str, Any], f: dict[str, str]) -> TroveEvent:
        data = {k: v for k, v in f.items() if k != "_troveId"}
        return TroveEvent(**envelope, event_name=event_name, trove_id=f["_troveId"], data=data)
    return build


def _build_deposit_operation(envelope: dict[str, Any], f: dict[str, str]) -> DepositOperationEvent:
    return DepositOperationEvent(
        **envelope,
        depositor=f["_depositor"],
        operation=f["_operation"],
        deposit_loss=f["_depositLossSinceLastOperation"],
        topup_or_withdrawal=f["_topUpOrWithdrawal"],
        yield_gain_since=f["_yieldGainSinceLastOperation"],
        yield_gain_claimed=f["_yieldGainClaimed"],
        coll_gain_since=f["_ethGainSinceLastOperation"],
        coll_gain_claimed=f["_ethGainClaimed"],
    )


def _build_deposit_update(envelope: dict[str, Any], f: dict[str, str]) -> DepositUpdateEvent:
    return DepositUpdateEvent(
        **envelope,
        depositor=f["_depositor"],
        new_deposit=f["_newDeposit"],
        stashed_coll=f["_stashedColl"],
        snapshot_p=f["_snapshotP"],
        snapshot_s=f["_snapshotS"],
        snapshot_b=f["_snapshotB"],
        snapshot_scale=f["_snapshotScale"],
    )


# ---------------------------------------------------------------------------
# Signature registry
# ---------------------------------------------------------------------------

_I = EventInput

EVENT_SPECS: dict[str, tuple[EventSpec, ...]] = {
    STREAM_LOAN_NFT: (
        EventSpec("Transfer", (
            _I("from", "address", True),
            _I("to", "address", True),
            _I("tokenId", "uint256", True),
        ), _build_transfer),
    ),
    STREAM_TROVE_MANAGER: (
        EventSpec("Redemption", (
            _I("_attemptedBoldAmount", "uint256"),
            _I("_actualBoldAmount", "uint256"),
            _I("_ETHSent", "uint256"),
            _I("_ETHFee", "uint256"),
            _I("_price", "uint256"),
            _I("_redemptionPrice", "uint256"),
        ), _build_redemption),
        EventSpec("RedemptionFeePaidToTrove", (
            _I("_troveId", "uint256", True),
            _I("_ETHFee", "uint256"),
        ), _trove_builder("RedemptionFeePaidToTrove")),
        EventSpec("TroveUpdated", (
            _I("_troveId", "uint256", True),
            _I("_debt", "uint256"),
            _I("_coll", "uint256"),
            _I("_stake", "uint256"),
            _I("_annualInterestRate", "uint256"),
            _I("_snapshotOfTotalCollRedist", "uint256"),
            _I("_snapshotOfTotalDebtRedist", "uint256"),
        ), _trove_builder("TroveUpdated")),
        EventSpec("TroveOperation", (
            _I("_troveId", "uint256", True),
            _I("_operation", "uint8"),
            _I("_annualInterestRate", "uint256"),
            _I("_debtIncreaseFromRedist", "uint256"),
            _I("_debtIncreaseFromUpfrontFee", "uint256"),
            _I("_debtChangeFromOperation", "int256"),
            _I("_collIncreaseFromRedist", "uint256"),
            _I("_collChangeFromOperation", "int256"),
        ), _trove_builder("TroveOperation")),
    ),
    STREAM_STABILITY_POOL: (
        EventSpec("DepositOperation", (
            _I("_depositor", "address", True),
            _I("_operation", "uint8"),
            _I("_depositLossSinceLastOperation", "uint256"),
            _I("_topUpOrWithdrawal", "int256"),
            _I("_yieldGainSinceLastOperation", "uint256"),
            _I("_yieldGainClaimed", "uint256"),
            _I("_ethGainSinceLastOperation", "uint256"),
            _I("_ethGainClaimed", "uint256"),
        ), _build_deposit_operation),
        EventSpec("DepositUpdated", (
            _I("_depositor", "address", True),
            _I("_newDeposit", "uint256"),
            _I("_stashedColl", "uint256"),
            _I("_snapshotP", "uint256"),
            _I("_snapshotS", "uint256"),
            _I("_snapshotB", "uint256"),
            _I("_snapshotScale", "uint256"),
        ), _build_deposit_update),
    ),
}

# topic0 -> spec, per stream
EVENT_REGISTRY: dict[str, dict[str, EventSpec]] = {
    stream: {spec.topic: spec for spec in specs} for stream, specs in EVENT_SPECS.items()
}


def topics_for(stream: str) -> tuple[str, ...]:
    return tuple(EVENT_REGISTRY[stream])


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def stable_log_index(raw: RawLog) -> int | None:
    """
    The provider's log index if it is a non-negative int; otherwise the secondary
    index field parsed from an int, a hex string or a decimal string.
    """
    if _is_int(raw.index) and raw.index >= 0:
        return raw.index
    li = raw.log_index
    if _is_int(li):
        return li if li >= 0 else None
    if isinstance(li, str):
        text = li.strip()
        try:
            n = int(text, 16) if text.lower().startswith("0x") else int(text, 10)
        except ValueError:
            return None
        return n if n >= 0 else None
    return None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _render(value: Any, abi_type: str) -> str:
    if abi_type == "address":
        return Web3.to_checksum_address(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def _hex_bytes(value: str) -> bytes:
    text = value[2:] if value.lower().startswith("0x") else value
    return bytes.fromhex(text)


def decode_fields(spec: EventSpec, raw: RawLog) -> dict[str, str]:
    """Decode indexed topics and the data payload into name -> string value."""
    fields: dict[str, str] = {}
    for inp, topic in zip(spec.indexed, raw.topics[1:]):
        word = _hex_bytes(topic)
        if len(word) != 32:
            raise ValueError(f"topic for {inp.name} is {len(word)} bytes, expected 32")
        (value,) = abi_decode([inp.type], word)
        fields[inp.name] = _render(value, inp.type)

    non_indexed = spec.non_indexed
    if non_indexed:
        values = abi_decode([i.type for i in non_indexed], _hex_bytes(raw.data))
        for inp, value in zip(non_indexed, values):
            fields[inp.name] = _render(value, inp.type)

    # keep ABI declaration order
    return {i.name: fields[i.name] for i in spec.inputs}


class EventDecoder:
    """
    Decodes a window's raw logs for one stream.

    Usage
    -----
    decoder = EventDecoder("trove_manager")
    events  = decoder.decode_batch("flr_wflr", raw_logs, {block: ts, ...})
    """

    def __init__(self, stream: str, registry: Mapping[str, Mapping[str, EventSpec]] = EVENT_REGISTRY):
        if stream not in registry:
            raise KeyError(f"unknown event stream: {stream!r}")
        self.stream = stream
        self.specs = registry[stream]

    @property
    def topics(self) -> tuple[str, ...]:
        return tuple(self.specs)

    def decode_log(
        self, scan_target_key: str, raw: RawLog, timestamps: Mapping[int, int] | None = None
    ) -> DecodedEvent | None:
        li = stable_log_index(raw)
        if li is None:
            return self._drop(raw, "no_log_index")
        if not raw.tx_hash:
            return self._drop(raw, "no_tx_hash")
        if not _is_int(raw.block_number):
            return self._drop(raw, "no_block_number")
        if not raw.topics:
            return self._drop(raw, "no_topics")

        spec = self.specs.get(raw.topics[0].lower())
        if spec is None:
            return self._drop(raw, "unknown_topic")
        if len(raw.topics) != 1 + len(spec.indexed):
            return self._drop(raw, "topic_count", event_name=spec.name, topics=len(raw.topics))

        try:
            fields = decode_fields(spec, raw)
        except (DecodingError, ValueError, TypeError) as exc:
            return self._drop(raw, "decode_failed", event_name=spec.name, error=str(exc))

        envelope = {
            "scan_target_key": scan_target_key,
            "block_number": raw.block_number,
            "block_timestamp": (timestamps or {}).get(raw.block_number),
            "tx_hash": raw.tx_hash,
            "log_index": li,
        }
        return spec.build(envelope, fields)

    def decode_batch(
        self, scan_target_key: str, logs: Iterable[RawLog], timestamps: Mapping[int, int] | None = None
    ) -> list[DecodedEvent]:
        events = []
        for raw in logs:
            event = self.decode_log(scan_target_key, raw, timestamps)
            if event is not None:
                events.append(event)
        return events

    def _drop(self, raw: RawLog, reason: str, **context: Any) -> None:
        log.debug(
            "decode.dropped",
            stream=self.stream,
            reason=reason,
            tx_hash=raw.tx_hash,
            block=raw.block_number,
            **context,
        )
        return None
