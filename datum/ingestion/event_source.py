"""
ingestion/event_source.py
The remote event-log source: head block, filtered logs, block timestamps.

Web3EventSource wraps a web3.py HTTP provider. Everything above this module
only sees the EventSource protocol and RawLog records, so tests substitute an
in-memory source.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

import structlog
from web3 import Web3

log = structlog.get_logger(__name__)

# Minimal ABI for the one registration-time read call against a loan NFT.
TROVE_NFT_ABI = [
    {
        "inputs": [],
        "name": "troveManager",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    }
]


def as_hex(value: Any) -> str:
    """Render bytes / HexBytes / hex strings uniformly as lower-case 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


@dataclass(frozen=True)
class LogFilter:
    address: str
    from_block: int
    to_block: int
    topics: tuple[str, ...]  # OR-ed against topic0

    def to_params(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
            "topics": [list(self.topics)],
        }


@dataclass(frozen=True)
class RawLog:
    """Provider-agnostic view of one log entry, before decoding."""
    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int | None
    tx_hash: str | None
    index: Any = None       # primary log index as reported by the provider
    log_index: Any = None   # secondary index field (int or hex / decimal string)

    @classmethod
    def from_provider(cls, entry: Mapping[str, Any]) -> "RawLog":
        """Normalise a web3 `LogReceipt` (or a raw JSON-RPC log dict)."""
        block_number = entry.get("blockNumber")
        if isinstance(block_number, str):
            block_number = int(block_number, 16) if block_number.startswith("0x") else int(block_number)
        tx_hash = entry.get("transactionHash")
        index = entry.get("index")
        log_index = entry.get("logIndex")
        if index is None and isinstance(log_index, int):
            index, log_index = log_index, None
        return cls(
            address=entry.get("address") or "",
            topics=tuple(as_hex(t) for t in entry.get("topics") or ()),
            data=as_hex(entry.get("data") or b""),
            block_number=block_number,
            tx_hash=as_hex(tx_hash) if tx_hash else None,
            index=index,
            log_index=log_index,
        )


class EventSource(Protocol):
    def head_block(self) -> int: ...

    def get_logs(self, log_filter: LogFilter) -> Sequence[RawLog]: ...

    def get_block_timestamp(self, block_number: int) -> int | None: ...

    def chain_id(self) -> int: ...

    def trove_manager_of(self, nft_address: str) -> str | None: ...


class Web3EventSource:
    """
    EventSource backed by a JSON-RPC node through web3.py.

    Usage
    -----
    source = Web3EventSource("https://flare-api.flare.network/ext/C/rpc")
    head   = source.head_block()
    """

    def __init__(self, rpc_url: str, request_timeout: float = 30.0):
        self.rpc_url = rpc_url
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))

    def head_block(self) -> int:
        return int(self.w3.eth.block_number)

    def get_logs(self, log_filter: LogFilter) -> list[RawLog]:
        entries = self.w3.eth.get_logs(log_filter.to_params())
        return [RawLog.from_provider(entry) for entry in entries]

    def get_block_timestamp(self, block_number: int) -> int | None:
        block = self.w3.eth.get_block(block_number)
        timestamp = block.get("timestamp") if block else None
        return int(timestamp) if isinstance(timestamp, int) else None

    def chain_id(self) -> int:
        return int(self.w3.eth.chain_id)

    def trove_manager_of(self, nft_address: str) -> str | None:
        nft = self.w3.eth.contract(address=Web3.to_checksum_address(nft_address), abi=TROVE_NFT_ABI)
        manager = nft.functions.troveManager().call()
        log.debug("source.trove_manager_resolved", nft=nft_address, trove_manager=manager)
        return Web3.to_checksum_address(manager) if manager else None
