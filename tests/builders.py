"""
tests/builders.py
Synthetic raw logs and an in-memory EventSource for the indexer tests.
"""

from eth_abi import encode

from datum.ingestion.event_source import LogFilter, RawLog
from datum.transform.decoder import (
    EVENT_SPECS,
    STREAM_LOAN_NFT,
    STREAM_STABILITY_POOL,
    STREAM_TROVE_MANAGER,
)
from datum.transform.events import TransferEvent

NFT_ADDR = "0x" + "11" * 20
TROVE_MANAGER_ADDR = "0x" + "22" * 20
POOL_ADDR = "0x" + "33" * 20
ALICE = "0x" + "aa" * 20
BOB = "0x" + "bb" * 20
ZERO = "0x" + "00" * 20


def spec_named(stream, name):
    return next(s for s in EVENT_SPECS[stream] if s.name == name)


def tx(n):
    return "0x" + format(n, "064x")


def topic_address(addr):
    return "0x" + "0" * 24 + addr[2:].lower()


def topic_uint(n):
    return "0x" + n.to_bytes(32, "big").hex()


def data_of(types, values):
    return "0x" + encode(types, values).hex()


# ---------------------------------------------------------------------------
# Log builders
# ---------------------------------------------------------------------------

def transfer_log(block, n=1, log_index=0, frm=ZERO, to=ALICE, token_id=1, address=NFT_ADDR):
    topic0 = spec_named(STREAM_LOAN_NFT, "Transfer").topic
    return RawLog(
        address=address,
        topics=(topic0, topic_address(frm), topic_address(to), topic_uint(token_id)),
        data="0x",
        block_number=block,
        tx_hash=tx(n),
        index=log_index,
    )


def redemption_log(block, n=1, log_index=0, amounts=(100, 90, 5, 1, 2000, 1990)):
    topic0 = spec_named(STREAM_TROVE_MANAGER, "Redemption").topic
    return RawLog(
        address=TROVE_MANAGER_ADDR,
        topics=(topic0,),
        data=data_of(["uint256"] * 6, list(amounts)),
        block_number=block,
        tx_hash=tx(n),
        index=log_index,
    )


def trove_operation_log(block, n=1, log_index=0, trove_id=7, operation=1, debt_change=-5):
    topic0 = spec_named(STREAM_TROVE_MANAGER, "TroveOperation").topic
    return RawLog(
        address=TROVE_MANAGER_ADDR,
        topics=(topic0, topic_uint(trove_id)),
        data=data_of(
            ["uint8", "uint256", "uint256", "uint256", "int256", "uint256", "int256"],
            [operation, 5 * 10**16, 0, 3, debt_change, 0, 10**18],
        ),
        block_number=block,
        tx_hash=tx(n),
        index=log_index,
    )


def deposit_operation_log(block, n=1, log_index=0, depositor=ALICE, operation=0, topup=-100):
    topic0 = spec_named(STREAM_STABILITY_POOL, "DepositOperation").topic
    return RawLog(
        address=POOL_ADDR,
        topics=(topic0, topic_address(depositor)),
        data=data_of(
            ["uint8", "uint256", "int256", "uint256", "uint256", "uint256", "uint256"],
            [operation, 1, topup, 2, 3, 4, 5],
        ),
        block_number=block,
        tx_hash=tx(n),
        index=log_index,
    )


def deposit_updated_log(block, n=1, log_index=0, depositor=BOB):
    topic0 = spec_named(STREAM_STABILITY_POOL, "DepositUpdated").topic
    return RawLog(
        address=POOL_ADDR,
        topics=(topic0, topic_address(depositor)),
        data=data_of(["uint256"] * 6, [1000, 0, 10**18, 0, 0, 0]),
        block_number=block,
        tx_hash=tx(n),
        index=log_index,
    )


def make_transfer(n, block=1200, key="flr_wflr", log_index=0, **overrides):
    """A decoded TransferEvent, for store-level tests that skip the decoder."""
    fields = dict(
        scan_target_key=key,
        block_number=block,
        block_timestamp=1_700_000_000 + block,
        tx_hash=tx(n),
        log_index=log_index,
        from_addr=ZERO,
        to_addr=ALICE,
        token_id=str(n),
        is_burned=False,
    )
    fields.update(overrides)
    return TransferEvent(**fields)


# ---------------------------------------------------------------------------
# In-memory event source
# ---------------------------------------------------------------------------

class FakeEventSource:
    """
    Serves `logs` filtered like eth_getLogs would.

    failures      : exceptions raised, one per call, before any log is served
    head_failures : exceptions raised, one per call, by head_block
    failing_from  : window start block -> exception raised on every call for it
    """

    def __init__(self, head=2000, logs=(), chain_id=14, trove_managers=None):
        self.head = head
        self.logs = list(logs)
        self.failures = []
        self.head_failures = []
        self.head_calls = 0
        self.failing_from = {}
        self.missing_timestamps = set()
        self.trove_managers = dict(trove_managers or {})
        self.calls: list[LogFilter] = []
        self.timestamp_calls: list[int] = []
        self._chain_id = chain_id

    def head_block(self):
        self.head_calls += 1
        if self.head_failures:
            raise self.head_failures.pop(0)
        return self.head

    def get_logs(self, log_filter):
        self.calls.append(log_filter)
        if self.failures:
            raise self.failures.pop(0)
        if log_filter.from_block in self.failing_from:
            raise self.failing_from[log_filter.from_block]
        topics = {t.lower() for t in log_filter.topics}
        return [
            raw for raw in self.logs
            if raw.address.lower() == log_filter.address.lower()
            and log_filter.from_block <= raw.block_number <= log_filter.to_block
            and (not topics or raw.topics[0].lower() in topics)
        ]

    def get_block_timestamp(self, block_number):
        self.timestamp_calls.append(block_number)
        if block_number in self.missing_timestamps:
            raise RuntimeError(f"block {block_number} not found")
        return 1_700_000_000 + block_number

    def chain_id(self):
        if isinstance(self._chain_id, BaseException):
            raise self._chain_id
        return self._chain_id

    def trove_manager_of(self, nft_address):
        return self.trove_managers.get(nft_address.lower())

    @property
    def windows(self):
        return [(f.from_block, f.to_block) for f in self.calls]


def recording_sleep():
    """An async sleep stand-in that records requested delays instead of waiting."""
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    return sleep, delays
