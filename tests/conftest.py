from typing import Any, Dict, List, Optional

import pytest

from ledger_sync.config import ThrottleConfig, ThrottleTier, config_from_dict
from ledger_sync.errors import OversizedResponseError, RateLimitedError, UpstreamError
from ledger_sync.normalizer import TRANSFER_BATCH_TOPIC, TRANSFER_SINGLE_TOPIC, TRANSFER_TOPIC
from ledger_sync.store import Storage
from ledger_sync.utils import ZERO_ADDRESS

CONTRACT = "0x00000000000000000000000000000000c0ffee00"
HOLDER_A = "0x000000000000000000000000000000000000000a"
HOLDER_B = "0x000000000000000000000000000000000000000b"
HOLDER_C = "0x000000000000000000000000000000000000000c"

FAST_THROTTLE = {
    "CONSERVATIVE": {"batch_size": 5, "delay_ms": 0},
    "MEDIUM": {"batch_size": 8, "delay_ms": 0},
    "AGGRESSIVE": {"batch_size": 15, "delay_ms": 0},
    "MIN_DELAY_MS": 0,
}


def fast_throttle(**overrides) -> ThrottleConfig:
    cfg = ThrottleConfig(
        conservative=ThrottleTier(5, 0),
        medium=ThrottleTier(8, 0),
        aggressive=ThrottleTier(15, 0),
        min_delay_ms=0,
    )
    for k, v in overrides.items():
        setattr(cfg, k, v)
    return cfg


def word(n: int) -> str:
    return format(n, "064x")


def topic_for(address: str) -> str:
    return "0x" + "0" * 24 + address[2:]


def tx_hash(block: int, log_index: int) -> str:
    return "0x" + format(block * 1000 + log_index, "064x")


def make_log(contract, block, log_index, topics, data="0x", tx=None) -> Dict[str, Any]:
    return {
        "address": contract,
        "blockNumber": hex(block),
        "logIndex": hex(log_index),
        "transactionHash": tx or tx_hash(block, log_index),
        "topics": topics,
        "data": data,
        "removed": False,
    }


def single_log(contract, block, log_index, from_addr, to_addr, asset_id, value, operator=None, tx=None):
    topics = [
        TRANSFER_SINGLE_TOPIC,
        topic_for(operator or from_addr),
        topic_for(from_addr),
        topic_for(to_addr),
    ]
    return make_log(contract, block, log_index, topics, "0x" + word(asset_id) + word(value), tx)


def batch_data(ids: List[int], values: List[int]) -> str:
    ids_offset = 64
    values_offset = 64 + 32 * (1 + len(ids))
    parts = [word(ids_offset), word(values_offset), word(len(ids))]
    parts += [word(i) for i in ids]
    parts += [word(len(values))] + [word(v) for v in values]
    return "0x" + "".join(parts)


def batch_log(contract, block, log_index, from_addr, to_addr, ids, values, operator=None, tx=None):
    topics = [
        TRANSFER_BATCH_TOPIC,
        topic_for(operator or from_addr),
        topic_for(from_addr),
        topic_for(to_addr),
    ]
    return make_log(contract, block, log_index, topics, batch_data(ids, values), tx)


def erc721_log(contract, block, log_index, from_addr, to_addr, token_id, tx=None):
    topics = [TRANSFER_TOPIC, topic_for(from_addr), topic_for(to_addr), "0x" + word(token_id)]
    return make_log(contract, block, log_index, topics, "0x", tx)


def scenario_logs() -> List[Dict[str, Any]]:
    """Mint 10 to A, A sends 4 to B, B burns 2: A=6, B=2, supply 8."""
    return [
        single_log(CONTRACT, 120, 0, ZERO_ADDRESS, HOLDER_A, 1, 10, operator=HOLDER_A),
        single_log(CONTRACT, 150, 3, HOLDER_A, HOLDER_B, 1, 4),
        single_log(CONTRACT, 260, 1, HOLDER_B, ZERO_ADDRESS, 1, 2),
    ]


class DummyRPC:
    """In-memory upstream with switchable failure modes."""

    def __init__(self, logs: Optional[List[Dict[str, Any]]] = None, head: int = 400):
        self.logs = list(logs or [])
        self.head = head
        self.rate_limit_calls = 0
        self.fail_logs_calls = 0
        self.fail_logs_from = set()
        self.fail_blocks = set()
        self.max_results: Optional[int] = None
        self.logs_calls: List[tuple] = []
        self.block_calls: List[int] = []

    @staticmethod
    def block_timestamp(number: int) -> int:
        return 1_700_000_000 + number * 2

    def _maybe_rate_limit(self) -> None:
        if self.rate_limit_calls > 0:
            self.rate_limit_calls -= 1
            raise RateLimitedError("RPC rate limited: HTTP 429")

    async def get_latest_block_number(self) -> int:
        return self.head

    async def get_block_by_number(self, block_number: int) -> Dict[str, Any]:
        self.block_calls.append(block_number)
        self._maybe_rate_limit()
        if block_number in self.fail_blocks:
            raise UpstreamError(f"RPC error: block {block_number} unavailable")
        return {"number": hex(block_number), "timestamp": hex(self.block_timestamp(block_number))}

    async def get_logs(self, from_block, to_block, address=None, topics=None) -> List[Dict[str, Any]]:
        self.logs_calls.append((from_block, to_block))
        self._maybe_rate_limit()
        if self.fail_logs_calls > 0:
            self.fail_logs_calls -= 1
            raise UpstreamError("RPC timeout: eth_getLogs")
        if from_block in self.fail_logs_from:
            raise UpstreamError(f"RPC error: range starting at {from_block} unavailable")

        wanted_topics = None
        if topics:
            first = topics[0]
            wanted_topics = set(first) if isinstance(first, list) else {first}
        out = []
        for log in self.logs:
            block = int(log["blockNumber"], 16)
            if not (from_block <= block <= to_block):
                continue
            if address and log["address"].lower() != address.lower():
                continue
            if wanted_topics and log["topics"][0] not in wanted_topics:
                continue
            out.append(dict(log))
        if self.max_results is not None and len(out) > self.max_results:
            raise OversizedResponseError(f"RPC response oversized: query returned more than {self.max_results} results")
        # upstream order is not guaranteed
        return list(reversed(out))


def make_config(tmp_path, **overrides):
    raw: Dict[str, Any] = {
        "HTTP_RPC_URL": "http://rpc.invalid",
        "SQLITE_PATH": str(tmp_path / "ledger.db"),
        "CONTRACTS": [
            {"address": CONTRACT, "name": "test-editions", "standard": "erc1155", "start_block": 100}
        ],
        "SCAN_WINDOW_BLOCKS": 100,
        "VALIDATION_WINDOW_BLOCKS": 100,
        "RETRY_BASE_DELAY_MS": 0,
        "RETRY_MAX_DELAY_MS": 0,
        "THROTTLE": FAST_THROTTLE,
    }
    raw.update(overrides)
    return config_from_dict(raw)


@pytest.fixture
def storage(tmp_path):
    s = Storage(str(tmp_path / "ledger.db"))
    yield s
    s.close()


@pytest.fixture
def cfg(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def rpc():
    return DummyRPC(scenario_logs())


class ExtraLogsRPC(DummyRPC):
    """Appends raw ``extra`` logs to any logs response covering ``at_block``."""

    def __init__(self, logs, extra, at_block):
        super().__init__(logs)
        self.extra = list(extra)
        self.at_block = at_block

    async def get_logs(self, from_block, to_block, address=None, topics=None):
        out = await super().get_logs(from_block, to_block, address, topics)
        if from_block <= self.at_block <= to_block:
            out = out + [dict(x) for x in self.extra]
        return out


def bad_position_log(block=130):
    log = single_log(CONTRACT, block, 0, ZERO_ADDRESS, HOLDER_A, 1, 1)
    log["blockNumber"] = "0xzz"
    return log
