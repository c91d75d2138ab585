from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

KIND_TRANSFER = "transfer"
KIND_TRANSFER_SINGLE = "transfer_single"
KIND_TRANSFER_BATCH = "transfer_batch"
EVENT_KINDS = {KIND_TRANSFER, KIND_TRANSFER_SINGLE, KIND_TRANSFER_BATCH}

STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def decimal_to_str(v: Optional[Decimal], places: int = 4) -> Optional[str]:
    if v is None:
        return None
    q = Decimal(10) ** -places
    return str(v.quantize(q))


@dataclass(frozen=True)
class TransferEvent:
    contract_address: str
    tx_hash: str
    log_index: int
    sub_index: int
    block_number: int
    block_timestamp: int
    event_kind: str
    operator: str
    from_address: str
    to_address: str
    asset_id: str
    quantity: str
    timestamp_estimated: bool = False

    @property
    def key(self) -> Tuple[str, str, int, int]:
        return (self.contract_address, self.tx_hash, self.log_index, self.sub_index)

    @property
    def order_key(self) -> Tuple[int, int, int]:
        return (self.block_number, self.log_index, self.sub_index)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HolderPosition:
    contract_address: str
    holder: str
    asset_id: str
    balance: str
    last_updated_block: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncCursor:
    contract_address: str
    last_synced_block: Optional[int] = None
    status: str = STATUS_IDLE
    error: Optional[str] = None
    updated_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NegativeBalance:
    holder: str
    asset_id: str
    balance: int
    block_number: int
    tx_hash: str

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["balance"] = str(self.balance)
        return d


@dataclass
class FoldResult:
    positions: List[HolderPosition]
    negatives: List[NegativeBalance] = field(default_factory=list)
    event_count: int = 0

    @property
    def total_supply(self) -> int:
        return sum(int(p.balance) for p in self.positions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "positions": len(self.positions),
            "eventCount": self.event_count,
            "totalSupply": str(self.total_supply),
            "negatives": [n.to_dict() for n in self.negatives],
        }


@dataclass
class DuplicateGroup:
    contract_address: str
    tx_hash: str
    log_index: int
    sub_index: int
    count: int
    identical: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReconciliationFinding:
    kind: str
    from_block: int
    to_block: int
    local_count: Optional[int] = None
    authoritative_count: Optional[int] = None
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
