import logging
import time
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import EventOrderError
from .models import FoldResult, HolderPosition, NegativeBalance, TransferEvent
from .store import Storage
from .utils import is_sentinel, normalize_address

logger = logging.getLogger(__name__)

OrderKey = Tuple[int, int, int]
PairKey = Tuple[str, str]


def mark_key(contract: str) -> str:
    return f"materialized_through:{normalize_address(contract)}"


def format_mark(key: OrderKey) -> str:
    return ":".join(str(x) for x in key)


def parse_mark(value: Optional[str]) -> Optional[OrderKey]:
    if not value:
        return None
    block, log_index, sub_index = (int(x) for x in value.split(":"))
    return (block, log_index, sub_index)


def fold(
    events: Iterable[TransferEvent],
    contract: Optional[str] = None,
    initial: Optional[Dict[PairKey, int]] = None,
    after: Optional[OrderKey] = None,
) -> FoldResult:
    """Derive balances from events in canonical order.

    Each event moves ``quantity`` of ``asset_id`` from ``from_address`` to
    ``to_address``; the zero address is never a holder, so mints only credit
    and burns only debit. ``initial`` seeds the accumulator with existing
    balances and ``after`` is the order key every event must come after.
    Out-of-order input raises ``EventOrderError``.
    """
    acc: Dict[PairKey, int] = dict(initial or {})
    last_block: Dict[PairKey, int] = {}
    negatives: List[NegativeBalance] = []
    prev: Optional[OrderKey] = None
    count = 0

    def move(holder: str, asset_id: str, delta: int, e: TransferEvent) -> None:
        pair = (holder, asset_id)
        before = acc.get(pair, 0)
        now = before + delta
        acc[pair] = now
        last_block[pair] = e.block_number
        if now < 0 <= before:
            negatives.append(
                NegativeBalance(
                    holder=holder,
                    asset_id=asset_id,
                    balance=now,
                    block_number=e.block_number,
                    tx_hash=e.tx_hash,
                )
            )

    for e in events:
        key = e.order_key
        if after is not None and key <= after:
            raise EventOrderError(
                f"event {format_mark(key)} is at or before materialized mark {format_mark(after)}"
            )
        if prev is not None and key < prev:
            raise EventOrderError(
                f"event {format_mark(key)} (tx {e.tx_hash}) comes after {format_mark(prev)}"
            )
        prev = key
        if contract is None:
            contract = e.contract_address
        count += 1

        qty = int(e.quantity)
        if qty == 0:
            continue
        if not is_sentinel(e.from_address):
            move(e.from_address, e.asset_id, -qty, e)
        if not is_sentinel(e.to_address):
            move(e.to_address, e.asset_id, qty, e)

    positions = [
        HolderPosition(
            contract_address=contract or "",
            holder=holder,
            asset_id=asset_id,
            balance=str(balance),
            last_updated_block=last_block.get((holder, asset_id), 0),
        )
        for (holder, asset_id), balance in sorted(acc.items())
        if balance > 0
    ]
    return FoldResult(positions=positions, negatives=negatives, event_count=count)


class StateMaterializer:
    """The only writer of ``holder_positions``."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def get_mark(self, contract: str) -> Optional[OrderKey]:
        return parse_mark(self.storage.get_state(mark_key(contract)))

    def _log_negatives(self, contract: str, result: FoldResult) -> None:
        for n in result.negatives:
            logger.warning(
                "negative balance for %s holder=%s asset=%s balance=%s at block %d tx %s",
                contract, n.holder, n.asset_id, n.balance, n.block_number, n.tx_hash,
            )

    def dry_fold(self, contract: str) -> FoldResult:
        contract = normalize_address(contract)
        return fold(self.storage.iter_events(contract), contract)

    def rebuild_all(self, contract: str) -> FoldResult:
        contract = normalize_address(contract)
        events = list(self.storage.iter_events(contract))
        result = fold(events, contract)
        now = int(time.time())

        with self.storage.transaction() as cur:
            cur.execute("DELETE FROM holder_positions WHERE contract_address = ?", (contract,))
            cur.executemany(
                """
                INSERT INTO holder_positions(
                    contract_address, holder, asset_id, balance, last_updated_block, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (contract, p.holder, p.asset_id, p.balance, p.last_updated_block, now)
                    for p in result.positions
                ],
            )
            if events:
                self.storage.set_state(mark_key(contract), format_mark(events[-1].order_key), cur)
            else:
                cur.execute("DELETE FROM system_state WHERE key = ?", (mark_key(contract),))

        self._log_negatives(contract, result)
        logger.info(
            "rebuilt %s: %d events -> %d positions, supply %d",
            contract, result.event_count, len(result.positions), result.total_supply,
        )
        return result

    def apply_incremental(self, contract: str, new_events: List[TransferEvent]) -> FoldResult:
        contract = normalize_address(contract)
        if not new_events:
            return FoldResult(positions=[], event_count=0)
        mark = self.get_mark(contract)

        touched = set()
        for e in new_events:
            if not is_sentinel(e.from_address):
                touched.add((e.from_address, e.asset_id))
            if not is_sentinel(e.to_address):
                touched.add((e.to_address, e.asset_id))
        initial: Dict[PairKey, int] = {}
        for holder, asset_id in touched:
            row = self.storage.conn.execute(
                """
                SELECT balance FROM holder_positions
                WHERE contract_address = ? AND holder = ? AND asset_id = ?
                """,
                (contract, holder, asset_id),
            ).fetchone()
            if row:
                initial[(holder, asset_id)] = int(row["balance"])

        result = fold(new_events, contract, initial=initial, after=mark)
        balances = {(p.holder, p.asset_id): p for p in result.positions}
        now = int(time.time())

        with self.storage.transaction() as cur:
            for holder, asset_id in sorted(touched):
                p = balances.get((holder, asset_id))
                if p is None:
                    cur.execute(
                        """
                        DELETE FROM holder_positions
                        WHERE contract_address = ? AND holder = ? AND asset_id = ?
                        """,
                        (contract, holder, asset_id),
                    )
                    continue
                cur.execute(
                    """
                    INSERT INTO holder_positions(
                        contract_address, holder, asset_id, balance, last_updated_block, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(contract_address, holder, asset_id) DO UPDATE SET
                        balance = excluded.balance,
                        last_updated_block = excluded.last_updated_block,
                        updated_at = excluded.updated_at
                    """,
                    (contract, holder, asset_id, p.balance, p.last_updated_block, now),
                )
            self.storage.set_state(mark_key(contract), format_mark(new_events[-1].order_key), cur)

        self._log_negatives(contract, result)
        return result
