import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .models import (
    STATUS_IDLE,
    DuplicateGroup,
    HolderPosition,
    SyncCursor,
    TransferEvent,
)
from .utils import ZERO_ADDRESS, normalize_address

logger = logging.getLogger(__name__)

UNIQUE_INDEX = "ux_transfer_events_key"
KEY_COLUMNS = "contract_address, tx_hash, log_index, sub_index"
# on-chain payload compared when deciding whether two rows with one key are exact copies;
# timestamps are left out because a fallback timestamp differs between scans
PAYLOAD_EXPR = (
    "block_number || '|' || event_kind || '|' || operator || '|' || from_address"
    " || '|' || to_address || '|' || asset_id || '|' || quantity"
)
EVENT_COLUMNS = (
    "contract_address, tx_hash, log_index, sub_index, block_number, block_timestamp,"
    " timestamp_estimated, event_kind, operator, from_address, to_address, asset_id,"
    " quantity, created_at"
)


def _row_to_event(r: sqlite3.Row) -> TransferEvent:
    return TransferEvent(
        contract_address=r["contract_address"],
        tx_hash=r["tx_hash"],
        log_index=int(r["log_index"]),
        sub_index=int(r["sub_index"]),
        block_number=int(r["block_number"]),
        block_timestamp=int(r["block_timestamp"]),
        event_kind=r["event_kind"],
        operator=r["operator"],
        from_address=r["from_address"],
        to_address=r["to_address"],
        asset_id=r["asset_id"],
        quantity=r["quantity"],
        timestamp_estimated=bool(r["timestamp_estimated"]),
    )


class Storage:
    """sqlite event log, sync cursors, key/value state and holder positions.

    Events are append-only. ``transfer_events`` carries a unique index on
    (contract, tx hash, log index, sub index) when the data allows it; a
    database written before the index existed may hold duplicates, and the
    index is created once ``remove_duplicates_keeping_one`` has cleaned them.
    Inserts check for an existing key themselves, so ingestion stays
    idempotent either way.

    ``holder_positions`` is only read here; ``StateMaterializer`` writes it
    through ``transaction()``.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()
        self.unique_index = self._ensure_unique_index()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.executescript(
            """
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;

            CREATE TABLE IF NOT EXISTS transfer_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                contract_address TEXT NOT NULL,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                sub_index INTEGER NOT NULL,
                block_number INTEGER NOT NULL,
                block_timestamp INTEGER NOT NULL,
                timestamp_estimated INTEGER NOT NULL DEFAULT 0,
                event_kind TEXT NOT NULL,
                operator TEXT NOT NULL,
                from_address TEXT NOT NULL,
                to_address TEXT NOT NULL,
                asset_id TEXT NOT NULL,
                quantity TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_transfer_events_block
                ON transfer_events(contract_address, block_number, log_index, sub_index);
            CREATE INDEX IF NOT EXISTS idx_transfer_events_from
                ON transfer_events(contract_address, from_address);
            CREATE INDEX IF NOT EXISTS idx_transfer_events_to
                ON transfer_events(contract_address, to_address);
            CREATE INDEX IF NOT EXISTS idx_transfer_events_asset
                ON transfer_events(contract_address, asset_id);

            CREATE TABLE IF NOT EXISTS holder_positions (
                contract_address TEXT NOT NULL,
                holder TEXT NOT NULL,
                asset_id TEXT NOT NULL,
                balance TEXT NOT NULL,
                last_updated_block INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY(contract_address, holder, asset_id)
            );

            CREATE INDEX IF NOT EXISTS idx_holder_positions_asset
                ON holder_positions(contract_address, asset_id);

            CREATE TABLE IF NOT EXISTS sync_cursors (
                contract_address TEXT PRIMARY KEY,
                last_synced_block INTEGER,
                status TEXT NOT NULL,
                error TEXT,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS system_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            );
            """
        )
        self.conn.commit()

    def _has_duplicate_keys(self) -> bool:
        row = self.conn.execute(
            f"""
            SELECT 1 FROM transfer_events
            GROUP BY {KEY_COLUMNS}
            HAVING COUNT(1) > 1
            LIMIT 1
            """
        ).fetchone()
        return row is not None

    def _ensure_unique_index(self) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?",
            (UNIQUE_INDEX,),
        ).fetchone()
        if row:
            return True
        if self._has_duplicate_keys():
            logger.warning(
                "transfer_events holds duplicate keys; unique index deferred until duplicates are removed"
            )
            return False
        self.conn.execute(
            f"CREATE UNIQUE INDEX IF NOT EXISTS {UNIQUE_INDEX} ON transfer_events({KEY_COLUMNS})"
        )
        self.conn.commit()
        return True

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        cur = self.conn.cursor()
        cur.execute("BEGIN")
        try:
            yield cur
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def get_state(self, key: str) -> Optional[str]:
        cur = self.conn.execute("SELECT value FROM system_state WHERE key = ?", (key,))
        row = cur.fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str, cur: Optional[sqlite3.Cursor] = None) -> None:
        """Upsert a state value; with ``cur`` it joins that open transaction."""
        now = int(time.time())
        target = cur if cur is not None else self.conn
        target.execute(
            """
            INSERT INTO system_state(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, now),
        )
        if cur is None:
            self.conn.commit()

    # ---- events ----

    def _event_tuple(self, e: TransferEvent, now: int) -> tuple:
        return (
            e.contract_address,
            e.tx_hash,
            e.log_index,
            e.sub_index,
            e.block_number,
            e.block_timestamp,
            1 if e.timestamp_estimated else 0,
            e.event_kind,
            e.operator,
            e.from_address,
            e.to_address,
            e.asset_id,
            e.quantity,
            now,
        )

    def append(self, events: List[TransferEvent]) -> int:
        """Insert events whose key is not stored yet; returns the inserted count."""
        if not events:
            return 0
        now = int(time.time())
        inserted = 0
        with self.transaction() as cur:
            for e in events:
                cur.execute(
                    f"""
                    INSERT INTO transfer_events({EVENT_COLUMNS})
                    SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM transfer_events
                        WHERE contract_address = ? AND tx_hash = ? AND log_index = ? AND sub_index = ?
                    )
                    """,
                    self._event_tuple(e, now) + e.key,
                )
                if cur.rowcount == 1:
                    inserted += 1
        return inserted

    def count_in_range(self, contract: str, from_block: int, to_block: int) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(1) AS c
            FROM transfer_events
            WHERE contract_address = ? AND block_number BETWEEN ? AND ?
            """,
            (normalize_address(contract), from_block, to_block),
        ).fetchone()
        return int(row["c"]) if row else 0

    def count_events(self, contract: Optional[str] = None) -> int:
        if contract:
            row = self.conn.execute(
                "SELECT COUNT(1) AS c FROM transfer_events WHERE contract_address = ?",
                (normalize_address(contract),),
            ).fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(1) AS c FROM transfer_events").fetchone()
        return int(row["c"]) if row else 0

    def iter_events(
        self,
        contract: str,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        batch_size: int = 1000,
    ) -> Iterator[TransferEvent]:
        """Yield events in canonical order (block, log index, sub index)."""
        sql = "SELECT * FROM transfer_events WHERE contract_address = ?"
        params: List[Any] = [normalize_address(contract)]
        if from_block is not None:
            sql += " AND block_number >= ?"
            params.append(from_block)
        if to_block is not None:
            sql += " AND block_number <= ?"
            params.append(to_block)
        sql += " ORDER BY block_number ASC, log_index ASC, sub_index ASC, id ASC"
        cur = self.conn.execute(sql, params)
        while True:
            rows = cur.fetchmany(batch_size)
            if not rows:
                break
            for r in rows:
                yield _row_to_event(r)

    def query_events(
        self,
        contract: str,
        address: Optional[str] = None,
        asset_id: Optional[str] = None,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        limit_n: int = 100,
        offset_n: int = 0,
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM transfer_events WHERE contract_address = ?"
        params: List[Any] = [normalize_address(contract)]
        if address:
            addr = normalize_address(address)
            sql += " AND (from_address = ? OR to_address = ?)"
            params.extend([addr, addr])
        if asset_id is not None:
            sql += " AND asset_id = ?"
            params.append(str(asset_id))
        if from_block is not None:
            sql += " AND block_number >= ?"
            params.append(from_block)
        if to_block is not None:
            sql += " AND block_number <= ?"
            params.append(to_block)
        sql += " ORDER BY block_number DESC, log_index DESC, sub_index DESC LIMIT ? OFFSET ?"
        params.extend([limit_n, offset_n])
        rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_event(r).to_dict() for r in rows]

    def supply_from_events(
        self,
        contract: str,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> int:
        """Net supply recorded locally: minted quantity minus burned quantity."""
        sql = (
            "SELECT from_address, to_address, quantity FROM transfer_events"
            " WHERE contract_address = ? AND (from_address = ? OR to_address = ?)"
        )
        params: List[Any] = [normalize_address(contract), ZERO_ADDRESS, ZERO_ADDRESS]
        if from_block is not None:
            sql += " AND block_number >= ?"
            params.append(from_block)
        if to_block is not None:
            sql += " AND block_number <= ?"
            params.append(to_block)
        supply = 0
        for r in self.conn.execute(sql, params):
            qty = int(r["quantity"])
            if r["from_address"] == ZERO_ADDRESS:
                supply += qty
            if r["to_address"] == ZERO_ADDRESS:
                supply -= qty
        return supply

    def find_duplicates(self, contract: Optional[str] = None) -> List[DuplicateGroup]:
        where = ""
        params: List[Any] = []
        if contract:
            where = "WHERE contract_address = ?"
            params.append(normalize_address(contract))
        rows = self.conn.execute(
            f"""
            SELECT {KEY_COLUMNS},
                   COUNT(1) AS c,
                   COUNT(DISTINCT {PAYLOAD_EXPR}) AS variants
            FROM transfer_events
            {where}
            GROUP BY {KEY_COLUMNS}
            HAVING COUNT(1) > 1
            ORDER BY contract_address, tx_hash, log_index, sub_index
            """,
            params,
        ).fetchall()
        return [
            DuplicateGroup(
                contract_address=r["contract_address"],
                tx_hash=r["tx_hash"],
                log_index=int(r["log_index"]),
                sub_index=int(r["sub_index"]),
                count=int(r["c"]),
                identical=int(r["variants"]) == 1,
            )
            for r in rows
        ]

    def remove_duplicates_keeping_one(self, contract: Optional[str] = None) -> int:
        """Delete all but the lowest-id row of each group of exact duplicates.

        Groups whose rows share a key but differ in payload are left alone.
        """
        where = ""
        params: List[Any] = []
        if contract:
            where = "WHERE contract_address = ?"
            params.append(normalize_address(contract))
        with self.transaction() as cur:
            cur.execute(
                f"""
                DELETE FROM transfer_events
                WHERE id IN (
                    SELECT e.id
                    FROM transfer_events e
                    JOIN (
                        SELECT {KEY_COLUMNS}, MIN(id) AS keep_id
                        FROM transfer_events
                        {where}
                        GROUP BY {KEY_COLUMNS}
                        HAVING COUNT(1) > 1 AND COUNT(DISTINCT {PAYLOAD_EXPR}) = 1
                    ) g
                      ON e.contract_address = g.contract_address
                     AND e.tx_hash = g.tx_hash
                     AND e.log_index = g.log_index
                     AND e.sub_index = g.sub_index
                    WHERE e.id != g.keep_id
                )
                """,
                params,
            )
            removed = cur.rowcount
        if removed:
            logger.info("removed %d duplicate event rows", removed)
        self.unique_index = self._ensure_unique_index()
        return max(0, removed)

    def find_block_gaps(self, contract: str, threshold: int) -> List[Dict[str, int]]:
        """Spans between consecutive event blocks that are wider than ``threshold``."""
        rows = self.conn.execute(
            """
            SELECT prev_block, block_number
            FROM (
                SELECT block_number,
                       LAG(block_number) OVER (ORDER BY block_number) AS prev_block
                FROM (
                    SELECT DISTINCT block_number
                    FROM transfer_events
                    WHERE contract_address = ?
                )
            )
            WHERE prev_block IS NOT NULL AND block_number - prev_block > ?
            ORDER BY block_number
            """,
            (normalize_address(contract), threshold),
        ).fetchall()
        return [
            {
                "fromBlock": int(r["prev_block"]) + 1,
                "toBlock": int(r["block_number"]) - 1,
                "size": int(r["block_number"]) - int(r["prev_block"]) - 1,
            }
            for r in rows
        ]

    # ---- positions (read only) ----

    def query_positions(
        self,
        contract: str,
        holder: Optional[str] = None,
        asset_id: Optional[str] = None,
        limit_n: int = 100,
        offset_n: int = 0,
    ) -> List[HolderPosition]:
        sql = "SELECT * FROM holder_positions WHERE contract_address = ?"
        params: List[Any] = [normalize_address(contract)]
        if holder:
            sql += " AND holder = ?"
            params.append(normalize_address(holder))
        if asset_id is not None:
            sql += " AND asset_id = ?"
            params.append(str(asset_id))
        sql += " ORDER BY holder ASC, asset_id ASC LIMIT ? OFFSET ?"
        params.extend([limit_n, offset_n])
        return [
            HolderPosition(
                contract_address=r["contract_address"],
                holder=r["holder"],
                asset_id=r["asset_id"],
                balance=r["balance"],
                last_updated_block=int(r["last_updated_block"]),
            )
            for r in self.conn.execute(sql, params).fetchall()
        ]

    def position_summary(self, contract: str) -> Dict[str, Any]:
        rows = self.conn.execute(
            "SELECT holder, balance FROM holder_positions WHERE contract_address = ?",
            (normalize_address(contract),),
        ).fetchall()
        return {
            "positions": len(rows),
            "holders": len({r["holder"] for r in rows}),
            "totalSupply": str(sum(int(r["balance"]) for r in rows)),
        }

    # ---- cursors ----

    def get_cursor(self, contract: str) -> SyncCursor:
        contract = normalize_address(contract)
        row = self.conn.execute(
            "SELECT * FROM sync_cursors WHERE contract_address = ?",
            (contract,),
        ).fetchone()
        if not row:
            return SyncCursor(contract_address=contract, status=STATUS_IDLE)
        return SyncCursor(
            contract_address=row["contract_address"],
            last_synced_block=row["last_synced_block"],
            status=row["status"],
            error=row["error"],
            updated_at=int(row["updated_at"]),
        )

    def save_cursor(
        self,
        contract: str,
        last_synced_block: Optional[int],
        status: str,
        error: Optional[str] = None,
    ) -> SyncCursor:
        contract = normalize_address(contract)
        now = int(time.time())
        self.conn.execute(
            """
            INSERT INTO sync_cursors(contract_address, last_synced_block, status, error, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(contract_address) DO UPDATE SET
                last_synced_block = excluded.last_synced_block,
                status = excluded.status,
                error = excluded.error,
                updated_at = excluded.updated_at
            """,
            (contract, last_synced_block, status, error, now),
        )
        self.conn.commit()
        return SyncCursor(contract, last_synced_block, status, error, now)
