import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .config import AppConfig, ContractConfig
from .errors import FetchCancelled
from .materializer import StateMaterializer
from .models import STATUS_COMPLETED, STATUS_FAILED, STATUS_IDLE, STATUS_RUNNING
from .scanner import ChunkedLogScanner
from .store import Storage

logger = logging.getLogger(__name__)


@dataclass
class SyncSummary:
    contract_address: str
    status: str
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    last_synced_block: Optional[int] = None
    windows: int = 0
    events_seen: int = 0
    events_inserted: int = 0
    decode_errors: int = 0
    failed_windows: List[Tuple[int, int]] = field(default_factory=list)
    positions: int = 0
    total_supply: int = 0
    error: Optional[str] = None
    started_at: int = 0
    finished_at: int = 0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract": self.contract_address,
            "status": self.status,
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
            "lastSyncedBlock": self.last_synced_block,
            "windows": self.windows,
            "eventsSeen": self.events_seen,
            "eventsInserted": self.events_inserted,
            "decodeErrors": self.decode_errors,
            "failedWindows": [list(w) for w in self.failed_windows],
            "positions": self.positions,
            "totalSupply": str(self.total_supply),
            "error": self.error,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
        }


class SyncCoordinator:
    def __init__(
        self,
        cfg: AppConfig,
        rpc,
        storage: Storage,
        scanner: ChunkedLogScanner,
        materializer: StateMaterializer,
    ):
        self.cfg = cfg
        self.rpc = rpc
        self.storage = storage
        self.scanner = scanner
        self.materializer = materializer

    def _contract(self, contract: str) -> ContractConfig:
        cc = self.cfg.get_contract(contract)
        if cc is None:
            raise ValueError(f"contract is not configured: {contract}")
        return cc

    async def resolve_range(
        self,
        cc: ContractConfig,
        from_block: Optional[int],
        to_block: Optional[int],
    ) -> Tuple[int, int]:
        cursor = self.storage.get_cursor(cc.address)
        candidates = [b for b in (from_block,) if b is not None]
        if cursor.last_synced_block is not None:
            candidates.append(cursor.last_synced_block + 1)
        start = max(candidates) if candidates else cc.start_block
        if to_block is None:
            latest = await self.rpc.get_latest_block_number()
            to_block = max(0, latest - self.cfg.confirmations)
        return start, to_block

    async def run(
        self,
        contract: str,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncSummary:
        """Scan, store and materialize one contract up to ``to_block``.

        The cursor moves to a window's end only after that window is stored
        and every earlier window succeeded; later windows are still stored
        after a failure, and a rerun picks up from the first failed window.
        """
        cc = self._contract(contract)
        cursor = self.storage.get_cursor(cc.address)
        last_good = cursor.last_synced_block
        summary = SyncSummary(
            contract_address=cc.address,
            status=STATUS_RUNNING,
            last_synced_block=last_good,
            started_at=int(time.time()),
        )

        previous_canceller = self.scanner.fetcher.cancel_event
        if cancel_event is not None:
            self.scanner.fetcher.cancel_event = cancel_event
        try:
            start, end = await self.resolve_range(cc, from_block, to_block)
            summary.from_block, summary.to_block = start, end
            if start > end:
                logger.info("%s is up to date at block %s", cc.address, last_good)
                summary.status = STATUS_COMPLETED
                self.storage.save_cursor(cc.address, last_good, STATUS_COMPLETED)
                return summary

            self.storage.save_cursor(cc.address, last_good, STATUS_RUNNING)
            contiguous = True
            async for w in self.scanner.iter_windows(cc.address, cc.standard, start, end):
                summary.windows += 1
                if not w.ok:
                    contiguous = False
                    summary.failed_windows.append((w.from_block, w.to_block))
                else:
                    summary.events_seen += len(w.events)
                    summary.decode_errors += w.decode_errors
                    summary.events_inserted += self.storage.append(w.events)
                    if contiguous:
                        last_good = w.to_block
                        self.storage.save_cursor(cc.address, last_good, STATUS_RUNNING)
                summary.last_synced_block = last_good
                if cancel_event is not None and cancel_event.is_set():
                    raise FetchCancelled("canceled between windows")

            result = self.materializer.rebuild_all(cc.address)
            summary.positions = len(result.positions)
            summary.total_supply = result.total_supply

            if summary.failed_windows:
                summary.status = STATUS_FAILED
                summary.error = "failed windows: " + ", ".join(
                    f"{a}-{b}" for a, b in summary.failed_windows
                )
            else:
                summary.status = STATUS_COMPLETED
            self.storage.save_cursor(cc.address, last_good, summary.status, summary.error)
        except FetchCancelled:
            logger.info("sync of %s canceled at block %s", cc.address, last_good)
            summary.status = STATUS_IDLE
            summary.error = "canceled"
            self.storage.save_cursor(cc.address, last_good, STATUS_IDLE, "canceled")
        except asyncio.CancelledError:
            summary.status = STATUS_IDLE
            summary.error = "canceled"
            self.storage.save_cursor(cc.address, last_good, STATUS_IDLE, "canceled")
            raise
        except sqlite3.Error as e:
            logger.error("storage failure while syncing %s: %s", cc.address, e)
            summary.status = STATUS_FAILED
            summary.error = f"storage error: {e}"
            self._save_failure(cc.address, last_good, summary.error)
        except Exception as e:
            logger.exception("sync of %s failed", cc.address)
            summary.status = STATUS_FAILED
            summary.error = str(e)
            self._save_failure(cc.address, last_good, summary.error)
        finally:
            self.scanner.fetcher.cancel_event = previous_canceller
            summary.finished_at = int(time.time())

        logger.info(
            "sync %s %s: windows=%d inserted=%d cursor=%s",
            cc.address, summary.status, summary.windows, summary.events_inserted, last_good,
        )
        return summary

    def _save_failure(self, contract: str, last_good: Optional[int], error: str) -> None:
        try:
            self.storage.save_cursor(contract, last_good, STATUS_FAILED, error)
        except sqlite3.Error as e:
            logger.error("could not record failure for %s: %s", contract, e)
