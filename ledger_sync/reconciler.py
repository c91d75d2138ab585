import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .config import AppConfig, ContractConfig
from .errors import FetchCancelled
from .materializer import StateMaterializer
from .models import (
    DuplicateGroup,
    NegativeBalance,
    ReconciliationFinding,
    TransferEvent,
    decimal_to_str,
)
from .scanner import ChunkedLogScanner
from .store import Storage
from .utils import ZERO_ADDRESS, block_windows, normalize_address

logger = logging.getLogger(__name__)

RATING_PERFECT = "perfect"
RATING_GOOD = "good"
RATING_NEEDS_ATTENTION = "needs_attention"
RATING_CRITICAL = "critical"
RATING_UNKNOWN = "unknown"

FINDING_COUNT_MISMATCH = "count_mismatch"
FINDING_UNKNOWN = "unknown"
FINDING_SUPPLY_MISMATCH = "supply_mismatch"
FINDING_NEGATIVE_BALANCE = "negative_balance"
FINDING_DUPLICATE_CONFLICT = "duplicate_conflict"


def state_key(contract: str) -> str:
    return f"last_reconciliation:{normalize_address(contract)}"


def net_supply(events: List[TransferEvent]) -> int:
    supply = 0
    for e in events:
        qty = int(e.quantity)
        if e.from_address == ZERO_ADDRESS:
            supply += qty
        if e.to_address == ZERO_ADDRESS:
            supply -= qty
    return supply


def accuracy_pct(local: int, authoritative: int) -> Decimal:
    diff = abs(local - authoritative)
    if authoritative == 0:
        return Decimal(100) if diff == 0 else Decimal(0)
    pct = (Decimal(1) - Decimal(diff) / Decimal(abs(authoritative))) * 100
    return max(Decimal(0), pct)


def accuracy_rating(error_pct: Optional[Decimal]) -> str:
    if error_pct is None:
        return RATING_UNKNOWN
    if error_pct == 0:
        return RATING_PERFECT
    if error_pct < Decimal("0.5"):
        return RATING_GOOD
    if error_pct < Decimal(5):
        return RATING_NEEDS_ATTENTION
    return RATING_CRITICAL


def health_score(extra_rows: int, bad_windows: int, error_pct: Optional[Decimal]) -> int:
    score = Decimal(100)
    score -= min(Decimal(20), Decimal(extra_rows) / 10)
    score -= min(Decimal(30), Decimal(bad_windows * 5))
    if error_pct is not None:
        score -= min(Decimal(50), error_pct * 10)
    return max(0, int(score))


@dataclass
class SupplyCheck:
    local_supply: int
    authoritative_supply: int
    complete: bool = True

    @property
    def discrepancy(self) -> int:
        return abs(self.local_supply - self.authoritative_supply)

    @property
    def accuracy(self) -> Optional[Decimal]:
        if not self.complete:
            return None
        return accuracy_pct(self.local_supply, self.authoritative_supply)

    @property
    def error_pct(self) -> Optional[Decimal]:
        acc = self.accuracy
        return None if acc is None else Decimal(100) - acc

    @property
    def rating(self) -> str:
        return accuracy_rating(self.error_pct)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "localSupply": str(self.local_supply),
            "authoritativeSupply": str(self.authoritative_supply),
            "discrepancy": str(self.discrepancy),
            "accuracyPct": decimal_to_str(self.accuracy),
            "rating": self.rating,
            "complete": self.complete,
        }


@dataclass
class ValidationReport:
    contract_address: str
    from_block: int
    to_block: Optional[int]
    windows_checked: int
    supply: SupplyCheck
    findings: List[ReconciliationFinding] = field(default_factory=list)
    duplicates: List[DuplicateGroup] = field(default_factory=list)
    negatives: List[NegativeBalance] = field(default_factory=list)
    block_gaps: List[Dict[str, int]] = field(default_factory=list)
    checked_at: int = 0

    def _ranges(self, kind: str) -> List[Tuple[int, int]]:
        return [(f.from_block, f.to_block) for f in self.findings if f.kind == kind]

    @property
    def discrepant_windows(self) -> List[Tuple[int, int]]:
        return self._ranges(FINDING_COUNT_MISMATCH)

    @property
    def unknown_windows(self) -> List[Tuple[int, int]]:
        return self._ranges(FINDING_UNKNOWN)

    @property
    def extra_rows(self) -> int:
        return sum(g.count - 1 for g in self.duplicates)

    @property
    def health_score(self) -> int:
        bad = len(self.discrepant_windows) + len(self.unknown_windows)
        return health_score(self.extra_rows, bad, self.supply.error_pct)

    @property
    def ok(self) -> bool:
        return not self.findings and not self.duplicates

    def summary(self) -> Dict[str, Any]:
        return {
            "contract": self.contract_address,
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
            "checkedAt": self.checked_at,
            "ok": self.ok,
            "windowsChecked": self.windows_checked,
            "discrepantWindows": [list(w) for w in self.discrepant_windows],
            "unknownWindows": [list(w) for w in self.unknown_windows],
            "duplicateRows": self.extra_rows,
            "negativeBalances": len(self.negatives),
            "blockGaps": len(self.block_gaps),
            "supply": self.supply.to_dict(),
            "healthScore": self.health_score,
        }

    def to_dict(self) -> Dict[str, Any]:
        out = self.summary()
        out["findings"] = [f.to_dict() for f in self.findings]
        out["duplicates"] = [g.to_dict() for g in self.duplicates]
        out["negatives"] = [n.to_dict() for n in self.negatives]
        out["gaps"] = self.block_gaps
        return out


@dataclass
class AutoFixResult:
    events_added: int
    duplicates_removed: int
    fixed_ranges: List[Tuple[int, int]]
    remaining: List[Tuple[int, int]]
    report: ValidationReport

    @property
    def unresolved(self) -> List[str]:
        """Finding kinds still present after the fix, window-level or not."""
        return sorted({f.kind for f in self.report.findings})

    @property
    def cleared(self) -> bool:
        return not self.remaining and self.report.ok

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventsAdded": self.events_added,
            "duplicatesRemoved": self.duplicates_removed,
            "fixedRanges": [list(r) for r in self.fixed_ranges],
            "remaining": [list(r) for r in self.remaining],
            "unresolved": self.unresolved,
            "cleared": self.cleared,
            "report": self.report.to_dict(),
        }


class ReconciliationEngine:
    """Compares the local event log against upstream and repairs gaps.

    Upstream windows are read through the same scanner machinery used for
    sync, so bisection and backoff apply. Local rows are never deleted
    except exact duplicates.
    """

    def __init__(
        self,
        cfg: AppConfig,
        storage: Storage,
        scanner: ChunkedLogScanner,
        materializer: StateMaterializer,
    ):
        self.cfg = cfg
        self.storage = storage
        self.scanner = scanner
        self.materializer = materializer

    def _contract(self, contract: str) -> ContractConfig:
        cc = self.cfg.get_contract(contract)
        if cc is None:
            raise ValueError(f"contract is not configured: {contract}")
        return cc

    def _default_range(self, cc: ContractConfig, from_block, to_block):
        if from_block is None:
            from_block = cc.start_block
        if to_block is None:
            to_block = self.storage.get_cursor(cc.address).last_synced_block
        return from_block, to_block

    async def _scan(
        self,
        cc: ContractConfig,
        start: int,
        end: int,
        cancel_event: Optional[asyncio.Event],
        with_timestamps: bool = True,
    ):
        if cancel_event is not None and cancel_event.is_set():
            raise FetchCancelled(f"reconciliation of {cc.address} canceled before {start}-{end}")
        fetcher = self.scanner.fetcher
        previous = fetcher.cancel_event
        if cancel_event is not None:
            fetcher.cancel_event = cancel_event
        try:
            return await self.scanner.scan_window(
                cc.address, cc.standard, start, end, with_timestamps=with_timestamps
            )
        finally:
            fetcher.cancel_event = previous

    async def validate(
        self,
        contract: str,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ValidationReport:
        cc = self._contract(contract)
        from_block, to_block = self._default_range(cc, from_block, to_block)

        findings: List[ReconciliationFinding] = []
        authoritative_supply = 0
        windows = 0
        complete = True
        if to_block is not None and to_block >= from_block:
            for start, end in block_windows(from_block, to_block, self.cfg.validation_window_blocks):
                windows += 1
                upstream = await self._scan(cc, start, end, cancel_event, with_timestamps=False)
                if not upstream.ok:
                    complete = False
                    findings.append(
                        ReconciliationFinding(FINDING_UNKNOWN, start, end, detail=upstream.error or "")
                    )
                    continue
                authoritative_supply += net_supply(upstream.events)
                local = self.storage.count_in_range(cc.address, start, end)
                remote = len(upstream.events)
                if local != remote:
                    logger.warning(
                        "count mismatch %s %d-%d: local=%d upstream=%d",
                        cc.address, start, end, local, remote,
                    )
                    findings.append(
                        ReconciliationFinding(FINDING_COUNT_MISMATCH, start, end, local, remote)
                    )

        local_supply = self.storage.supply_from_events(cc.address, from_block, to_block)
        supply = SupplyCheck(local_supply, authoritative_supply, complete=complete)
        if complete and supply.discrepancy:
            findings.append(
                ReconciliationFinding(
                    FINDING_SUPPLY_MISMATCH,
                    from_block,
                    to_block if to_block is not None else from_block,
                    detail=f"local={local_supply} authoritative={authoritative_supply}",
                )
            )

        duplicates = self.storage.find_duplicates(cc.address)
        for g in duplicates:
            if not g.identical:
                findings.append(
                    ReconciliationFinding(
                        FINDING_DUPLICATE_CONFLICT,
                        from_block,
                        to_block if to_block is not None else from_block,
                        local_count=g.count,
                        detail=f"tx={g.tx_hash} logIndex={g.log_index} subIndex={g.sub_index}",
                    )
                )

        negatives = self.materializer.dry_fold(cc.address).negatives
        for n in negatives:
            findings.append(
                ReconciliationFinding(
                    FINDING_NEGATIVE_BALANCE,
                    n.block_number,
                    n.block_number,
                    detail=f"holder={n.holder} asset={n.asset_id} balance={n.balance} tx={n.tx_hash}",
                )
            )

        report = ValidationReport(
            contract_address=cc.address,
            from_block=from_block,
            to_block=to_block,
            windows_checked=windows,
            supply=supply,
            findings=findings,
            duplicates=duplicates,
            negatives=negatives,
            block_gaps=self.storage.find_block_gaps(cc.address, self.cfg.gap_threshold_blocks),
            checked_at=int(time.time()),
        )
        self.storage.set_state(state_key(cc.address), json.dumps(report.summary()))
        logger.info(
            "validated %s %s-%s: %d findings, supply rating %s, health %d",
            cc.address, from_block, to_block, len(findings), supply.rating, report.health_score,
        )
        return report

    async def auto_fix(
        self,
        contract: str,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AutoFixResult:
        """Backfill bad windows, drop exact duplicates, rebuild and validate again.

        ``cleared`` on the result is true only when the second validation has
        no findings at all. Setting ``cancel_event`` raises ``FetchCancelled``
        at the next window or batch; rows already backfilled are kept and
        positions are rebuilt over them first.
        """
        cc = self._contract(contract)
        from_block, to_block = self._default_range(cc, from_block, to_block)
        report = await self.validate(cc.address, from_block, to_block, cancel_event)

        added = 0
        fixed: List[Tuple[int, int]] = []
        try:
            for start, end in report.discrepant_windows + report.unknown_windows:
                upstream = await self._scan(cc, start, end, cancel_event)
                if not upstream.ok:
                    logger.warning("auto-fix could not rescan %d-%d: %s", start, end, upstream.error)
                    continue
                inserted = self.storage.append(upstream.events)
                added += inserted
                fixed.append((start, end))
                logger.info("auto-fix %s %d-%d: inserted %d events", cc.address, start, end, inserted)
        except FetchCancelled:
            if added:
                self.materializer.rebuild_all(cc.address)
            raise

        removed = self.storage.remove_duplicates_keeping_one(cc.address)
        self.materializer.rebuild_all(cc.address)

        after = await self.validate(cc.address, from_block, to_block, cancel_event)
        remaining = after.discrepant_windows + after.unknown_windows
        return AutoFixResult(
            events_added=added,
            duplicates_removed=removed,
            fixed_ranges=fixed,
            remaining=remaining,
            report=after,
        )

    def last_summary(self, contract: str) -> Optional[Dict[str, Any]]:
        raw = self.storage.get_state(state_key(contract))
        return json.loads(raw) if raw else None
