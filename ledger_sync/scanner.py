import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple

from .errors import OversizedResponseError, ScanWindowError
from .fetcher import BlockRequest, LogsRequest, RateAdaptiveFetcher
from .models import TransferEvent
from .normalizer import normalize_many, topics_for_standard
from .utils import block_windows, normalize_address, parse_hex_int

logger = logging.getLogger(__name__)

MAX_CACHED_BLOCKS = 50000


def log_position(log: Dict[str, Any]) -> Tuple[int, int]:
    block_number, log_index = log.get("blockNumber"), log.get("logIndex")
    if block_number is None or log_index is None:
        raise ValueError("log has no block number or log index")
    return parse_hex_int(block_number), parse_hex_int(log_index)


@dataclass
class WindowResult:
    from_block: int
    to_block: int
    events: List[TransferEvent] = field(default_factory=list)
    log_count: int = 0
    decode_errors: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ScanResult:
    events: List[TransferEvent] = field(default_factory=list)
    failed_windows: List[Tuple[int, int]] = field(default_factory=list)
    decode_errors: int = 0
    windows: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events": len(self.events),
            "windows": self.windows,
            "failedWindows": [list(w) for w in self.failed_windows],
            "decodeErrors": self.decode_errors,
        }


class ChunkedLogScanner:
    """Reads transfer logs of one contract in fixed block windows.

    A window whose response is too large is bisected until it fits; a single
    block that still does not fit fails the window. Other failures are
    retried with exponential backoff, after which the window is reported as
    failed and the scan moves on.
    """

    def __init__(
        self,
        fetcher: RateAdaptiveFetcher,
        window_blocks: int = 2000,
        max_attempts: int = 3,
        retry_base_delay_ms: int = 1000,
        retry_max_delay_ms: int = 10000,
        max_cached_blocks: int = MAX_CACHED_BLOCKS,
    ):
        self.fetcher = fetcher
        self.window_blocks = max(1, int(window_blocks))
        self.max_attempts = max(1, int(max_attempts))
        self.retry_base_delay_ms = retry_base_delay_ms
        self.retry_max_delay_ms = retry_max_delay_ms
        self.max_cached_blocks = max(0, int(max_cached_blocks))
        self.block_ts_cache: Dict[int, int] = {}

    @classmethod
    def from_config(cls, fetcher: RateAdaptiveFetcher, cfg, window_blocks: Optional[int] = None):
        return cls(
            fetcher,
            window_blocks=window_blocks or cfg.scan_window_blocks,
            max_attempts=cfg.max_window_attempts,
            retry_base_delay_ms=cfg.retry_base_delay_ms,
            retry_max_delay_ms=cfg.retry_max_delay_ms,
        )

    def backoff_ms(self, attempt: int) -> float:
        return min(self.retry_base_delay_ms * (2 ** (attempt - 1)), self.retry_max_delay_ms)

    async def fetch_logs(
        self,
        address: str,
        topics: Optional[List[Any]],
        from_block: int,
        to_block: int,
    ) -> List[Dict[str, Any]]:
        attempt = 0
        while True:
            attempt += 1
            request = LogsRequest(address, tuple(topics) if topics else None, from_block, to_block)
            result = (await self.fetcher.fetch_batch([request]))[0]
            if result.ok:
                return list(result.value or [])

            err = result.error
            if isinstance(err, OversizedResponseError):
                if from_block >= to_block:
                    raise ScanWindowError(from_block, to_block, f"single block response too large: {err}")
                mid = (from_block + to_block) // 2
                logger.info("splitting %d-%d at %d: %s", from_block, to_block, mid, err)
                left = await self.fetch_logs(address, topics, from_block, mid)
                right = await self.fetch_logs(address, topics, mid + 1, to_block)
                return left + right

            if attempt >= self.max_attempts:
                raise ScanWindowError(from_block, to_block, str(err))
            delay = self.backoff_ms(attempt)
            logger.warning(
                "logs %d-%d attempt %d/%d failed: %s; retrying in %.0fms",
                from_block, to_block, attempt, self.max_attempts, err, delay,
            )
            await asyncio.sleep(delay / 1000.0)

    def cache_timestamp(self, number: int, timestamp: int) -> None:
        if self.max_cached_blocks <= 0:
            return
        self.block_ts_cache[number] = timestamp
        # insertion order: evict the oldest entries first
        while len(self.block_ts_cache) > self.max_cached_blocks:
            del self.block_ts_cache[next(iter(self.block_ts_cache))]

    async def block_timestamps(self, block_numbers: Iterable[int]) -> Tuple[Dict[int, int], Set[int]]:
        """Timestamps for ``block_numbers`` plus the set of blocks whose value is estimated."""
        wanted = sorted(set(block_numbers))
        out = {b: self.block_ts_cache[b] for b in wanted if b in self.block_ts_cache}
        missing = [b for b in wanted if b not in out]
        estimated: Set[int] = set()
        if not missing:
            return out, estimated

        results = await self.fetcher.fetch_batch([BlockRequest(b) for b in missing])
        for res in results:
            number = res.request.number
            block = res.value if res.ok else None
            if not block or block.get("timestamp") is None:
                logger.warning("block %d timestamp unavailable, using current time", number)
                out[number] = int(time.time())
                estimated.add(number)
                continue
            out[number] = parse_hex_int(block["timestamp"])
            if res.fallback:
                estimated.add(number)
            else:
                # only confirmed timestamps are cached
                self.cache_timestamp(number, out[number])
        return out, estimated

    async def scan_window(
        self,
        address: str,
        standard: str,
        from_block: int,
        to_block: int,
        with_timestamps: bool = True,
    ) -> WindowResult:
        """Scan one window.

        With ``with_timestamps=False`` no block headers are requested and
        events carry timestamp 0; counts and supply do not depend on them.
        """
        address = normalize_address(address)
        try:
            logs = await self.fetch_logs(address, topics_for_standard(standard), from_block, to_block)
        except ScanWindowError as e:
            logger.error("window %d-%d failed: %s", from_block, to_block, e.reason)
            return WindowResult(from_block, to_block, error=e.reason)

        positioned: List[Tuple[int, int, Dict[str, Any]]] = []
        bad_envelopes = 0
        for log in logs:
            if log.get("removed"):
                continue
            try:
                block_number, log_index = log_position(log)
            except (TypeError, ValueError) as e:
                bad_envelopes += 1
                logger.warning(
                    "skipping log with bad position in %d-%d (tx=%s): %s",
                    from_block, to_block, log.get("transactionHash"), e,
                )
                continue
            positioned.append((block_number, log_index, log))
        positioned.sort(key=lambda x: (x[0], x[1]))

        timestamps: Dict[int, int] = {}
        estimated: Set[int] = set()
        if with_timestamps:
            timestamps, estimated = await self.block_timestamps(b for b, _, _ in positioned)
        events, errors = normalize_many([x for _, _, x in positioned], timestamps, estimated)
        return WindowResult(
            from_block,
            to_block,
            events=events,
            log_count=len(positioned) + bad_envelopes,
            decode_errors=len(errors) + bad_envelopes,
        )

    async def iter_windows(
        self,
        address: str,
        standard: str,
        from_block: int,
        to_block: int,
    ) -> AsyncIterator[WindowResult]:
        for start, end in block_windows(from_block, to_block, self.window_blocks):
            result = await self.scan_window(address, standard, start, end)
            logger.info(
                "window %d-%d: %d logs, %d events%s",
                start, end, result.log_count, len(result.events),
                "" if result.ok else f" (failed: {result.error})",
            )
            yield result

    async def scan(self, address: str, standard: str, from_block: int, to_block: int) -> ScanResult:
        out = ScanResult()
        async for w in self.iter_windows(address, standard, from_block, to_block):
            out.windows += 1
            out.events.extend(w.events)
            out.decode_errors += w.decode_errors
            if not w.ok:
                out.failed_windows.append((w.from_block, w.to_block))
        return out
