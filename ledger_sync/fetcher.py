"""Batched upstream reads with adaptive throttling.

``ThrottlePolicy`` is the only place batch size and inter-batch delay are
tuned. ``RateAdaptiveFetcher.fetch_batch`` runs the requests of one batch
concurrently, sleeps the policy delay between batches and feeds the outcome
of every batch back into the policy.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from .config import ThrottleConfig
from .errors import FetchCancelled, OversizedResponseError, RateLimitedError, UpstreamError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockRequest:
    number: int


@dataclass(frozen=True)
class LogsRequest:
    address: Optional[str]
    topics: Optional[tuple]
    from_block: int
    to_block: int


Request = Union[BlockRequest, LogsRequest]


def unexpected_failure(error: Exception) -> UpstreamError:
    return UpstreamError(f"unexpected upstream failure: {type(error).__name__}: {error}", payload=error)


@dataclass
class FetchResult:
    request: Request
    value: Any = None
    error: Optional[Exception] = None
    fallback: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class ThrottlePolicy:
    """Batch size and delay for one upstream, carried across fetches.

    The starting tier is picked from the volume of the first fetch. A batch
    with rate-limited requests backs off (emergency mode once
    ``emergency_threshold`` such batches run back to back); a clean batch
    speeds up; a batch with only other errors keeps the current settings
    and ends the rate-limit streak.
    """

    def __init__(self, cfg: ThrottleConfig, request_count: int = 0):
        self.cfg = cfg
        tier = self.tier_for(request_count)
        self.batch_size = tier.batch_size
        self.delay_ms = float(tier.delay_ms)
        self.consecutive_errors = 0
        self.emergencies = 0

    def tier_for(self, request_count: int):
        if request_count >= self.cfg.high_volume:
            return self.cfg.conservative
        if request_count >= self.cfg.medium_volume:
            return self.cfg.medium
        return self.cfg.aggressive

    @property
    def delay_sec(self) -> float:
        return self.delay_ms / 1000.0

    def record(self, rate_limited: int, other_errors: int) -> None:
        cfg = self.cfg
        if rate_limited > 0:
            self.consecutive_errors += 1
            if self.consecutive_errors >= cfg.emergency_threshold:
                old = (self.batch_size, self.delay_ms)
                self.delay_ms = min(
                    max(self.delay_ms * cfg.emergency_factor, cfg.min_delay_ms),
                    cfg.max_delay_ms,
                )
                self.batch_size = max(self.batch_size - cfg.batch_step, cfg.min_batch_size)
                self.emergencies += 1
                logger.warning(
                    "emergency throttling: %d/%.0fms -> %d/%.0fms",
                    old[0], old[1], self.batch_size, self.delay_ms,
                )
            else:
                self.delay_ms = min(
                    max(self.delay_ms * cfg.backoff_factor, cfg.min_delay_ms),
                    max(cfg.soft_max_delay_ms, self.delay_ms),
                )
                logger.info("rate limited, delay raised to %.0fms", self.delay_ms)
            return
        # the streak counts back-to-back rate-limited batches only
        self.consecutive_errors = 0
        if other_errors == 0:
            self.delay_ms = max(self.delay_ms * cfg.decay_factor, cfg.min_delay_ms)
            self.batch_size = min(self.batch_size + 1, cfg.max_batch_size)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "batchSize": self.batch_size,
            "delayMs": round(self.delay_ms, 1),
            "consecutiveErrors": self.consecutive_errors,
            "emergencies": self.emergencies,
        }


@dataclass
class _Pending:
    index: int
    request: Request
    requeues: int = 0


@dataclass
class FetchStats:
    batches: int = 0
    requests: int = 0
    rate_limited: int = 0
    retried: int = 0
    fallbacks: int = 0
    failures: int = 0
    last_policy: Dict[str, Any] = field(default_factory=dict)


class RateAdaptiveFetcher:
    def __init__(self, rpc, cfg: ThrottleConfig, cancel_event: Optional[asyncio.Event] = None):
        self.rpc = rpc
        self.cfg = cfg
        self.cancel_event = cancel_event
        self.stats = FetchStats()
        self.policy: Optional[ThrottlePolicy] = None
        self._last_batch_at: Optional[float] = None

    def policy_for(self, request_count: int) -> ThrottlePolicy:
        if self.policy is None:
            self.policy = ThrottlePolicy(self.cfg, request_count)
        return self.policy

    async def _execute(self, request: Request) -> Any:
        if isinstance(request, BlockRequest):
            return await self.rpc.get_block_by_number(request.number)
        return await self.rpc.get_logs(
            from_block=request.from_block,
            to_block=request.to_block,
            address=request.address,
            topics=list(request.topics) if request.topics else None,
        )

    @staticmethod
    def fallback_for(request: Request) -> Optional[Dict[str, Any]]:
        if isinstance(request, BlockRequest):
            return {"number": hex(request.number), "timestamp": hex(int(time.time()))}
        return None

    async def _retry_once(self, item: _Pending, first_error: Exception) -> FetchResult:
        self.stats.retried += 1
        try:
            value = await self._execute(item.request)
            return FetchResult(item.request, value=value)
        except UpstreamError as e:
            error: Exception = e
        except Exception as e:
            error = unexpected_failure(e)
        return self._give_up(item, error, first_error)

    def _give_up(self, item: _Pending, error: Exception, first_error: Optional[Exception] = None) -> FetchResult:
        fallback = self.fallback_for(item.request)
        if fallback is not None:
            self.stats.fallbacks += 1
            logger.warning("using fallback value for %s: %s", item.request, error)
            return FetchResult(item.request, value=fallback, error=None, fallback=True)
        self.stats.failures += 1
        logger.debug("request %s failed: %s (first: %s)", item.request, error, first_error)
        return FetchResult(item.request, error=error)

    def _check_cancel(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise FetchCancelled("fetch canceled between batches")

    async def fetch_batch(self, requests: Sequence[Request]) -> List[FetchResult]:
        """Fetch all ``requests``; the result list is aligned with the input."""
        if not requests:
            return []
        policy = self.policy_for(len(requests))
        results: List[Optional[FetchResult]] = [None] * len(requests)
        queue: List[_Pending] = [_Pending(i, r) for i, r in enumerate(requests)]
        self.stats.requests += len(requests)
        loop = asyncio.get_running_loop()

        while queue:
            # the delay spans fetch calls, so a slowed policy also slows the next window
            if self._last_batch_at is not None:
                wait = policy.delay_sec - (loop.time() - self._last_batch_at)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._check_cancel()

            batch, queue = queue[: policy.batch_size], queue[policy.batch_size :]
            outcomes = await asyncio.gather(
                *(self._execute(item.request) for item in batch),
                return_exceptions=True,
            )
            self._last_batch_at = loop.time()
            self.stats.batches += 1

            rate_limited = 0
            other_errors = 0
            requeue: List[_Pending] = []
            retry: List[tuple] = []
            for item, outcome in zip(batch, outcomes):
                if not isinstance(outcome, BaseException):
                    results[item.index] = FetchResult(item.request, value=outcome)
                elif isinstance(outcome, RateLimitedError):
                    rate_limited += 1
                    self.stats.rate_limited += 1
                    if item.requeues < self.cfg.max_rate_limit_requeues:
                        item.requeues += 1
                        requeue.append(item)
                    else:
                        self.stats.failures += 1
                        results[item.index] = FetchResult(item.request, error=outcome)
                elif isinstance(outcome, OversizedResponseError):
                    other_errors += 1
                    results[item.index] = FetchResult(item.request, error=outcome)
                elif isinstance(outcome, UpstreamError):
                    other_errors += 1
                    retry.append((item, outcome))
                elif isinstance(outcome, Exception):
                    other_errors += 1
                    logger.error("unexpected failure for %s: %r", item.request, outcome)
                    results[item.index] = self._give_up(item, unexpected_failure(outcome))
                else:
                    raise outcome

            for item, error in retry:
                results[item.index] = await self._retry_once(item, error)

            policy.record(rate_limited, other_errors)
            # rate-limited requests go to the back so the next batch is slower
            queue.extend(requeue)

        self.stats.last_policy = policy.snapshot()
        return [r for r in results if r is not None]
