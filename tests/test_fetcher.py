import asyncio

import pytest

from conftest import CONTRACT, DummyRPC, fast_throttle, scenario_logs
from ledger_sync.config import ThrottleConfig
from ledger_sync.errors import FetchCancelled, OversizedResponseError, RateLimitedError, UpstreamError
from ledger_sync.fetcher import BlockRequest, LogsRequest, RateAdaptiveFetcher, ThrottlePolicy


def test_policy_starts_from_volume_tier():
    cfg = ThrottleConfig()
    assert (ThrottlePolicy(cfg, 150).batch_size, ThrottlePolicy(cfg, 150).delay_ms) == (5, 1000)
    assert (ThrottlePolicy(cfg, 60).batch_size, ThrottlePolicy(cfg, 60).delay_ms) == (8, 750)
    assert (ThrottlePolicy(cfg, 10).batch_size, ThrottlePolicy(cfg, 10).delay_ms) == (15, 200)


def test_clean_batch_speeds_up():
    p = ThrottlePolicy(ThrottleConfig(), 10)
    p.record(rate_limited=0, other_errors=0)
    assert p.batch_size == 16
    assert p.delay_ms == pytest.approx(160)
    for _ in range(20):
        p.record(0, 0)
    assert p.batch_size == 20
    assert p.delay_ms == 100


def test_rate_limit_backs_off_then_goes_emergency():
    p = ThrottlePolicy(ThrottleConfig(), 10)
    p.record(rate_limited=1, other_errors=0)
    assert p.consecutive_errors == 1
    assert p.delay_ms == pytest.approx(300)
    assert p.batch_size == 15

    p.record(rate_limited=2, other_errors=0)
    assert p.consecutive_errors == 2
    assert p.delay_ms == pytest.approx(600)
    assert p.batch_size == 12
    assert p.emergencies == 1


def test_emergency_is_capped_and_floored():
    p = ThrottlePolicy(ThrottleConfig(), 150)
    p.delay_ms = 2500
    p.consecutive_errors = 5
    p.record(1, 0)
    assert p.delay_ms == 3000
    assert p.batch_size == 3


def test_other_errors_keep_settings_but_end_the_streak():
    p = ThrottlePolicy(ThrottleConfig(), 10)
    p.consecutive_errors = 1
    p.record(rate_limited=0, other_errors=3)
    assert (p.batch_size, p.delay_ms, p.consecutive_errors) == (15, 200, 0)


def test_timeout_batch_between_rate_limits_is_not_a_streak():
    p = ThrottlePolicy(ThrottleConfig(), 10)
    p.record(1, 0)
    p.record(0, 1)
    p.record(1, 0)
    assert p.consecutive_errors == 1
    assert p.emergencies == 0


def test_success_resets_error_streak():
    p = ThrottlePolicy(ThrottleConfig(), 10)
    p.record(1, 0)
    p.record(0, 0)
    p.record(1, 0)
    assert p.consecutive_errors == 1
    assert p.emergencies == 0


@pytest.mark.asyncio
async def test_results_are_aligned_with_requests():
    rpc = DummyRPC(scenario_logs())
    fetcher = RateAdaptiveFetcher(rpc, fast_throttle())
    requests = [BlockRequest(n) for n in range(40)]
    results = await fetcher.fetch_batch(requests)
    assert [r.request for r in results] == requests
    assert all(r.ok and not r.fallback for r in results)
    assert int(results[7].value["timestamp"], 16) == DummyRPC.block_timestamp(7)
    # 40 requests at 15 then 16 per batch
    assert fetcher.stats.batches == 3


@pytest.mark.asyncio
async def test_rate_limited_requests_are_requeued_not_retried_inline():
    rpc = DummyRPC()
    rpc.rate_limit_calls = 3
    fetcher = RateAdaptiveFetcher(rpc, fast_throttle())
    results = await fetcher.fetch_batch([BlockRequest(n) for n in range(5)])
    assert all(r.ok for r in results)
    assert fetcher.stats.rate_limited == 3
    assert fetcher.stats.retried == 0
    # first batch of 5, then the 3 re-queued ones
    assert rpc.block_calls == [0, 1, 2, 3, 4, 0, 1, 2]


@pytest.mark.asyncio
async def test_throttle_state_carries_across_fetches():
    rpc = DummyRPC()
    rpc.rate_limit_calls = 3
    fetcher = RateAdaptiveFetcher(rpc, fast_throttle())
    [first] = await fetcher.fetch_batch([BlockRequest(1)])
    assert first.ok
    assert fetcher.stats.last_policy["emergencies"] == 2
    assert fetcher.stats.last_policy["batchSize"] == 10

    [second] = await fetcher.fetch_batch([BlockRequest(2)])
    assert second.ok
    assert fetcher.stats.last_policy["emergencies"] == 2
    assert fetcher.stats.last_policy["batchSize"] == 11


class BrokenRPC(DummyRPC):
    async def get_logs(self, from_block, to_block, address=None, topics=None):
        self.logs_calls.append((from_block, to_block))
        raise KeyError("result")

    async def get_block_by_number(self, block_number):
        self.block_calls.append(block_number)
        raise KeyError("timestamp")


@pytest.mark.asyncio
async def test_unexpected_exceptions_become_failed_results():
    rpc = BrokenRPC()
    fetcher = RateAdaptiveFetcher(rpc, fast_throttle())
    logs, block = await fetcher.fetch_batch([LogsRequest(CONTRACT, None, 100, 199), BlockRequest(5)])
    assert isinstance(logs.error, UpstreamError)
    assert "KeyError" in str(logs.error)
    assert block.ok and block.fallback
    assert fetcher.stats.failures == 1


@pytest.mark.asyncio
async def test_requeues_are_bounded():
    rpc = DummyRPC()
    rpc.rate_limit_calls = 10_000
    fetcher = RateAdaptiveFetcher(rpc, fast_throttle(max_rate_limit_requeues=2))
    [result] = await fetcher.fetch_batch([LogsRequest(CONTRACT, None, 0, 10)])
    assert isinstance(result.error, RateLimitedError)
    assert len(rpc.logs_calls) == 3


@pytest.mark.asyncio
async def test_failing_block_falls_back_to_estimated_timestamp():
    rpc = DummyRPC()
    rpc.fail_blocks = {3}
    fetcher = RateAdaptiveFetcher(rpc, fast_throttle())
    results = await fetcher.fetch_batch([BlockRequest(n) for n in range(5)])
    r = results[3]
    assert r.ok and r.fallback
    assert int(r.value["timestamp"], 16) > 0
    assert rpc.block_calls.count(3) == 2
    assert not any(x.fallback for i, x in enumerate(results) if i != 3)


@pytest.mark.asyncio
async def test_failing_logs_request_returns_error_after_one_retry():
    rpc = DummyRPC()
    rpc.fail_logs_from = {100}
    fetcher = RateAdaptiveFetcher(rpc, fast_throttle())
    [result] = await fetcher.fetch_batch([LogsRequest(CONTRACT, None, 100, 199)])
    assert isinstance(result.error, UpstreamError)
    assert len(rpc.logs_calls) == 2


@pytest.mark.asyncio
async def test_transient_logs_failure_recovers_on_individual_retry():
    rpc = DummyRPC(scenario_logs())
    rpc.fail_logs_calls = 1
    fetcher = RateAdaptiveFetcher(rpc, fast_throttle())
    [result] = await fetcher.fetch_batch([LogsRequest(CONTRACT, None, 100, 199)])
    assert result.ok
    assert len(result.value) == 2


@pytest.mark.asyncio
async def test_oversized_is_returned_without_retry():
    rpc = DummyRPC(scenario_logs())
    rpc.max_results = 1
    fetcher = RateAdaptiveFetcher(rpc, fast_throttle())
    [result] = await fetcher.fetch_batch([LogsRequest(CONTRACT, None, 100, 400)])
    assert isinstance(result.error, OversizedResponseError)
    assert len(rpc.logs_calls) == 1


@pytest.mark.asyncio
async def test_cancel_is_checked_between_batches():
    rpc = DummyRPC()
    cancel = asyncio.Event()
    cancel.set()
    fetcher = RateAdaptiveFetcher(rpc, fast_throttle(), cancel_event=cancel)
    with pytest.raises(FetchCancelled):
        await fetcher.fetch_batch([BlockRequest(1)])
    assert rpc.block_calls == []


@pytest.mark.asyncio
async def test_empty_request_list():
    fetcher = RateAdaptiveFetcher(DummyRPC(), fast_throttle())
    assert await fetcher.fetch_batch([]) == []
