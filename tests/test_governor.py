from __future__ import annotations

import random

import httpx
import pytest

from src.crawlers.base import UpstreamBlockedError
from src.crawlers.governor import (
    Classification,
    GovernorConfig,
    GovernorState,
    RateGovernor,
    classify,
)

pytestmark = pytest.mark.anyio


class FakeClock:
    """Virtual time advanced only by the governor's own sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _governor(clock: FakeClock, **overrides: object) -> RateGovernor:
    config = GovernorConfig(
        **{
            "start_delay": 4.0,
            "min_delay": 4.0,
            "max_delay": 12.0,
            "step": 2.0,
            "jitter_ratio": 0.0,
            **overrides,
        }
    )
    return RateGovernor(config, sleep=clock.sleep, clock=clock, rng=random.Random(7))


async def test_classify_maps_block_signals() -> None:
    assert classify(200) == Classification.OK
    assert classify(429) == Classification.BLOCKED
    assert classify(302) == Classification.BLOCKED
    assert classify(307) == Classification.BLOCKED
    assert classify(503) == Classification.NETWORK_ERROR
    assert classify(error=httpx.ConnectTimeout("slow")) == Classification.NETWORK_ERROR

    request = httpx.Request("GET", "https://example.test")
    response = httpx.Response(429, request=request)
    error = httpx.HTTPStatusError("blocked", request=request, response=response)
    assert classify(error=error) == Classification.BLOCKED


async def test_jitter_stays_within_ratio() -> None:
    clock = FakeClock()
    governor = _governor(clock, jitter_ratio=0.15)

    delays = [governor.next_delay() for _ in range(200)]

    assert all(4.0 * 0.85 <= delay <= 4.0 * 1.15 for delay in delays)
    assert len(set(delays)) > 1


async def test_block_recovery_resumes_at_safe_delay_plus_step() -> None:
    clock = FakeClock()
    governor = _governor(clock)
    outcomes = iter(
        [
            (Classification.BLOCKED, None),
            (Classification.BLOCKED, None),
            (Classification.OK, "payload"),
        ]
    )
    probe_calls = 0

    async def probe() -> tuple[Classification, str | None]:
        nonlocal probe_calls
        probe_calls += 1
        return next(outcomes)

    for _ in range(4):
        await governor.before_request()
        governor.on_success()
    await governor.before_request()

    result = await governor.recover(probe)

    assert result == "payload"
    assert probe_calls == 3
    assert governor.current_delay == 6.0
    assert governor.blocks_encountered == 1
    assert governor.consecutive_blocks == 0
    assert governor.state == GovernorState.RUNNING
    assert clock.sleeps[-3:] == [30.0, 30.0, 30.0]


async def test_recovery_never_resumes_faster_than_before() -> None:
    clock = FakeClock()
    governor = _governor(clock, start_delay=11.0)

    async def probe() -> tuple[Classification, int]:
        return Classification.OK, 1

    await governor.recover(probe)

    assert governor.current_delay == 12.0


async def test_repeated_block_timeouts_defer_the_tile() -> None:
    clock = FakeClock()
    governor = _governor(
        clock, probe_interval=10.0, max_block_wait=30.0, cooldown=5.0, max_block_timeouts=2
    )

    async def probe() -> tuple[Classification, None]:
        return Classification.BLOCKED, None

    with pytest.raises(UpstreamBlockedError):
        await governor.recover(probe)

    assert governor.state == GovernorState.TILE_DEFERRED
    assert governor.block_timeouts == 2
    assert 5.0 in clock.sleeps
    assert governor.current_delay == 6.0

    await governor.before_request()
    assert governor.state == GovernorState.RUNNING


async def test_batch_rest_after_batch_size_requests() -> None:
    clock = FakeClock()
    governor = _governor(clock, batch_size=3, batch_rest=40.0, batch_rest_extra=15.0)

    for _ in range(3):
        await governor.before_request()
        governor.on_success()
    sleeps_before = len(clock.sleeps)
    await governor.before_request()

    rest = clock.sleeps[sleeps_before]
    assert 40.0 <= rest <= 55.0
    assert governor.batch_rests == 1
    assert governor.requests_made == 4


async def test_success_streak_tunes_down_but_not_below_floor() -> None:
    clock = FakeClock()
    governor = _governor(clock, start_delay=4.4, min_delay=4.0, success_streak=2, tune_down=0.2)

    for _ in range(20):
        governor.on_success()

    assert governor.current_delay == pytest.approx(4.0)
