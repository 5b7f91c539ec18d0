"""Adaptive request pacing and block recovery for the listings API."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Final, TypeVar

import httpx

from src.config import Settings, get_settings
from src.crawlers.base import UpstreamBlockedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

BLOCK_STATUS_CODES: Final = frozenset({302, 307, 429})

SleepFn = Callable[[float], Awaitable[None]]
ClockFn = Callable[[], float]


class Classification(StrEnum):
    OK = "ok"
    BLOCKED = "blocked"
    NETWORK_ERROR = "network_error"


class GovernorState(StrEnum):
    RUNNING = "running"
    PROBING = "probing"
    BACKOFF_WAIT = "backoff_wait"
    TILE_DEFERRED = "tile_deferred"


@dataclass(frozen=True, slots=True)
class GovernorConfig:
    start_delay: float = 4.0
    min_delay: float = 4.0
    max_delay: float = 12.0
    step: float = 2.0
    tune_down: float = 0.2
    success_streak: int = 10
    batch_size: int = 20
    batch_rest: float = 40.0
    batch_rest_extra: float = 15.0
    probe_interval: float = 30.0
    max_block_wait: float = 1800.0
    cooldown: float = 60.0
    max_block_timeouts: int = 3
    jitter_ratio: float = 0.15

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        start_delay: float | None = None,
        step: float | None = None,
        batch_size: int | None = None,
    ) -> GovernorConfig:
        """Build a config from settings, applying per-run CLI overrides."""

        settings = settings or get_settings()
        start = start_delay if start_delay is not None else settings.governor_start_delay_seconds
        return cls(
            start_delay=start,
            min_delay=min(settings.governor_min_delay_seconds, start),
            max_delay=max(settings.governor_max_delay_seconds, start),
            step=step if step is not None else settings.governor_step_seconds,
            tune_down=settings.governor_tune_down_seconds,
            success_streak=settings.governor_success_streak,
            batch_size=(
                batch_size if batch_size is not None else settings.governor_batch_size
            ),
            batch_rest=settings.governor_batch_rest_seconds,
            batch_rest_extra=settings.governor_batch_rest_extra_seconds,
            probe_interval=settings.governor_probe_interval_seconds,
            max_block_wait=settings.governor_max_block_wait_seconds,
            cooldown=settings.governor_cooldown_seconds,
            max_block_timeouts=settings.governor_max_block_timeouts,
            jitter_ratio=settings.governor_jitter_ratio,
        )


def classify(
    status_code: int | None = None, error: BaseException | None = None
) -> Classification:
    """Map an HTTP status or transport error onto ok/blocked/network_error."""

    if error is not None:
        if isinstance(error, httpx.HTTPStatusError):
            return classify(error.response.status_code)
        return Classification.NETWORK_ERROR
    if status_code is None:
        return Classification.NETWORK_ERROR
    if status_code in BLOCK_STATUS_CODES:
        return Classification.BLOCKED
    if 200 <= status_code < 300:
        return Classification.OK
    return Classification.NETWORK_ERROR


class RateGovernor:
    """Per-run pacing state machine.

    One instance lives for one crawl run. Every outbound request calls
    :meth:`before_request` first and reports back through :meth:`on_success`
    or :meth:`recover`. Sleep, clock and randomness are injectable so the
    recovery protocol can be exercised without wall-clock delays.
    """

    def __init__(
        self,
        config: GovernorConfig | None = None,
        *,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or GovernorConfig()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

        self.state = GovernorState.RUNNING
        self.current_delay = self.config.start_delay
        self.consecutive_blocks = 0
        self.last_block_at: float | None = None
        self.requests_since_rest = 0
        self.success_streak = 0

        self.requests_made = 0
        self.blocks_encountered = 0
        self.batch_rests = 0
        self.block_timeouts = 0

    def next_delay(self) -> float:
        """Current delay perturbed by symmetric jitter."""

        ratio = self._rng.uniform(-self.config.jitter_ratio, self.config.jitter_ratio)
        return max(0.0, self.current_delay * (1 + ratio))

    async def before_request(self) -> None:
        """Wait out batch rest (if due) and the inter-request delay."""

        if self.state == GovernorState.TILE_DEFERRED:
            self.state = GovernorState.RUNNING

        if self.requests_since_rest >= self.config.batch_size:
            rest = self.config.batch_rest + self._rng.uniform(
                0.0, self.config.batch_rest_extra
            )
            logger.info(
                "Batch rest %.0fs after %d requests", rest, self.requests_since_rest
            )
            self.batch_rests += 1
            self.requests_since_rest = 0
            await self._sleep(rest)

        await self._sleep(self.next_delay())
        self.requests_made += 1

    def on_success(self) -> None:
        self.consecutive_blocks = 0
        self.requests_since_rest += 1
        self.success_streak += 1
        if (
            self.success_streak >= self.config.success_streak
            and self.current_delay > self.config.min_delay
        ):
            self.current_delay = max(
                self.config.min_delay, self.current_delay - self.config.tune_down
            )
            self.success_streak = 0

    async def recover(self, probe: Callable[[], Awaitable[tuple[Classification, T]]]) -> T:
        """Handle a block: probe until upstream answers, then resume slower.

        ``probe`` re-issues the blocked request once and returns its
        classification with the response payload. The payload of the first
        successful probe is returned so the caller does not repeat it.
        Raises :class:`UpstreamBlockedError` once ``max_block_timeouts``
        consecutive maximum waits have elapsed.
        """

        self.consecutive_blocks += 1
        self.blocks_encountered += 1
        self.last_block_at = self._clock()
        safe_delay = self.current_delay
        self.success_streak = 0
        logger.warning(
            "Upstream block #%d detected at delay %.1fs, probing every %.0fs",
            self.blocks_encountered,
            safe_delay,
            self.config.probe_interval,
        )

        timeouts = 0
        while True:
            started = self._clock()
            probes = 0
            while self._clock() - started < self.config.max_block_wait:
                self.state = GovernorState.BACKOFF_WAIT
                await self._sleep(self.config.probe_interval)

                self.state = GovernorState.PROBING
                probes += 1
                self.requests_made += 1
                classification, value = await probe()
                if classification == Classification.OK:
                    self.current_delay = min(
                        self.config.max_delay, safe_delay + self.config.step
                    )
                    self.consecutive_blocks = 0
                    self.requests_since_rest = 0
                    self.state = GovernorState.RUNNING
                    logger.info(
                        "Upstream recovered after %d probes, resuming at %.1fs",
                        probes,
                        self.current_delay,
                    )
                    return value

            timeouts += 1
            self.block_timeouts += 1
            if timeouts >= self.config.max_block_timeouts:
                self.state = GovernorState.TILE_DEFERRED
                self.current_delay = min(
                    self.config.max_delay, safe_delay + self.config.step
                )
                raise UpstreamBlockedError(
                    f"blocked for {timeouts} consecutive waits of "
                    f"{self.config.max_block_wait:.0f}s"
                )

            logger.warning(
                "Block outlasted %.0fs wait (%d/%d), cooling down %.0fs",
                self.config.max_block_wait,
                timeouts,
                self.config.max_block_timeouts,
                self.config.cooldown,
            )
            self.state = GovernorState.BACKOFF_WAIT
            await self._sleep(self.config.cooldown)

    def metrics(self) -> dict[str, object]:
        return {
            "state": str(self.state),
            "current_delay": round(self.current_delay, 3),
            "requests_made": self.requests_made,
            "blocks_encountered": self.blocks_encountered,
            "block_timeouts": self.block_timeouts,
            "batch_rests": self.batch_rests,
        }
