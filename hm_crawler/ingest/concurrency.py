"""Adaptive concurrency controller.

Observes request outcomes and adjusts how many fetches may run at once and
how long workers pause between requests. Three modes:

* normal: small scale-up steps when healthy, larger scale-down steps when not,
  at most one adjustment per ``scale_interval`` seconds
* burst: temporary jump toward the burst ceiling while everything is fast and clean
* cooldown: collapse to the floor when errors or blocks pile up

Burst and cooldown both expire after a fixed dwell time.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from hm_crawler import metrics

logger = logging.getLogger(__name__)


class ControllerMode(str, Enum):
    NORMAL = "normal"
    BURST = "burst"
    COOLDOWN = "cooldown"


@dataclass(frozen=True)
class ConcurrencyProfile:
    """Limits and thresholds for the controller."""

    min_concurrency: int = 1
    desired_concurrency: int = 3
    max_concurrency: int = 8
    burst_limit: int = 12
    scale_up_step: float = 0.5
    scale_down_step: float = 1.0
    scale_up_threshold: float = 0.85
    scale_down_threshold: float = 0.70
    fast_latency_ms: float = 2000.0
    slow_latency_ms: float = 3000.0
    burst_latency_ms: float = 1500.0
    min_success_streak: int = 5
    max_error_streak: int = 2
    cooldown_error_streak: int = 3
    scale_interval: float = 10.0
    cooldown_period: float = 30.0
    burst_period: float = 120.0
    min_delay: float = 0.5
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> "ConcurrencyProfile":
        return cls(
            min_concurrency=settings.min_concurrency,
            desired_concurrency=settings.desired_concurrency,
            max_concurrency=settings.max_concurrency,
            burst_limit=max(settings.burst_concurrency, settings.max_concurrency),
            scale_up_step=settings.scale_up_step,
            scale_down_step=settings.scale_down_step,
            scale_interval=settings.scale_interval_seconds,
            cooldown_period=settings.cooldown_seconds,
            burst_period=settings.burst_seconds,
            min_delay=settings.min_request_delay,
            max_delay=settings.max_request_delay,
        )


@dataclass(frozen=True)
class ConcurrencyState:
    """Snapshot of the controller, read by the scheduler."""

    desired: float
    min: int
    max: int
    burst_active: bool
    cooldown_active: bool
    success_streak: int
    error_streak: int
    rolling_success_rate: float
    rolling_latency_ms: float
    block_rate: float
    inter_request_delay: float

    @property
    def mode(self) -> ControllerMode:
        if self.cooldown_active:
            return ControllerMode.COOLDOWN
        if self.burst_active:
            return ControllerMode.BURST
        return ControllerMode.NORMAL


@dataclass(frozen=True)
class ScalingEvent:
    kind: str
    previous: float
    current: float
    at: float


class AdaptiveConcurrencyController:
    """Feedback controller over request outcomes.

    Outcomes feed exponential moving averages; scaling decisions read only
    those averages and the current streaks.
    """

    EMA_WEIGHT = 0.1
    BLOCK_DECAY = 0.95
    BLOCK_WEIGHT = 0.05
    UNBLOCKED_DECAY = 0.99
    DELAY_BACKOFF = 1.5
    DELAY_RECOVERY = 0.9

    def __init__(
        self,
        profile: Optional[ConcurrencyProfile] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.profile = profile or ConcurrencyProfile()
        self._clock = clock

        self.desired: float = float(self.profile.desired_concurrency)
        self.success_rate = 1.0
        self.latency_ms = 2000.0
        self.block_rate = 0.0
        self.success_streak = 0
        self.error_streak = 0
        self.inter_request_delay = self.profile.min_delay

        self.burst_active = False
        self.cooldown_active = False
        self._burst_until = 0.0
        self._cooldown_until = 0.0
        self._last_scale_at: Optional[float] = None
        self.history: deque[ScalingEvent] = deque(maxlen=50)

        metrics.desired_concurrency.set(self.desired)

    @property
    def error_rate(self) -> float:
        return 1.0 - self.success_rate

    @property
    def mode(self) -> ControllerMode:
        return self.state.mode

    @property
    def state(self) -> ConcurrencyState:
        return ConcurrencyState(
            desired=self.desired,
            min=self.profile.min_concurrency,
            max=self.profile.max_concurrency,
            burst_active=self.burst_active,
            cooldown_active=self.cooldown_active,
            success_streak=self.success_streak,
            error_streak=self.error_streak,
            rolling_success_rate=self.success_rate,
            rolling_latency_ms=self.latency_ms,
            block_rate=self.block_rate,
            inter_request_delay=self.inter_request_delay,
        )

    @property
    def ceiling(self) -> int:
        """Largest concurrency any mode may ever request."""
        return max(self.profile.burst_limit, self.profile.max_concurrency)

    def current_concurrency(self) -> int:
        """Number of fetches allowed to run at once right now."""
        self._expire_modes(self._clock())
        return max(self.profile.min_concurrency, int(self.desired))

    def record_outcome(self, success: bool, latency_ms: float, blocked: bool = False) -> None:
        """Feed one request outcome into the moving averages and re-evaluate scaling."""
        if success:
            self.success_streak += 1
            self.error_streak = 0
            self.inter_request_delay = max(
                self.profile.min_delay, self.inter_request_delay * self.DELAY_RECOVERY
            )
        else:
            self.error_streak += 1
            self.success_streak = 0
            self.inter_request_delay = min(
                self.profile.max_delay, self.inter_request_delay * self.DELAY_BACKOFF
            )

        w = self.EMA_WEIGHT
        self.success_rate = (1 - w) * self.success_rate + w * (1.0 if success else 0.0)
        self.latency_ms = (1 - w) * self.latency_ms + w * max(latency_ms, 0.0)
        if blocked:
            self.block_rate = self.block_rate * self.BLOCK_DECAY + self.BLOCK_WEIGHT
        else:
            self.block_rate *= self.UNBLOCKED_DECAY

        self.evaluate()

    def evaluate(self) -> None:
        now = self._clock()
        self._expire_modes(now)

        # Protective collapse is never rate-limited
        if self._should_enter_cooldown():
            self._enter_cooldown(now)
            return

        if self._last_scale_at is not None and now - self._last_scale_at < self.profile.scale_interval:
            return

        if self._should_enter_burst():
            self._enter_burst(now)
        elif self._should_scale_up():
            self._set_desired(
                min(self.desired + self.profile.scale_up_step, self.profile.max_concurrency),
                "scale_up", now,
            )
        elif self._should_scale_down():
            self._set_desired(
                max(self.desired - self.profile.scale_down_step, self.profile.min_concurrency),
                "scale_down", now,
            )

    # ------------------------------------------------------------------
    # Mode transitions
    # ------------------------------------------------------------------

    def _should_enter_burst(self) -> bool:
        return (
            not self.burst_active
            and not self.cooldown_active
            and self.success_rate > 0.95
            and self.latency_ms < self.profile.burst_latency_ms
            and self.error_rate < 0.02
            and self.desired < self.profile.burst_limit
        )

    def _should_enter_cooldown(self) -> bool:
        if self.cooldown_active:
            return False
        return (
            self.error_rate > 0.10
            or self.block_rate > 0.05
            or self.error_streak > self.profile.cooldown_error_streak
            or self.success_rate < self.profile.scale_down_threshold
        )

    def _should_scale_up(self) -> bool:
        return (
            not self.burst_active
            and not self.cooldown_active
            and self.success_rate > self.profile.scale_up_threshold
            and self.latency_ms < self.profile.fast_latency_ms
            and self.error_rate < 0.05
            and self.success_streak > self.profile.min_success_streak
            and self.desired < self.profile.max_concurrency
        )

    def _should_scale_down(self) -> bool:
        if self.cooldown_active or self.desired <= self.profile.min_concurrency:
            return False
        return (
            self.success_rate < self.profile.scale_down_threshold
            or self.latency_ms > self.profile.slow_latency_ms
            or self.error_rate > 0.10
            or self.error_streak > self.profile.max_error_streak
            or self.block_rate > 0.05
        )

    def _enter_burst(self, now: float) -> None:
        self.burst_active = True
        self._burst_until = now + self.profile.burst_period
        self._set_desired(min(self.desired + 2, self.profile.burst_limit), "burst_start", now)
        logger.info(f"Entered burst mode: concurrency increased to {self.desired:g}")

    def _enter_cooldown(self, now: float) -> None:
        self.cooldown_active = True
        self.burst_active = False
        self._cooldown_until = now + self.profile.cooldown_period
        self._set_desired(float(self.profile.min_concurrency), "cooldown_start", now)
        logger.warning(
            f"Entered cooldown mode: concurrency reduced to {self.desired:g} "
            f"(success={self.success_rate:.2f}, blocked={self.block_rate:.2f}, "
            f"error_streak={self.error_streak})"
        )

    def _expire_modes(self, now: float) -> None:
        if self.burst_active and now >= self._burst_until:
            self.burst_active = False
            target = min(self.desired - 1, self.profile.max_concurrency)
            self._set_desired(max(target, self.profile.min_concurrency), "burst_end", now)
            logger.info(f"Exited burst mode: concurrency reduced to {self.desired:g}")
        if self.cooldown_active and now >= self._cooldown_until:
            self.cooldown_active = False
            self.error_streak = 0
            self._set_desired(min(self.desired + 1, self.profile.max_concurrency), "cooldown_end", now)
            logger.info(f"Exited cooldown mode: concurrency increased to {self.desired:g}")

    def _set_desired(self, value: float, kind: str, now: float) -> None:
        previous = self.desired
        self.desired = value
        self._last_scale_at = now
        self.history.append(ScalingEvent(kind=kind, previous=previous, current=value, at=now))
        metrics.desired_concurrency.set(value)
        if kind in ("scale_up", "scale_down"):
            logger.debug(f"Concurrency {kind}: {previous:g} -> {value:g}")
