"""Backoff schedule and retry eligibility for failed task executions."""

from __future__ import annotations

import random
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum

from task_engine.config import RetrySettings

# Larger exponents overflow float conversion of the delay.
_MAX_EXPONENT = 62


class RetryStrategy(str, Enum):
    """How the delay grows with the number of executions already started."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"
    NONE = "none"


@dataclass(slots=True)
class RetryDecision:
    """Whether a failed execution gets another attempt, and when."""

    retry: bool
    delay_seconds: float = 0.0
    scheduled_at: datetime | None = None


@dataclass(slots=True)
class RetryPolicy:
    """Bounded retry with capped, jittered backoff.

    ``attempt_count`` passed to :meth:`decide` counts executions already
    started, so the first retry after one failed run waits ``base * 2``
    under the exponential strategy.
    """

    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0
    jitter_ratio: float = 0.2
    rng: random.Random = field(default_factory=random.Random)  # noqa: S311

    @classmethod
    def from_settings(
        cls,
        settings: RetrySettings,
        *,
        rng: random.Random | None = None,
    ) -> RetryPolicy:
        return cls(
            strategy=RetryStrategy(settings.strategy),
            base_delay_seconds=settings.base_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            jitter_ratio=settings.jitter_ratio,
            rng=rng or random.Random(),  # noqa: S311
        )

    def for_task(
        self,
        *,
        strategy: str | None = None,
        base_delay_seconds: float | None = None,
    ) -> RetryPolicy:
        """Policy with a task's own strategy and base delay layered over this one."""

        if strategy is None and base_delay_seconds is None:
            return self
        return replace(
            self,
            strategy=RetryStrategy(strategy) if strategy is not None else self.strategy,
            base_delay_seconds=(
                base_delay_seconds if base_delay_seconds is not None else self.base_delay_seconds
            ),
        )

    def should_retry(self, *, attempt_count: int, max_attempts: int) -> bool:
        if self.strategy == RetryStrategy.NONE:
            return False
        return attempt_count < max_attempts

    def base_delay(self, attempt_count: int) -> float:
        """Un-jittered delay before the next attempt, capped at ``max_delay_seconds``."""

        attempt = max(attempt_count, 0)
        if self.strategy == RetryStrategy.EXPONENTIAL:
            delay = self.base_delay_seconds * (2 ** min(attempt, _MAX_EXPONENT))
        elif self.strategy == RetryStrategy.LINEAR:
            delay = self.base_delay_seconds * max(attempt, 1)
        elif self.strategy == RetryStrategy.FIXED:
            delay = self.base_delay_seconds
        else:
            delay = 0.0
        return min(delay, self.max_delay_seconds)

    def compute_delay(self, attempt_count: int) -> float:
        delay = self.base_delay(attempt_count)
        if self.jitter_ratio > 0 and delay > 0:
            delay *= 1 + self.rng.uniform(-self.jitter_ratio, self.jitter_ratio)
        return min(max(delay, 0.0), self.max_delay_seconds)

    def decide(self, *, attempt_count: int, max_attempts: int, now: datetime) -> RetryDecision:
        if not self.should_retry(attempt_count=attempt_count, max_attempts=max_attempts):
            return RetryDecision(retry=False)
        delay = self.compute_delay(attempt_count)
        return RetryDecision(
            retry=True,
            delay_seconds=delay,
            scheduled_at=now + timedelta(seconds=delay),
        )
