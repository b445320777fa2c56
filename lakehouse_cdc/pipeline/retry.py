"""Retry scheduling for retryable pipeline errors."""

import random
from dataclasses import dataclass
from typing import Callable, Optional

from lakehouse_cdc.common.config import RetryConfig


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with optional +/-25% jitter.

    ``max_attempts`` counts every attempt including the first one, so the
    failure numbered ``max_attempts`` is final and gets no retry.
    """

    max_attempts: int = 3
    initial_interval: float = 1.0
    max_interval: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            initial_interval=config.initial_interval,
            max_interval=config.max_interval,
            multiplier=config.multiplier,
            jitter=config.jitter,
        )

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """
        Backoff before retry number ``attempt`` (1-based).

        Args:
            attempt: Retry number
            rng: Source of uniform [0, 1) values for jitter
        """
        interval = min(self.initial_interval * self.multiplier ** (attempt - 1), self.max_interval)
        if self.jitter:
            interval *= 0.75 + 0.5 * rng()
        return interval


class RetryState:
    """
    Retry bookkeeping for one failing stage.

    Nothing sleeps here: the scheduler compares ``next_attempt_at`` with its
    own clock on every tick.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        stage: str,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.policy = policy
        self.stage = stage
        self._rng = rng
        self.attempts = 0
        self.next_attempt_at: Optional[float] = None
        self.last_error: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.policy.max_attempts

    def record_failure(self, error: str, now: float) -> bool:
        """
        Register a failure at ``now``.

        The n-th failure schedules retry n (attempt n + 1) unless n has
        reached ``max_attempts``.

        Returns:
            True if another attempt is scheduled, False if attempts are used up
        """
        self.last_error = error
        self.attempts += 1
        if self.exhausted:
            self.next_attempt_at = None
            return False
        self.next_attempt_at = now + self.policy.delay(self.attempts, self._rng)
        return True

    def ready(self, now: float) -> bool:
        """True when no retry is pending or its time has come."""
        return self.next_attempt_at is None or now >= self.next_attempt_at

    def record_success(self) -> None:
        self.attempts = 0
        self.next_attempt_at = None
        self.last_error = None
