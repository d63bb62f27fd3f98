"""Bounded exponential backoff for effect retries."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from random import Random, SystemRandom

from shipfree.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 5.0
    jitter: float = 0.25

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")

    @classmethod
    def from_settings(cls, config: Settings) -> RetryPolicy:
        return cls(
            max_attempts=config.effect_max_attempts,
            base_delay=config.effect_base_delay_seconds,
            max_delay=config.effect_max_delay_seconds,
        )

    def schedule(self, rng: Random | None = None) -> Iterator[tuple[int, float]]:
        """Yield (attempt, delay_before_next_attempt) pairs; the last delay is never slept."""
        rng = rng or SystemRandom()
        delay = self.base_delay
        for attempt in range(1, self.max_attempts + 1):
            jitter_offset = rng.uniform(0, delay * self.jitter) if self.jitter > 0 else 0.0
            yield attempt, min(delay + jitter_offset, self.max_delay)
            delay = min(delay * self.factor, self.max_delay)


NO_RETRY = RetryPolicy(max_attempts=1, base_delay=0.0, max_delay=0.0, jitter=0.0)
