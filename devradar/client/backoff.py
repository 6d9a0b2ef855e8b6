"""Reconnect delays: capped exponential backoff with +/-25% uniform jitter."""

import random
from dataclasses import dataclass, field
from typing import Callable, Tuple


@dataclass
class ReconnectPolicy:
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    max_attempts: int = 10
    jitter: float = 0.25
    rng: Callable[[], float] = field(default=random.random, repr=False)

    @classmethod
    def from_settings(cls, cfg) -> "ReconnectPolicy":
        return cls(
            initial_delay=cfg.reconnect_initial_delay_seconds,
            max_delay=cfg.reconnect_max_delay_seconds,
            multiplier=cfg.reconnect_multiplier,
            max_attempts=cfg.reconnect_max_attempts,
        )

    def base_delay(self, attempt: int) -> float:
        return min(self.initial_delay * self.multiplier ** attempt, self.max_delay)

    def bounds(self, attempt: int) -> Tuple[float, float]:
        base = self.base_delay(attempt)
        return base * (1 - self.jitter), base * (1 + self.jitter)

    def delay(self, attempt: int) -> float:
        base = self.base_delay(attempt)
        return base + base * self.jitter * (self.rng() * 2 - 1)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
