"""
Reconnect backoff policy for fleet sessions.

Each identity owns its own BackoffState; nothing here is shared across
identities. The delay grows exponentially with the attempt count up to a
ceiling, plus a jitter of a fixed fraction of the base delay so that
identities dropped together do not all come back at the same instant.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass


@dataclass
class BackoffConfig:
    """Configuration for exponential reconnect backoff.

    Defaults: start at 5s, grow x1.3 per attempt, cap at 30s,
    jitter of +/-20% of the base delay (+/-1s).
    """

    base_delay_ms: int = 5000
    max_delay_ms: int = 30000
    multiplier: float = 1.3
    jitter_factor: float = 0.2  # 0.2 = +/-20% of base_delay_ms

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms must be >= base_delay_ms, got {self.max_delay_ms} < {self.base_delay_ms}"
            )
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be 0..1, got {self.jitter_factor}")


@dataclass
class BackoffState:
    """Mutable per-identity backoff tracking."""

    attempt: int = 0

    def reset(self) -> None:
        """Forgive prior instability after a stable session."""
        self.attempt = 0

    def record_attempt(self) -> None:
        """Record that a reconnect has been scheduled."""
        self.attempt += 1

    def next_delay_ms(
        self,
        config: BackoffConfig,
        *,
        rng: random.Random | None = None,
    ) -> int:
        """Delay for the next reconnect at the current attempt count."""
        return compute_backoff_delay(config, self.attempt, rng=rng)


def base_delay_for_attempt(config: BackoffConfig, attempt: int) -> float:
    """Un-jittered delay: min(base * multiplier^attempt, max)."""
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")
    cap = float(config.max_delay_ms)
    if config.base_delay_ms == 0 or config.multiplier == 1.0:
        return min(float(config.base_delay_ms), cap)

    # Past this attempt the delay sits at the cap; multiplier**attempt would overflow
    cap_attempt = math.log(cap / config.base_delay_ms, config.multiplier)
    if attempt >= cap_attempt:
        return cap
    delay = config.base_delay_ms * (config.multiplier**attempt)
    return min(delay, cap)


def compute_backoff_delay(
    config: BackoffConfig,
    attempt: int,
    *,
    rng: random.Random | None = None,
) -> int:
    """
    Compute reconnect delay with exponential increase and jitter.

    Args:
        config: Backoff configuration.
        attempt: Reconnects already scheduled since the last stable session.
        rng: Optional seeded Random instance for deterministic jitter.

    Returns:
        Delay in milliseconds before the next reconnect (never negative).
    """
    delay = base_delay_for_attempt(config, attempt)

    jitter_span = config.jitter_factor * config.base_delay_ms
    if jitter_span > 0:
        source = rng if rng is not None else random
        delay += source.uniform(-jitter_span, jitter_span)

    return max(0, int(delay))
