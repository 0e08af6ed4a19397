"""
Admission controller: process-wide pacing of connection attempts.

Every connection attempt from every identity (initial launch and
reconnect alike) first waits for clearance here. Clearances are granted
at least ``current_delay_ms`` apart. Throttling signals observed by any
identity multiply the delay, clamped to a ceiling; it never shrinks.

The server's signals are free text matched heuristically (see
``signals.py``); a missed signal only means pacing stays at its current
interval.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class ThrottleSignalKind(str, Enum):
    """Strength of an observed throttling signal."""

    SOFT = "SOFT"  # Abrupt connection reset
    EXPLICIT = "EXPLICIT"  # Server said "too fast" / "try again" / rate-limit kick


@dataclass
class AdmissionConfig:
    """Configuration for connection admission pacing.

    Starts at 1.5s between attempts, capped at 30s.
    """

    initial_delay_ms: int = 1500
    max_delay_ms: int = 30000
    soft_multiplier: float = 1.5
    explicit_multiplier: float = 2.0

    def __post_init__(self) -> None:
        # Growth is multiplicative, so a zero delay could never adapt
        if self.initial_delay_ms <= 0:
            raise ValueError(f"initial_delay_ms must be > 0, got {self.initial_delay_ms}")
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError(
                "max_delay_ms must be >= initial_delay_ms, "
                f"got {self.max_delay_ms} < {self.initial_delay_ms}"
            )
        if self.soft_multiplier < 1.0:
            raise ValueError(f"soft_multiplier must be >= 1.0, got {self.soft_multiplier}")
        if self.explicit_multiplier < 1.0:
            raise ValueError(
                f"explicit_multiplier must be >= 1.0, got {self.explicit_multiplier}"
            )

    def multiplier_for(self, kind: ThrottleSignalKind) -> float:
        """Get the delay multiplier for a signal kind."""
        if kind == ThrottleSignalKind.EXPLICIT:
            return self.explicit_multiplier
        return self.soft_multiplier


@dataclass
class AdmissionController:
    """
    Shared gate pacing connection attempts across all identities.

    State (current delay, last grant time, throttle flag) is only touched
    through ``await_clearance`` and ``report_throttle_signal``:
    - ``await_clearance`` holds one asyncio.Lock across its wait, so two
      grants are never closer than the delay in force when the second is
      granted.
    - ``report_throttle_signal`` is synchronous and guarded by a
      threading.Lock, so concurrent reports never lose an increment.

    Usage:
        admission = AdmissionController()
        await admission.await_clearance("bot_1")  # Blocks until paced
        # ... open connection ...
        admission.report_throttle_signal(ThrottleSignalKind.EXPLICIT)
    """

    config: AdmissionConfig = field(default_factory=AdmissionConfig)

    _current_delay_ms: float = field(default=0.0, init=False)
    _last_attempt_ms: int = field(default=0, init=False)
    _has_granted: bool = field(default=False, init=False)
    _throttle_detected: bool = field(default=False, init=False)

    # Counters
    clearances_granted: int = field(default=0, init=False)
    signals_soft: int = field(default=0, init=False)
    signals_explicit: int = field(default=0, init=False)
    _scope_grants: Counter[str] = field(default_factory=Counter, init=False)

    _state_lock: threading.Lock = field(default_factory=threading.Lock, init=False)
    _clearance_lock: asyncio.Lock | None = field(default=None, init=False)

    # Optional time/sleep providers for deterministic testing
    _time_fn: Callable[[], int] | None = field(default=None)
    _sleep_fn: Callable[[float], Awaitable[None]] | None = field(default=None)

    def __post_init__(self) -> None:
        """Start pacing at the configured initial delay."""
        self._current_delay_ms = float(self.config.initial_delay_ms)

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.monotonic() * 1000)

    async def _sleep(self, seconds: float) -> None:
        if self._sleep_fn is not None:
            await self._sleep_fn(seconds)
        else:
            await asyncio.sleep(seconds)

    def _get_clearance_lock(self) -> asyncio.Lock:
        """Get or create the asyncio lock (bound lazily to the running loop)."""
        if self._clearance_lock is None:
            self._clearance_lock = asyncio.Lock()
        return self._clearance_lock

    @property
    def current_delay_ms(self) -> int:
        """Current minimum spacing between clearances."""
        with self._state_lock:
            return int(self._current_delay_ms)

    @property
    def throttle_detected(self) -> bool:
        """Whether a throttle signal arrived since the flag was last consumed."""
        with self._state_lock:
            return self._throttle_detected

    def _wait_ms(self, now_ms: int) -> int:
        """Milliseconds until the next clearance may be granted."""
        with self._state_lock:
            if not self._has_granted:
                return 0
            elapsed = now_ms - self._last_attempt_ms
            return max(0, int(self._current_delay_ms) - elapsed)

    async def await_clearance(self, scope: str = "SYSTEM") -> None:
        """
        Block until a connection attempt may proceed, then record the grant.

        Args:
            scope: Identity requesting clearance (for accounting and logs).
        """
        async with self._get_clearance_lock():
            wait_ms = self._wait_ms(self._now_ms())
            if wait_ms > 0:
                logger.warning(
                    "Rate limiting: waiting %dms before next connection",
                    wait_ms,
                    extra={"identity": scope},
                )
            # Delay may grow while we sleep; re-check until it has elapsed
            while wait_ms > 0:
                await self._sleep(wait_ms / 1000)
                wait_ms = self._wait_ms(self._now_ms())

            with self._state_lock:
                self._last_attempt_ms = self._now_ms()
                self._has_granted = True
                self.clearances_granted += 1
                self._scope_grants[scope] += 1

    def report_throttle_signal(self, kind: ThrottleSignalKind) -> int:
        """
        Slow down admission after a throttling signal.

        Args:
            kind: SOFT (x1.5 by default) or EXPLICIT (x2 by default).

        Returns:
            The new current delay in milliseconds.
        """
        factor = self.config.multiplier_for(kind)
        with self._state_lock:
            self._current_delay_ms = min(
                self._current_delay_ms * factor,
                float(self.config.max_delay_ms),
            )
            self._throttle_detected = True
            if kind == ThrottleSignalKind.EXPLICIT:
                self.signals_explicit += 1
            else:
                self.signals_soft += 1
            new_delay = int(self._current_delay_ms)

        logger.warning(
            "Throttle signal (%s), global connection delay now %dms",
            kind.value,
            new_delay,
        )
        return new_delay

    def consume_throttle_flag(self) -> bool:
        """Read and clear the throttle-detected flag."""
        with self._state_lock:
            detected = self._throttle_detected
            self._throttle_detected = False
            return detected

    def grants_for(self, scope: str) -> int:
        """Number of clearances granted to a scope."""
        with self._state_lock:
            return self._scope_grants[scope]

    def get_status(self) -> dict[str, int | bool]:
        """Get current controller status for observability."""
        now_ms = self._now_ms()
        with self._state_lock:
            status: dict[str, int | bool] = {
                "current_delay_ms": int(self._current_delay_ms),
                "max_delay_ms": self.config.max_delay_ms,
                "throttle_detected": self._throttle_detected,
                "clearances_granted": self.clearances_granted,
                "signals_soft": self.signals_soft,
                "signals_explicit": self.signals_explicit,
            }
        status["wait_ms"] = self._wait_ms(now_ms)
        return status
