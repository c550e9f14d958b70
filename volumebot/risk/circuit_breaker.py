"""
ErrorClassifier: per-kind failure accounting and circuit breaking.

Handles:
- Classifying collaborator failures into ErrorKind
- Per-kind counters with the timestamp of the latest occurrence
- Kind-specific policy (stop, exponential backoff, fixed cooldown, slippage relax)
- Tripping when a kind recurs too often inside a trailing window

Isolation scope is the caller's choice: share one instance across sessions
for process-wide counters, or create one per session.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from volumebot.risk.errors import ErrorKind, TradingError, classify_error

log = logging.getLogger("volumebot")


@dataclass
class CircuitBreakerConfig:
    """Configuration for failure handling."""
    trip_threshold: int = 10  # Trip when a kind's count exceeds this
    window_sec: float = 300.0  # Trailing window for the latest occurrence
    rpc_backoff_base_sec: float = 1.0
    rpc_backoff_cap_sec: float = 30.0
    rpc_backoff_factor: float = 2.0
    rate_limit_cooldown_sec: float = 60.0

    def validate(self) -> None:
        if self.trip_threshold < 0:
            raise ValueError("trip_threshold must be >= 0")
        if self.window_sec <= 0:
            raise ValueError("window_sec must be > 0")
        if self.rpc_backoff_base_sec < 0 or self.rpc_backoff_cap_sec < self.rpc_backoff_base_sec:
            raise ValueError("rpc backoff must satisfy 0 <= base <= cap")
        if self.rpc_backoff_factor < 1.0:
            raise ValueError("rpc_backoff_factor must be >= 1")
        if self.rate_limit_cooldown_sec < 0:
            raise ValueError("rate_limit_cooldown_sec must be >= 0")


@dataclass(frozen=True)
class FailureVerdict:
    """Outcome of handling one failure."""
    kind: ErrorKind
    stop_trading: bool
    backoff_sec: float = 0.0
    relax_slippage: bool = False
    tripped: bool = False
    count: int = 0
    reason: Optional[str] = None

    @property
    def should_continue(self) -> bool:
        return not self.stop_trading


class ErrorClassifier:
    """
    Tracks failures per ErrorKind and decides continue/stop.

    Counts restart from zero when a kind reappears after a quiet period
    longer than the trailing window, so stale history alone never trips.
    Single-threaded asyncio usage; no internal locks.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
        log_event: Optional[Callable[..., None]] = None,
        on_trip: Optional[Callable[[ErrorKind, int], None]] = None,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._log_event = log_event or self._default_log
        self._on_trip = on_trip

        self._counts: Dict[ErrorKind, int] = {}
        self._last_seen: Dict[ErrorKind, float] = {}
        self._streaks: Dict[ErrorKind, int] = {}
        self._cooldown_until: Dict[ErrorKind, float] = {}
        self._trip_count = 0

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    def handle_failure(self, error: BaseException) -> FailureVerdict:
        """
        Record a failure and return what the caller should do next.

        Args:
            error: The exception raised by a collaborator

        Returns:
            FailureVerdict with stop/backoff/relax decisions
        """
        kind = classify_error(error)
        now = self._clock()

        last = self._last_seen.get(kind)
        if last is not None and now - last >= self.config.window_sec:
            self._counts[kind] = 0
            self._streaks[kind] = 0

        count = self._counts.get(kind, 0) + 1
        self._counts[kind] = count
        self._last_seen[kind] = now

        if self.is_tripped(kind):
            self._trip_count += 1
            self._log_event("circuit_breaker_tripped", kind=kind.value, count=count,
                            window_sec=self.config.window_sec)
            if self._on_trip:
                self._on_trip(kind, count)
            return FailureVerdict(kind, stop_trading=True, tripped=True, count=count,
                                  reason=f"{kind.value} exceeded {self.config.trip_threshold} failures")

        if kind is ErrorKind.INSUFFICIENT_BALANCE:
            return FailureVerdict(kind, stop_trading=True, count=count, reason="insufficient balance")

        if kind is ErrorKind.RPC_ERROR:
            retry = self._streaks.get(kind, 0)
            delay = min(
                self.config.rpc_backoff_base_sec * (self.config.rpc_backoff_factor ** retry),
                self.config.rpc_backoff_cap_sec,
            )
            self._streaks[kind] = retry + 1
            self._cooldown_until[kind] = max(self._cooldown_until.get(kind, 0.0), now + delay)
            self._log_event("backoff_applied", kind=kind.value, retry=retry, delay_sec=delay)
            return FailureVerdict(kind, stop_trading=False, backoff_sec=delay, count=count)

        if kind is ErrorKind.RATE_LIMIT:
            delay = self.config.rate_limit_cooldown_sec
            self._cooldown_until[kind] = max(self._cooldown_until.get(kind, 0.0), now + delay)
            self._log_event("rate_limit_cooldown", kind=kind.value, delay_sec=delay)
            return FailureVerdict(kind, stop_trading=False, backoff_sec=delay, count=count)

        if kind is ErrorKind.SLIPPAGE_EXCEEDED:
            return FailureVerdict(kind, stop_trading=False, relax_slippage=True, count=count)

        recoverable = error.recoverable if isinstance(error, TradingError) else True
        return FailureVerdict(kind, stop_trading=not recoverable, count=count,
                              reason=None if recoverable else "unrecoverable error")

    def record_success(self) -> None:
        """A successful attempt resets the backoff streaks (not the counters)."""
        if any(self._streaks.values()):
            self._streaks.clear()

    def is_tripped(self, kind: ErrorKind) -> bool:
        count = self._counts.get(kind, 0)
        last = self._last_seen.get(kind)
        if last is None or count <= self.config.trip_threshold:
            return False
        return self._clock() - last < self.config.window_sec

    def any_tripped(self) -> bool:
        return any(self.is_tripped(k) for k in self._counts)

    def cooldown_remaining(self) -> float:
        """Longest remaining backoff/cooldown across kinds, in seconds."""
        now = self._clock()
        if not self._cooldown_until:
            return 0.0
        return max(0.0, max(self._cooldown_until.values()) - now)

    def get_error_stats(self) -> Dict[str, int]:
        return {kind.value: count for kind, count in self._counts.items()}

    def reset(self) -> None:
        self._counts.clear()
        self._last_seen.clear()
        self._streaks.clear()
        self._cooldown_until.clear()

    def get_state(self) -> dict:
        return {
            "counts": self.get_error_stats(),
            "last_seen": {k.value: v for k, v in self._last_seen.items()},
            "tripped": [k.value for k in self._counts if self.is_tripped(k)],
            "trip_count": self._trip_count,
            "cooldown_remaining": self.cooldown_remaining(),
        }
