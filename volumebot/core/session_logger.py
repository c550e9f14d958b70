"""
SessionLogger: structured, level-aware logging bound to one trading session.

Usage:
    slog = SessionLogger(session_id="session_1_alice")
    slog.log("trade_success", direction="buy", amount=0.01, tx="5x..")
    slog.log("circuit_breaker_tripped", kind="RPC_ERROR", count=11)
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

log = logging.getLogger("volumebot")


@dataclass
class SessionLoggerConfig:
    """Configuration for SessionLogger."""
    # Throttle window for repetitive warnings
    throttle_window_sec: float = 60.0
    debug_enabled: bool = False


class SessionLogger:
    """
    Maps event names to log levels.

    - CRITICAL: trading halted by an unrecoverable condition
    - ERROR: session faults, fee collection failures
    - WARNING: recoverable trade failures, backoff
    - INFO: lifecycle (created, started, stopped), successful trades
    - DEBUG: per-tick chatter
    """

    CRITICAL_EVENTS: Set[str] = {
        "circuit_breaker_tripped", "insufficient_balance_stop", "session_error",
    }

    ERROR_EVENTS: Set[str] = {
        "fee_collection_failed", "driver_crashed", "snapshot_import_error",
    }

    WARNING_EVENTS: Set[str] = {
        "trade_failed", "balance_read_failed", "backoff_applied",
        "rate_limit_cooldown", "slippage_relaxed",
    }

    DEBUG_EVENTS: Set[str] = {
        "cycle_start", "cycle_end", "trade_skipped", "tick",
    }

    THROTTLE_EVENTS: Set[str] = {
        "backoff_applied", "rate_limit_cooldown",
    }

    def __init__(self, session_id: str, config: Optional[SessionLoggerConfig] = None) -> None:
        self.session_id = session_id
        self.config = config or SessionLoggerConfig()
        self._throttle_times: Dict[str, float] = {}

    def level_for(self, event: str) -> int:
        if event in self.CRITICAL_EVENTS:
            return logging.CRITICAL
        if event in self.ERROR_EVENTS:
            return logging.ERROR
        if event in self.WARNING_EVENTS:
            return logging.WARNING
        if event in self.DEBUG_EVENTS:
            return logging.DEBUG
        return logging.INFO

    def log(self, event: str, **data: Any) -> None:
        level = self.level_for(event)

        if event in self.THROTTLE_EVENTS:
            now = time.time()
            if now - self._throttle_times.get(event, 0.0) < self.config.throttle_window_sec:
                return
            self._throttle_times[event] = now

        if level == logging.DEBUG and not self.config.debug_enabled:
            return

        payload = {"event": event, "session": self.session_id, **data}
        log.log(level, json.dumps(payload, default=str))

    def get_callback(self) -> Callable[..., None]:
        """Callable for components that take a ``log_event`` hook."""
        return self.log
