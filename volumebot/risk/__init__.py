"""
Risk package.

This package contains the failure taxonomy and the per-kind error
classifier / circuit breaker that decides whether trading continues.
"""

from volumebot.risk.errors import (
    EngineError,
    ErrorContext,
    ErrorKind,
    InvalidConfiguration,
    InvalidTransition,
    SessionNotFound,
    TradingError,
    classify_error,
)
from volumebot.risk.circuit_breaker import CircuitBreakerConfig, ErrorClassifier, FailureVerdict

__all__ = [
    "EngineError",
    "ErrorContext",
    "ErrorKind",
    "InvalidConfiguration",
    "InvalidTransition",
    "SessionNotFound",
    "TradingError",
    "classify_error",
    "CircuitBreakerConfig",
    "ErrorClassifier",
    "FailureVerdict",
]
