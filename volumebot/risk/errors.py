"""
Error taxonomy for trading sessions.

Configuration errors are rejected at creation and never retried. Collaborator
failures are mapped onto an ``ErrorKind`` so the circuit breaker can decide
whether a session keeps trading.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorKind(Enum):
    RPC_ERROR = "RPC_ERROR"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    POOL_NOT_FOUND = "POOL_NOT_FOUND"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    SLIPPAGE_EXCEEDED = "SLIPPAGE_EXCEEDED"


UNRECOVERABLE_KINDS = frozenset({ErrorKind.INSUFFICIENT_BALANCE})


@dataclass
class ErrorContext:
    wallet_address: Optional[str] = None
    token: Optional[str] = None
    tx_id: Optional[str] = None
    amount: Optional[float] = None
    retry_count: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


class TradingError(Exception):
    """A collaborator failure that already knows its kind."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        context: Optional[ErrorContext] = None,
        recoverable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.context = context or ErrorContext()
        self.recoverable = kind not in UNRECOVERABLE_KINDS if recoverable is None else recoverable


class EngineError(Exception):
    """Base class for errors raised by engine operations."""


class InvalidConfiguration(EngineError, ValueError):
    pass


class SessionNotFound(EngineError, KeyError):
    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"session {self.session_id} not found"


class InvalidTransition(EngineError):
    def __init__(self, session_id: str, from_status: Any, to_status: Any) -> None:
        super().__init__(f"session {session_id}: {from_status} -> {to_status} not allowed")
        self.session_id = session_id
        self.from_status = from_status
        self.to_status = to_status


# Checked in order; first match wins.
_MESSAGE_HINTS = (
    (ErrorKind.RATE_LIMIT, ("429", "rate limit", "too many requests")),
    (ErrorKind.INSUFFICIENT_BALANCE, ("insufficient",)),
    (ErrorKind.SLIPPAGE_EXCEEDED, ("slippage",)),
    (ErrorKind.POOL_NOT_FOUND, ("pool not found", "no pool", "pool missing")),
    (ErrorKind.RPC_ERROR, ("rpc", "blockhash", "node is behind", "jsonrpc")),
    (ErrorKind.NETWORK_ERROR, ("timed out", "timeout", "connection")),
)


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an arbitrary collaborator exception onto an ErrorKind."""
    if isinstance(exc, TradingError):
        return exc.kind
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
        return ErrorKind.RATE_LIMIT
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return ErrorKind.NETWORK_ERROR

    message = str(exc).lower()
    for kind, hints in _MESSAGE_HINTS:
        if any(h in message for h in hints):
            return kind
    if isinstance(exc, OSError):
        return ErrorKind.NETWORK_ERROR
    return ErrorKind.TRANSACTION_FAILED
