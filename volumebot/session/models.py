"""
Session, wallet and trade-attempt records.

State Diagram (session):

    created ──> active <──> paused
       │          │  │         │
       │          │  └──> error│
       └──────────┴────────────┴──> stopped

Trade attempts: pending ──> success | failed (both terminal).
"""

from __future__ import annotations

import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple, TYPE_CHECKING

from volumebot.risk.errors import ErrorKind, InvalidConfiguration

if TYPE_CHECKING:
    from volumebot.config.config import EngineConfig


class Strategy(str, Enum):
    VOLUME_ONLY = "VOLUME_ONLY"
    MAKERS_VOLUME = "MAKERS_VOLUME"

    @classmethod
    def parse(cls, value: Any) -> "Strategy":
        if isinstance(value, Strategy):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise InvalidConfiguration(f"unrecognized strategy: {value!r}") from None


class SessionStatus(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.STOPPED, SessionStatus.ERROR)


class TradeDirection(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TradeStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class WalletRef:
    """
    A wallet as the engine sees it. Number 0 is the admin wallet.

    ``sign_handle`` is forwarded to collaborators one call at a time and is
    never serialized; ``secret_ref`` is what a snapshot records so the
    wallet can be re-derived.
    """
    number: int
    address: str
    sign_handle: Any = field(default=None, repr=False, compare=False)
    secret_ref: Optional[str] = field(default=None, repr=False, compare=False)
    created_at: float = field(default_factory=time.time, compare=False)


@dataclass
class SwapResult:
    """What a SwapExecutor may return instead of a bare transaction id."""
    tx_id: str
    token_amount: Optional[float] = None
    price: Optional[float] = None
    slippage_pct: Optional[float] = None


@dataclass
class TradeAttempt:
    session_id: str
    wallet_number: int
    wallet_address: str
    direction: TradeDirection
    requested_amount: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    status: TradeStatus = TradeStatus.PENDING
    timestamp: float = field(default_factory=time.time)
    token_amount: Optional[float] = None
    price: Optional[float] = None
    tx_id: Optional[str] = None
    fee_charged: float = 0.0
    slippage_pct: Optional[float] = None
    latency_ms: Optional[float] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not TradeStatus.PENDING

    def succeed(self, result: SwapResult, latency_ms: float) -> None:
        if self.is_terminal:
            raise ValueError(f"attempt {self.id} already {self.status.value}")
        if not result.tx_id:
            raise ValueError("successful attempt requires a transaction id")
        self.status = TradeStatus.SUCCESS
        self.tx_id = result.tx_id
        self.token_amount = result.token_amount
        self.price = result.price
        self.slippage_pct = result.slippage_pct
        self.latency_ms = latency_ms

    def fail(self, kind: ErrorKind, detail: str, latency_ms: Optional[float] = None) -> None:
        if self.is_terminal:
            raise ValueError(f"attempt {self.id} already {self.status.value}")
        self.status = TradeStatus.FAILED
        self.error_kind = kind
        self.error_detail = detail
        self.latency_ms = latency_ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "wallet_number": self.wallet_number,
            "wallet_address": self.wallet_address,
            "direction": self.direction.value,
            "requested_amount": self.requested_amount,
            "token_amount": self.token_amount,
            "price": self.price,
            "tx_id": self.tx_id,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "fee_charged": self.fee_charged,
            "slippage_pct": self.slippage_pct,
            "latency_ms": self.latency_ms,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_detail": self.error_detail,
        }


@dataclass
class Session:
    id: str
    owner: str
    token: str
    strategy: Strategy
    admin_wallet: WalletRef
    trading_wallets: Tuple[WalletRef, ...]
    routing_data: Any
    config: "EngineConfig"
    status: SessionStatus = SessionStatus.CREATED
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    cycles_completed: int = 0
    active_elapsed_sec: float = 0.0
    slippage_pct: float = 0.0
    stop_reason: Optional[str] = None
    token_name: Optional[str] = None
    token_symbol: Optional[str] = None
    recent_trades: Deque[TradeAttempt] = field(default_factory=deque, repr=False)

    def __post_init__(self) -> None:
        if self.recent_trades.maxlen is None:
            self.recent_trades = deque(self.recent_trades, maxlen=self.config.recent_trades_limit)

    def remember(self, attempt: TradeAttempt) -> None:
        """Oldest entries fall off once the buffer is full."""
        self.recent_trades.append(attempt)

    def recent(self, limit: Optional[int] = None) -> List[TradeAttempt]:
        """Most recent first."""
        items = list(reversed(self.recent_trades))
        return items if limit is None else items[: max(0, limit)]

    def to_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "token": self.token,
            "token_name": self.token_name,
            "token_symbol": self.token_symbol,
            "strategy": self.strategy.value,
            "status": self.status.value,
            "admin_wallet": self.admin_wallet.address,
            "trading_wallets": [{"number": w.number, "address": w.address} for w in self.trading_wallets],
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "cycles_completed": self.cycles_completed,
            "active_elapsed_sec": self.active_elapsed_sec,
            "slippage_pct": self.slippage_pct,
            "stop_reason": self.stop_reason,
        }
