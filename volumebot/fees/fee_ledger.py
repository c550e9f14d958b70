"""
FeeLedger: per-user usage fees.

Handles:
- Free-trade allowance for new users
- Flat per-trade fee with volume-tier discounts, floored at a minimum
- Accrual of small fees and batched collection through a Transport
- Fee reports for dashboards

Accrued balances are only cleared after a confirmed transfer; a failed
collection keeps the balance for a later attempt.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional, Sequence, Tuple, TYPE_CHECKING

from volumebot.core.utils import KeyedLocks

if TYPE_CHECKING:
    from volumebot.execution.interfaces import Transport
    from volumebot.session.models import WalletRef

log = logging.getLogger("volumebot")


@dataclass(frozen=True)
class DiscountTier:
    min_trades: int
    discount: float


DEFAULT_DISCOUNT_TIERS: Tuple[DiscountTier, ...] = (
    DiscountTier(100, 0.1),
    DiscountTier(500, 0.2),
    DiscountTier(1000, 0.3),
)


@dataclass
class FeeConfig:
    """Fee schedule, in native currency."""
    fee_per_transaction: float = 0.001
    minimum_fee: float = 0.0005
    free_trades: int = 10
    discount_tiers: Tuple[DiscountTier, ...] = DEFAULT_DISCOUNT_TIERS
    # Fees below this are accrued; accrued balances at/above it are collected
    immediate_collection_threshold: float = 0.005
    # Smallest accrued balance worth a transfer on session stop
    min_collection_amount: float = 0.001
    collection_address: Optional[str] = None
    # Collection records kept for reports; totals survive eviction
    history_limit: int = 1000

    def validate(self) -> None:
        if self.fee_per_transaction < 0 or self.minimum_fee < 0:
            raise ValueError("fees must be >= 0")
        if self.free_trades < 0:
            raise ValueError("free_trades must be >= 0")
        if self.immediate_collection_threshold < 0 or self.min_collection_amount < 0:
            raise ValueError("collection thresholds must be >= 0")
        if self.history_limit <= 0:
            raise ValueError("history_limit must be > 0")
        prev = DiscountTier(-1, 0.0)
        for tier in self.discount_tiers:
            if not 0.0 <= tier.discount < 1.0:
                raise ValueError(f"discount {tier.discount} must be in [0, 1)")
            if tier.min_trades <= prev.min_trades or tier.discount < prev.discount:
                raise ValueError("discount tiers must increase in both min_trades and discount")
            prev = tier


@dataclass
class FeeAccount:
    user_id: str
    total_trades: int = 0
    free_trades_used: int = 0
    accrued: float = 0.0
    charged: float = 0.0
    collected: float = 0.0


class FeeCollectionStatus(str, Enum):
    COLLECTED = "collected"
    FAILED = "failed"


@dataclass
class FeeCollection:
    user_id: str
    session_id: str
    amount: float
    status: FeeCollectionStatus
    tx_id: Optional[str] = None
    error: Optional[str] = None
    immediate: bool = False
    id: str = field(default_factory=lambda: f"fee_{uuid.uuid4().hex[:12]}")
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "amount": self.amount,
            "status": self.status.value,
            "tx_id": self.tx_id,
            "error": self.error,
            "immediate": self.immediate,
            "timestamp": self.timestamp,
        }


class FeeLedger:
    """
    Owns every FeeAccount. Writes are serialized per user; different users
    never wait on each other.
    """

    def __init__(
        self,
        config: Optional[FeeConfig] = None,
        transport: Optional["Transport"] = None,
        log_event: Optional[Callable[..., None]] = None,
        on_collection_failed: Optional[Callable[[FeeCollection], None]] = None,
    ) -> None:
        self.config = config or FeeConfig()
        self.config.validate()
        self._transport = transport
        self._log_event = log_event or self._default_log
        self._on_collection_failed = on_collection_failed
        self._accounts: Dict[str, FeeAccount] = {}
        self._collections: Deque[FeeCollection] = deque(maxlen=self.config.history_limit)
        self._collection_counts: Dict[FeeCollectionStatus, int] = {s: 0 for s in FeeCollectionStatus}
        self._locks = KeyedLocks()

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    def _account(self, user_id: str) -> FeeAccount:
        acct = self._accounts.get(user_id)
        if acct is None:
            acct = FeeAccount(user_id)
            self._accounts[user_id] = acct
        return acct

    # === Pricing ===

    def _discount_for(self, total_trades: int) -> float:
        discount = 0.0
        for tier in self.config.discount_tiers:
            if total_trades >= tier.min_trades:
                discount = tier.discount
        return discount

    def calculate_fee(self, user_id: str) -> float:
        acct = self._accounts.get(user_id) or FeeAccount(user_id)
        if acct.free_trades_used < self.config.free_trades:
            return 0.0
        fee = self.config.fee_per_transaction * (1.0 - self._discount_for(acct.total_trades))
        return max(fee, self.config.minimum_fee)

    def record_trade(self, user_id: str, was_free: bool) -> None:
        """Call exactly once per completed attempt."""
        acct = self._account(user_id)
        if was_free:
            acct.free_trades_used += 1
        else:
            acct.total_trades += 1

    # === Charging and collection ===

    async def charge(self, user_id: str, session_id: str, payer: "WalletRef") -> float:
        """
        Price one successful trade, record it, then collect or accrue the fee.

        Returns:
            The fee charged for this trade (0.0 for free trades)
        """
        async with self._locks.get(user_id):
            fee = self.calculate_fee(user_id)
            self.record_trade(user_id, was_free=fee == 0.0)
            if fee == 0.0:
                return 0.0

            acct = self._account(user_id)
            acct.charged += fee

            if fee >= self.config.immediate_collection_threshold:
                if await self._transfer(acct, session_id, payer, fee, immediate=True):
                    return fee
                acct.accrued += fee
                return fee

            acct.accrued += fee
            self._log_event("fee_accrued", user=user_id, session=session_id, fee=fee, accrued=acct.accrued)
            if acct.accrued >= self.config.immediate_collection_threshold:
                await self._collect_locked(acct, session_id, payer, self.config.immediate_collection_threshold)
            return fee

    async def collect_accrued(self, user_id: str, session_id: str, payer: "WalletRef") -> bool:
        """
        Collect whatever the user has accrued, if it is worth a transfer.

        Returns:
            True if nothing was owed or the transfer succeeded
        """
        async with self._locks.get(user_id):
            acct = self._accounts.get(user_id)
            if acct is None:
                return True
            return await self._collect_locked(acct, session_id, payer, self.config.min_collection_amount)

    async def _collect_locked(self, acct: FeeAccount, session_id: str, payer: "WalletRef", minimum: float) -> bool:
        amount = acct.accrued
        if amount <= 0.0 or amount < minimum:
            return True
        if not await self._transfer(acct, session_id, payer, amount, immediate=False):
            return False
        acct.accrued = max(0.0, acct.accrued - amount)
        return True

    async def _transfer(self, acct: FeeAccount, session_id: str, payer: "WalletRef",
                        amount: float, immediate: bool) -> bool:
        if self._transport is None or not self.config.collection_address:
            self._log_event("fee_collection_skipped", user=acct.user_id, session=session_id,
                            amount=amount, reason="no transport or collection address")
            return False
        try:
            tx_id = await self._transport.transfer(payer, self.config.collection_address, amount)
        except Exception as exc:
            record = FeeCollection(acct.user_id, session_id, amount, FeeCollectionStatus.FAILED,
                                   error=str(exc), immediate=immediate)
            self._record(record)
            self._log_event("fee_collection_failed", user=acct.user_id, session=session_id,
                            amount=amount, err=str(exc))
            if self._on_collection_failed:
                self._on_collection_failed(record)
            return False

        self._record(FeeCollection(acct.user_id, session_id, amount, FeeCollectionStatus.COLLECTED,
                                   tx_id=tx_id, immediate=immediate))
        acct.collected += amount
        self._log_event("fee_collected", user=acct.user_id, session=session_id, amount=amount, tx=tx_id)
        return True

    def _record(self, record: FeeCollection) -> None:
        self._collections.append(record)
        self._collection_counts[record.status] += 1

    # === Reads ===

    def pending(self, user_id: str) -> float:
        acct = self._accounts.get(user_id)
        return acct.accrued if acct else 0.0

    def get_user_stats(self, user_id: str) -> Dict[str, Any]:
        acct = self._accounts.get(user_id) or FeeAccount(user_id)
        next_discount: Optional[str] = None
        for tier in self.config.discount_tiers:
            if acct.total_trades < tier.min_trades:
                next_discount = (
                    f"{tier.min_trades - acct.total_trades} trades until {tier.discount:.0%} discount"
                )
                break
        return {
            "user_id": user_id,
            "total_trades": acct.total_trades,
            "free_trades_used": acct.free_trades_used,
            "free_trades_remaining": max(0, self.config.free_trades - acct.free_trades_used),
            "current_fee": self.calculate_fee(user_id),
            "next_discount": next_discount,
            "pending_fees": acct.accrued,
            "fees_charged": acct.charged,
            "fees_collected": acct.collected,
        }

    def collection_history(self, user_id: Optional[str] = None) -> Sequence[FeeCollection]:
        if user_id is None:
            return list(self._collections)
        return [c for c in self._collections if c.user_id == user_id]

    def generate_fee_report(self) -> Dict[str, Any]:
        total_collected = sum(a.collected for a in self._accounts.values())
        collected = self._collection_counts[FeeCollectionStatus.COLLECTED]
        return {
            "total_fees_collected": total_collected,
            "pending_fees": sum(a.accrued for a in self._accounts.values()),
            "total_fees_charged": sum(a.charged for a in self._accounts.values()),
            "collection_count": collected,
            "failed_collection_count": self._collection_counts[FeeCollectionStatus.FAILED],
            "average_fee_per_collection": total_collected / collected if collected else 0.0,
            "paid_trades": sum(a.total_trades for a in self._accounts.values()),
            "free_trades": sum(a.free_trades_used for a in self._accounts.values()),
            "users": len(self._accounts),
            # Newest last, at most history_limit entries
            "collections": [c.to_dict() for c in self._collections],
        }
