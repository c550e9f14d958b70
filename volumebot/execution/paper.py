"""
Paper trading: an in-memory book that stands in for the swap executor,
balance oracle and transport during dry runs.
"""

from __future__ import annotations

import asyncio
import random
import uuid
from typing import Any, Dict, Optional, Sequence

from volumebot.risk.errors import ErrorContext, ErrorKind, TradingError
from volumebot.session.models import SwapResult, TradeDirection, WalletRef


class PaperBook:
    """
    Fixed-price simulated market.

    Args:
        price_native: Token price in native units
        max_slippage_pct: Upper bound of simulated slippage per fill
        failure_rate: Probability that a submit fails with one of ``failure_kinds``
        latency_sec: Simulated confirmation time per submit
    """

    def __init__(
        self,
        price_native: float = 0.1,
        max_slippage_pct: float = 2.0,
        failure_rate: float = 0.0,
        failure_kinds: Sequence[ErrorKind] = (ErrorKind.RPC_ERROR, ErrorKind.TRANSACTION_FAILED),
        latency_sec: float = 0.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.price_native = price_native
        self.max_slippage_pct = max_slippage_pct
        self.failure_rate = failure_rate
        self.failure_kinds = tuple(failure_kinds)
        self.latency_sec = latency_sec
        self._rng = rng or random.Random()
        self._native: Dict[str, float] = {}
        self._token: Dict[str, Dict[str, float]] = {}
        self.submitted = 0
        self.transfers: list[tuple[str, str, float]] = []

    def fund(self, address: str, native: float = 0.0, token: Optional[str] = None, token_amount: float = 0.0) -> None:
        self._native[address] = self._native.get(address, 0.0) + native
        if token is not None:
            book = self._token.setdefault(address, {})
            book[token] = book.get(token, 0.0) + token_amount

    # === BalanceOracle ===

    async def get_native(self, address: str) -> float:
        return self._native.get(address, 0.0)

    async def get_token(self, address: str, token: str) -> float:
        return self._token.get(address, {}).get(token, 0.0)

    # === SwapExecutor ===

    async def submit(
        self,
        token: str,
        amount: float,
        direction: TradeDirection,
        routing_data: Any,
        slippage_bps: int,
        wallet: WalletRef,
    ) -> SwapResult:
        if self.latency_sec > 0:
            await asyncio.sleep(self.latency_sec)
        self.submitted += 1
        ctx = ErrorContext(wallet_address=wallet.address, token=token, amount=amount)

        if self.failure_kinds and self._rng.random() < self.failure_rate:
            kind = self._rng.choice(self.failure_kinds)
            raise TradingError(kind, f"simulated {kind.value.lower()}", ctx)

        slippage = self._rng.uniform(0.0, self.max_slippage_pct)
        if slippage * 100 > slippage_bps:
            raise TradingError(ErrorKind.SLIPPAGE_EXCEEDED,
                               f"slippage {slippage:.2f}% above bound {slippage_bps}bps", ctx)

        price = self.price_native * (1 + slippage / 100) if direction is TradeDirection.BUY \
            else self.price_native * (1 - slippage / 100)
        address = wallet.address
        holdings = self._token.setdefault(address, {})

        if direction is TradeDirection.BUY:
            if self._native.get(address, 0.0) < amount:
                raise TradingError(ErrorKind.INSUFFICIENT_BALANCE, "insufficient native balance", ctx)
            received = amount / price
            self._native[address] -= amount
            holdings[token] = holdings.get(token, 0.0) + received
        else:
            if holdings.get(token, 0.0) < amount:
                raise TradingError(ErrorKind.INSUFFICIENT_BALANCE, "insufficient token balance", ctx)
            received = amount
            holdings[token] -= amount
            self._native[address] = self._native.get(address, 0.0) + amount * price

        return SwapResult(tx_id=f"paper_{uuid.uuid4().hex}", token_amount=received,
                          price=price, slippage_pct=slippage)

    # === Transport ===

    async def transfer(self, from_wallet: WalletRef, to_address: str, amount: float) -> str:
        if self._native.get(from_wallet.address, 0.0) < amount:
            raise TradingError(ErrorKind.INSUFFICIENT_BALANCE, "insufficient native balance for transfer",
                               ErrorContext(wallet_address=from_wallet.address, amount=amount))
        self._native[from_wallet.address] -= amount
        self._native[to_address] = self._native.get(to_address, 0.0) + amount
        self.transfers.append((from_wallet.address, to_address, amount))
        return f"paper_{uuid.uuid4().hex}"
