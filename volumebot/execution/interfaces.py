"""
Collaborator contracts consumed by the engine.

The engine never builds transactions or signs anything itself; it forwards
a wallet's ``sign_handle`` to these collaborators for a single call.
Timeouts are the collaborator's responsibility.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union, runtime_checkable

from volumebot.session.models import SwapResult, TradeDirection, WalletRef


@dataclass(frozen=True)
class WalletHandle:
    address: str
    sign_handle: Any = field(repr=False)
    secret_ref: Optional[str] = field(default=None, repr=False)


@runtime_checkable
class WalletProvider(Protocol):
    def create(self) -> WalletHandle: ...

    def import_wallet(self, secret: str) -> WalletHandle: ...


@runtime_checkable
class SwapExecutor(Protocol):
    async def submit(
        self,
        token: str,
        amount: float,
        direction: TradeDirection,
        routing_data: Any,
        slippage_bps: int,
        wallet: WalletRef,
    ) -> Union[str, SwapResult]:
        """Build and submit one swap; raise on failure (ideally a TradingError)."""
        ...


@runtime_checkable
class BalanceOracle(Protocol):
    async def get_native(self, address: str) -> float: ...

    async def get_token(self, address: str, token: str) -> float: ...


@runtime_checkable
class Transport(Protocol):
    async def transfer(self, from_wallet: WalletRef, to_address: str, amount: float) -> str:
        """Move native currency; returns a transaction id."""
        ...


def as_swap_result(value: Union[str, SwapResult]) -> SwapResult:
    if isinstance(value, SwapResult):
        return value
    return SwapResult(tx_id=str(value) if value else "")
