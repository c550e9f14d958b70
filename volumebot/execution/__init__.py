"""
Execution layer: collaborator contracts, trade policy and local implementations.

- interfaces: WalletProvider / SwapExecutor / BalanceOracle / Transport protocols
- policy: wallet sampling, direction and sizing
- wallets: eth_account-backed LocalWalletProvider
- paper: in-memory PaperBook for dry runs
"""

from volumebot.execution.interfaces import (
    BalanceOracle,
    SwapExecutor,
    Transport,
    WalletHandle,
    WalletProvider,
)
from volumebot.execution.policy import TradePlan, choose_direction, plan_trade, select_wallets
from volumebot.execution.wallets import LocalWalletProvider, generate_wallets
from volumebot.execution.paper import PaperBook

__all__ = [
    "BalanceOracle",
    "SwapExecutor",
    "Transport",
    "WalletHandle",
    "WalletProvider",
    "TradePlan",
    "choose_direction",
    "plan_trade",
    "select_wallets",
    "LocalWalletProvider",
    "generate_wallets",
    "PaperBook",
]
