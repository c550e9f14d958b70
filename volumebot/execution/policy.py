"""
Direction and sizing policy for one wallet in one cycle.

VOLUME_ONLY ignores balances and flips a fair coin. MAKERS_VOLUME buys when
native currency dominates the wallet's estimated value, which keeps both
sides replenished.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import List, Optional, Sequence, TypeVar

from volumebot.config.config import EngineConfig
from volumebot.session.models import Strategy, TradeDirection

T = TypeVar("T")


@dataclass(frozen=True)
class TradePlan:
    direction: TradeDirection
    amount: float
    # Native-currency value of the trade, used for volume metrics
    volume_native: float


def select_wallets(wallets: Sequence[T], cap: int, rng: random.Random) -> List[T]:
    """Uniform sample without replacement; a fresh draw every cycle."""
    return rng.sample(list(wallets), min(cap, len(wallets)))


def choose_direction(
    strategy: Strategy,
    native_balance: float,
    token_balance: float,
    config: EngineConfig,
    rng: random.Random,
) -> TradeDirection:
    if strategy is Strategy.VOLUME_ONLY:
        return TradeDirection.BUY if rng.random() < 0.5 else TradeDirection.SELL

    total_value = native_balance + token_balance * config.token_price_native
    if total_value <= 0:
        return TradeDirection.BUY
    native_ratio = native_balance / total_value
    return TradeDirection.BUY if native_ratio > config.makers_buy_ratio else TradeDirection.SELL


def plan_trade(
    strategy: Strategy,
    native_balance: float,
    token_balance: float,
    config: EngineConfig,
    rng: random.Random,
) -> Optional[TradePlan]:
    """
    Decide direction and size. Returns None when the trade would be below
    the minimum size (skipped, not a failure).
    """
    direction = choose_direction(strategy, native_balance, token_balance, config, rng)
    rz = config.randomization

    if direction is TradeDirection.BUY:
        spendable = native_balance - config.wallets.min_native_per_wallet
        if spendable <= 0:
            return None
        amount = spendable * rng.uniform(rz.buy_pct_min, rz.buy_pct_max) / 100.0
        if amount < config.wallets.min_trade_native:
            return None
        return TradePlan(direction, amount, amount)

    if token_balance <= 0:
        return None
    amount = token_balance * rng.uniform(rz.sell_pct_min, rz.sell_pct_max) / 100.0
    volume_native = amount * config.token_price_native
    if amount <= config.wallets.min_trade_token or volume_native < config.wallets.min_trade_native:
        return None
    return TradePlan(direction, amount, volume_native)


def slippage_bps(slippage_pct: float) -> int:
    return int(round(slippage_pct * 100))


def relaxed_slippage(current_pct: float, config: EngineConfig) -> float:
    """Next slippage bound after a SLIPPAGE_EXCEEDED failure."""
    risk = config.risk
    if not risk.dynamic_slippage:
        return current_pct
    return min(current_pct + risk.slippage_step_pct, risk.max_relaxed_slippage_pct)
