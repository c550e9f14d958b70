"""
Unit tests for wallet selection, direction and sizing policy.
"""

import random

import pytest

from volumebot.config.config import EngineConfig
from volumebot.execution.policy import (
    choose_direction,
    plan_trade,
    relaxed_slippage,
    select_wallets,
    slippage_bps,
)
from volumebot.session.models import Strategy, TradeDirection


@pytest.fixture
def cfg():
    return EngineConfig()


class TestSelectWallets:
    def test_sample_is_bounded_and_unique(self):
        rng = random.Random(7)
        picked = select_wallets(list(range(1, 11)), 5, rng)
        assert len(picked) == 5
        assert len(set(picked)) == 5

    def test_cap_larger_than_pool(self):
        assert sorted(select_wallets([1, 2], 5, random.Random(1))) == [1, 2]

    def test_reshuffled_each_cycle(self):
        rng = random.Random(3)
        draws = {tuple(select_wallets(list(range(20)), 3, rng)) for _ in range(10)}
        assert len(draws) > 1


class TestDirection:
    def test_volume_only_uses_both_sides(self, cfg):
        rng = random.Random(11)
        seen = {choose_direction(Strategy.VOLUME_ONLY, 0.0, 0.0, cfg, rng) for _ in range(50)}
        assert seen == {TradeDirection.BUY, TradeDirection.SELL}

    def test_makers_buys_when_native_dominates(self, cfg):
        rng = random.Random(0)
        assert choose_direction(Strategy.MAKERS_VOLUME, 1.0, 1.0, cfg, rng) is TradeDirection.BUY

    def test_makers_sells_when_token_dominates(self, cfg):
        rng = random.Random(0)
        assert choose_direction(Strategy.MAKERS_VOLUME, 0.1, 100.0, cfg, rng) is TradeDirection.SELL

    def test_makers_empty_wallet_buys(self, cfg):
        assert choose_direction(Strategy.MAKERS_VOLUME, 0.0, 0.0, cfg, random.Random(0)) is TradeDirection.BUY


class TestPlanTrade:
    def test_buy_size_within_bounds(self, cfg):
        rng = random.Random(5)
        for _ in range(20):
            plan = plan_trade(Strategy.MAKERS_VOLUME, 1.001, 0.0, cfg, rng)
            assert plan is not None and plan.direction is TradeDirection.BUY
            assert 0.05 - 1e-9 <= plan.amount <= 0.15 + 1e-9
            assert plan.volume_native == plan.amount

    def test_sell_size_within_bounds(self, cfg):
        rng = random.Random(5)
        plan = plan_trade(Strategy.MAKERS_VOLUME, 0.0, 100.0, cfg, rng)
        assert plan.direction is TradeDirection.SELL
        assert 50.0 <= plan.amount <= 100.0
        assert plan.volume_native == pytest.approx(plan.amount * cfg.token_price_native)

    def test_dust_buy_is_skipped(self, cfg):
        assert plan_trade(Strategy.MAKERS_VOLUME, 0.0015, 0.0, cfg, random.Random(1)) is None

    def test_dust_sell_is_skipped(self, cfg):
        # Token-only wallet, so MAKERS_VOLUME sells; the sell is worth less than the minimum
        assert plan_trade(Strategy.MAKERS_VOLUME, 0.0, 0.001, cfg, random.Random(1)) is None


class TestSlippage:
    def test_bps_conversion(self):
        assert slippage_bps(10.0) == 1000
        assert slippage_bps(0.5) == 50

    def test_relaxation_steps_and_caps(self, cfg):
        assert relaxed_slippage(10.0, cfg) == 12.0
        assert relaxed_slippage(14.0, cfg) == 15.0
        assert relaxed_slippage(15.0, cfg) == 15.0

    def test_relaxation_disabled(self):
        cfg = EngineConfig().with_overrides({"risk": {"dynamic_slippage": False}})
        assert relaxed_slippage(10.0, cfg) == 10.0
