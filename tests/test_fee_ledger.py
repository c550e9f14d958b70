"""
Unit tests for FeeLedger pricing, accrual and collection.
"""

import asyncio

import pytest

from conftest import FakeTransport, make_wallets
from volumebot.fees.fee_ledger import DiscountTier, FeeCollectionStatus, FeeConfig, FeeLedger

ADMIN, _ = make_wallets(1)


def _ledger(transport=None, **cfg) -> FeeLedger:
    cfg.setdefault("collection_address", "0xfees")
    return FeeLedger(FeeConfig(**cfg), transport=transport)


class TestPricing:
    def test_free_allowance_then_positive_fee(self):
        ledger = _ledger(free_trades=10)
        fees = []
        for _ in range(10):
            fees.append(ledger.calculate_fee("u1"))
            ledger.record_trade("u1", was_free=True)

        assert fees == [0.0] * 10
        assert ledger.calculate_fee("u1") > 0

    def test_tenth_call_zero_eleventh_positive(self):
        ledger = _ledger(free_trades=10)
        results = []
        for _ in range(11):
            results.append(ledger.calculate_fee("u1"))
            if len(results) <= 10:
                ledger.record_trade("u1", was_free=True)
        assert results[9] == 0.0
        assert results[10] > 0.0

    def test_discount_tiers_reduce_fee(self):
        tiers = (DiscountTier(2, 0.1), DiscountTier(4, 0.5))
        ledger = _ledger(free_trades=0, fee_per_transaction=0.01, minimum_fee=0.0, discount_tiers=tiers)
        seen = []
        for _ in range(6):
            seen.append(ledger.calculate_fee("u1"))
            ledger.record_trade("u1", was_free=False)

        assert seen[0] == pytest.approx(0.01)
        assert seen[2] == pytest.approx(0.009)
        assert seen[4] == pytest.approx(0.005)
        assert all(a >= b for a, b in zip(seen, seen[1:]))

    def test_minimum_fee_floor(self):
        tiers = (DiscountTier(1, 0.9),)
        ledger = _ledger(free_trades=0, fee_per_transaction=0.001, minimum_fee=0.0005, discount_tiers=tiers)
        ledger.record_trade("u1", was_free=False)
        assert ledger.calculate_fee("u1") == pytest.approx(0.0005)

    def test_users_are_independent(self):
        ledger = _ledger(free_trades=1)
        ledger.record_trade("u1", was_free=True)
        assert ledger.calculate_fee("u1") > 0
        assert ledger.calculate_fee("u2") == 0.0

    def test_bad_tiers_rejected(self):
        with pytest.raises(ValueError):
            FeeConfig(discount_tiers=(DiscountTier(100, 0.3), DiscountTier(50, 0.4))).validate()


class TestCharging:
    @pytest.mark.asyncio
    async def test_small_fees_accrue_until_threshold(self):
        transport = FakeTransport()
        ledger = _ledger(transport, free_trades=0, fee_per_transaction=0.002, minimum_fee=0.0,
                         discount_tiers=(), immediate_collection_threshold=0.005)

        await ledger.charge("u1", "s1", ADMIN)
        await ledger.charge("u1", "s1", ADMIN)
        assert ledger.pending("u1") == pytest.approx(0.004)
        assert transport.transfers == []

        await ledger.charge("u1", "s1", ADMIN)
        assert transport.transfers == [(ADMIN.address, "0xfees", pytest.approx(0.006))]
        assert ledger.pending("u1") == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_large_fee_collected_immediately(self):
        transport = FakeTransport()
        ledger = _ledger(transport, free_trades=0, fee_per_transaction=0.01, discount_tiers=(),
                         immediate_collection_threshold=0.005)

        fee = await ledger.charge("u1", "s1", ADMIN)

        assert fee == pytest.approx(0.01)
        assert len(transport.transfers) == 1
        history = ledger.collection_history("u1")
        assert history[0].immediate is True
        assert history[0].status is FeeCollectionStatus.COLLECTED

    @pytest.mark.asyncio
    async def test_failed_collection_keeps_balance(self):
        failures = []
        ledger = FeeLedger(
            FeeConfig(free_trades=0, fee_per_transaction=0.01, discount_tiers=(), collection_address="0xfees"),
            transport=FakeTransport(fail=True),
            on_collection_failed=failures.append,
        )

        await ledger.charge("u1", "s1", ADMIN)

        assert ledger.pending("u1") == pytest.approx(0.01)
        assert len(failures) == 1
        assert failures[0].status is FeeCollectionStatus.FAILED
        assert ledger.generate_fee_report()["failed_collection_count"] == 1

    @pytest.mark.asyncio
    async def test_collect_accrued_on_stop(self):
        transport = FakeTransport()
        ledger = _ledger(transport, free_trades=0, fee_per_transaction=0.002, minimum_fee=0.0,
                         discount_tiers=(), min_collection_amount=0.001)
        await ledger.charge("u1", "s1", ADMIN)

        assert await ledger.collect_accrued("u1", "s1", ADMIN) is True
        assert ledger.pending("u1") == 0.0
        assert ledger.get_user_stats("u1")["fees_collected"] == pytest.approx(0.002)

    @pytest.mark.asyncio
    async def test_collect_below_minimum_is_noop(self):
        transport = FakeTransport()
        ledger = _ledger(transport, free_trades=0, fee_per_transaction=0.0005, minimum_fee=0.0,
                         discount_tiers=(), min_collection_amount=0.001)
        await ledger.charge("u1", "s1", ADMIN)

        assert await ledger.collect_accrued("u1", "s1", ADMIN) is True
        assert transport.transfers == []
        assert ledger.pending("u1") == pytest.approx(0.0005)

    @pytest.mark.asyncio
    async def test_no_collection_address_accrues(self):
        ledger = FeeLedger(FeeConfig(free_trades=0, fee_per_transaction=0.01, discount_tiers=()),
                           transport=FakeTransport())
        await ledger.charge("u1", "s1", ADMIN)
        assert ledger.pending("u1") == pytest.approx(0.01)
        assert ledger.collection_history() == []

    @pytest.mark.asyncio
    async def test_concurrent_charges_count_every_trade(self):
        ledger = _ledger(FakeTransport(), free_trades=5)
        await asyncio.gather(*(ledger.charge("u1", "s1", ADMIN) for _ in range(20)))

        stats = ledger.get_user_stats("u1")
        assert stats["free_trades_used"] == 5
        assert stats["total_trades"] == 15


class TestReports:
    def test_user_stats_next_discount(self):
        ledger = _ledger(free_trades=0)
        for _ in range(40):
            ledger.record_trade("u1", was_free=False)

        stats = ledger.get_user_stats("u1")
        assert stats["total_trades"] == 40
        assert stats["free_trades_remaining"] == 0
        assert stats["next_discount"] == "60 trades until 10% discount"

    @pytest.mark.asyncio
    async def test_fee_report_totals(self):
        transport = FakeTransport()
        ledger = _ledger(transport, free_trades=1, fee_per_transaction=0.01, discount_tiers=())
        await ledger.charge("u1", "s1", ADMIN)
        await ledger.charge("u1", "s1", ADMIN)
        await ledger.charge("u2", "s2", ADMIN)

        report = ledger.generate_fee_report()
        assert report["users"] == 2
        assert report["free_trades"] == 2
        assert report["paid_trades"] == 1
        assert report["collection_count"] == 1
        assert report["total_fees_collected"] == pytest.approx(0.01)
        assert report["average_fee_per_collection"] == pytest.approx(0.01)

    @pytest.mark.asyncio
    async def test_fee_report_lists_bounded_collection_history(self):
        transport = FakeTransport()
        ledger = _ledger(transport, free_trades=0, fee_per_transaction=0.01, discount_tiers=(), history_limit=2)
        for _ in range(3):
            await ledger.charge("u1", "s1", ADMIN)

        report = ledger.generate_fee_report()
        assert len(transport.transfers) == 3
        assert [c["tx_id"] for c in report["collections"]] == ["fee_tx_2", "fee_tx_3"]
        assert report["collections"][0]["status"] == "collected"
        assert report["collection_count"] == 3
        assert report["total_fees_collected"] == pytest.approx(0.03)
        assert len(ledger.collection_history("u1")) == 2
