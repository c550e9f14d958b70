"""
Fee package.

Per-user fee pricing (free allowance, volume discounts), accrual and collection.
"""

from volumebot.fees.fee_ledger import (
    DiscountTier,
    FeeAccount,
    FeeCollection,
    FeeCollectionStatus,
    FeeConfig,
    FeeLedger,
)

__all__ = [
    "DiscountTier",
    "FeeAccount",
    "FeeCollection",
    "FeeCollectionStatus",
    "FeeConfig",
    "FeeLedger",
]
