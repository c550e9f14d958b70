"""
Local key management backed by eth_account.
"""

from __future__ import annotations

import time
from typing import List, Optional

from eth_account import Account

from volumebot.execution.interfaces import WalletHandle, WalletProvider
from volumebot.session.models import WalletRef


class LocalWalletProvider:
    """
    Generates or imports keys in-process. The signing handle is the
    eth_account ``LocalAccount``; ``secret_ref`` is its hex private key.
    """

    def __init__(self, extra_entropy: str = "") -> None:
        self._entropy = extra_entropy

    def create(self) -> WalletHandle:
        acct = Account.create(self._entropy)
        return WalletHandle(address=acct.address, sign_handle=acct, secret_ref=acct.key.hex())

    def import_wallet(self, secret: str) -> WalletHandle:
        acct = Account.from_key(secret)
        return WalletHandle(address=acct.address, sign_handle=acct, secret_ref=secret)


def to_wallet_ref(handle: WalletHandle, number: int, created_at: Optional[float] = None) -> WalletRef:
    return WalletRef(
        number=number,
        address=handle.address,
        sign_handle=handle.sign_handle,
        secret_ref=handle.secret_ref,
        created_at=created_at if created_at is not None else time.time(),
    )


def generate_wallets(provider: WalletProvider, count: int) -> tuple[WalletRef, List[WalletRef]]:
    """Admin wallet (number 0) plus ``count`` trading wallets numbered 1..count."""
    admin = to_wallet_ref(provider.create(), 0)
    trading = [to_wallet_ref(provider.create(), n) for n in range(1, count + 1)]
    return admin, trading
