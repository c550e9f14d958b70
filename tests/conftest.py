"""
Pytest configuration and fixtures.
Adds the repo root to sys.path so tests can import volumebot without install,
and provides in-memory stand-ins for the engine's collaborators.
"""

import asyncio
import itertools
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from volumebot.config.config import EngineConfig  # noqa: E402
from volumebot.risk.errors import ErrorKind, TradingError  # noqa: E402
from volumebot.session.models import SwapResult, TradeDirection, WalletRef  # noqa: E402


class FakeClock:
    """Manually advanced clock; also usable as a ``sleep`` replacement."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        # Yield so other tasks (and cancellations) get a turn
        await asyncio.sleep(0)


class FakeOracle:
    def __init__(self, native: float = 1.0, token: float = 0.0) -> None:
        self.default_native = native
        self.default_token = token
        self.native: Dict[str, float] = {}
        self.token: Dict[str, float] = {}
        self.fail_with: Optional[BaseException] = None
        self.reads = 0

    async def get_native(self, address: str) -> float:
        self.reads += 1
        if self.fail_with is not None:
            raise self.fail_with
        return self.native.get(address, self.default_native)

    async def get_token(self, address: str, token: str) -> float:
        return self.token.get(address, self.default_token)


class FakeExecutor:
    """
    Records submissions. ``script`` is consulted per call: an exception
    instance is raised, a string/SwapResult is returned, None means default.
    """

    def __init__(self, script: Optional[Callable[[int, WalletRef], object]] = None) -> None:
        self.script = script
        self.calls: List[Tuple[str, float, TradeDirection, int, str]] = []
        self._ids = itertools.count(1)
        self.gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def submit(self, token, amount, direction, routing_data, slippage_bps, wallet):
        n = len(self.calls)
        self.calls.append((token, amount, direction, slippage_bps, wallet.address))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            outcome = self.script(n, wallet) if self.script else None
        finally:
            self.in_flight -= 1
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome
        return SwapResult(tx_id=f"tx_{next(self._ids)}", token_amount=amount * 10, price=0.1, slippage_pct=0.5)


class FakeTransport:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.transfers: List[Tuple[str, str, float]] = []

    async def transfer(self, from_wallet: WalletRef, to_address: str, amount: float) -> str:
        if self.fail:
            raise TradingError(ErrorKind.RPC_ERROR, "rpc unavailable")
        self.transfers.append((from_wallet.address, to_address, amount))
        return f"fee_tx_{len(self.transfers)}"


def make_wallets(count: int, prefix: str = "0xw") -> Tuple[WalletRef, List[WalletRef]]:
    admin = WalletRef(number=0, address=f"{prefix}admin", secret_ref="admin-secret", created_at=1.0)
    wallets = [
        WalletRef(number=n, address=f"{prefix}{n}", secret_ref=f"secret-{n}", created_at=float(n))
        for n in range(1, count + 1)
    ]
    return admin, wallets


def fast_config(interval: float = 8.0, duration: float = 16.0, **overrides) -> EngineConfig:
    """Engine config with short VOLUME_ONLY timings."""
    base = {
        "strategies": {
            "volume_only": {"loop_interval_sec": interval, "duration_sec": duration},
            "makers_volume": {"loop_interval_sec": interval, "duration_sec": duration},
        },
    }
    base.update(overrides)
    return EngineConfig().with_overrides(base)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oracle():
    return FakeOracle(native=1.0, token=0.0)


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def wallets():
    return make_wallets(3)
