"""
MetricsAggregator: live performance metrics for one trading session.

Cumulative counters, bounded sliding windows (slippage, latency) and a
time-bucketed volume history. Everything is append/increment only.
Mutations never await, so each update is atomic on the event loop.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, TYPE_CHECKING

from volumebot.risk.errors import ErrorKind
from volumebot.session.models import TradeDirection

if TYPE_CHECKING:
    from volumebot.monitoring.metrics_rich import RichMetrics


@dataclass
class MetricsSnapshot:
    session_id: str
    strategy: str
    status: str
    volume_native: float
    volume_usd: float
    buy_volume_native: float
    sell_volume_native: float
    tx_total: int
    tx_success: int
    tx_failed: int
    tx_by_direction: Dict[str, Dict[str, int]]
    success_rate: float
    average_slippage_pct: float
    average_latency_ms: float
    fees_paid: float
    errors_by_kind: Dict[str, int]
    total_wallets: int
    active_wallets: int
    total_native_balance: float
    total_token_balance: float
    average_native_per_wallet: float
    uptime_sec: float
    last_update: float
    cycles: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class _WalletBalance:
    native: float
    token: float


class MetricsAggregator:
    """
    Per-session metrics. Read through ``snapshot()``; written only by the
    scheduler in response to engine events.
    """

    def __init__(
        self,
        session_id: str,
        strategy: str,
        native_price_usd: float = 100.0,
        slippage_window: int = 100,
        latency_window: int = 50,
        bucket_sec: int = 60,
        lookback_sec: int = 24 * 3600,
        active_wallet_min_native: float = 0.001,
        clock: Callable[[], float] = time.time,
        exporter: Optional["RichMetrics"] = None,
    ) -> None:
        self.session_id = session_id
        self.strategy = strategy
        self.native_price_usd = native_price_usd
        self._clock = clock
        self._exporter = exporter
        self._bucket_sec = bucket_sec
        self._max_buckets = max(1, lookback_sec // bucket_sec)
        self._active_min_native = active_wallet_min_native

        self._status = "created"
        self._activated = False
        self._started_at = clock()
        self._ended_at: Optional[float] = None
        self._last_update = self._started_at

        self._volume_native = 0.0
        self._volume_by_dir: Dict[TradeDirection, float] = {d: 0.0 for d in TradeDirection}
        self._tx: Dict[Tuple[TradeDirection, bool], int] = {}
        self._fees_paid = 0.0
        self._errors: Dict[ErrorKind, int] = {}
        self._cycles = 0
        self._skipped = 0

        self._slippage: Deque[float] = deque(maxlen=slippage_window)
        self._latency: Deque[float] = deque(maxlen=latency_window)
        # (bucket_start, native_volume), oldest first
        self._buckets: Deque[List[float]] = deque(maxlen=self._max_buckets)
        self._wallets: Dict[int, _WalletBalance] = {}

    def _touch(self) -> None:
        self._last_update = self._clock()

    # === Writes ===

    def record_trade(
        self,
        direction: TradeDirection,
        volume_native: float,
        success: bool,
        latency_ms: Optional[float] = None,
        slippage_pct: Optional[float] = None,
        fee: float = 0.0,
    ) -> None:
        key = (direction, success)
        self._tx[key] = self._tx.get(key, 0) + 1
        if latency_ms is not None:
            self._latency.append(latency_ms)

        if success:
            self._volume_native += volume_native
            self._volume_by_dir[direction] += volume_native
            self._fees_paid += fee
            if slippage_pct is not None:
                self._slippage.append(slippage_pct)
            self._add_to_bucket(volume_native)

        if self._exporter is not None:
            outcome = "success" if success else "failed"
            self._exporter.trades.labels(session=self.session_id, direction=direction.value, outcome=outcome).inc()
            if latency_ms is not None:
                self._exporter.trade_latency_ms.labels(session=self.session_id).observe(latency_ms)
            if success:
                self._exporter.volume_native.labels(session=self.session_id, direction=direction.value).inc(volume_native)
                if fee:
                    self._exporter.fees_charged.labels(session=self.session_id).inc(fee)
                if slippage_pct is not None:
                    self._exporter.slippage_pct.labels(session=self.session_id).observe(slippage_pct)
        self._touch()

    def _add_to_bucket(self, volume_native: float) -> None:
        now = self._clock()
        start = now - (now % self._bucket_sec)
        if self._buckets and self._buckets[-1][0] >= start:
            # Same bucket (or clock skew): only the newest bucket is ever added to.
            self._buckets[-1][1] += volume_native
        else:
            self._buckets.append([start, volume_native])

    def record_error(self, kind: ErrorKind) -> None:
        self._errors[kind] = self._errors.get(kind, 0) + 1
        if self._exporter is not None:
            self._exporter.errors.labels(session=self.session_id, kind=kind.value).inc()
        self._touch()

    def record_skip(self) -> None:
        self._skipped += 1
        self._touch()

    def record_cycle(self) -> None:
        self._cycles += 1
        if self._exporter is not None:
            self._exporter.cycles.labels(session=self.session_id).inc()
        self._touch()

    def update_wallet_balance(self, wallet_number: int, native: float, token: float) -> None:
        self._wallets[wallet_number] = _WalletBalance(native, token)
        self._touch()

    def set_status(self, status: str) -> None:
        self._status = status
        if status == "active" and not self._activated:
            self._activated = True
            self._started_at = self._clock()
        if status in ("stopped", "error"):
            self._ended_at = self._clock()
        self._touch()

    # === Reads ===

    @staticmethod
    def _avg(values: Deque[float]) -> float:
        return sum(values) / len(values) if values else 0.0

    def volume_history(self, minutes: int = 60) -> List[Dict[str, float]]:
        cutoff = self._clock() - minutes * 60
        return [
            {"timestamp": start, "volume_native": vol, "volume_usd": vol * self.native_price_usd}
            for start, vol in self._buckets
            if start + self._bucket_sec > cutoff
        ]

    def hourly_volume(self) -> float:
        return sum(b["volume_native"] for b in self.volume_history(60))

    def daily_volume(self) -> float:
        return sum(b["volume_native"] for b in self.volume_history(24 * 60))

    def snapshot(self) -> MetricsSnapshot:
        success = sum(n for (_, ok), n in self._tx.items() if ok)
        failed = sum(n for (_, ok), n in self._tx.items() if not ok)
        total = success + failed
        by_dir = {
            d.value: {"success": self._tx.get((d, True), 0), "failed": self._tx.get((d, False), 0)}
            for d in TradeDirection
        }
        total_native = sum(w.native for w in self._wallets.values())
        end = self._ended_at if self._ended_at is not None else self._clock()
        return MetricsSnapshot(
            session_id=self.session_id,
            strategy=self.strategy,
            status=self._status,
            volume_native=self._volume_native,
            volume_usd=self._volume_native * self.native_price_usd,
            buy_volume_native=self._volume_by_dir[TradeDirection.BUY],
            sell_volume_native=self._volume_by_dir[TradeDirection.SELL],
            tx_total=total,
            tx_success=success,
            tx_failed=failed,
            tx_by_direction=by_dir,
            success_rate=(success / total * 100.0) if total else 0.0,
            average_slippage_pct=self._avg(self._slippage),
            average_latency_ms=self._avg(self._latency),
            fees_paid=self._fees_paid,
            errors_by_kind={k.value: n for k, n in self._errors.items()},
            total_wallets=len(self._wallets),
            active_wallets=sum(1 for w in self._wallets.values() if w.native > self._active_min_native or w.token > 0),
            total_native_balance=total_native,
            total_token_balance=sum(w.token for w in self._wallets.values()),
            average_native_per_wallet=total_native / len(self._wallets) if self._wallets else 0.0,
            uptime_sec=max(0.0, end - self._started_at),
            last_update=self._last_update,
            cycles=self._cycles,
            skipped=self._skipped,
        )

    def export_for_dashboard(self) -> Dict[str, Any]:
        data = self.snapshot().to_dict()
        data["volume_history"] = self.volume_history(60)
        data["hourly_volume"] = self.hourly_volume()
        data["daily_volume"] = self.daily_volume()
        return data
