"""
Prometheus metrics for production observability.

Organized into: trades, volume/fees, errors, lifecycle.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, generate_latest
from typing import Optional


class RichMetrics:
    """Prometheus collectors shared by every session's MetricsAggregator."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Trade Metrics ===
        self.trades = Counter(
            'trades_total',
            'Trade attempts that reached a terminal status',
            labelnames=['session', 'direction', 'outcome'],
            registry=reg
        )
        self.trade_latency_ms = Histogram(
            'trade_latency_ms',
            'Swap submission latency (milliseconds)',
            labelnames=['session'],
            buckets=[100, 250, 500, 1000, 2000, 5000, 10000, 30000],
            registry=reg
        )
        self.slippage_pct = Histogram(
            'trade_slippage_pct',
            'Realized slippage per successful trade (%)',
            labelnames=['session'],
            buckets=[0.1, 0.5, 1, 2, 5, 10, 20],
            registry=reg
        )

        # === Volume / Fees ===
        self.volume_native = Counter(
            'volume_native_total',
            'Traded volume in native currency',
            labelnames=['session', 'direction'],
            registry=reg
        )
        self.fees_charged = Counter(
            'fees_charged_total',
            'Usage fees charged (native currency)',
            labelnames=['session'],
            registry=reg
        )

        # === Errors ===
        self.errors = Counter(
            'trade_errors_total',
            'Classified collaborator failures',
            labelnames=['session', 'kind'],
            registry=reg
        )
        self.breaker_trips = Counter(
            'circuit_breaker_trips_total',
            'Circuit breaker trips',
            labelnames=['kind'],
            registry=reg
        )

        # === Lifecycle ===
        self.cycles = Counter(
            'cycles_total',
            'Trading cycles completed',
            labelnames=['session'],
            registry=reg
        )
        self.sessions_active = Gauge(
            'sessions_active',
            'Sessions currently in the active state',
            registry=reg
        )
        self.session_transitions = Counter(
            'session_transitions_total',
            'Session status transitions',
            labelnames=['to_status'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self) -> CollectorRegistry:
        """Return the Prometheus registry for export."""
        return self.registry

    def render(self) -> bytes:
        return generate_latest(self.registry)
