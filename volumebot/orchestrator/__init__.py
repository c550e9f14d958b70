"""
Orchestrator package.

TradingScheduler runs one periodic driver per active session;
TradingEngine is the operation surface over sessions, fees and metrics.
"""

from volumebot.orchestrator.scheduler import CycleResult, SessionRuntime, TradingScheduler
from volumebot.orchestrator.engine import TradingEngine

__all__ = [
    "CycleResult",
    "SessionRuntime",
    "TradingScheduler",
    "TradingEngine",
]
