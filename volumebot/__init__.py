"""
Multi-wallet volume trading engine.

Sessions, periodic trading drivers, fee ledger, error classification and
metrics. Import the engine from ``volumebot.orchestrator``.
"""

__version__ = "0.1.0"
