"""
Session package.

This package contains the session data model, the status state machine
and snapshot persistence.
"""

from volumebot.session.models import (
    Session,
    SessionStatus,
    Strategy,
    SwapResult,
    TradeAttempt,
    TradeDirection,
    TradeStatus,
    WalletRef,
)
from volumebot.session.state_machine import VALID_TRANSITIONS, SessionStateMachine, StatusChange
from volumebot.session.snapshot import AtomicSnapshotStore, SessionSnapshot, SnapshotStore, WalletRecord

__all__ = [
    "Session",
    "SessionStatus",
    "Strategy",
    "SwapResult",
    "TradeAttempt",
    "TradeDirection",
    "TradeStatus",
    "WalletRef",
    "VALID_TRANSITIONS",
    "SessionStateMachine",
    "StatusChange",
    "AtomicSnapshotStore",
    "SessionSnapshot",
    "SnapshotStore",
    "WalletRecord",
]
