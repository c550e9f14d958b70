"""
Session State Machine - explicit session lifecycle.

Owns the session table. Every status change goes through ``_transition``,
which checks it against VALID_TRANSITIONS and then notifies the listener
(the engine), which starts, suspends or releases the scheduler driver.
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from volumebot.config.config import EngineConfig
from volumebot.risk.errors import InvalidConfiguration, InvalidTransition, SessionNotFound
from volumebot.session.models import Session, SessionStatus, Strategy, WalletRef

log = logging.getLogger("volumebot")


VALID_TRANSITIONS: Dict[SessionStatus, List[SessionStatus]] = {
    SessionStatus.CREATED: [
        SessionStatus.ACTIVE,
        SessionStatus.STOPPED,
    ],
    SessionStatus.ACTIVE: [
        SessionStatus.PAUSED,
        SessionStatus.STOPPED,
        SessionStatus.ERROR,
    ],
    SessionStatus.PAUSED: [
        SessionStatus.ACTIVE,
        SessionStatus.STOPPED,
    ],
    # Terminal states
    SessionStatus.STOPPED: [],
    SessionStatus.ERROR: [],
}


@dataclass
class StatusChange:
    session: Session
    from_status: SessionStatus
    to_status: SessionStatus
    reason: Optional[str] = None


class SessionStateMachine:
    """
    Session table plus guarded status transitions.

    Transitions never await, so each one is atomic on the event loop; the
    table needs no lock.
    """

    def __init__(
        self,
        default_config: Optional[EngineConfig] = None,
        on_change: Optional[Callable[[StatusChange], None]] = None,
        clock: Callable[[], float] = time.time,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.default_config = default_config or EngineConfig()
        self._on_change = on_change
        self._clock = clock
        self._log_event = log_event or self._default_log
        self._sessions: Dict[str, Session] = {}
        self._seq = 0

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    def set_listener(self, on_change: Callable[[StatusChange], None]) -> None:
        self._on_change = on_change

    # === Creation ===

    def create(
        self,
        owner: str,
        token: str,
        strategy: Any,
        admin_wallet: WalletRef,
        trading_wallets: Sequence[WalletRef],
        routing_data: Any = None,
        config: Optional[EngineConfig] = None,
        token_name: Optional[str] = None,
        token_symbol: Optional[str] = None,
    ) -> str:
        """
        Register a new session in ``created`` state.

        Raises:
            InvalidConfiguration: empty wallet set, bad numbering, unknown strategy
        """
        parsed = Strategy.parse(strategy)
        if not owner:
            raise InvalidConfiguration("owner is required")
        if not token:
            raise InvalidConfiguration("token is required")
        wallets = self._validate_wallets(admin_wallet, trading_wallets)
        cfg = config or self.default_config
        if len(wallets) > cfg.wallets.max_wallets:
            raise InvalidConfiguration(
                f"{len(wallets)} trading wallets exceeds the limit of {cfg.wallets.max_wallets}"
            )

        self._seq += 1
        session_id = f"session_{int(self._clock() * 1000)}_{self._seq}_{owner}"
        session = Session(
            id=session_id,
            owner=owner,
            token=token,
            strategy=parsed,
            admin_wallet=admin_wallet,
            trading_wallets=wallets,
            routing_data=routing_data,
            config=cfg,
            created_at=self._clock(),
            slippage_pct=cfg.risk.max_slippage_pct,
            token_name=token_name,
            token_symbol=token_symbol,
            recent_trades=deque(maxlen=cfg.recent_trades_limit),
        )
        self._sessions[session_id] = session
        self._log_event("session_created", session=session_id, owner=owner, token=token,
                        strategy=parsed.value, wallets=len(wallets))
        return session_id

    @staticmethod
    def _validate_wallets(admin: WalletRef, wallets: Iterable[WalletRef]) -> tuple:
        ordered = tuple(wallets)
        if not ordered:
            raise InvalidConfiguration("trading wallet set is empty")
        if admin is None or admin.number != 0:
            raise InvalidConfiguration("admin wallet must be numbered 0")
        numbers = [w.number for w in ordered]
        if any(n < 1 for n in numbers) or len(set(numbers)) != len(numbers):
            raise InvalidConfiguration("trading wallets must be uniquely numbered from 1")
        addresses = [w.address for w in ordered]
        if len(set(addresses)) != len(addresses) or admin.address in addresses:
            raise InvalidConfiguration("wallet addresses must be unique within a session")
        return ordered

    # === Transitions ===

    def _transition(self, session: Session, to_status: SessionStatus, reason: Optional[str] = None) -> None:
        from_status = session.status
        if to_status not in VALID_TRANSITIONS[from_status]:
            raise InvalidTransition(session.id, from_status.value, to_status.value)
        session.status = to_status
        now = self._clock()
        if to_status is SessionStatus.ACTIVE and session.started_at is None:
            session.started_at = now
        if to_status.is_terminal:
            session.ended_at = now
            session.stop_reason = reason
        self._log_event("session_status", session=session.id, from_status=from_status.value,
                        to_status=to_status.value, reason=reason)
        if self._on_change:
            self._on_change(StatusChange(session, from_status, to_status, reason))

    def start(self, session_id: str) -> bool:
        """created|paused -> active. Already active is a successful no-op."""
        session = self.get(session_id)
        if session.status is SessionStatus.ACTIVE:
            return True
        self._transition(session, SessionStatus.ACTIVE)
        return True

    def pause(self, session_id: str) -> bool:
        session = self.get(session_id)
        if session.status is not SessionStatus.ACTIVE:
            raise InvalidTransition(session_id, session.status.value, SessionStatus.PAUSED.value)
        self._transition(session, SessionStatus.PAUSED)
        return True

    def stop(self, session_id: str, reason: Optional[str] = None) -> bool:
        """
        Any non-terminal state -> stopped.

        Returns:
            False if the session was already terminal
        """
        session = self.get(session_id)
        if session.status.is_terminal:
            return False
        self._transition(session, SessionStatus.STOPPED, reason or "requested")
        return True

    def fail(self, session_id: str, reason: str) -> bool:
        """active -> error; used when a driver faults outside per-wallet handling."""
        session = self.get(session_id)
        if session.status is not SessionStatus.ACTIVE:
            return False
        self._transition(session, SessionStatus.ERROR, reason)
        return True

    # === Reads ===

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def get_status(self, session_id: str) -> SessionStatus:
        return self.get(session_id).status

    def list(self, owner: Optional[str] = None) -> List[Session]:
        sessions = list(self._sessions.values())
        return [s for s in sessions if s.owner == owner] if owner is not None else sessions

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
