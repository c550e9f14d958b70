"""
TradingEngine: the operations the REST/CLI/dashboard layer calls.

Wires the state machine, scheduler, fee ledger, error classifiers and
metrics together. Status changes are the only signal between them: the
state machine announces a transition, the engine starts or releases the
session's driver and kicks off side effects (final fee collection, alerts).
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set, Union

from volumebot.config.config import EngineConfig
from volumebot.core.session_logger import SessionLogger, SessionLoggerConfig
from volumebot.execution.interfaces import BalanceOracle, SwapExecutor, Transport, WalletProvider
from volumebot.fees.fee_ledger import FeeCollection, FeeLedger
from volumebot.monitoring.alerting import AlertManager
from volumebot.monitoring.metrics import MetricsAggregator, MetricsSnapshot
from volumebot.monitoring.metrics_rich import RichMetrics
from volumebot.orchestrator.scheduler import SessionRuntime, TradingScheduler
from volumebot.risk.circuit_breaker import ErrorClassifier
from volumebot.risk.errors import ErrorKind, InvalidConfiguration
from volumebot.session.models import Session, SessionStatus, TradeAttempt, WalletRef
from volumebot.session.snapshot import AtomicSnapshotStore, SessionSnapshot
from volumebot.session.state_machine import SessionStateMachine, StatusChange

log = logging.getLogger("volumebot")

ConfigArg = Union[EngineConfig, Mapping[str, Any], None]


class TradingEngine:
    """
    Session orchestration facade.

    Args:
        swap_executor: Submits swaps
        balance_oracle: Reads wallet holdings
        transport: Native transfers for fee collection (optional)
        wallet_provider: Re-derives signing handles on snapshot import (optional)
        config: Engine defaults; sessions may override per call
        snapshot_store: Where export/import read and write (optional)
        rich_metrics: Prometheus collectors (optional)
        alerts: Webhook alerting (optional)
    """

    def __init__(
        self,
        swap_executor: SwapExecutor,
        balance_oracle: BalanceOracle,
        transport: Optional[Transport] = None,
        wallet_provider: Optional[WalletProvider] = None,
        config: Optional[EngineConfig] = None,
        snapshot_store: Optional[AtomicSnapshotStore] = None,
        rich_metrics: Optional[RichMetrics] = None,
        alerts: Optional[AlertManager] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger_config: Optional[SessionLoggerConfig] = None,
    ) -> None:
        self.config = (config or EngineConfig()).validate()
        self.wallet_provider = wallet_provider
        self.snapshots = snapshot_store
        self.rich_metrics = rich_metrics
        self.alerts = alerts
        self._logger_config = logger_config

        self.fee_ledger = FeeLedger(self.config.fees, transport, on_collection_failed=self._on_collection_failed)
        self.state = SessionStateMachine(self.config, on_change=self._on_status_change)
        self.scheduler = TradingScheduler(
            self.state,
            swap_executor,
            balance_oracle,
            self.fee_ledger,
            rng=rng,
            sleep=sleep,
            clock=clock,
            alerts=alerts,
        )
        self._clock = clock
        self._global_classifier = ErrorClassifier(self.config.breaker, clock=clock, on_trip=self._on_trip)
        self._background: Set[asyncio.Task] = set()

    # === Wiring ===

    def _spawn(self, coro: Awaitable[Any], name: str) -> Optional[asyncio.Task]:
        """Fire-and-forget; the task is kept referenced until it finishes."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            log.error(json.dumps({"event": "background_task_failed", "task": task.get_name(), "err": str(exc)}))

    def _on_status_change(self, change: StatusChange) -> None:
        session = change.session
        rt = self.scheduler.runtime(session.id)
        rt.metrics.set_status(change.to_status.value)

        if self.rich_metrics is not None:
            self.rich_metrics.session_transitions.labels(to_status=change.to_status.value).inc()
            if change.to_status is SessionStatus.ACTIVE:
                self.rich_metrics.sessions_active.inc()
            elif change.from_status is SessionStatus.ACTIVE:
                self.rich_metrics.sessions_active.dec()

        if change.to_status is SessionStatus.ACTIVE:
            self.scheduler.ensure_driver(session.id)
            return

        self.scheduler.release(session.id)
        if change.to_status is SessionStatus.STOPPED:
            self._spawn(self._collect_after_drain(session), name=f"fees:{session.id}")

    async def _collect_after_drain(self, session: Session) -> None:
        # Attempts from a cycle still in flight charge fees as they settle
        await self.scheduler.wait(session.id)
        await self.fee_ledger.collect_accrued(session.owner, session.id, session.admin_wallet)

    def _on_trip(self, kind: ErrorKind, count: int) -> None:
        if self.rich_metrics is not None:
            self.rich_metrics.breaker_trips.labels(kind=kind.value).inc()
        if self.alerts is not None:
            self._spawn(self.alerts.alert_circuit_breaker(kind.value, count), name=f"alert:trip:{kind.value}")

    def _on_collection_failed(self, record: FeeCollection) -> None:
        if self.alerts is not None:
            self._spawn(
                self.alerts.alert_fee_collection_failed(record.user_id, record.amount, record.error, record.session_id),
                name=f"alert:fees:{record.user_id}",
            )

    def _resolve_config(self, config: ConfigArg) -> EngineConfig:
        if config is None:
            return self.config
        if isinstance(config, EngineConfig):
            return config.validate()
        return self.config.with_overrides(config)

    def _classifier_for(self, session_id: str, config: EngineConfig) -> ErrorClassifier:
        if config.error_scope == "global":
            return self._global_classifier
        slog = SessionLogger(session_id, self._logger_config)
        return ErrorClassifier(config.breaker, clock=self._clock,
                               log_event=slog.get_callback(), on_trip=self._on_trip)

    # === Lifecycle operations ===

    def create_session(
        self,
        owner: str,
        token: str,
        strategy: Any,
        admin_wallet: WalletRef,
        trading_wallets: Sequence[WalletRef],
        routing_data: Any = None,
        config: ConfigArg = None,
        token_name: Optional[str] = None,
        token_symbol: Optional[str] = None,
    ) -> str:
        """
        Register a session in ``created`` state.

        ``config`` is either a full EngineConfig or a mapping of overrides
        applied on top of the engine defaults.

        Raises:
            InvalidConfiguration: bad wallets, unknown strategy, bad overrides
        """
        cfg = self._resolve_config(config)
        session_id = self.state.create(
            owner, token, strategy, admin_wallet, trading_wallets,
            routing_data=routing_data, config=cfg, token_name=token_name, token_symbol=token_symbol,
        )
        session = self.state.get(session_id)
        metrics = MetricsAggregator(
            session_id,
            session.strategy.value,
            native_price_usd=cfg.native_price_usd,
            active_wallet_min_native=cfg.wallets.min_native_per_wallet,
            exporter=self.rich_metrics,
        )
        self.scheduler.register(SessionRuntime(
            session=session,
            metrics=metrics,
            classifier=self._classifier_for(session_id, cfg),
            slog=SessionLogger(session_id, self._logger_config),
        ))
        return session_id

    async def start_session(self, session_id: str) -> bool:
        """created|paused -> active; starts the periodic driver."""
        return self.state.start(session_id)

    async def resume_session(self, session_id: str) -> bool:
        return self.state.start(session_id)

    async def pause_session(self, session_id: str) -> bool:
        """
        Raises:
            InvalidTransition: session is not active
        """
        return self.state.pause(session_id)

    async def stop_session(self, session_id: str, reason: str = "requested") -> bool:
        """
        Stop a session from any non-terminal state.

        A cycle already in flight drains; no new cycle starts. Accrued fees,
        including those charged by the draining cycle, are collected in the
        background once the driver exits.

        Returns:
            False if the session was already terminal
        """
        return self.state.stop(session_id, reason)

    async def wait_for_session(self, session_id: str) -> SessionStatus:
        """Wait until the session's driver exits; returns the resulting status."""
        await self.scheduler.wait(session_id)
        return self.state.get_status(session_id)

    # === Reads ===

    def get_session_status(self, session_id: str) -> SessionStatus:
        return self.state.get_status(session_id)

    def get_session(self, session_id: str) -> Dict[str, Any]:
        session = self.state.get(session_id)
        view = session.to_view()
        view["metrics"] = self.scheduler.runtime(session_id).metrics.snapshot().to_dict()
        view["fees"] = self.fee_ledger.get_user_stats(session.owner)
        return view

    def list_sessions(self, owner: Optional[str] = None) -> List[Dict[str, Any]]:
        return [s.to_view() for s in self.state.list(owner)]

    def get_metrics_snapshot(self, session_id: str) -> MetricsSnapshot:
        self.state.get(session_id)
        return self.scheduler.runtime(session_id).metrics.snapshot()

    def get_dashboard_metrics(self, session_id: str) -> Dict[str, Any]:
        self.state.get(session_id)
        return self.scheduler.runtime(session_id).metrics.export_for_dashboard()

    def get_fee_report(self) -> Dict[str, Any]:
        return self.fee_ledger.generate_fee_report()

    def get_user_fee_stats(self, user_id: str) -> Dict[str, Any]:
        return self.fee_ledger.get_user_stats(user_id)

    def get_recent_trades(self, session_id: str, limit: int = 50) -> List[TradeAttempt]:
        """Newest first, at most ``limit``."""
        return self.state.get(session_id).recent(limit)

    def get_error_stats(self, session_id: Optional[str] = None) -> Dict[str, int]:
        if session_id is None:
            return self._global_classifier.get_error_stats()
        self.state.get(session_id)
        return self.scheduler.runtime(session_id).classifier.get_error_stats()

    def reset_error_counts(self, session_id: Optional[str] = None) -> None:
        if session_id is None:
            self._global_classifier.reset()
            return
        self.state.get(session_id)
        self.scheduler.runtime(session_id).classifier.reset()

    # === Snapshots ===

    async def export_session(self, session_id: str) -> Path:
        if self.snapshots is None:
            raise InvalidConfiguration("no snapshot store configured")
        snapshot = SessionSnapshot.from_session(self.state.get(session_id))
        path = await self.snapshots.save(snapshot)
        log.info(json.dumps({"event": "session_exported", "session": session_id, "path": str(path)}))
        return path

    async def import_session(
        self,
        path: Union[str, Path],
        owner: Optional[str] = None,
        strategy: Any = None,
        config: ConfigArg = None,
        routing_data: Any = None,
    ) -> str:
        """
        Rebuild a session from a snapshot file. The new session keeps the
        recorded wallets, token and routing data; owner and strategy may be
        overridden.

        Raises:
            InvalidConfiguration: unreadable snapshot or wallet address mismatch
        """
        if self.snapshots is None:
            raise InvalidConfiguration("no snapshot store configured")
        snapshot = await self.snapshots.load(path)
        admin, wallets = snapshot.restore_wallets(self.wallet_provider)
        session_id = self.create_session(
            owner or snapshot.owner,
            snapshot.token,
            strategy or snapshot.strategy,
            admin,
            wallets,
            routing_data=routing_data if routing_data is not None else snapshot.routing_data,
            config=config,
            token_name=snapshot.token_name,
            token_symbol=snapshot.token_symbol,
        )
        log.info(json.dumps({"event": "session_imported", "session": session_id,
                             "from_session": snapshot.session_id, "wallets": len(wallets)}))
        return session_id

    # === Shutdown ===

    async def shutdown(self, reason: str = "shutdown") -> None:
        """Stop every non-terminal session, wait for drivers and background work."""
        for session in self.state.list():
            if not session.status.is_terminal:
                self.state.stop(session.id, reason)
        await self.scheduler.wait_all()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        log.info(json.dumps({"event": "engine_shutdown", "sessions": len(self.state)}))
