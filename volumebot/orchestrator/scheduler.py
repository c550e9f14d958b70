"""
TradingScheduler: one periodic driver per active session.

Each tick:
    1. Wait the loop interval (stretched by any pending backoff/cooldown)
    2. Re-check session status and duration; either can end the driver
    3. Sample wallets, fan out one trade attempt per wallet, wait for all
    4. Feed outcomes to the fee ledger, metrics and error classifier
    5. Stop the session on a stop verdict or when its duration is used up

Drivers share no lock. Cancellation is cooperative: a driver waiting for
its next tick may be cancelled outright, but a cycle whose fan-out has
started always drains first.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TYPE_CHECKING

from volumebot.core.session_logger import SessionLogger
from volumebot.execution.interfaces import BalanceOracle, SwapExecutor, as_swap_result
from volumebot.execution.policy import TradePlan, plan_trade, relaxed_slippage, select_wallets, slippage_bps
from volumebot.fees.fee_ledger import FeeLedger
from volumebot.monitoring.metrics import MetricsAggregator
from volumebot.risk.circuit_breaker import ErrorClassifier, FailureVerdict
from volumebot.risk.errors import ErrorKind, TradingError, classify_error
from volumebot.session.models import Session, SessionStatus, TradeAttempt, TradeDirection, WalletRef
from volumebot.session.state_machine import SessionStateMachine

if TYPE_CHECKING:
    from volumebot.monitoring.alerting import AlertManager

log = logging.getLogger("volumebot")


@dataclass
class SessionRuntime:
    """Engine-side companions of a Session."""
    session: Session
    metrics: MetricsAggregator
    classifier: ErrorClassifier
    slog: SessionLogger


@dataclass
class WalletOutcome:
    wallet: WalletRef
    attempt: Optional[TradeAttempt] = None
    plan: Optional[TradePlan] = None
    error: Optional[BaseException] = None
    skipped: bool = False


@dataclass
class CycleResult:
    """Result of one trading cycle."""
    session_id: str
    cycle: int
    selected: int
    attempts: List[TradeAttempt] = field(default_factory=list)
    skipped: int = 0
    errors: int = 0
    stop_reason: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> int:
        return sum(1 for a in self.attempts if a.tx_id)


class TradingScheduler:
    """
    Runs and supervises per-session drivers.

    Args:
        state_machine: Session table and transitions
        swap_executor: Submits swaps
        balance_oracle: Reads wallet holdings
        fee_ledger: Prices and collects usage fees
        rng: Randomness for wallet sampling, direction and sizing
        sleep: Tick wait (injectable for tests)
        clock: Monotonic clock for elapsed time and latency
        alerts: Optional webhook alerting
    """

    def __init__(
        self,
        state_machine: SessionStateMachine,
        swap_executor: SwapExecutor,
        balance_oracle: BalanceOracle,
        fee_ledger: FeeLedger,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        alerts: Optional["AlertManager"] = None,
    ) -> None:
        self._state = state_machine
        self._executor = swap_executor
        self._oracle = balance_oracle
        self._fees = fee_ledger
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock
        self._alerts = alerts

        self._runtimes: Dict[str, SessionRuntime] = {}
        self._drivers: Dict[str, asyncio.Task] = {}
        # Every driver task not yet finished, including released ones
        self._tasks: Set[asyncio.Task] = set()
        self._in_cycle: Set[str] = set()

    # === Registration / lookup ===

    def register(self, runtime: SessionRuntime) -> None:
        self._runtimes[runtime.session.id] = runtime

    def runtime(self, session_id: str) -> SessionRuntime:
        rt = self._runtimes.get(session_id)
        if rt is None:
            # Raises SessionNotFound for unknown ids
            self._state.get(session_id)
            raise KeyError(session_id)
        return rt

    def is_running(self, session_id: str) -> bool:
        task = self._drivers.get(session_id)
        return task is not None and not task.done()

    def in_cycle(self, session_id: str) -> bool:
        return session_id in self._in_cycle

    # === Driver control ===

    def ensure_driver(self, session_id: str) -> asyncio.Task:
        """Start the session's driver unless one is already live."""
        task = self._drivers.get(session_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._drive(session_id), name=f"driver:{session_id}")
        self._drivers[session_id] = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def release(self, session_id: str) -> None:
        """
        Stop scheduling cycles for a session. A driver idle between ticks is
        cancelled; one in the middle of a cycle finishes it and then exits
        at the status check.
        """
        task = self._drivers.get(session_id)
        if task is None or task.done():
            return
        if task is asyncio.current_task() or session_id in self._in_cycle:
            return
        task.cancel()
        # A resume before the cancellation lands must get a fresh driver
        del self._drivers[session_id]

    async def wait(self, session_id: str) -> None:
        tasks = [t for t in self._tasks if t.get_name() == f"driver:{session_id}"]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_all(self) -> None:
        tasks = [t for t in self._tasks if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _drive(self, session_id: str) -> None:
        rt = self._runtimes[session_id]
        session = rt.session
        sc = session.config.strategy(session.strategy)
        base_elapsed = session.active_elapsed_sec
        segment_start = self._clock()
        rt.slog.log("driver_started", interval_sec=sc.loop_interval_sec,
                    duration_sec=sc.duration_sec, max_cycles=sc.max_cycles)

        def _elapsed() -> float:
            return base_elapsed + (self._clock() - segment_start)

        try:
            while True:
                wait = max(sc.loop_interval_sec, rt.classifier.cooldown_remaining())
                await self._sleep(wait)
                session.active_elapsed_sec = _elapsed()

                if session.status is not SessionStatus.ACTIVE:
                    break
                # A backoff or cooldown wait may outlast the session
                if session.active_elapsed_sec > sc.duration_sec:
                    self._state.stop(session_id, "duration_reached")
                    break

                result = await self.run_cycle(session_id)
                session.active_elapsed_sec = _elapsed()

                if result.stop_reason:
                    if self._state.stop(session_id, result.stop_reason):
                        await self._alert_stop(rt, result.stop_reason)
                    break
                # Paused or stopped while the cycle drained
                if session.status is not SessionStatus.ACTIVE:
                    break
                if session.cycles_completed >= sc.max_cycles or session.active_elapsed_sec >= sc.duration_sec:
                    self._state.stop(session_id, "duration_reached")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            rt.slog.log("driver_crashed", err=str(exc), err_type=type(exc).__name__)
            if self._state.fail(session_id, f"driver fault: {exc}"):
                rt.slog.log("session_error", reason=str(exc))
                if self._alerts is not None:
                    await self._alerts.alert_session_error(session_id, str(exc))
        finally:
            session.active_elapsed_sec = _elapsed()
            rt.slog.log("driver_exited", status=session.status.value,
                        cycles=session.cycles_completed, elapsed_sec=round(session.active_elapsed_sec, 3))

    async def _alert_stop(self, rt: SessionRuntime, reason: str) -> None:
        if self._alerts is None:
            return
        await self._alerts.alert_trading_halted(rt.session.id, reason, errors=rt.classifier.get_error_stats())

    # === One cycle ===

    async def run_cycle(self, session_id: str) -> CycleResult:
        """Fan out one attempt per selected wallet and wait for all of them."""
        rt = self._runtimes[session_id]
        session = rt.session
        sc = session.config.strategy(session.strategy)
        selected = select_wallets(session.trading_wallets, sc.max_wallets_per_cycle, self._rng)
        result = CycleResult(session_id, session.cycles_completed + 1, len(selected))
        rt.slog.log("cycle_start", cycle=result.cycle, wallets=[w.number for w in selected])

        started = self._clock()
        self._in_cycle.add(session_id)
        try:
            raw = await asyncio.gather(
                *(self._trade_wallet(rt, wallet) for wallet in selected),
                return_exceptions=True,
            )
        finally:
            self._in_cycle.discard(session_id)

        outcomes: List[WalletOutcome] = []
        for wallet, item in zip(selected, raw):
            if isinstance(item, WalletOutcome):
                outcomes.append(item)
            elif isinstance(item, asyncio.CancelledError):
                raise item
            else:
                outcomes.append(WalletOutcome(wallet, error=item))

        for outcome in outcomes:
            reason = await self._settle(rt, outcome, result)
            if reason and result.stop_reason is None:
                result.stop_reason = reason

        session.cycles_completed += 1
        rt.metrics.record_cycle()
        result.duration_ms = (self._clock() - started) * 1000
        rt.slog.log("cycle_end", cycle=result.cycle, attempts=len(result.attempts),
                    skipped=result.skipped, errors=result.errors, duration_ms=round(result.duration_ms, 1))
        return result

    async def _trade_wallet(self, rt: SessionRuntime, wallet: WalletRef) -> WalletOutcome:
        session = rt.session
        try:
            native = await self._oracle.get_native(wallet.address)
            token = await self._oracle.get_token(wallet.address, session.token)
        except Exception as exc:
            return WalletOutcome(wallet, error=exc)
        rt.metrics.update_wallet_balance(wallet.number, native, token)

        plan = plan_trade(session.strategy, native, token, session.config, self._rng)
        if plan is None:
            return WalletOutcome(wallet, skipped=True)

        attempt = TradeAttempt(
            session_id=session.id,
            wallet_number=wallet.number,
            wallet_address=wallet.address,
            direction=plan.direction,
            requested_amount=plan.amount,
        )
        bound = max(session.slippage_pct, session.config.risk.min_slippage_pct)
        t0 = self._clock()
        try:
            swap = as_swap_result(await self._executor.submit(
                session.token, plan.amount, plan.direction, session.routing_data, slippage_bps(bound), wallet,
            ))
            if not swap.tx_id:
                raise TradingError(ErrorKind.TRANSACTION_FAILED, "swap returned no transaction id")
        except Exception as exc:
            attempt.fail(classify_error(exc), str(exc), latency_ms=(self._clock() - t0) * 1000)
            return WalletOutcome(wallet, attempt=attempt, plan=plan, error=exc)

        attempt.succeed(swap, latency_ms=(self._clock() - t0) * 1000)
        return WalletOutcome(wallet, attempt=attempt, plan=plan)

    async def _settle(self, rt: SessionRuntime, outcome: WalletOutcome, result: CycleResult) -> Optional[str]:
        """Apply one wallet's outcome; returns a stop reason if trading must halt."""
        session = rt.session
        attempt = outcome.attempt

        if outcome.skipped:
            result.skipped += 1
            rt.metrics.record_skip()
            rt.slog.log("trade_skipped", wallet=outcome.wallet.number)
            return None

        if attempt is not None:
            session.remember(attempt)
            result.attempts.append(attempt)

        if outcome.error is not None:
            return self._settle_failure(rt, outcome, result)

        assert attempt is not None and outcome.plan is not None
        fee = await self._fees.charge(session.owner, session.id, outcome.wallet)
        attempt.fee_charged = fee
        rt.metrics.record_trade(
            attempt.direction,
            self._volume_native(attempt, outcome.plan),
            success=True,
            latency_ms=attempt.latency_ms,
            slippage_pct=attempt.slippage_pct,
            fee=fee,
        )
        rt.classifier.record_success()
        rt.slog.log("trade_success", wallet=outcome.wallet.number, direction=attempt.direction.value,
                    amount=attempt.requested_amount, tx=attempt.tx_id, fee=fee)
        return None

    def _settle_failure(self, rt: SessionRuntime, outcome: WalletOutcome, result: CycleResult) -> Optional[str]:
        session = rt.session
        attempt = outcome.attempt
        error = outcome.error
        kind = classify_error(error)
        result.errors += 1
        rt.metrics.record_error(kind)

        if attempt is not None:
            rt.metrics.record_trade(attempt.direction, 0.0, success=False, latency_ms=attempt.latency_ms)
            rt.slog.log("trade_failed", wallet=outcome.wallet.number, direction=attempt.direction.value,
                        amount=attempt.requested_amount, kind=kind.value, err=str(error))
        else:
            rt.slog.log("balance_read_failed", wallet=outcome.wallet.number, kind=kind.value, err=str(error))

        verdict: FailureVerdict = rt.classifier.handle_failure(error)
        if verdict.relax_slippage:
            relaxed = relaxed_slippage(session.slippage_pct, session.config)
            if relaxed != session.slippage_pct:
                rt.slog.log("slippage_relaxed", from_pct=session.slippage_pct, to_pct=relaxed)
                session.slippage_pct = relaxed

        if not verdict.stop_trading:
            return None
        if kind is ErrorKind.INSUFFICIENT_BALANCE and not verdict.tripped:
            rt.slog.log("insufficient_balance_stop", wallet=outcome.wallet.number)
        return verdict.reason or kind.value

    def _volume_native(self, attempt: TradeAttempt, plan: TradePlan) -> float:
        if attempt.direction is TradeDirection.BUY:
            return plan.amount
        if attempt.price is not None:
            return plan.amount * attempt.price
        return plan.volume_native

    # === Introspection ===

    def get_state(self) -> Dict[str, Any]:
        return {
            "drivers": sorted(sid for sid in self._drivers if self.is_running(sid)),
            "in_cycle": sorted(self._in_cycle),
            "sessions": len(self._runtimes),
        }

    def __repr__(self) -> str:
        return f"TradingScheduler({json.dumps(self.get_state())})"
