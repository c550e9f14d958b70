"""
Unit tests for error classification and the per-kind circuit breaker.
"""

import asyncio

import httpx
import pytest

from conftest import FakeClock
from volumebot.risk.circuit_breaker import CircuitBreakerConfig, ErrorClassifier
from volumebot.risk.errors import ErrorKind, TradingError, classify_error


def _err(kind: ErrorKind) -> TradingError:
    return TradingError(kind, f"simulated {kind.value}")


class TestClassifyError:
    def test_trading_error_keeps_kind(self):
        assert classify_error(_err(ErrorKind.POOL_NOT_FOUND)) is ErrorKind.POOL_NOT_FOUND

    def test_http_429_is_rate_limit(self):
        request = httpx.Request("POST", "https://rpc.example")
        response = httpx.Response(429, request=request)
        exc = httpx.HTTPStatusError("too many", request=request, response=response)
        assert classify_error(exc) is ErrorKind.RATE_LIMIT

    def test_timeouts_are_network_errors(self):
        assert classify_error(asyncio.TimeoutError()) is ErrorKind.NETWORK_ERROR
        assert classify_error(httpx.ConnectTimeout("slow")) is ErrorKind.NETWORK_ERROR
        assert classify_error(ConnectionResetError()) is ErrorKind.NETWORK_ERROR

    @pytest.mark.parametrize("message,kind", [
        ("Insufficient funds for transfer", ErrorKind.INSUFFICIENT_BALANCE),
        ("Slippage tolerance exceeded", ErrorKind.SLIPPAGE_EXCEEDED),
        ("RPC node is behind", ErrorKind.RPC_ERROR),
        ("pool not found for mint", ErrorKind.POOL_NOT_FOUND),
        ("rate limit hit", ErrorKind.RATE_LIMIT),
        ("something odd", ErrorKind.TRANSACTION_FAILED),
    ])
    def test_message_hints(self, message, kind):
        assert classify_error(RuntimeError(message)) is kind


class TestErrorClassifier:
    def test_insufficient_balance_stops_immediately(self):
        ec = ErrorClassifier(clock=FakeClock())
        verdict = ec.handle_failure(_err(ErrorKind.INSUFFICIENT_BALANCE))
        assert verdict.stop_trading is True
        assert verdict.tripped is False

    def test_rpc_backoff_doubles_and_caps(self):
        ec = ErrorClassifier(CircuitBreakerConfig(trip_threshold=100), clock=FakeClock())
        delays = [ec.handle_failure(_err(ErrorKind.RPC_ERROR)).backoff_sec for _ in range(7)]
        assert delays == [1, 2, 4, 8, 16, 30, 30]
        assert all(not ec.handle_failure(_err(ErrorKind.RPC_ERROR)).stop_trading for _ in range(3))

    def test_success_resets_backoff_streak(self):
        ec = ErrorClassifier(CircuitBreakerConfig(trip_threshold=100), clock=FakeClock())
        ec.handle_failure(_err(ErrorKind.RPC_ERROR))
        ec.handle_failure(_err(ErrorKind.RPC_ERROR))
        ec.record_success()
        assert ec.handle_failure(_err(ErrorKind.RPC_ERROR)).backoff_sec == 1

    def test_rate_limit_cooldown(self):
        clock = FakeClock()
        ec = ErrorClassifier(clock=clock)
        verdict = ec.handle_failure(_err(ErrorKind.RATE_LIMIT))
        assert verdict.backoff_sec == 60
        assert ec.cooldown_remaining() == pytest.approx(60)
        clock.advance(45)
        assert ec.cooldown_remaining() == pytest.approx(15)
        clock.advance(30)
        assert ec.cooldown_remaining() == 0.0

    def test_slippage_requests_relaxation(self):
        ec = ErrorClassifier(clock=FakeClock())
        verdict = ec.handle_failure(_err(ErrorKind.SLIPPAGE_EXCEEDED))
        assert verdict.relax_slippage is True
        assert verdict.should_continue is True

    def test_fifteen_rpc_errors_trip(self):
        clock = FakeClock()
        ec = ErrorClassifier(CircuitBreakerConfig(trip_threshold=10, window_sec=300), clock=clock)
        for _ in range(15):
            ec.handle_failure(_err(ErrorKind.RPC_ERROR))
            clock.advance(3)

        verdict = ec.handle_failure(_err(ErrorKind.RPC_ERROR))
        assert verdict.stop_trading is True
        assert verdict.tripped is True

    def test_trip_happens_on_count_above_threshold(self):
        trips = []
        ec = ErrorClassifier(CircuitBreakerConfig(trip_threshold=3), clock=FakeClock(),
                             on_trip=lambda kind, count: trips.append((kind, count)))
        results = [ec.handle_failure(_err(ErrorKind.TRANSACTION_FAILED)).tripped for _ in range(4)]
        assert results == [False, False, False, True]
        assert trips == [(ErrorKind.TRANSACTION_FAILED, 4)]

    def test_stale_history_does_not_trip(self):
        clock = FakeClock()
        ec = ErrorClassifier(CircuitBreakerConfig(trip_threshold=3, window_sec=300), clock=clock)
        for _ in range(3):
            ec.handle_failure(_err(ErrorKind.TRANSACTION_FAILED))
        clock.advance(301)

        verdict = ec.handle_failure(_err(ErrorKind.TRANSACTION_FAILED))
        assert verdict.tripped is False
        assert ec.get_error_stats()["TRANSACTION_FAILED"] == 1

    def test_is_tripped_expires_with_window(self):
        clock = FakeClock()
        ec = ErrorClassifier(CircuitBreakerConfig(trip_threshold=1, window_sec=60), clock=clock)
        ec.handle_failure(_err(ErrorKind.NETWORK_ERROR))
        ec.handle_failure(_err(ErrorKind.NETWORK_ERROR))
        assert ec.is_tripped(ErrorKind.NETWORK_ERROR)
        clock.advance(61)
        assert not ec.is_tripped(ErrorKind.NETWORK_ERROR)
        assert not ec.any_tripped()

    def test_kinds_counted_independently(self):
        ec = ErrorClassifier(clock=FakeClock())
        ec.handle_failure(_err(ErrorKind.RPC_ERROR))
        ec.handle_failure(_err(ErrorKind.SLIPPAGE_EXCEEDED))
        ec.handle_failure(_err(ErrorKind.SLIPPAGE_EXCEEDED))
        assert ec.get_error_stats() == {"RPC_ERROR": 1, "SLIPPAGE_EXCEEDED": 2}

    def test_reset_clears_everything(self):
        ec = ErrorClassifier(clock=FakeClock())
        ec.handle_failure(_err(ErrorKind.RATE_LIMIT))
        ec.reset()
        assert ec.get_error_stats() == {}
        assert ec.cooldown_remaining() == 0.0

    def test_unrecoverable_flag_stops(self):
        ec = ErrorClassifier(clock=FakeClock())
        exc = TradingError(ErrorKind.TRANSACTION_FAILED, "reverted", recoverable=False)
        assert ec.handle_failure(exc).stop_trading is True

    def test_config_validation(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(window_sec=0).validate()
