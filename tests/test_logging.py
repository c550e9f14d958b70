"""
Tests for structured logging: event level mapping, throttling and JSON output.
"""

import json
import logging

from volumebot.core.session_logger import SessionLogger, SessionLoggerConfig
from volumebot.infra.logging_cfg import JsonFormatter, ThrottledFilter, build_logger, log_event


def _record(msg: str, level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord("volumebot", level, __file__, 1, msg, None, None)


class TestSessionLogger:
    def test_levels_follow_event_names(self, caplog):
        caplog.set_level(logging.DEBUG, logger="volumebot")
        slog = SessionLogger("s1", SessionLoggerConfig(debug_enabled=True))

        slog.log("circuit_breaker_tripped", kind="RPC_ERROR", count=11)
        slog.log("driver_crashed", err="boom")
        slog.log("trade_failed", wallet=1)
        slog.log("session_started")
        slog.log("cycle_start", cycle=1)

        levels = [r.levelno for r in caplog.records]
        assert levels == [logging.CRITICAL, logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG]
        payload = json.loads(caplog.records[0].getMessage())
        assert payload == {"event": "circuit_breaker_tripped", "session": "s1", "kind": "RPC_ERROR", "count": 11}

    def test_debug_events_dropped_unless_enabled(self, caplog):
        caplog.set_level(logging.DEBUG, logger="volumebot")
        SessionLogger("s1").log("cycle_end", cycle=1)
        assert caplog.records == []

    def test_backoff_events_throttled(self, caplog):
        caplog.set_level(logging.DEBUG, logger="volumebot")
        slog = SessionLogger("s1")
        callback = slog.get_callback()

        callback("backoff_applied", delay_sec=1)
        callback("backoff_applied", delay_sec=2)

        assert len(caplog.records) == 1


class TestThrottledFilter:
    def test_repeats_suppressed_per_session(self):
        f = ThrottledFilter(cooldown_sec=60)
        a = json.dumps({"event": "rate_limit_cooldown", "session": "a"})
        b = json.dumps({"event": "rate_limit_cooldown", "session": "b"})

        assert f.filter(_record(a)) is True
        assert f.filter(_record(a)) is False
        assert f.filter(_record(b)) is True

    def test_plain_messages_pass(self):
        f = ThrottledFilter()
        assert f.filter(_record("not json")) is True
        assert f.filter(_record(json.dumps({"event": "trade_success"}))) is True


class TestJsonOutput:
    def test_formatter_emits_one_json_object(self):
        line = JsonFormatter().format(_record('{"event": "x"}', logging.WARNING))
        data = json.loads(line)
        assert data["level"] == "WARNING"
        assert data["name"] == "volumebot"
        assert json.loads(data["msg"]) == {"event": "x"}

    def test_build_logger_writes_json_file(self, tmp_path):
        path = tmp_path / "engine.log"
        logger = build_logger("volumebot.test_file", logging.INFO, file_path=str(path), async_file=False)

        log_event(logger, "session_created", session="s1", wallets=3)
        for h in logger.handlers:
            h.flush()

        lines = path.read_text().splitlines()
        assert json.loads(json.loads(lines[-1])["msg"]) == {"event": "session_created", "session": "s1", "wallets": 3}

    def test_build_logger_is_idempotent(self):
        first = build_logger("volumebot.test_idem")
        count = len(first.handlers)
        second = build_logger("volumebot.test_idem", logging.DEBUG)
        assert second is first
        assert len(second.handlers) == count
        assert second.level == logging.DEBUG
