"""
Tests for webhook alerting:
- Alert serialization and webhook formats
- Severity filtering and per-session rate limiting
- Batched delivery over httpx
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from volumebot.monitoring.alerting import (
    Alert,
    AlertConfig,
    AlertManager,
    AlertSeverity,
    AlertType,
    WebhookFormatter,
)


def _recording_client(status: int = 200):
    """AsyncClient whose transport records every JSON body it receives."""
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(status)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), received


# ─────────────────────────────────────────────────────────────────────────────
# Alert / formatter tests
# ─────────────────────────────────────────────────────────────────────────────


class TestAlert:
    def test_to_dict(self):
        alert = Alert(
            alert_type=AlertType.TRADING_HALTED,
            severity=AlertSeverity.CRITICAL,
            title="Trading Halted",
            message="Session stopped: insufficient balance",
            session_id="s1",
        )

        data = alert.to_dict()

        assert data["type"] == "TRADING_HALTED"
        assert data["severity"] == "CRITICAL"
        assert data["session"] == "s1"
        assert "timestamp_iso" in data


class TestWebhookFormatter:
    @pytest.fixture
    def sample_alert(self):
        return Alert(
            alert_type=AlertType.CIRCUIT_BREAKER_TRIPPED,
            severity=AlertSeverity.CRITICAL,
            title="Circuit Breaker Tripped",
            message="RPC_ERROR failed 11 times",
            session_id="s1",
            details={"kind": "RPC_ERROR", "count": 11},
        )

    def test_slack_format(self, sample_alert):
        """Slack payload carries a colored attachment with detail fields."""
        payload = WebhookFormatter.format_slack(sample_alert, AlertConfig())

        attachment = payload["attachments"][0]
        assert payload["username"] == "VolumeBot"
        assert attachment["color"] == "#FF0000"
        assert "[CRITICAL]" in attachment["title"]
        titles = [f["title"] for f in attachment["fields"]]
        assert titles[:2] == ["Session", "Type"]
        assert "kind" in titles

    def test_discord_format(self, sample_alert):
        payload = WebhookFormatter.format_discord(sample_alert, AlertConfig())

        embed = payload["embeds"][0]
        assert embed["color"] == 0xFF0000
        assert embed["description"] == "RPC_ERROR failed 11 times"

    def test_details_can_be_omitted(self, sample_alert):
        payload = WebhookFormatter.format_discord(sample_alert, AlertConfig(include_details=False))
        assert [f["name"] for f in payload["embeds"][0]["fields"]] == ["Session", "Type"]


# ─────────────────────────────────────────────────────────────────────────────
# AlertManager tests
# ─────────────────────────────────────────────────────────────────────────────


class TestAlertManager:
    @pytest.fixture
    def alert_config(self):
        return AlertConfig(
            webhook_url="https://hooks.example.com/test",
            webhook_type="generic",
            min_severity=AlertSeverity.WARNING,
            rate_limit_seconds=60,
            batch_window_ms=60_000,
            retries=0,
        )

    @pytest.mark.asyncio
    async def test_disabled_or_no_webhook(self, alert_config):
        alert_config.enabled = False
        assert await AlertManager(alert_config).alert_session_error("s1", "boom") is False
        assert await AlertManager(AlertConfig()).alert_session_error("s1", "boom") is False

    @pytest.mark.asyncio
    async def test_info_filtered_below_warning(self, alert_config):
        manager = AlertManager(alert_config)
        with patch.object(manager, "_http_post", new_callable=AsyncMock) as mock_post:
            assert await manager.alert_startup(["s1"]) is False
            assert await manager.alert_shutdown("signal") is True
            await manager.flush()
        mock_post.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rate_limit_is_per_session(self, alert_config):
        """Same type and session is rate limited; another session is not."""
        manager = AlertManager(alert_config)
        with patch.object(manager, "_http_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = True

            first = await manager.alert_trading_halted("s1", "insufficient balance")
            again = await manager.alert_trading_halted("s1", "insufficient balance")
            other = await manager.alert_trading_halted("s2", "insufficient balance")
            await manager.flush()

        assert (first, again, other) == (True, False, True)
        mock_post.assert_awaited_once()
        batched = mock_post.await_args.args[0]
        assert [a["session"] for a in batched["alerts"]] == ["s1", "s2"]

    @pytest.mark.asyncio
    async def test_rate_limit_window_expires(self, alert_config):
        manager = AlertManager(alert_config)
        times = iter([1_000_000, 1_030_000, 1_060_000])
        with patch("volumebot.monitoring.alerting.now_ms", side_effect=lambda: next(times)), \
                patch.object(manager, "_http_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = True

            first = await manager.alert_trading_halted("s1", "rpc down")
            within = await manager.alert_trading_halted("s1", "rpc down")
            after = await manager.alert_trading_halted("s1", "rpc down")
            await manager.flush()

        assert (first, within, after) == (True, False, True)

    @pytest.mark.asyncio
    async def test_flush_delivers_single_alert_over_http(self, alert_config):
        client, received = _recording_client()
        manager = AlertManager(alert_config, client=client)

        await manager.alert_fee_collection_failed("alice", 0.004, "rpc unavailable", session_id="s1")
        await manager.flush()

        assert manager.delivered == 1
        assert received[0]["type"] == "FEE_COLLECTION_FAILED"
        assert received[0]["details"] == {"user": "alice", "amount": 0.004}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_slack_batch_merges_attachments(self, alert_config):
        alert_config.webhook_type = "slack"
        client, received = _recording_client()
        manager = AlertManager(alert_config, client=client)

        await manager.alert_circuit_breaker("RPC_ERROR", 11)
        await manager.alert_session_error("s1", "driver fault")
        await manager.flush()

        assert len(received) == 1
        assert len(received[0]["attachments"]) == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_failure_is_counted_not_raised(self, alert_config):
        client, _ = _recording_client(status=500)
        manager = AlertManager(alert_config, client=client)

        await manager.alert_session_error("s1", "boom")
        await manager.flush()

        assert manager.failed == 1
        assert manager.delivered == 0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_close_keeps_injected_client_open(self, alert_config):
        client, _ = _recording_client()
        manager = AlertManager(alert_config, client=client)

        await manager.close()

        assert not client.is_closed
        await client.aclose()
