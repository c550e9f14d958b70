"""
Webhook alerting for events that need an operator.

- Send alerts to webhooks (Slack, Discord, generic HTTP)
- Rate limiting per alert type and session to prevent alert storms
- Alert batching for related events
- Async non-blocking delivery over httpx
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Tuple

import httpx

from volumebot.core.utils import now_ms

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    """Alert severity levels."""
    CRITICAL = auto()  # Immediate attention required
    WARNING = auto()   # Potential issue
    INFO = auto()      # Informational


class AlertType(Enum):
    """Types of alerts."""
    TRADING_HALTED = auto()
    CIRCUIT_BREAKER_TRIPPED = auto()
    SESSION_ERROR = auto()
    FEE_COLLECTION_FAILED = auto()
    STARTUP = auto()
    SHUTDOWN = auto()
    CUSTOM = auto()


@dataclass
class Alert:
    """An alert to be sent."""
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=now_ms)
    details: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
            "session": self.session_id,
        }


@dataclass
class AlertConfig:
    """Configuration for alerting."""
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_seconds: int = 60  # Min seconds between same alert type per session
    batch_window_ms: int = 5000  # Batch alerts within this window
    enabled: bool = True
    include_details: bool = True
    bot_name: str = "VolumeBot"
    timeout_sec: float = 10.0
    retries: int = 2


_SEVERITY_COLORS = {
    AlertSeverity.CRITICAL: 0xFF0000,
    AlertSeverity.WARNING: 0xFFA500,
    AlertSeverity.INFO: 0x0000FF,
}


class WebhookFormatter:
    """Formats alerts for different webhook types."""

    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def _detail_items(alert: Alert, config: AlertConfig) -> List[Tuple[str, str]]:
        items = []
        if alert.session_id:
            items.append(("Session", alert.session_id))
        items.append(("Type", alert.alert_type.name))
        if config.include_details and alert.details:
            # Limit to 5 fields
            items.extend((k, str(v)) for k, v in list(alert.details.items())[:5])
        return items

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = _SEVERITY_COLORS.get(alert.severity, 0x808080)
        fields = [{"title": k, "value": v, "short": True}
                  for k, v in WebhookFormatter._detail_items(alert, config)]
        return {
            "username": config.bot_name,
            "attachments": [{
                "color": f"#{color:06X}",
                "title": f"[{alert.severity.name}] {alert.title}",
                "text": alert.message,
                "fields": fields,
                "footer": f"{config.bot_name} | {alert.severity.name}",
                "ts": alert.timestamp_ms // 1000,
            }]
        }

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        fields = [{"name": k, "value": v, "inline": True}
                  for k, v in WebhookFormatter._detail_items(alert, config)]
        return {
            "username": config.bot_name,
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": _SEVERITY_COLORS.get(alert.severity, 0x808080),
                "fields": fields,
                "footer": {"text": f"{config.bot_name} | {alert.severity.name}"},
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp_ms / 1000)),
            }]
        }


class AlertManager:
    """
    Manages alert delivery with rate limiting and batching.

    Delivery failures are logged and dropped; they never reach the caller.
    """

    def __init__(self, config: Optional[AlertConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config or AlertConfig()
        self._client = client
        self._owns_client = client is None
        self._last_alert_times: Dict[Tuple[AlertType, Optional[str]], int] = {}
        self._pending_alerts: List[Alert] = []
        self._batch_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self.delivered = 0
        self.failed = 0

    async def send_alert(self, alert: Alert) -> bool:
        """
        Queue an alert for delivery.

        Returns:
            True if alert was queued, False if rate limited or disabled
        """
        if not self.config.enabled:
            return False

        if not self.config.webhook_url:
            logger.debug(f"Alert not sent (no webhook): {alert.title}")
            return False

        if alert.severity.value > self.config.min_severity.value:
            return False

        now = now_ms()
        key = (alert.alert_type, alert.session_id)
        last_time = self._last_alert_times.get(key, 0)
        if now - last_time < self.config.rate_limit_seconds * 1000:
            logger.debug(f"Alert rate limited: {alert.alert_type.name}")
            return False

        async with self._lock:
            self._pending_alerts.append(alert)
            self._last_alert_times[key] = now
            if self._batch_task is None or self._batch_task.done():
                self._batch_task = asyncio.create_task(self._batch_deliver())

        return True

    async def _batch_deliver(self) -> None:
        """Deliver batched alerts after window expires."""
        await asyncio.sleep(self.config.batch_window_ms / 1000)
        await self._drain()

    async def _drain(self) -> None:
        async with self._lock:
            alerts = self._pending_alerts.copy()
            self._pending_alerts.clear()

        if not alerts:
            return
        if len(alerts) == 1:
            await self._http_post(self._format_alert(alerts[0]))
        else:
            await self._http_post(self._format_batch(alerts))

    def _format_batch(self, alerts: List[Alert]) -> Dict[str, Any]:
        if self.config.webhook_type == "slack":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["attachments"].extend(self._format_alert(alert)["attachments"])
            return payload
        if self.config.webhook_type == "discord":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["embeds"].extend(self._format_alert(alert)["embeds"])
            return payload
        return {"alerts": [alert.to_dict() for alert in alerts]}

    def _format_alert(self, alert: Alert) -> Dict[str, Any]:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
        }
        formatter = formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)
        return formatter(alert, self.config)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_sec)
        return self._client

    async def _http_post(self, payload: Dict[str, Any]) -> bool:
        """POST to the webhook with bounded retries."""
        if not self.config.webhook_url:
            return False

        client = self._get_client()
        retries = self.config.retries
        for attempt in range(retries + 1):
            try:
                resp = await client.post(self.config.webhook_url, json=payload)
                if resp.status_code < 300:
                    self.delivered += 1
                    logger.debug("Alert delivered successfully")
                    return True
                logger.warning(f"Alert delivery failed: HTTP {resp.status_code}")
            except httpx.TimeoutException:
                logger.warning(f"Alert delivery timeout (attempt {attempt + 1})")
            except httpx.HTTPError as e:
                logger.warning(f"Alert delivery error: {e}")

            if attempt < retries:
                await asyncio.sleep(1 * (attempt + 1))

        self.failed += 1
        return False

    async def flush(self) -> None:
        """Deliver anything pending now instead of waiting for the batch window."""
        task = self._batch_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._drain()

    async def close(self) -> None:
        await self.flush()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # === Convenience methods ===

    async def alert_trading_halted(self, session_id: str, reason: str, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.TRADING_HALTED,
            severity=AlertSeverity.CRITICAL,
            title="Trading Halted",
            message=f"Session stopped: {reason}",
            session_id=session_id,
            details=details,
        ))

    async def alert_circuit_breaker(self, kind: str, count: int, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.CIRCUIT_BREAKER_TRIPPED,
            severity=AlertSeverity.CRITICAL,
            title="Circuit Breaker Tripped",
            message=f"{kind} failed {count} times inside the trailing window",
            details={"kind": kind, "count": count, **details},
        ))

    async def alert_session_error(self, session_id: str, error: str, **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.SESSION_ERROR,
            severity=AlertSeverity.CRITICAL,
            title="Session Error",
            message=error,
            session_id=session_id,
            details=details,
        ))

    async def alert_fee_collection_failed(self, user_id: str, amount: float, error: Optional[str],
                                          session_id: Optional[str] = None) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.FEE_COLLECTION_FAILED,
            severity=AlertSeverity.WARNING,
            title="Fee Collection Failed",
            message=f"Could not collect {amount:.6f} from {user_id}: {error}",
            session_id=session_id,
            details={"user": user_id, "amount": amount},
        ))

    async def alert_startup(self, sessions: List[str], **details) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.STARTUP,
            severity=AlertSeverity.INFO,
            title="Engine Started",
            message=f"{self.config.bot_name} started {len(sessions)} session(s)",
            details={"sessions": sessions, **details},
        ))

    async def alert_shutdown(self, reason: str = "normal", **details) -> bool:
        severity = AlertSeverity.INFO if reason == "normal" else AlertSeverity.WARNING
        return await self.send_alert(Alert(
            alert_type=AlertType.SHUTDOWN,
            severity=severity,
            title="Engine Shutdown",
            message=f"{self.config.bot_name} shutting down: {reason}",
            details=details,
        ))
