"""
HTTP endpoint for probes, session status and Prometheus metrics.

- /health - Liveness (is the process running?)
- /ready - Readiness (engine accepting sessions)
- /status - Session list and fee report JSON
- /sessions/<id> - One session with metrics and fee stats
- /metrics - Prometheus text from RichMetrics
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, unquote, urlparse

from prometheus_client import CONTENT_TYPE_LATEST

from volumebot.risk.errors import SessionNotFound

if TYPE_CHECKING:
    from volumebot.monitoring.metrics_rich import RichMetrics
    from volumebot.orchestrator.engine import TradingEngine


@dataclass
class HealthStatus:
    healthy: bool = True
    ready: bool = False
    last_heartbeat_ms: int = 0
    components: Dict[str, bool] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)


class HealthChecker:
    """
    Tracks component health for the /health and /ready probes.
    """

    def __init__(self) -> None:
        self._components: Dict[str, bool] = {}
        self._details: Dict[str, Any] = {}
        self._ready = False
        self._last_heartbeat = int(time.time() * 1000)
        self._callbacks: List[Callable[[str, bool], None]] = []

    def set_component_health(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        self._components[name] = healthy
        if detail:
            self._details[name] = detail
        self._last_heartbeat = int(time.time() * 1000)
        for cb in self._callbacks:
            cb(name, healthy)

    def set_ready(self, ready: bool) -> None:
        self._ready = ready
        self._last_heartbeat = int(time.time() * 1000)

    def heartbeat(self) -> None:
        self._last_heartbeat = int(time.time() * 1000)

    def register_callback(self, callback: Callable[[str, bool], None]) -> None:
        self._callbacks.append(callback)

    def is_healthy(self) -> bool:
        if not self._components:
            return True
        return all(self._components.values())

    def is_ready(self) -> bool:
        return self._ready and self.is_healthy()

    def get_status(self) -> HealthStatus:
        return HealthStatus(
            healthy=self.is_healthy(),
            ready=self.is_ready(),
            last_heartbeat_ms=self._last_heartbeat,
            components=dict(self._components),
            details=dict(self._details),
        )

    def to_dict(self) -> Dict[str, Any]:
        status = self.get_status()
        return {
            "healthy": status.healthy,
            "ready": status.ready,
            "last_heartbeat_ms": status.last_heartbeat_ms,
            "components": status.components,
            "details": status.details,
        }


def _response(status: str, body: bytes = b"", content_type: str = "application/json") -> bytes:
    return (
        f"HTTP/1.1 {status}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n\r\n"
    ).encode() + body


def _json(status: str, payload: Any) -> bytes:
    return _response(status, json.dumps(payload, default=str).encode())


async def start_metrics_server(
    engine: "TradingEngine",
    port: int,
    rich_metrics: Optional["RichMetrics"] = None,
    auth_token: Optional[str] = None,
    health_checker: Optional[HealthChecker] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    """
    Start the HTTP server. Probes need no auth; everything else requires
    ``Authorization: Bearer <token>`` or ``?token=`` when a token is set.
    """
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            writer.write(route(await reader.read(2048)))
            await writer.drain()
        finally:
            writer.close()

    def route(req: bytes) -> bytes:
        header_lines = req.split(b"\r\n") if b"\r\n" in req else []
        path_raw = b"/"
        if header_lines and b" " in header_lines[0]:
            parts = header_lines[0].split(b" ")
            if len(parts) > 1:
                path_raw = parts[1]
        headers = {}
        for line in header_lines[1:]:
            if b":" in line:
                k, v = line.split(b":", 1)
                headers[k.strip().lower()] = v.strip()

        parsed = urlparse(path_raw.decode("utf-8", errors="ignore"))
        query = parse_qs(parsed.query)

        # Probes: no auth for load balancers
        if parsed.path == "/health":
            if health_checker is None:
                return _json("200 OK", {"healthy": True, "ready": True})
            ok = health_checker.is_healthy()
            return _json("200 OK" if ok else "503 Service Unavailable", health_checker.to_dict())

        if parsed.path == "/ready":
            ready = health_checker.is_ready() if health_checker is not None else True
            return _json("200 OK" if ready else "503 Service Unavailable", {"ready": ready})

        if auth_token:
            header_auth = headers.get(b"authorization", b"").decode("utf-8", errors="ignore")
            if header_auth != f"Bearer {auth_token}" and query.get("token", [""])[0] != auth_token:
                return _response("401 Unauthorized")

        if parsed.path == "/status":
            return _json("200 OK", {
                "sessions": engine.list_sessions(query.get("owner", [None])[0]),
                "fees": engine.get_fee_report(),
                "errors": engine.get_error_stats(),
            })

        if parsed.path.startswith("/sessions/"):
            session_id = unquote(parsed.path[len("/sessions/"):])
            try:
                return _json("200 OK", engine.get_session(session_id))
            except SessionNotFound as exc:
                return _json("404 Not Found", {"error": str(exc)})

        if parsed.path == "/metrics":
            body = rich_metrics.render() if rich_metrics is not None else b""
            return _response("200 OK", body, CONTENT_TYPE_LATEST)

        return _response("404 Not Found")

    return await asyncio.start_server(handle, host, port)
