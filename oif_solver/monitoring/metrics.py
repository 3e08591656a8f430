"""
Prometheus metrics for the solver and the HTTP endpoint that serves them.

Organized into: indexing, intents, handlers.

Endpoints:
- /metrics - Prometheus text (auth required if token set)
- /health  - Liveness probe (no auth)
- /ready   - Readiness probe: every listener running (no auth)
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from oif_solver.core.json_utils import dumps


class SolverMetrics:
    """Indexing, intent and handler metrics for one solver process."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Indexing Metrics ===
        self.events_seen = Counter(
            'open_events_seen_total',
            'Open events delivered to the solver',
            labelnames=['network'],
            registry=reg
        )
        self.last_indexed_block = Gauge(
            'last_indexed_block',
            'Last block persisted as fully processed',
            labelnames=['network'],
            registry=reg
        )
        self.listener_errors = Counter(
            'listener_errors_total',
            'Listener poll iterations that failed',
            labelnames=['network'],
            registry=reg
        )

        # === Intent Metrics ===
        self.intents = Counter(
            'intents_total',
            'Intents processed by outcome',
            labelnames=['result'],
            registry=reg
        )
        self.rule_failures = Counter(
            'rule_failures_total',
            'Intents rejected per rule',
            labelnames=['rule'],
            registry=reg
        )

        # === Handler Metrics ===
        self.handler_latency = Histogram(
            'handler_latency_seconds',
            'Fill/settle call duration (seconds)',
            labelnames=['operation', 'chain_type'],
            buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
            registry=reg
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)


class HealthChecker:
    """
    Component health for the /health and /ready endpoints.

    Components are the listeners by network name; the process is ready
    once at least one component is registered and all are healthy.
    """

    def __init__(self) -> None:
        self._components: Dict[str, bool] = {}
        self._details: Dict[str, Any] = {}
        self._last_heartbeat = int(time.time() * 1000)
        self._callbacks: List[Callable[[str, bool], None]] = []

    def set_component_health(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        self._components[name] = healthy
        if detail:
            self._details[name] = detail
        else:
            self._details.pop(name, None)
        self._last_heartbeat = int(time.time() * 1000)
        for cb in self._callbacks:
            cb(name, healthy)

    def register_callback(self, callback: Callable[[str, bool], None]) -> None:
        self._callbacks.append(callback)

    def is_healthy(self) -> bool:
        return all(self._components.values())

    def is_ready(self) -> bool:
        return bool(self._components) and self.is_healthy()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.is_healthy(),
            "ready": self.is_ready(),
            "last_heartbeat_ms": self._last_heartbeat,
            "components": dict(self._components),
            "details": dict(self._details),
        }


def _response(status: bytes, content_type: bytes, body: bytes) -> bytes:
    return (
        b"HTTP/1.1 " + status + b"\r\n"
        b"Content-Type: " + content_type + b"\r\n"
        b"Connection: close\r\n\r\n"
        + body
    )


async def start_metrics_server(
    metrics: SolverMetrics,
    port: int,
    auth_token: Optional[str] = None,
    health_checker: Optional[HealthChecker] = None,
    host: str = "0.0.0.0",
) -> asyncio.AbstractServer:
    """Start the HTTP server for /metrics, /health and /ready."""
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        req = await reader.read(2048)
        path_raw = b"/"
        header_lines = req.split(b"\r\n") if b"\r\n" in req else []
        if header_lines and header_lines[0].count(b" ") >= 1:
            path_raw = header_lines[0].split(b" ")[1]
        headers = {}
        for line in header_lines[1:]:
            if b":" in line:
                k, v = line.split(b":", 1)
                headers[k.strip().lower()] = v.strip()

        parsed = urlparse(path_raw.decode("utf-8", errors="ignore"))
        query = parse_qs(parsed.query)

        # Probes - no auth required for load balancers
        if parsed.path in ("/health", "/ready"):
            if health_checker is None:
                ok = True
                body = dumps({"healthy": True, "ready": True})
            else:
                ok = health_checker.is_healthy() if parsed.path == "/health" else health_checker.is_ready()
                body = dumps(health_checker.to_dict())
            status = b"200 OK" if ok else b"503 Service Unavailable"
            writer.write(_response(status, b"application/json", body.encode()))
        elif parsed.path == "/metrics":
            header_auth = headers.get(b"authorization", b"").decode("utf-8", errors="ignore")
            if auth_token and header_auth != f"Bearer {auth_token}" and query.get("token", [""])[0] != auth_token:
                writer.write(b"HTTP/1.1 401 Unauthorized\r\nConnection: close\r\n\r\n")
            else:
                writer.write(_response(b"200 OK", CONTENT_TYPE_LATEST.encode(), metrics.render()))
        else:
            writer.write(b"HTTP/1.1 404 Not Found\r\nConnection: close\r\n\r\n")
        await writer.drain()
        writer.close()

    return await asyncio.start_server(handle, host, port)
