"""Health check and metrics endpoints.

Provides HTTP endpoints for load balancers, monitoring systems and
orchestration tools (Docker healthcheck, Kubernetes probes), plus a
Prometheus scrape target.
"""

import logging
import time
from typing import Any

from aiohttp import web

from teamcall.calls import CallStore
from teamcall.metrics import MetricsCollector
from teamcall.rooms import ConnectionRegistry
from teamcall.transport.base import Transport

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the signaling server.

    /health reports whether the transport is accepting connections along
    with current connection and call counts.
    """

    def __init__(
        self,
        transport: Transport | None,
        registry: ConnectionRegistry,
        calls: CallStore,
        metrics: MetricsCollector,
    ) -> None:
        self.transport = transport
        self.registry = registry
        self.calls = calls
        self.metrics = metrics
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Transport is running
            503 Service Unavailable: Transport is down

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "transport": {"type": str | null, "running": bool},
            "connections": int,
            "rooms": int,
            "calls": int,
            "participants": int
        }
        """
        transport_ok = self.transport is not None and self.transport.is_running
        response_data: dict[str, Any] = {
            "status": "healthy" if transport_ok else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "transport": {
                "type": self.transport.transport_type if self.transport else None,
                "running": transport_ok,
            },
            "connections": self.registry.connection_count,
            "rooms": self.registry.room_count,
            "calls": self.calls.call_count,
            "participants": self.calls.participant_count,
        }

        logger.debug("Health check performed", extra={"status": response_data["status"]})
        return web.json_response(response_data, status=200 if transport_ok else 503)

    async def readiness_check(self, request: web.Request) -> web.Response:
        """Readiness check endpoint (same criteria as /health)."""
        return await self.health_check(request)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK whenever the process can answer, even if the transport
        is down.
        """
        return web.json_response(
            {"status": "alive", "uptime_seconds": time.time() - self.start_time},
            status=200,
        )

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint."""
        try:
            metrics_text = self.metrics.export_prometheus()
            return web.Response(
                text=metrics_text,
                content_type="text/plain",
                charset="utf-8",
                headers={"X-Prometheus-Format": "0.0.4"},
                status=200,
            )
        except Exception as e:
            logger.error("Failed to export metrics", extra={"error": str(e)}, exc_info=True)
            return web.Response(
                text=f"# Error exporting metrics: {e}\n",
                content_type="text/plain",
                status=500,
            )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Human-readable metrics summary endpoint."""
        try:
            return web.json_response(
                {
                    "status": "ok",
                    "uptime_seconds": time.time() - self.start_time,
                    "metrics": self.metrics.get_summary(),
                },
                status=200,
            )
        except Exception as e:
            logger.error(
                "Failed to generate metrics summary", extra={"error": str(e)}, exc_info=True
            )
            return web.json_response({"status": "error", "error": str(e)}, status=500)


def setup_health_routes(app: web.Application, handler: HealthCheckHandler) -> None:
    """Set up health check routes on an application."""
    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/readiness", handler.readiness_check)
    app.router.add_get("/liveness", handler.liveness_check)
    app.router.add_get("/metrics", handler.metrics_endpoint)
    app.router.add_get("/metrics/summary", handler.metrics_summary)

    logger.info(
        "Health check endpoints configured: "
        "/health, /readiness, /liveness, /metrics, /metrics/summary"
    )
