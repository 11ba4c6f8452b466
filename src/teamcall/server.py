"""Signaling server with WebSocket transport.

Main server implementation that:
1. Builds the connection registry, call store, presence tracker,
   coordinator and reaper for one server instance
2. Starts the WebSocket transport
3. Provides HTTP health check and metrics endpoints
4. Accepts client connections and feeds their events to the coordinator
5. Reaps every connection when it closes, cleanly or not
"""

import argparse
import asyncio
import logging
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite
from dotenv import load_dotenv

from teamcall.calls import CallStore
from teamcall.config import ServerConfig
from teamcall.health import HealthCheckHandler, setup_health_routes
from teamcall.lifecycle import LifecycleReaper
from teamcall.metrics import MetricsCollector
from teamcall.presence import PresenceTracker
from teamcall.rooms import ConnectionRegistry
from teamcall.signaling import SignalingCoordinator
from teamcall.transport.base import ConnectionHandle, Transport
from teamcall.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "configs" / "teamcall.yaml"


class SignalingServer:
    """One signaling server instance and all of its state.

    Every registry is owned by the instance, so several servers can run
    side by side in one process (as the tests do).

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(self, config: ServerConfig, transport: Transport | None = None) -> None:
        """Initialize signaling server.

        Args:
            config: Server configuration
            transport: Optional pre-built transport (for testing)
        """
        self.config = config

        self.registry = ConnectionRegistry()
        self.calls = CallStore()
        self.presence = PresenceTracker()
        self.metrics = MetricsCollector()
        self.coordinator = SignalingCoordinator(
            self.registry,
            self.calls,
            self.presence,
            metrics=self.metrics,
            pin_identity=config.security.pin_connection_identity,
        )
        self.reaper = LifecycleReaper(
            self.registry,
            self.coordinator,
            pending_call_ttl_s=config.calls.pending_call_ttl_s,
            sweep_interval_s=config.calls.sweep_interval_s,
            metrics=self.metrics,
        )

        if transport is None:
            ws_config = config.transport.websocket
            transport = WebSocketTransport(
                host=ws_config.host,
                port=ws_config.port,
                max_connections=ws_config.max_connections,
                max_message_bytes=ws_config.max_message_bytes,
                ping_interval_s=ws_config.ping_interval_s,
                ping_timeout_s=ws_config.ping_timeout_s,
            )
        self.transport = transport

        self._accept_task: asyncio.Task[None] | None = None
        self._connection_tasks: set[asyncio.Task[None]] = set()
        self._health_runner: AppRunner | None = None

    @property
    def port(self) -> int:
        """Port the WebSocket transport is listening on."""
        if isinstance(self.transport, WebSocketTransport):
            return self.transport.bound_port
        return self.config.transport.websocket.port

    async def start(self) -> None:
        """Start transport, reaper, health endpoint and the accept loop."""
        await self.transport.start()
        await self.reaper.start()

        if self.config.health.enabled:
            handler = HealthCheckHandler(self.transport, self.registry, self.calls, self.metrics)
            health_app = Application()
            setup_health_routes(health_app, handler)
            self._health_runner = AppRunner(health_app)
            await self._health_runner.setup()
            site = TCPSite(self._health_runner, self.config.health.host, self.config.health_port)
            await site.start()
            logger.info(
                "Health check server started",
                extra={"host": self.config.health.host, "port": self.config.health_port},
            )

        self._accept_task = asyncio.create_task(self._accept_loop())
        logger.info(
            "Signaling server ready",
            extra={"transport": self.transport.transport_type, "port": self.port},
        )

    async def wait_closed(self) -> None:
        """Block until the accept loop ends (it normally runs forever)."""
        if self._accept_task is not None:
            await self._accept_task

    async def stop(self) -> None:
        """Shut down gracefully, reaping every open connection."""
        logger.info("Shutting down signaling server")

        if self._accept_task is not None:
            self._accept_task.cancel()
            try:
                await self._accept_task
            except asyncio.CancelledError:
                pass
            self._accept_task = None

        await self.reaper.stop()

        # Closing the transport ends every receive loop, which reaps its connection
        await self.transport.stop()
        await self.registry.close_all()

        if self._connection_tasks:
            logger.info(
                "Waiting for connections to finish",
                extra={"count": len(self._connection_tasks)},
            )
            _, pending = await asyncio.wait(
                self._connection_tasks, timeout=self.config.graceful_shutdown_timeout_s
            )
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None
            logger.info("Health check server stopped")

        logger.info("Signaling server stopped")

    async def handle_connection(self, connection: ConnectionHandle) -> None:
        """Run one connection from greeting to cleanup.

        Events are processed strictly in arrival order for this connection.
        """
        connection_id = connection.connection_id
        await self.coordinator.connection_opened(connection)
        try:
            async for event in connection.receive_events():
                await self.coordinator.handle_event(connection_id, event)
        except ConnectionError as e:
            logger.warning(
                "Connection lost",
                extra={"connection_id": connection_id, "error": str(e)},
            )
        finally:
            await self.reaper.on_disconnect(connection_id)
            await connection.close(reason="disconnected")

    async def _accept_loop(self) -> None:
        while True:
            connection = await self.transport.accept_connection()
            logger.debug(
                "Connection accepted", extra={"connection_id": connection.connection_id}
            )
            task = asyncio.create_task(self.handle_connection(connection))
            self._connection_tasks.add(task)
            task.add_done_callback(self._connection_tasks.discard)


async def start_server(config_path: Path | None = None, server: SignalingServer | None = None) -> None:
    """Start the signaling server and run until interrupted.

    Args:
        config_path: Path to YAML config file (defaults to configs/teamcall.yaml
            when present, built-in defaults otherwise)
        server: Optional pre-created server (for testing)
    """
    if config_path is not None:
        config = ServerConfig.from_yaml(config_path)
    else:
        config = ServerConfig.from_yaml_with_defaults(DEFAULT_CONFIG_PATH)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    if server is None:
        server = SignalingServer(config)

    await server.start()
    try:
        await server.wait_closed()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        await server.stop()


def main() -> None:
    """Entry point for the signaling server."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="Call signaling server")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to server config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Signaling server interrupted")


if __name__ == "__main__":
    main()
