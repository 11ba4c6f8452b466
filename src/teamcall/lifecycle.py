"""Connection lifecycle reaper.

Turns transport-level disconnects into the same membership removal an
explicit ``leave_call`` performs, so state stays consistent when a client
vanishes without saying goodbye. Also sweeps calls that were created but
never joined.

Heartbeats are not implemented here: the transport's keepalive closes dead
connections and the server calls ``on_disconnect`` when that happens.
"""

import asyncio
import logging
from contextlib import suppress

from teamcall.metrics import MetricsCollector
from teamcall.rooms import ConnectionRegistry
from teamcall.signaling import ReleaseResult, SignalingCoordinator

logger = logging.getLogger(__name__)


class LifecycleReaper:
    """Disconnect cleanup and pending-call expiry."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        coordinator: SignalingCoordinator,
        pending_call_ttl_s: float = 120.0,
        sweep_interval_s: float = 15.0,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize the reaper.

        Args:
            registry: Connection registry to purge on disconnect
            coordinator: Coordinator that owns call/presence mutations
            pending_call_ttl_s: Age after which a never-joined call is removed
            sweep_interval_s: How often the background sweep runs
            metrics: Optional metrics collector
        """
        self._registry = registry
        self._coordinator = coordinator
        self._pending_call_ttl_s = pending_call_ttl_s
        self._sweep_interval_s = sweep_interval_s
        self._metrics = metrics
        self._sweep_task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def on_disconnect(self, connection_id: str) -> ReleaseResult | None:
        """Clean up a departed connection.

        Returns:
            What was removed, or None if the connection was already reaped
        """
        if not self._registry.is_registered(connection_id):
            logger.debug("Connection already reaped", extra={"connection_id": connection_id})
            return None

        rooms = self._registry.on_disconnect(connection_id)
        result = await self._coordinator.release_connection(connection_id, rooms)
        if self._metrics:
            self._metrics.record_connection_closed()

        logger.info(
            "Connection reaped",
            extra={
                "connection_id": connection_id,
                "rooms": rooms,
                "left_call_id": result.left_call_id,
                "discarded_calls": len(result.discarded_call_ids),
            },
        )
        return result

    async def sweep_once(self) -> list[str]:
        """Expire pending calls older than the TTL."""
        return await self._coordinator.expire_pending_calls(self._pending_call_ttl_s)

    async def start(self) -> None:
        """Start the periodic sweep."""
        if self.is_running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Lifecycle reaper started",
            extra={
                "pending_call_ttl_s": self._pending_call_ttl_s,
                "sweep_interval_s": self._sweep_interval_s,
            },
        )

    async def stop(self) -> None:
        """Stop the periodic sweep."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._sweep_task
        self._sweep_task = None
        logger.info("Lifecycle reaper stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_s)
            try:
                expired = await self.sweep_once()
                if expired:
                    logger.info("Expired pending calls", extra={"count": len(expired)})
            except Exception:
                logger.exception("Pending call sweep failed")
