"""Integration test fixtures.

Starts a real signaling server on a free local port for each test.
"""

import logging
from collections.abc import AsyncIterator

import pytest_asyncio

from teamcall.client import SignalingClient
from teamcall.config import ServerConfig
from teamcall.server import SignalingServer

logger = logging.getLogger(__name__)


@pytest_asyncio.fixture
async def server() -> AsyncIterator[SignalingServer]:
    """Running server bound to an ephemeral port, health endpoint disabled."""
    config = ServerConfig.model_validate(
        {
            "transport": {"websocket": {"host": "127.0.0.1", "port": 0}},
            "health": {"enabled": False},
            "graceful_shutdown_timeout_s": 2,
        }
    )
    server = SignalingServer(config)
    await server.start()
    logger.info("Test server listening", extra={"port": server.port})
    try:
        yield server
    finally:
        await server.stop()


@pytest_asyncio.fixture
async def url(server: SignalingServer) -> str:
    return f"ws://127.0.0.1:{server.port}"


@pytest_asyncio.fixture
async def alice(url: str) -> AsyncIterator[SignalingClient]:
    async with SignalingClient(url) as client:
        await client.join_workspace("acme")
        yield client


@pytest_asyncio.fixture
async def bob(url: str) -> AsyncIterator[SignalingClient]:
    async with SignalingClient(url) as client:
        await client.join_workspace("acme")
        yield client
