"""Pytest configuration for ipc_avionics tests.

Settings are built explicitly (never from the developer's environment)
with millisecond process durations so gateway tests finish quickly.
"""

import asyncio
import json
import random

import pytest

from ipc_avionics.bootstrap import create_runtime
from ipc_avionics.gateway.session import ConnectionSession
from ipc_avionics.observability.metrics import MetricsCollector
from ipc_avionics.security.tokens import TokenSigner
from ipc_avionics.settings import Settings, reset_settings


TEST_SECRET = "test-secret-value-for-hs256-signing"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (may use mocks)")
    config.addinivalue_line("markers", "integration: Gateway tests through FastAPI")


@pytest.fixture(autouse=True)
def _isolate_global_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        process_min_duration=0.001,
        process_max_duration=0.003,
        process_check_interval=0.001,
        process_max_retries=2,
        process_failure_rate=0.0,
        max_queue_size=5,
        token_secret=TEST_SECRET,
        log_level="WARNING",
        log_json=False,
    )


@pytest.fixture
def signer():
    return TokenSigner(TEST_SECRET)


@pytest.fixture
def metrics(mock_logger):
    return MetricsCollector(logger=mock_logger, include_runtime_collectors=False)


@pytest.fixture
def runtime(settings, mock_logger, metrics):
    return create_runtime(
        settings,
        logger=mock_logger,
        metrics=metrics,
        rng=random.Random(5),
    )


class LoopbackSocket:
    """In-memory websocket wired straight to a ConnectionSession.

    Quacks like a ``websockets`` client connection: ``send`` a JSON text
    frame, iterate for server frames, ``close`` to disconnect.
    """

    def __init__(self, runtime, connection_id):
        self.connection_id = connection_id
        self.sent = []
        self.closed = False
        self._inbound = asyncio.Queue()
        runtime.connections.try_register(connection_id)
        self.session = ConnectionSession(
            connection_id=connection_id,
            send=self._deliver,
            dispatcher=runtime.dispatcher,
            verifier=runtime.signer,
            rate_limiter=runtime.rate_limiter,
            logger=runtime.logger,
            connections=runtime.connections,
            metrics=runtime.metrics,
        )

    async def _deliver(self, event, payload):
        await self._inbound.put(json.dumps({"event": event, "payload": payload}))

    async def send(self, raw):
        message = json.loads(raw)
        self.sent.append(message)
        await self.session.handle(message)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        await self.session.close()
        await self._inbound.put(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._inbound.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


class LoopbackServer:
    """``connect`` factory handing out LoopbackSockets on one runtime."""

    def __init__(self, runtime):
        self.runtime = runtime
        self.sockets = []

    async def connect(self, url):
        socket = LoopbackSocket(self.runtime, f"loop-{len(self.sockets) + 1}")
        self.sockets.append(socket)
        return socket


@pytest.fixture
def loopback(runtime):
    return LoopbackServer(runtime)
