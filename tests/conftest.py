import logging

import pytest

from pubsub_session import (
    AutoAckPeer,
    LoopbackTransport,
    SessionClient,
    SessionConfig,
)
from pubsub_session.core.base import generate_unique_id

# === Configure Logging ===
logging.basicConfig(level=logging.INFO, format="%(levelname)-8s %(message)s")


# === Session Config ===
def make_config(**overrides) -> SessionConfig:
    """Fast timings so handshake and retry paths finish within a test."""
    values = dict(
        client_id=generate_unique_id("test"),
        keepalive=0,
        retry_interval=0.05,
        max_retries=2,
        handshake_timeout=1.0,
        dispatch_timeout=1.0,
        work_queue_capacity=10,
        worker_count=2,
    )
    values.update(overrides)
    return SessionConfig(**values)


@pytest.fixture(scope="function")
def config() -> SessionConfig:
    return make_config()


@pytest.fixture(scope="function")
def peer() -> AutoAckPeer:
    return AutoAckPeer()


@pytest.fixture(scope="function")
def transport(peer) -> LoopbackTransport:
    return LoopbackTransport(peer=peer)


@pytest.fixture(scope="function")
def client(transport, config):
    client = SessionClient(transport, config)
    yield client
    if client.is_connected:
        client.disconnect()


@pytest.fixture(scope="function")
def connected_client(client):
    return client.connect()
