"""Shared test fixtures for the long-poll bridge."""
import pytest
import pytest_asyncio
import httpx

from api.main import create_app
from broker.attachments import AttachmentStore
from broker.service import Broker
from config.settings import BrokerConfig, ConsumerConfig
from relay.broadcast import BroadcastRelay


LONG_POLL_TIMEOUT = 0.3


@pytest.fixture
def broker_config() -> BrokerConfig:
    return BrokerConfig(long_poll_timeout=LONG_POLL_TIMEOUT)


@pytest.fixture
def broker(broker_config) -> Broker:
    return Broker(broker_config)


@pytest.fixture
def store() -> AttachmentStore:
    return AttachmentStore()


@pytest.fixture
def relay() -> BroadcastRelay:
    return BroadcastRelay()


@pytest.fixture
def app(broker, relay):
    return create_app(broker=broker, relay=relay)


@pytest_asyncio.fixture
async def api_client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def consumer_config() -> ConsumerConfig:
    return ConsumerConfig(
        broker_url="http://testserver",
        auth_token="test-token",
        client_timeout_margin=2.0,
        backoff_floor=0.01,
        backoff_max=0.05,
        ack_attempts=1,
        settle_delay=0.0,
    )
