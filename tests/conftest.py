"""Pytest configuration and fixtures."""

import pytest
import os
from dotenv import load_dotenv

# Load test environment variables
load_dotenv()

# Set test environment
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")

from message_hub.infra.broker import BrokerAdapter
from message_hub.infra.cache import RedisCache
from message_hub.infra.database import create_db_engine
from message_hub.infra.schema import metadata
from message_hub.models.message import IncomingMessage
from message_hub.models.queue import default_topology
from message_hub.services.ingestion_pipeline import IngestionPipeline
from message_hub.services.message_store import MessageStore
from sqlalchemy.orm import sessionmaker

from tests.fakes import FakeClock, new_redis


@pytest.fixture
def fake_redis():
    return new_redis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker(fake_redis, clock):
    """Connected broker over the in-memory Redis with the default topology declared."""
    adapter = BrokerAdapter(
        "redis://fake",
        client_factory=lambda url: fake_redis,
        clock=clock,
        sleep=lambda seconds: None,
        auto_reconnect=False,
    )
    adapter.connect()
    adapter.declare_topology(*default_topology().as_args())
    yield adapter
    adapter.close()


@pytest.fixture
def cache_redis():
    return new_redis()


@pytest.fixture
def cache(cache_redis):
    return RedisCache(client=cache_redis, key_prefix="test:")


@pytest.fixture
def db_engine():
    engine = create_db_engine("sqlite://")
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return MessageStore(sessionmaker(autocommit=False, autoflush=False, bind=db_engine))


@pytest.fixture
def pipeline(store, cache, broker):
    return IngestionPipeline(store, cache, broker, dedup_enabled=True, max_attempts=3)


@pytest.fixture
def inbound_message():
    """The canonical valid inbound submission."""
    return IncomingMessage.model_validate({
        "direction": "inbound",
        "content": {"text": "Hello"},
        "sender": {"type": "customer", "email": "a@b.com"},
        "organizationId": "org1",
        "integrationId": "int1",
    })
