"""Composition root: builds and wires the service graph for one process."""

import logging
from dataclasses import dataclass
from typing import Optional

from message_hub.infra.broker import BrokerAdapter
from message_hub.infra.cache import RedisCache
from message_hub.infra.config import Config
from message_hub.infra.database import create_session_factory
from message_hub.models.queue import Topology, default_topology
from message_hub.services.ingestion_pipeline import IngestionPipeline
from message_hub.services.message_store import MessageStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: Config
    broker: BrokerAdapter
    cache: RedisCache
    store: MessageStore
    pipeline: IngestionPipeline

    def start(self, topology: Optional[Topology] = None, run_retry_relay: Optional[bool] = None) -> None:
        """Connect the broker, declare topology and optionally run the retry relay."""
        self.broker.connect()
        self.broker.declare_topology(*(topology or default_topology()).as_args())

        if run_retry_relay is None:
            run_retry_relay = self.config.RUN_RETRY_RELAY
        if run_retry_relay:
            self.broker.start_retry_relay(self.config.RETRY_RELAY_POLL_INTERVAL_MS)

        logger.info("Services started", extra={"retry_relay": run_retry_relay})

    def shutdown(self) -> None:
        self.broker.close()
        self.cache.close()
        logger.info("Services stopped")


def build_services(config: Config) -> Services:
    broker = BrokerAdapter(
        config.BROKER_URL,
        key_prefix=config.BROKER_KEY_PREFIX,
        prefetch=config.QUEUE_CONCURRENCY,
        reconnect_delay_ms=config.BROKER_RECONNECT_DELAY_MS,
        max_reconnect_attempts=config.BROKER_MAX_RECONNECT_ATTEMPTS,
    )
    cache = RedisCache(config.REDIS_URL, key_prefix=config.CACHE_KEY_PREFIX)
    store = MessageStore(create_session_factory(config.DATABASE_URL))
    pipeline = IngestionPipeline(
        store,
        cache,
        broker,
        dedup_enabled=config.ENABLE_MESSAGE_DEDUPLICATION,
        max_attempts=config.QUEUE_MAX_ATTEMPTS,
        dedup_ttl_seconds=config.DEDUP_TTL_SECONDS,
        cache_ttl_seconds=config.MESSAGE_CACHE_TTL_SECONDS,
    )
    return Services(config=config, broker=broker, cache=cache, store=store, pipeline=pipeline)
