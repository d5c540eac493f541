"""Standalone retry relay worker: moves due retries back onto their work queues."""

import logging
import threading
from typing import Optional

from message_hub.infra.broker import BrokerAdapter
from message_hub.infra.errors import BrokerConnectionError

logger = logging.getLogger(__name__)


def run_retry_relay(
    broker: BrokerAdapter,
    poll_interval_ms: int = 500,
    once: bool = False,
    stop_event: Optional[threading.Event] = None,
) -> int:
    """
    Run relay passes until stopped.

    Args:
        broker: Connected broker with topology declared
        poll_interval_ms: Pause between passes
        once: Run a single pass and return
        stop_event: Set to end the loop

    Returns:
        Total number of messages relayed
    """
    stop_event = stop_event or threading.Event()
    total = 0

    while True:
        try:
            relayed = broker.run_retry_relay_once()
        except BrokerConnectionError as e:
            # Reconnect runs in the background; give up only once it has
            if not broker.is_connected and broker.reconnect_attempts >= broker.max_reconnect_attempts:
                logger.error("Broker unavailable, stopping retry relay", extra={"error": str(e)})
                raise
            relayed = 0

        if relayed:
            total += relayed
            logger.info(f"Relayed {relayed} retry messages", extra={"relayed": relayed})

        if once or stop_event.wait(poll_interval_ms / 1000.0):
            break

    return total
