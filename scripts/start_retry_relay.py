#!/usr/bin/env python3
"""Start the broker retry relay.

Usage:
    python scripts/start_retry_relay.py [--poll-interval-ms 500] [--once]

Moves delayed retries whose backoff has elapsed back onto the queue they
failed on. Run this when the API process has RUN_RETRY_RELAY=false.
"""

import argparse
import signal
import sys
import threading
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from message_hub.infra.broker import BrokerAdapter
from message_hub.infra.config import config
from message_hub.infra.logging import app_logger
from message_hub.models.queue import default_topology
from message_hub.workers.retry_relay import run_retry_relay


def main():
    parser = argparse.ArgumentParser(description="Start the broker retry relay")
    parser.add_argument(
        "--poll-interval-ms",
        type=int,
        default=config.RETRY_RELAY_POLL_INTERVAL_MS,
        help=f"Pause between relay passes (default: {config.RETRY_RELAY_POLL_INTERVAL_MS})",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single pass and exit",
    )

    args = parser.parse_args()

    broker = BrokerAdapter(
        config.BROKER_URL,
        key_prefix=config.BROKER_KEY_PREFIX,
        reconnect_delay_ms=config.BROKER_RECONNECT_DELAY_MS,
        max_reconnect_attempts=config.BROKER_MAX_RECONNECT_ATTEMPTS,
    )
    broker.connect()
    broker.declare_topology(*default_topology().as_args())

    stop_event = threading.Event()

    def signal_handler(sig, frame):
        app_logger.info("Stopping retry relay")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    print(f"Starting retry relay (poll interval {args.poll_interval_ms}ms)")
    try:
        total = run_retry_relay(broker, args.poll_interval_ms, once=args.once, stop_event=stop_event)
    finally:
        broker.close()
    print(f"Relayed {total} messages")


if __name__ == "__main__":
    main()
