#!/usr/bin/env python3
"""Print broker queue statistics.

Usage:
    python scripts/inspect_queues.py [--purge QUEUE]

Shows ready, delayed and consumer counts for every standard queue.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from message_hub.infra.broker import BrokerAdapter
from message_hub.infra.config import config
from message_hub.models.queue import QueueNames, default_topology


def main():
    parser = argparse.ArgumentParser(description="Inspect broker queues")
    parser.add_argument(
        "--purge",
        metavar="QUEUE",
        choices=QueueNames.all(),
        help="Purge the named queue before printing statistics",
    )

    args = parser.parse_args()

    broker = BrokerAdapter(config.BROKER_URL, key_prefix=config.BROKER_KEY_PREFIX)
    broker.connect()
    try:
        broker.declare_topology(*default_topology().as_args())

        if args.purge:
            purged = broker.purge(args.purge)
            print(f"Purged {purged} messages from {args.purge}")

        print(f"{'QUEUE':<20} {'READY':>8} {'DELAYED':>8} {'CONSUMERS':>10}")
        for name in QueueNames.all():
            info = broker.inspect(name)
            print(f"{info.queue:<20} {info.message_count:>8} {info.delayed_count:>8} {info.consumer_count:>10}")
    finally:
        broker.close()


if __name__ == "__main__":
    main()
