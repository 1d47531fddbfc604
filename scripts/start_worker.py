#!/usr/bin/env python3
"""Start RQ worker for processing queued tool calls.

Usage:
    python scripts/start_worker.py [--queue ai-functions] [--burst]

Only needed with TOOLHUB_QUEUE_BACKEND=rq; the local backend runs queued tools
in an in-process thread pool.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from redis import Redis
from rq import Worker, Queue

from toolhub.infra.config import config
from toolhub.infra.logging import setup_logging


def main():
    parser = argparse.ArgumentParser(description="Start RQ worker for queued tool calls")
    parser.add_argument(
        "--queue",
        default=config.QUEUE_NAME,
        help=f"Queue to process (default: {config.QUEUE_NAME})",
    )
    parser.add_argument(
        "--burst",
        action="store_true",
        help="Run in burst mode (exit when queue is empty)",
    )

    args = parser.parse_args()
    setup_logging()

    redis_conn = Redis.from_url(config.REDIS_URL)
    queue = Queue(args.queue, connection=redis_conn)

    print(f"Starting worker for queue: {args.queue}")
    if args.burst:
        print("Running in burst mode")

    worker = Worker([queue], connection=redis_conn)
    worker.work(burst=args.burst)


if __name__ == "__main__":
    main()
