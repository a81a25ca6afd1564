#!/usr/bin/env python3
"""
Drain due webhook dispatch jobs.

Picks up retries scheduled by the job runner as well as jobs whose first
attempt never ran (process restart between ingestion and the background task).

Run from project root: python scripts/run_dispatch_worker.py --interval 15
"""

import argparse
import os
import sys
import time

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

# Load .env file
from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from src.config import settings
from src.dependencies import get_dispatch_queue, get_dispatcher, get_retry_policy
from src.domain.errors import PersistenceError
from src.observability import configure_logging, log_event
from src.workers.dispatch import run_due_jobs


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run the webhook dispatch worker loop.")
    parser.add_argument("--interval", type=float, default=15.0, help="Seconds to sleep between polls")
    parser.add_argument("--limit", type=int, default=settings.dispatch_batch_size, help="Jobs per poll")
    parser.add_argument("--workers", type=int, default=settings.dispatch_max_concurrent_workers)
    parser.add_argument("--once", action="store_true", help="Drain one batch and exit")
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    configure_logging(args.log_level.upper())
    queue = get_dispatch_queue()
    dispatcher = get_dispatcher()
    policy = get_retry_policy()
    log_event("dispatch_worker_started", interval=args.interval, limit=args.limit, workers=args.workers)

    while True:
        try:
            run_due_jobs(
                dispatcher=dispatcher,
                queue=queue,
                policy=policy,
                limit=args.limit,
                workers=args.workers,
                queue_size=max(args.workers, settings.dispatch_queue_size),
            )
        except PersistenceError as exc:
            log_event("dispatch_worker_poll_failed", error=str(exc))
        if args.once:
            return
        time.sleep(args.interval)


if __name__ == "__main__":
    main()
