#!/usr/bin/env python3
"""
Celery worker for the storefront orders service.

Runs the worker with an embedded beat scheduler, so failed payments are
picked up for retry once their next_retry_at passes. Extra command line
arguments are handed to the worker unchanged, e.g.
``python celery_worker.py --concurrency=4``.
"""
import sys

from dotenv import load_dotenv

load_dotenv()

if __name__ == "__main__":
    from core.celery import celery_app
    from core.config import settings
    from core.logging import configure_logging

    configure_logging()

    celery_app.start([
        "worker",
        "--beat",
        f"--loglevel={settings.LOG_LEVEL.lower()}",
        "--concurrency=2",
        "--without-gossip",
        "--without-mingle",
        *sys.argv[1:],
    ])
