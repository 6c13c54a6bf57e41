#!/usr/bin/env python3
"""
Run the auto-apply worker: sweeps every 30 minutes, sends recruiter digests
daily at DIGEST_HOUR, cleans the expansion cache at CACHE_CLEANUP_HOUR.

Usage:
  - Long-running (recommended): python run_worker.py
  - Cron: install with python setup_cron.py, which calls this script with
      --sweep every SWEEP_INTERVAL_MINUTES and --digest daily
  - One queue drain: python run_worker.py --once
"""
from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from autoapply.config import load_settings
from autoapply.log import get_logger
from autoapply.worker import Worker, build_services

log = get_logger(__name__)


def main(argv: list[str]) -> int:
    settings = load_settings()
    services = build_services(settings)

    if "--sweep" in argv:
        result = services.engine.process_all_subscriptions()
        services.queue.run_pending(limit=500)
        log.info("Sweep complete: %d subscriptions, %d applications", result["processed"], result["applied"])
        return 0
    if "--digest" in argv:
        result = services.digests.flush()
        log.info("Digests: %d sent, %d failed", result["sent"], result["failed"])
        return 0 if not result["failed"] else 1

    worker = Worker(services)
    if "--once" in argv:
        stats = worker.run_once(max_tasks=500)
        log.info("Run complete: %d completed, %d retried, %d failed", stats.completed, stats.retried, stats.failed)
        return 0

    if not settings.groq_api_key:
        log.warning("GROQ_API_KEY not set; query expansion and scoring use rules only")
    if not settings.smtp_configured:
        log.warning("SMTP not configured; digests will stay unsent until it is")
    try:
        worker.serve()
    except KeyboardInterrupt:
        log.info("Worker stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
