#!/usr/bin/env python3
"""
Sync Worker - drain pending mailbox sync jobs

Runs the batch worker against the configured database. Each invocation
claims a pending job, ingests one batch of messages and advances the job;
the loop keeps going until no work is left.

Usage:
    # Process every pending job until idle
    python sync_worker.py

    # One batch only
    python sync_worker.py --once

    # Plan a job for one owner, then drain it
    python sync_worker.py --plan alice@example.org

    # Scheduled pass: plan jobs for every account, then drain them
    python sync_worker.py --all-accounts

    # Keep polling for new jobs
    python sync_worker.py --watch

Options:
    --once              Run a single batch and exit
    --watch             Keep polling every WORKER_POLL_INTERVAL seconds
    --plan OWNER        Create a sync job for OWNER before processing
    --all-accounts      Create sync jobs for every configured account first
    --max-batches N     Stop after N batches (default: WORKER_MAX_BATCHES)
    --verbose           Show detailed processing info
"""

import sys
import time
import argparse
import logging
from pathlib import Path
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables FIRST (before any imports that need them)
load_dotenv()

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from mailsync.core.config import get_settings
from mailsync.core.database import connection, init_db
from mailsync.core.errors import describe_error
from mailsync.core.sync.models import BatchResult
from mailsync.core.sync.service import NO_NEW_EMAILS, SyncService
from mailsync.core.sync.worker import BatchWorker

logger = logging.getLogger("sync_worker")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Process pending mailbox sync jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--once', action='store_true',
                        help='Run a single batch and exit')
    parser.add_argument('--watch', action='store_true',
                        help='Keep polling for new jobs')
    parser.add_argument('--plan', type=str, default=None, metavar='OWNER',
                        help='Create a sync job for OWNER before processing')
    parser.add_argument('--all-accounts', action='store_true',
                        help='Create sync jobs for every configured account first')
    parser.add_argument('--max-batches', type=int, default=None, metavar='N',
                        help='Stop after N batches')
    parser.add_argument('--verbose', action='store_true',
                        help='Show detailed processing info')
    args = parser.parse_args(argv)
    if args.once and args.watch:
        parser.error("--once and --watch are mutually exclusive")
    return args


def summarize(results: List[BatchResult]) -> str:
    worked = [r for r in results if not r.idle]
    stored = sum(r.stored for r in worked)
    duplicates = sum(r.duplicates for r in worked)
    failed = sum(r.failed for r in worked)
    return (f"{len(worked)} batch(es): {stored} stored, "
            f"{duplicates} duplicate(s), {failed} failed")


def plan_jobs(service: SyncService, args: argparse.Namespace) -> bool:
    """Create the requested jobs. Returns False if planning failed."""
    ok = True
    if args.plan:
        try:
            job = service.create_sync_job(args.plan)
        except Exception as e:
            service.db.rollback()
            logger.error(f"Could not plan sync for {args.plan}: {describe_error(e)}")
            return False
        if job is None:
            logger.info(f"{args.plan}: {NO_NEW_EMAILS}")
        else:
            logger.info(f"{args.plan}: sync job {job.id} ({job.total_count} message(s))")

    if args.all_accounts:
        summary = service.sync_all_accounts()
        logger.info(summary['message'])
        for result in summary['results']:
            if result['status'] == 'error':
                ok = False
                logger.error(f"  {result['owner_id']}: {result['error']}")
            elif result['status'] == 'job':
                logger.info(f"  {result['owner_id']}: job {result['job_id']} ({result['total_count']} message(s))")
            else:
                logger.info(f"  {result['owner_id']}: {result['message']}")
    return ok


def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    init_db()
    if connection.SessionLocal is None:
        logger.error("DATABASE_URL is not configured")
        return 1

    ok = True
    db = connection.SessionLocal()
    try:
        ok = plan_jobs(SyncService(db), args)
        worker = BatchWorker(db)

        if args.once:
            result = worker.process_batch()
            logger.info(result.message)
            return 0 if ok and result.status != 'failed' else 1

        max_batches = args.max_batches or settings.worker_max_batches
        while True:
            results = worker.run_until_idle(max_batches=max_batches)
            if any(r.status == 'failed' for r in results):
                ok = False
            logger.info(summarize(results))
            if not args.watch:
                break
            time.sleep(settings.worker_poll_interval)
    except KeyboardInterrupt:
        logger.info("Interrupted; claimed jobs are resumed after their lease expires")
    finally:
        db.close()

    return 0 if ok else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    level = logging.DEBUG if args.verbose else settings.log_level.upper()
    logging.basicConfig(level=level, format=settings.log_format)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
