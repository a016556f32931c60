"""
Expired Verification Purge Worker

Deletes pending verifications (and their uploaded documents) once their
auto-delete deadline has passed.

Run once, e.g. from cron:
    python -m civic_identity.workers.purge_worker

Or keep it running and purge every hour:
    python -m civic_identity.workers.purge_worker --loop --interval 3600
"""

import argparse
import logging
import time

from civic_identity.core.database import SessionLocal
from civic_identity.core.storage import get_storage
from civic_identity.services.verification_store import VerificationRecordStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 3600


def run_once(session_factory=SessionLocal, storage=None) -> int:
    """Purge expired verifications in a fresh session; returns the count removed."""
    db = session_factory()
    try:
        return VerificationRecordStore(db).purge_expired(storage=storage or get_storage())
    finally:
        db.close()


def worker_loop(interval: int = DEFAULT_INTERVAL_SECONDS):
    """Purge on a fixed interval until interrupted"""
    logger.info("Purge worker started (interval %ss)", interval)

    while True:
        try:
            purged = run_once()
            logger.info("Purge pass removed %s verification(s)", purged)
        except Exception:
            logger.exception("Purge pass failed")
        time.sleep(interval)


def run_worker(argv=None):
    """Entry point for running the worker"""
    parser = argparse.ArgumentParser(description="Purge expired identity verifications")
    parser.add_argument("--loop", action="store_true", help="keep running and purge on an interval")
    parser.add_argument("--interval", type=int, default=DEFAULT_INTERVAL_SECONDS,
                        help="seconds between purge passes when looping")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)

    if args.loop:
        try:
            worker_loop(args.interval)
        except KeyboardInterrupt:
            logger.info("Purge worker stopped")
    else:
        purged = run_once()
        logger.info("Purged %s expired verification(s)", purged)


if __name__ == "__main__":
    run_worker()
