#!/usr/bin/env python3
"""
Delete Old Terminal Jobs

Removes COMPLETED, FAILED and CANCELLED jobs that finished more than
--days ago. Pending and in-flight jobs are never touched.

Usage:
    python scripts/cleanup_jobs.py [--days=N]
"""

import argparse
import logging
import os
import sys

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("evidence_tracker.cleanup")

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.jobs.errors import StoreUnavailableError
from app.jobs.job_manager import JobManager


def main():
    parser = argparse.ArgumentParser(description="Delete old terminal jobs")
    parser.add_argument(
        "--days", "-d",
        type=int,
        default=int(os.environ.get("JOB_RETENTION_DAYS", "30")),
        help="Keep jobs that finished within this many days (default: 30)"
    )
    args = parser.parse_args()

    try:
        manager = JobManager()
    except StoreUnavailableError as e:
        logger.error(e.message)
        sys.exit(1)

    deleted = manager.cleanup_old_jobs(days_to_keep=args.days)
    print(f"Deleted {deleted} jobs older than {args.days} days")


if __name__ == "__main__":
    main()
