#!/usr/bin/env python3
"""
Evidence Tracker Job Worker

Sweeps PENDING jobs that were never dispatched (for example after an API
restart) and runs them through the job runner, oldest first.

Usage:
    python worker.py [--poll-interval=S] [--batch-size=N] [--once]

Features:
- Same compare-and-set claim as in-process dispatch, so racing a request's
  background task is harmless
- Graceful shutdown on signals
"""

import asyncio
import logging
import os
import signal
import sys
import argparse

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("evidence_tracker.worker")

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from app.jobs.errors import StoreUnavailableError
from app.jobs.job_manager import JobManager
from app.jobs.registry import build_default_registry
from app.jobs.runner import JobRunner


class PendingJobWorker:
    """
    Worker that polls for and executes pending jobs.
    """

    def __init__(
        self,
        runner: JobRunner,
        poll_interval: float = 5.0,
        batch_size: int = 10
    ):
        self.runner = runner
        self.poll_interval = poll_interval
        self.batch_size = batch_size

        self._running = False
        self._shutdown_event = asyncio.Event()

        logger.info(f"Worker initialized with batch_size={batch_size}, poll_interval={poll_interval}s")

    async def run_once(self) -> int:
        """Process one batch of pending jobs. Returns the number completed."""
        completed = await self.runner.process_pending_jobs(self.batch_size)
        if completed:
            logger.info(f"Completed {completed} pending job(s)")
        return completed

    async def start(self):
        """Start the worker and poll until shutdown."""
        self._running = True
        logger.info("Worker starting...")

        # Set up signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in poll loop: {e}")

            # Wait before next poll
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.poll_interval
                )
                break
            except asyncio.TimeoutError:
                pass

        logger.info("Job poll loop stopped")

    def stop(self):
        """Handle shutdown signal."""
        logger.info("Worker received shutdown signal")
        self._running = False
        self._shutdown_event.set()


def main():
    """Main entry point for the worker."""
    parser = argparse.ArgumentParser(description="Evidence Tracker Job Worker")
    parser.add_argument(
        "--poll-interval", "-p",
        type=float,
        default=float(os.environ.get("WORKER_POLL_INTERVAL", "5.0")),
        help="Seconds between sweeps (default: 5.0)"
    )
    parser.add_argument(
        "--batch-size", "-b",
        type=int,
        default=int(os.environ.get("WORKER_BATCH_SIZE", "10")),
        help="Maximum pending jobs per sweep (default: 10)"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit"
    )

    args = parser.parse_args()

    try:
        manager = JobManager()
    except StoreUnavailableError as e:
        logger.error(e.message)
        sys.exit(1)

    worker = PendingJobWorker(
        JobRunner(manager, build_default_registry()),
        poll_interval=args.poll_interval,
        batch_size=args.batch_size
    )

    try:
        if args.once:
            asyncio.run(worker.run_once())
        else:
            asyncio.run(worker.start())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")

    logger.info("Worker stopped")


if __name__ == "__main__":
    main()
