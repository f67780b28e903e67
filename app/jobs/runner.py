"""
Job Runner

Executes background jobs through their lifecycle:
- Claims a PENDING job with a compare-and-set to PROCESSING
- Resolves and invokes the registered processor
- Records the result or error with an in-flight-only conditional update
- Drops results that arrive after the job was cancelled
"""

import asyncio
import logging
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.jobs.errors import JobCancelledError, JobNotFoundError
from app.jobs.job_manager import JobManager, get_job_manager
from app.jobs.job_types import JobStatus, LogLevel
from app.jobs.registry import ProcessorRegistry, get_registry
from app.jobs.utils import decode_json_field, format_duration, utc_now_iso

logger = logging.getLogger(__name__)

LATE_RESULT_MESSAGE = "Discarded late result: job was cancelled while processing"

_PY_LOG_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


@dataclass
class JobContext:
    """
    Context object passed to processors.
    Provides the job's config and associations, log and progress reporting,
    and cancellation checking.
    """
    job_id: str
    job_type: str
    config: Dict[str, Any]
    document_id: Optional[str]
    block_id: Optional[str]

    _manager: JobManager = field(repr=False)
    _logs: List[Dict[str, Any]] = field(default_factory=list, repr=False)
    _cancelled: bool = field(default=False, repr=False)

    @property
    def supabase(self):
        """Store client shared with the job manager."""
        return self._manager.supabase

    @property
    def logs(self) -> List[Dict[str, Any]]:
        return list(self._logs)

    def log(self, message: str, level: LogLevel = LogLevel.INFO):
        """Append an entry to the job's log. Store failures are swallowed."""
        level = LogLevel(level)
        self._logs.append({
            "timestamp": utc_now_iso(),
            "level": level.value,
            "message": message,
        })
        logger.log(_PY_LOG_LEVELS[level], f"[Job {self.job_id}] {message}")

        try:
            self._manager.write_logs(self.job_id, self._logs)
        except Exception as e:
            logger.error(f"Failed to persist log for job {self.job_id}: {e}")

    def debug(self, message: str):
        self.log(message, LogLevel.DEBUG)

    def info(self, message: str):
        self.log(message, LogLevel.INFO)

    def warn(self, message: str):
        self.log(message, LogLevel.WARN)

    def error(self, message: str):
        self.log(message, LogLevel.ERROR)

    def update_progress(self, percent: float, status_message: Optional[str] = None):
        """Update advisory progress (0-100)."""
        try:
            self._manager.update_progress(self.job_id, percent, status_message)
        except Exception as e:
            logger.error(f"Failed to update progress for job {self.job_id}: {e}")

    def check_cancelled(self) -> bool:
        """Check if the job has been cancelled. Returns True if should stop."""
        if self._cancelled:
            return True

        if self._manager.get_status(self.job_id) == JobStatus.CANCELLED.value:
            self._cancelled = True
            return True

        return False

    def raise_if_cancelled(self):
        """Stop processing by raising JobCancelledError once the job is cancelled."""
        if self.check_cancelled():
            raise JobCancelledError(self.job_id)


class JobRunner:
    """
    Executes processors with lifecycle management.
    """

    def __init__(self, manager: JobManager, registry: ProcessorRegistry):
        self.manager = manager
        self.registry = registry

    def _build_context(self, job: Dict[str, Any]) -> JobContext:
        config = decode_json_field(job.get("config"), default={})
        logs = decode_json_field(job.get("logs"), default=[])
        return JobContext(
            job_id=job["id"],
            job_type=job["type"],
            config=config if isinstance(config, dict) else {},
            document_id=job.get("document_id"),
            block_id=job.get("block_id"),
            _manager=self.manager,
            _logs=list(logs) if isinstance(logs, list) else [],
        )

    async def run(self, job_id: str) -> bool:
        """
        Execute a job by ID.
        Returns True if the job completed, False otherwise.
        Raises JobNotFoundError if the job does not exist.
        """
        job = self.manager.get_job(job_id)
        if not job:
            raise JobNotFoundError(job_id)

        if job.get("status") != JobStatus.PENDING.value:
            logger.info(f"Skipping job {job_id}: status is {job.get('status')}")
            return False

        if not self.manager.mark_processing(job_id):
            logger.info(f"Skipping job {job_id}: claimed or cancelled before start")
            return False

        ctx = self._build_context(job)

        processor = self.registry.resolve(ctx.job_type)
        if processor is None:
            message = (
                f"Unknown job type: {ctx.job_type}. "
                f"Registered types: {', '.join(self.registry.registered_types())}"
            )
            logger.error(f"Job {job_id}: {message}")
            ctx.error(message)
            self.manager.mark_failed(job_id, message)
            return False

        ctx.info(f"Job started ({ctx.job_type})")
        started = time.monotonic()

        try:
            if asyncio.iscoroutinefunction(processor):
                result = await processor(ctx)
            else:
                # Run sync processor in executor
                loop = asyncio.get_running_loop()
                result = await loop.run_in_executor(None, processor, ctx)

        except JobCancelledError as e:
            ctx.warn("Processing stopped: job was cancelled")
            # No-op when the job is already CANCELLED
            if self.manager.mark_failed(job_id, e.message):
                logger.warning(f"Job {job_id} stopped as cancelled but was not cancelled")
            else:
                logger.info(f"Job {job_id} stopped after cancellation")
            return False

        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}\n{traceback.format_exc()}")
            message = str(e) or type(e).__name__
            ctx.error(f"Job failed: {message}")
            if not self.manager.mark_failed(job_id, message):
                self._discard_late_outcome(ctx)
            return False

        if result is None:
            result = {}

        try:
            completed = self.manager.mark_completed(job_id, result)
        except Exception as e:
            logger.error(f"Failed to record result of job {job_id}: {e}\n{traceback.format_exc()}")
            self._fail_unrecorded(ctx, f"Failed to record job result: {str(e) or type(e).__name__}")
            return False

        if not completed:
            self._discard_late_outcome(ctx)
            return False

        ctx.info(f"Job completed in {format_duration(time.monotonic() - started)}")
        return True

    def _discard_late_outcome(self, ctx: JobContext):
        """The job left PROCESSING while its processor ran; keep its terminal status."""
        ctx.warn(LATE_RESULT_MESSAGE)
        logger.warning(f"Job {ctx.job_id}: {LATE_RESULT_MESSAGE}")

    def _fail_unrecorded(self, ctx: JobContext, message: str):
        """The result could not be written; leave the job FAILED rather than PROCESSING."""
        ctx.error(message)
        try:
            if not self.manager.mark_failed(ctx.job_id, message):
                self._discard_late_outcome(ctx)
        except Exception as e:
            logger.error(f"Failed to mark job {ctx.job_id} as failed: {e}")

    async def run_safely(self, job_id: str) -> bool:
        """Run a job, logging anything that escapes the runner instead of raising."""
        try:
            return await self.run(job_id)
        except Exception as e:
            logger.error(f"Background execution of job {job_id} failed: {e}\n{traceback.format_exc()}")
            return False

    async def process_pending_jobs(self, limit: int = 10) -> int:
        """
        Run PENDING jobs left behind (e.g. after a restart), oldest first.
        Returns the number of jobs that completed.
        """
        jobs = self.manager.find_pending_jobs(limit)
        if jobs:
            logger.info(f"Found {len(jobs)} pending jobs")

        completed = 0
        for job in jobs:
            if await self.run_safely(job["id"]):
                completed += 1
        return completed


# ============================================================================
# Global runner instance
# ============================================================================

_runner: Optional[JobRunner] = None


def get_runner() -> JobRunner:
    """Get the global job runner instance."""
    global _runner
    if _runner is None:
        _runner = JobRunner(get_job_manager(), get_registry())
    return _runner
