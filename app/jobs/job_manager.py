"""
Job Manager

Persistence for job records in the Supabase `jobs` table: creation, status
transitions, progress and log writes, and the read projections used for polling.

Every status transition is a conditional update filtered on the statuses it may
leave from, so a transition and its timestamp/field writes land together or
not at all. A transition whose filter matches no row returns a falsy value;
callers decide what that race means.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from app.jobs.errors import JobConflictError, JobNotFoundError, StoreUnavailableError
from app.jobs.job_types import (
    ACTIVE_STATUSES, IN_FLIGHT_STATUSES, TERMINAL_STATUSES,
    JobLogEntry, JobSnapshot, JobStatsResponse, JobStatus, JobType, is_terminal,
)
from app.jobs.utils import decode_json_field, safe_json_value, utc_now_iso
from app.supabase_client import get_supabase

logger = logging.getLogger(__name__)

JOBS_TABLE = "jobs"
CANCELLATION_MESSAGE = "Job cancelled by user"


class JobManager:
    """
    Owns reads and writes of job records. Holds no job state of its own.
    """

    def __init__(self, supabase=None):
        self.supabase = supabase or get_supabase()
        if self.supabase is None:
            raise StoreUnavailableError("Database unavailable: Supabase is not configured")

    # ------------------------------------------------------------------
    # Creation & reads
    # ------------------------------------------------------------------

    def create_job(
        self,
        job_type: JobType,
        config: Optional[Dict[str, Any]] = None,
        document_id: Optional[str] = None,
        block_id: Optional[str] = None,
        retry_of_job_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Persist a new PENDING job and return the stored record."""
        job_id = str(uuid4())
        job_record = {
            "id": job_id,
            "type": job_type.value,
            "status": JobStatus.PENDING.value,
            "progress": 0,
            "status_message": None,
            "config": config or {},
            "logs": [],
            "result": None,
            "error": None,
            "created_at": utc_now_iso(),
            "started_at": None,
            "completed_at": None,
            "document_id": document_id,
            "block_id": block_id,
            "retry_of_job_id": retry_of_job_id,
        }

        result = self.supabase.table(JOBS_TABLE).insert(job_record).execute()
        created_job = result.data[0] if result.data else job_record

        logger.info(f"Created job {job_id} of type {job_type.value}")
        return created_job

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get full job record by ID, or None when it does not exist."""
        result = self.supabase.table(JOBS_TABLE)\
            .select("*")\
            .eq("id", job_id)\
            .limit(1)\
            .execute()
        return result.data[0] if result.data else None

    def get_status(self, job_id: str) -> Optional[str]:
        """Current status of a job, or None if it cannot be read."""
        try:
            result = self.supabase.table(JOBS_TABLE)\
                .select("status")\
                .eq("id", job_id)\
                .limit(1)\
                .execute()
            return result.data[0]["status"] if result.data else None
        except Exception as e:
            logger.warning(f"Error reading status of job {job_id}: {e}")
            return None

    def get_snapshot(self, job_id: str) -> JobSnapshot:
        """Status Reporter read path. Raises JobNotFoundError for unknown ids."""
        job = self.get_job(job_id)
        if not job:
            raise JobNotFoundError(job_id)
        return self.to_snapshot(job)

    def list_snapshots(
        self,
        job_type: Optional[JobType] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[JobSnapshot], int]:
        """
        List jobs newest first.
        Returns (snapshots, total_count).
        """
        query = self.supabase.table(JOBS_TABLE).select("*", count="exact")

        if job_type:
            query = query.eq("type", job_type.value)

        if status:
            query = query.eq("status", status.value)

        result = query\
            .order("created_at", desc=True)\
            .range(offset, offset + limit - 1)\
            .execute()

        jobs = result.data or []
        total = result.count if result.count is not None else len(jobs)
        return [self.to_snapshot(j) for j in jobs], total

    def get_stats(self) -> JobStatsResponse:
        """Count jobs by status."""
        result = self.supabase.table(JOBS_TABLE).select("status").execute()
        stats = JobStatsResponse()

        for row in result.data or []:
            stats.total += 1
            status = row.get("status")
            if status == JobStatus.PENDING.value:
                stats.pending += 1
            elif status in (JobStatus.PROCESSING.value, JobStatus.RUNNING.value):
                stats.processing += 1
            elif status == JobStatus.COMPLETED.value:
                stats.completed += 1
            elif status == JobStatus.FAILED.value:
                stats.failed += 1
            elif status == JobStatus.CANCELLED.value:
                stats.cancelled += 1

        return stats

    def find_pending_jobs(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Oldest PENDING jobs first."""
        result = self.supabase.table(JOBS_TABLE)\
            .select("*")\
            .eq("status", JobStatus.PENDING.value)\
            .order("created_at")\
            .limit(limit)\
            .execute()
        return result.data or []

    @staticmethod
    def to_snapshot(job: Dict[str, Any]) -> JobSnapshot:
        """Project a stored record into its wire snapshot."""
        logs = []
        for entry in decode_json_field(job.get("logs"), default=[]) or []:
            if isinstance(entry, dict) and "message" in entry:
                logs.append(JobLogEntry(
                    timestamp=str(entry.get("timestamp") or ""),
                    level=entry.get("level") or "info",
                    message=str(entry["message"]),
                ))

        return JobSnapshot(
            id=job["id"],
            type=job["type"],
            status=JobStatus(job["status"]),
            progress=int(job.get("progress") or 0),
            status_message=job.get("status_message"),
            config=decode_json_field(job.get("config")),
            logs=logs,
            result=decode_json_field(job.get("result")),
            error=job.get("error"),
            created_at=job.get("created_at"),
            started_at=job.get("started_at"),
            completed_at=job.get("completed_at"),
            document_id=job.get("document_id"),
            block_id=job.get("block_id"),
            retry_of_job_id=job.get("retry_of_job_id"),
        )

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        job_id: str,
        update_data: Dict[str, Any],
        from_statuses: Iterable[JobStatus]
    ) -> Optional[Dict[str, Any]]:
        """Apply update_data only if the job is currently in one of from_statuses."""
        result = self.supabase.table(JOBS_TABLE)\
            .update(update_data)\
            .eq("id", job_id)\
            .in_("status", [s.value for s in from_statuses])\
            .execute()
        return result.data[0] if result.data else None

    def mark_processing(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Claim a PENDING job. Returns the claimed record, or None if it was not PENDING."""
        return self._transition(
            job_id,
            {
                "status": JobStatus.PROCESSING.value,
                "started_at": utc_now_iso(),
            },
            (JobStatus.PENDING,)
        )

    def mark_completed(self, job_id: str, result: Any) -> bool:
        """Finish an in-flight job with its result."""
        updated = self._transition(
            job_id,
            {
                "status": JobStatus.COMPLETED.value,
                "result": safe_json_value(result),
                "error": None,
                "progress": 100,
                "completed_at": utc_now_iso(),
            },
            IN_FLIGHT_STATUSES
        )
        if updated:
            logger.info(f"Job {job_id} completed")
        return updated is not None

    def mark_failed(
        self,
        job_id: str,
        message: str,
        from_statuses: Iterable[JobStatus] = IN_FLIGHT_STATUSES
    ) -> bool:
        """Finish a job with an error message."""
        updated = self._transition(
            job_id,
            {
                "status": JobStatus.FAILED.value,
                "error": message or "Unknown error",
                "result": None,
                "completed_at": utc_now_iso(),
            },
            from_statuses
        )
        if updated:
            logger.info(f"Job {job_id} failed: {message}")
        return updated is not None

    def cancel_job(self, job_id: str) -> Dict[str, Any]:
        """
        Soft-cancel a pending or in-flight job.
        Raises JobNotFoundError or JobConflictError; returns the cancelled record.
        """
        job = self.get_job(job_id)
        if not job:
            raise JobNotFoundError(job_id)

        status = job.get("status")
        if is_terminal(status):
            raise JobConflictError(f"Cannot cancel job with status: {status}", status=status)

        updated = self._transition(
            job_id,
            {
                "status": JobStatus.CANCELLED.value,
                "error": CANCELLATION_MESSAGE,
                "result": None,
                "completed_at": utc_now_iso(),
            },
            ACTIVE_STATUSES
        )

        if not updated:
            # Reached a terminal state between the read and the update
            current = self.get_status(job_id)
            raise JobConflictError(f"Cannot cancel job with status: {current}", status=current)

        logger.info(f"Job {job_id} cancelled (was {status})")
        return updated

    # ------------------------------------------------------------------
    # Best-effort observability writes
    # ------------------------------------------------------------------

    def update_progress(
        self,
        job_id: str,
        percent: float,
        status_message: Optional[str] = None
    ) -> bool:
        """Update advisory progress. Never raises."""
        update_data: Dict[str, Any] = {"progress": int(min(100, max(0, percent)))}
        if status_message is not None:
            update_data["status_message"] = status_message

        try:
            self.supabase.table(JOBS_TABLE)\
                .update(update_data)\
                .eq("id", job_id)\
                .execute()
            return True
        except Exception as e:
            logger.error(f"Error updating progress for job {job_id}: {e}")
            return False

    def write_logs(self, job_id: str, logs: List[Dict[str, Any]]) -> bool:
        """Persist the full log sequence of a job. Never raises."""
        try:
            self.supabase.table(JOBS_TABLE)\
                .update({"logs": list(logs)})\
                .eq("id", job_id)\
                .execute()
            return True
        except Exception as e:
            logger.error(f"Error writing logs for job {job_id}: {e}")
            return False

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cleanup_old_jobs(self, days_to_keep: int = 30) -> int:
        """Delete terminal jobs that finished more than days_to_keep days ago."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days_to_keep)).isoformat()

        result = self.supabase.table(JOBS_TABLE)\
            .delete()\
            .in_("status", [s.value for s in TERMINAL_STATUSES])\
            .lt("completed_at", cutoff)\
            .execute()

        deleted = len(result.data or [])
        logger.info(f"Cleaned up {deleted} old jobs")
        return deleted

    def clear_failed_jobs(self) -> int:
        """Delete every FAILED and CANCELLED job."""
        result = self.supabase.table(JOBS_TABLE)\
            .delete()\
            .in_("status", [JobStatus.FAILED.value, JobStatus.CANCELLED.value])\
            .execute()

        deleted = len(result.data or [])
        logger.info(f"Cleared {deleted} failed and cancelled jobs")
        return deleted


# ============================================================================
# Module-level accessor
# ============================================================================

_manager: Optional[JobManager] = None


def get_job_manager() -> JobManager:
    """Shared JobManager bound to the process-wide Supabase client."""
    global _manager
    if _manager is None:
        _manager = JobManager()
    return _manager
