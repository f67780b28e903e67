"""
Background Jobs API Routes

Provides endpoints for:
- Starting new background jobs
- Polling job status
- Listing jobs and status counts
- Clearing failed and cancelled jobs
- Cancelling and retrying jobs
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from app.jobs.errors import JobServiceError, StoreUnavailableError
from app.jobs.job_manager import JobManager, get_job_manager
from app.jobs.job_types import (
    CancelJobResponse, CreateJobRequest, JobListResponse, JobSnapshot,
    JobStartResponse, JobStatsResponse, JobStatus, JobType,
)
from app.jobs.registry import ProcessorRegistry, get_registry
from app.jobs.runner import JobRunner
from app.jobs.trigger import JobTrigger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_manager() -> JobManager:
    """Job manager, or 503 when the store is not configured."""
    try:
        return get_job_manager()
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail=e.message)


def get_processor_registry() -> ProcessorRegistry:
    return get_registry()


def get_job_runner(
    manager: JobManager = Depends(get_manager),
    registry: ProcessorRegistry = Depends(get_processor_registry)
) -> JobRunner:
    return JobRunner(manager, registry)


def _http_error(e: JobServiceError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


async def execute_job_task(runner: JobRunner, job_id: str):
    """Background task to execute a job."""
    await runner.run_safely(job_id)


def _build_trigger(
    manager: JobManager,
    registry: ProcessorRegistry,
    runner: JobRunner,
    background_tasks: BackgroundTasks
) -> JobTrigger:
    return JobTrigger(
        manager,
        registry,
        dispatch=lambda job_id: background_tasks.add_task(execute_job_task, runner, job_id)
    )


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=JobStartResponse)
async def create_job(
    request: CreateJobRequest,
    background_tasks: BackgroundTasks,
    manager: JobManager = Depends(get_manager),
    registry: ProcessorRegistry = Depends(get_processor_registry),
    runner: JobRunner = Depends(get_job_runner)
):
    """
    Start a new background job.

    Returns immediately with the job ID. The job runs in background;
    poll GET /jobs/{job_id} for its status.
    """
    association = request.target_association
    trigger = _build_trigger(manager, registry, runner, background_tasks)

    try:
        response = trigger.create(
            request.type,
            request.config,
            document_id=association.document_id if association else None,
            block_id=association.block_id if association else None,
        )
    except JobServiceError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error starting job: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to start job: {str(e)}")

    logger.info(f"Started background job {response.job_id} of type {request.type}")
    return response


@router.get("", response_model=JobListResponse)
async def list_jobs(
    job_type: Optional[str] = Query(default=None, alias="type"),
    status: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    manager: JobManager = Depends(get_manager)
):
    """
    List jobs with optional filtering, newest first.
    """
    type_filter = None
    if job_type:
        try:
            type_filter = JobType(job_type)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid type value: {job_type}")

    status_filter = None
    if status:
        try:
            status_filter = JobStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status value: {status}")

    try:
        jobs, total = manager.list_snapshots(
            job_type=type_filter,
            status=status_filter,
            limit=limit,
            offset=offset
        )
    except Exception as e:
        logger.error(f"Error listing jobs: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to list jobs: {str(e)}")

    return JobListResponse(
        jobs=jobs,
        total_count=total,
        has_more=offset + len(jobs) < total
    )


@router.get("/stats", response_model=JobStatsResponse)
async def get_job_stats(manager: JobManager = Depends(get_manager)):
    """Job counts by status."""
    try:
        return manager.get_stats()
    except Exception as e:
        logger.error(f"Error computing job stats: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to compute job stats: {str(e)}")


@router.get("/types")
async def list_job_types(
    registry: ProcessorRegistry = Depends(get_processor_registry)
) -> List[Dict[str, Any]]:
    """Job types that can be started, with descriptions."""
    return [
        {"type": job_type, "description": registry.describe(job_type)}
        for job_type in registry.registered_types()
    ]


@router.post("/clear-failed")
async def clear_failed_jobs(manager: JobManager = Depends(get_manager)):
    """Delete all failed and cancelled jobs."""
    try:
        deleted = manager.clear_failed_jobs()
    except Exception as e:
        logger.error(f"Error clearing failed jobs: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to clear jobs: {str(e)}")

    return {
        "message": "Failed and cancelled jobs cleared successfully",
        "deleted": deleted,
    }


@router.get("/{job_id}", response_model=JobSnapshot)
async def get_job_status(
    job_id: str,
    manager: JobManager = Depends(get_manager)
):
    """
    Get the current state of a job: status, progress, logs, result or error.
    """
    try:
        return manager.get_snapshot(job_id)
    except JobServiceError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error fetching job {job_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to fetch job: {str(e)}")


@router.delete("/{job_id}", response_model=CancelJobResponse)
async def cancel_job(
    job_id: str,
    manager: JobManager = Depends(get_manager)
):
    """
    Cancel a pending or processing job.

    Cancellation is soft: a processor already running is not interrupted,
    and its late result is discarded.
    """
    try:
        manager.cancel_job(job_id)
    except JobServiceError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error cancelling job {job_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to cancel job: {str(e)}")

    return CancelJobResponse(
        success=True,
        message="Job cancelled",
        job_id=job_id
    )


@router.post("/{job_id}/retry", response_model=JobStartResponse)
async def retry_job(
    job_id: str,
    background_tasks: BackgroundTasks,
    manager: JobManager = Depends(get_manager),
    registry: ProcessorRegistry = Depends(get_processor_registry),
    runner: JobRunner = Depends(get_job_runner)
):
    """
    Retry a failed or cancelled job.

    Creates a new job with the same type, config and associations.
    """
    trigger = _build_trigger(manager, registry, runner, background_tasks)

    try:
        return trigger.retry(job_id)
    except JobServiceError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Error retrying job {job_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to retry job: {str(e)}")


# Export router
jobs_router = router
