"""
Evidence Tracker Background Jobs

Runs long-running work (AI generation, evidence analysis, evidence sync) outside
the request that started it, and tracks each job through its lifecycle.

Key components:
- job_types: Job type definitions, status groupings and schemas
- job_manager: Job record persistence and status transitions
- registry: Job type -> processor mapping
- runner: Job execution and processor context
- trigger: Validation, creation and dispatch of new jobs
- handlers, sync_handlers: Built-in processors
"""

from app.jobs.job_types import (
    JobType,
    JobStatus,
    LogLevel,
    JobSnapshot,
    JobStartResponse,
)

from app.jobs.errors import (
    JobServiceError,
    JobValidationError,
    AssociationNotFoundError,
    JobNotFoundError,
    JobConflictError,
    JobProcessingError,
    JobCancelledError,
    StoreUnavailableError,
)

from app.jobs.job_manager import JobManager, get_job_manager
from app.jobs.registry import ProcessorRegistry, build_default_registry, get_registry
from app.jobs.runner import JobRunner, JobContext, get_runner
from app.jobs.trigger import JobTrigger

__all__ = [
    # Types
    "JobType",
    "JobStatus",
    "LogLevel",
    "JobSnapshot",
    "JobStartResponse",
    # Errors
    "JobServiceError",
    "JobValidationError",
    "AssociationNotFoundError",
    "JobNotFoundError",
    "JobConflictError",
    "JobProcessingError",
    "JobCancelledError",
    "StoreUnavailableError",
    # Manager
    "JobManager",
    "get_job_manager",
    # Registry
    "ProcessorRegistry",
    "build_default_registry",
    "get_registry",
    # Runner
    "JobRunner",
    "JobContext",
    "get_runner",
    # Trigger
    "JobTrigger",
]
