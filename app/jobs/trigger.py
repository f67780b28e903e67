"""
Job Trigger

Validates job creation requests, persists the PENDING record, and hands the id
to a dispatcher without waiting for execution. Validation failures write nothing.
"""

import logging
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from app.jobs.errors import (
    AssociationNotFoundError, JobConflictError, JobNotFoundError, JobValidationError,
)
from app.jobs.job_manager import JobManager
from app.jobs.job_types import (
    BLOCK_JOB_TYPES, DOCUMENT_JOB_TYPES, LEGACY_JOB_TYPES, RETRYABLE_STATUSES,
    JobStartResponse, JobStatus, JobType, parse_job_config,
)
from app.jobs.registry import ProcessorRegistry
from app.jobs.utils import decode_json_field, format_validation_errors

logger = logging.getLogger(__name__)

Dispatcher = Callable[[str], Any]

DOCUMENTS_TABLE = "report_documents"
BLOCKS_TABLE = "report_blocks"


class JobTrigger:
    """
    Entry point for starting jobs.

    `dispatch(job_id)` is called after the record is persisted; it must return
    without waiting for the job to run.
    """

    def __init__(
        self,
        manager: JobManager,
        registry: ProcessorRegistry,
        dispatch: Dispatcher
    ):
        self.manager = manager
        self.registry = registry
        self.dispatch = dispatch

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _resolve_type(self, job_type: Any) -> JobType:
        if isinstance(job_type, JobType):
            job_type = job_type.value
        if job_type is None or job_type == "":
            raise JobValidationError("type is required")
        if not isinstance(job_type, str):
            raise JobValidationError(
                f"type must be one of: {', '.join(t.value for t in JobType)}"
            )

        if job_type in LEGACY_JOB_TYPES:
            raise JobValidationError(
                f"Job type {job_type} is deprecated. "
                f"Use one of: {', '.join(t.value for t in JobType)}"
            )

        try:
            resolved = JobType(job_type)
        except ValueError:
            raise JobValidationError(
                f"type must be one of: {', '.join(t.value for t in JobType)}"
            )

        if not self.registry.is_registered(resolved):
            raise JobValidationError(f"No processor registered for job type {resolved.value}")

        return resolved

    def _validate_config(self, job_type: JobType, config: Any) -> Dict[str, Any]:
        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise JobValidationError("config must be an object")

        try:
            parse_job_config(job_type, config)
        except ValidationError as e:
            raise JobValidationError("Invalid config: " + format_validation_errors(e.errors()))

        return config

    def _validate_associations(
        self,
        job_type: JobType,
        document_id: Optional[str],
        block_id: Optional[str]
    ):
        if job_type in BLOCK_JOB_TYPES and not block_id:
            raise JobValidationError(f"blockId is required for {job_type.value} jobs")
        if job_type in DOCUMENT_JOB_TYPES and not document_id:
            raise JobValidationError(f"documentId is required for {job_type.value} jobs")

        supabase = self.manager.supabase

        if document_id:
            doc_result = supabase.table(DOCUMENTS_TABLE)\
                .select("id")\
                .eq("id", document_id)\
                .limit(1)\
                .execute()
            if not doc_result.data:
                raise AssociationNotFoundError(f"Document {document_id} not found")

        if block_id:
            block_result = supabase.table(BLOCKS_TABLE)\
                .select("id, document_id")\
                .eq("id", block_id)\
                .limit(1)\
                .execute()
            if not block_result.data:
                raise AssociationNotFoundError(f"Block {block_id} not found")

            block = block_result.data[0]
            if document_id and block.get("document_id") != document_id:
                raise JobValidationError(
                    f"Block {block_id} does not belong to document {document_id}"
                )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _dispatch(self, job_id: str):
        try:
            self.dispatch(job_id)
        except Exception as e:
            # Job stays PENDING; the worker sweep picks it up
            logger.error(f"Failed to dispatch job {job_id}: {e}")

    def create(
        self,
        job_type: Any,
        config: Any = None,
        document_id: Optional[str] = None,
        block_id: Optional[str] = None
    ) -> JobStartResponse:
        """
        Validate, persist a PENDING job, and dispatch it.
        Returns immediately with the job id.
        """
        resolved = self._resolve_type(job_type)
        config = self._validate_config(resolved, config)
        self._validate_associations(resolved, document_id, block_id)

        job = self.manager.create_job(
            resolved,
            config=config,
            document_id=document_id,
            block_id=block_id,
        )

        self._dispatch(job["id"])
        return JobStartResponse(job_id=job["id"], status=JobStatus.PENDING)

    def retry(self, job_id: str) -> JobStartResponse:
        """
        Start a new job with the same type, config and associations as a
        failed or cancelled job.
        """
        job = self.manager.get_job(job_id)
        if not job:
            raise JobNotFoundError(job_id)

        status = job.get("status")
        if status not in {s.value for s in RETRYABLE_STATUSES}:
            raise JobConflictError(f"Cannot retry job with status: {status}", status=status)

        resolved = self._resolve_type(job.get("type"))
        config = decode_json_field(job.get("config"), default={})

        new_job = self.manager.create_job(
            resolved,
            config=config if isinstance(config, dict) else {},
            document_id=job.get("document_id"),
            block_id=job.get("block_id"),
            retry_of_job_id=job_id,
        )
        logger.info(f"Retrying job {job_id} as {new_job['id']}")

        self._dispatch(new_job["id"])
        return JobStartResponse(
            job_id=new_job["id"],
            status=JobStatus.PENDING,
            retry_of_job_id=job_id,
        )
