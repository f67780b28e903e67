"""
Job Errors

Typed conditions raised by the job core. Each carries the HTTP status the
routes translate it into.
"""


class JobServiceError(Exception):
    """Base class for job core errors."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class JobValidationError(JobServiceError):
    """Creation-time validation failure. No job record is written."""
    status_code = 400


class AssociationNotFoundError(JobServiceError):
    """A referenced document or block does not exist."""
    status_code = 404


class JobNotFoundError(JobServiceError):
    """No job exists with the given identifier."""
    status_code = 404

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobConflictError(JobServiceError):
    """The job's current status does not allow the requested transition."""
    status_code = 400

    def __init__(self, message: str, status: str = None):
        super().__init__(message)
        self.status = status


class JobProcessingError(JobServiceError):
    """Typed failure raised by a processor; recorded as the job's error."""


class JobCancelledError(JobServiceError):
    """Raised by a processor that noticed its job was cancelled."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} was cancelled")
        self.job_id = job_id


class StoreUnavailableError(JobServiceError):
    """The job store is not configured or cannot be reached."""
    status_code = 503
