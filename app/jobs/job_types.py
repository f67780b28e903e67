"""
Job Types and Schemas

Defines enums, status groupings, and Pydantic models for the background job system.
Wire models serialize with camelCase field names and accept snake_case on input.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class JobType(str, Enum):
    """Types of background jobs supported by the evidence tracker."""
    GENERATE = "GENERATE"
    REFINE = "REFINE"
    ANALYZE = "ANALYZE"
    AI_ANALYSIS = "AI_ANALYSIS"
    AGENT_GITHUB_SYNC = "AGENT_GITHUB_SYNC"
    AGENT_JIRA_SYNC = "AGENT_JIRA_SYNC"
    REVIEW_ANALYSIS = "REVIEW_ANALYSIS"
    MONTHLY_INSIGHT_GENERATION = "MONTHLY_INSIGHT_GENERATION"


# Retired job types, rejected at creation time
LEGACY_JOB_TYPES = frozenset({
    "GITHUB_SYNC",
    "JIRA_SYNC",
    "REPORT_GENERATION",
    "GOAL_PROGRESS",
    "GOAL_GENERATION",
})


class JobStatus(str, Enum):
    """Status of a background job."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    RUNNING = "RUNNING"  # alias of PROCESSING written by older sync workers
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


IN_FLIGHT_STATUSES = (JobStatus.PROCESSING, JobStatus.RUNNING)
ACTIVE_STATUSES = (JobStatus.PENDING,) + IN_FLIGHT_STATUSES
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)
RETRYABLE_STATUSES = (JobStatus.FAILED, JobStatus.CANCELLED)


def is_terminal(status: str) -> bool:
    return status in {s.value for s in TERMINAL_STATUSES}


class ReviewType(str, Enum):
    """Who wrote a performance review."""
    EMPLOYEE = "EMPLOYEE"
    MANAGER = "MANAGER"
    PEER = "PEER"
    SELF = "SELF"


class LogLevel(str, Enum):
    """Severity of a job log entry."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class CamelModel(BaseModel):
    """Base model that speaks camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobLogEntry(CamelModel):
    """Single append-only log line written during execution."""
    timestamp: str
    level: LogLevel = LogLevel.INFO
    message: str


# ============================================================================
# Job-specific config schemas
# ============================================================================

class GenerateConfig(CamelModel):
    """Config for GENERATE jobs. Falls back to the block's own prompt."""
    prompt: Optional[str] = None
    max_tokens: int = Field(default=2000, ge=100, le=8000)


class RefineConfig(CamelModel):
    """Config for REFINE jobs."""
    prompt: str = Field(min_length=1)
    max_tokens: int = Field(default=2000, ge=100, le=8000)


class AnalyzeConfig(CamelModel):
    """Config for ANALYZE jobs."""
    prompt: str = Field(
        default="Summarize the key themes, strengths and growth areas shown by this evidence.",
        min_length=1,
    )
    max_tokens: int = Field(default=2000, ge=100, le=8000)


class EvidenceAnalysisConfig(CamelModel):
    """Config for AI_ANALYSIS jobs."""
    evidence_id: Optional[str] = None
    evidence_ids: List[str] = Field(default_factory=list)
    force_reanalysis: bool = False

    @model_validator(mode="after")
    def require_evidence(self):
        if not self.evidence_id and not self.evidence_ids:
            raise ValueError("Either evidenceId or evidenceIds is required")
        return self

    def target_ids(self) -> List[str]:
        return [self.evidence_id] if self.evidence_id else list(self.evidence_ids)


class GithubSyncConfig(CamelModel):
    """Config for AGENT_GITHUB_SYNC jobs."""
    repositories: List[str] = Field(min_length=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    user_context: Optional[str] = None
    dry_run: bool = False
    match_criteria: bool = True

    @model_validator(mode="after")
    def check_repositories(self):
        for repo in self.repositories:
            if repo.count("/") != 1 or not all(repo.split("/")):
                raise ValueError(f"Repository '{repo}' must be in owner/name form")
        return self


class JiraSyncConfig(CamelModel):
    """Config for AGENT_JIRA_SYNC jobs."""
    projects: List[str] = Field(min_length=1)
    jira_host: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    user_context: Optional[str] = None
    dry_run: bool = False
    match_criteria: bool = True


class ReviewAnalysisConfig(CamelModel):
    """Config for REVIEW_ANALYSIS jobs."""
    review_text: str
    title: str
    review_type: ReviewType
    year: Optional[str] = None
    source: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def require_text(self):
        if not self.review_text.strip():
            raise ValueError("reviewText is required")
        if not self.title.strip():
            raise ValueError("title is required")
        return self


class MonthlyInsightConfig(CamelModel):
    """Config for MONTHLY_INSIGHT_GENERATION jobs. `month` is YYYY-MM."""
    month: str = Field(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    force: bool = False


CONFIG_SCHEMAS = {
    JobType.GENERATE: GenerateConfig,
    JobType.REFINE: RefineConfig,
    JobType.ANALYZE: AnalyzeConfig,
    JobType.AI_ANALYSIS: EvidenceAnalysisConfig,
    JobType.AGENT_GITHUB_SYNC: GithubSyncConfig,
    JobType.AGENT_JIRA_SYNC: JiraSyncConfig,
    JobType.REVIEW_ANALYSIS: ReviewAnalysisConfig,
    JobType.MONTHLY_INSIGHT_GENERATION: MonthlyInsightConfig,
}

# Job types that act on a report document, and the subset that need a block
DOCUMENT_JOB_TYPES = (JobType.GENERATE, JobType.REFINE, JobType.ANALYZE)
BLOCK_JOB_TYPES = (JobType.GENERATE, JobType.REFINE)


# ============================================================================
# API Schemas
# ============================================================================

class TargetAssociation(CamelModel):
    """Domain entity a job acts upon."""
    document_id: Optional[str] = None
    block_id: Optional[str] = None


class CreateJobRequest(CamelModel):
    """
    Request to start a new background job.
    `type` and `config` are left loose; the trigger validates them.
    """
    type: Any = None
    config: Any = None
    target_association: Optional[TargetAssociation] = None


class JobStartResponse(CamelModel):
    """Response when starting a job."""
    job_id: str
    status: JobStatus = JobStatus.PENDING
    retry_of_job_id: Optional[str] = None


class JobSnapshot(CamelModel):
    """Read-only projection of a job record."""
    id: str
    type: str
    status: JobStatus
    progress: int = 0
    status_message: Optional[str] = None
    config: Optional[Any] = None
    logs: List[JobLogEntry] = Field(default_factory=list)
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    document_id: Optional[str] = None
    block_id: Optional[str] = None
    retry_of_job_id: Optional[str] = None


class JobListResponse(CamelModel):
    """Response for job list query."""
    jobs: List[JobSnapshot]
    total_count: int
    has_more: bool


class CancelJobResponse(CamelModel):
    """Response for cancel job request."""
    success: bool
    message: str
    job_id: str


class JobStatsResponse(CamelModel):
    """Job counts by status."""
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0


def parse_job_config(job_type: JobType, config: Optional[Dict[str, Any]]) -> BaseModel:
    """Validate a raw config payload against the schema of its job type."""
    schema = CONFIG_SCHEMAS[job_type]
    return schema.model_validate(config or {})
