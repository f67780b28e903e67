"""
Processor Registry

Maps job types to the processor that executes them. The registry is built once
at startup by build_default_registry(), frozen, and handed explicitly to the
runner and the trigger.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from app.jobs.job_types import JobType

logger = logging.getLogger(__name__)

# async def processor(ctx: JobContext) -> dict; plain functions are also accepted
Processor = Callable[[Any], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]

JOB_TYPE_DESCRIPTIONS = {
    JobType.GENERATE: "Generate content for a report block from evidence, goals and reviews",
    JobType.REFINE: "Refine the existing content of a report block",
    JobType.ANALYZE: "Analyze the evidence behind a report document",
    JobType.AI_ANALYSIS: "Analyze evidence items and match them to review criteria",
    JobType.AGENT_GITHUB_SYNC: "Sync merged pull requests from GitHub as evidence",
    JobType.AGENT_JIRA_SYNC: "Sync resolved issues from Jira as evidence",
    JobType.REVIEW_ANALYSIS: "Extract summary, themes, strengths, growth areas and achievements from a performance review",
    JobType.MONTHLY_INSIGHT_GENERATION: "Generate strengths, improvement areas, tags and a summary for a month of PR evidence",
}


def _coerce_type(job_type: Union[str, JobType]) -> Optional[JobType]:
    if isinstance(job_type, JobType):
        return job_type
    try:
        return JobType(job_type)
    except ValueError:
        return None


class ProcessorRegistry:
    """Job type -> processor table."""

    def __init__(self):
        self._processors: Dict[JobType, Processor] = {}
        self._descriptions: Dict[JobType, str] = {}
        self._frozen = False

    def register(
        self,
        job_type: Union[str, JobType],
        processor: Processor,
        description: Optional[str] = None
    ):
        """
        Register a processor for a job type. Fails once the registry is frozen.
        Raises ValueError for names that are not a JobType.
        """
        resolved = _coerce_type(job_type)
        if resolved is None:
            raise ValueError(f"Unknown job type: {job_type}")
        if self._frozen:
            raise RuntimeError(
                f"Cannot register processor for {resolved.value}: registry is frozen"
            )
        if resolved in self._processors:
            logger.warning(f"Replacing processor for job type: {resolved.value}")

        self._processors[resolved] = processor
        self._descriptions[resolved] = description or JOB_TYPE_DESCRIPTIONS.get(resolved, "")
        logger.info(f"Registered processor for job type: {resolved.value}")

    def resolve(self, job_type: Union[str, JobType]) -> Optional[Processor]:
        """Processor for a job type, or None if unknown or unregistered."""
        resolved = _coerce_type(job_type)
        if resolved is None:
            return None
        return self._processors.get(resolved)

    def is_registered(self, job_type: Union[str, JobType]) -> bool:
        return self.resolve(job_type) is not None

    def registered_types(self) -> List[str]:
        return sorted(t.value for t in self._processors)

    def describe(self, job_type: Union[str, JobType]) -> Optional[str]:
        resolved = _coerce_type(job_type)
        if resolved is None:
            return None
        return self._descriptions.get(resolved)

    def freeze(self) -> "ProcessorRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen


def build_default_registry() -> ProcessorRegistry:
    """Registry with every built-in processor, frozen."""
    from app.jobs.handlers import register_all_handlers

    registry = ProcessorRegistry()
    register_all_handlers(registry)
    registry.freeze()

    logger.info(f"Processor registry ready: {', '.join(registry.registered_types())}")
    return registry


_registry: Optional[ProcessorRegistry] = None


def get_registry() -> ProcessorRegistry:
    """Process-wide default registry, built on first use."""
    global _registry
    if _registry is None:
        _registry = build_default_registry()
    return _registry
