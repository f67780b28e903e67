"""
Job Utilities

Shared helpers for the job core and processors: timestamps, JSON coercion of
stored payloads, duration formatting, and weighted progress tracking.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def safe_json_value(value: Any) -> Any:
    """Convert value to JSON-safe format."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return [safe_json_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): safe_json_value(v) for k, v in value.items()}
    return str(value)


def decode_json_field(value: Any, default: Any = None) -> Any:
    """
    Decode a payload as stored in the jobs table.

    jsonb columns come back already decoded; rows written by older workers
    hold JSON text. Unparseable text is returned wrapped as {"raw": text}.
    """
    if value is None:
        return default
    if isinstance(value, str):
        if not value:
            return default
        try:
            return json.loads(value)
        except ValueError:
            logger.warning("Stored job payload is not valid JSON, returning raw text")
            return {"raw": value}
    return value


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        mins = seconds / 60
        return f"{mins:.1f}m"
    hours = seconds / 3600
    return f"{hours:.1f}h"


def truncate(text: Optional[str], limit: int) -> str:
    """Cut text to at most `limit` characters, marking the cut."""
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def format_validation_errors(errors: Iterable[Dict[str, Any]]) -> str:
    """Flatten pydantic error dicts into "loc: msg; loc: msg"."""
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


class ProgressTracker:
    """
    Helper for tracking progress across multiple weighted stages.

    Usage:
        tracker = ProgressTracker([
            ("loading", 10),
            ("processing", 80),
            ("saving", 10),
        ])

        ctx.update_progress(tracker.start("loading"), "Loading criteria")
        for i, item in enumerate(items):
            ctx.update_progress(tracker.progress("processing", i, len(items)))
    """

    def __init__(self, stages: List[Tuple[str, int]]):
        """Initialize with (stage_name, weight) tuples. Weights should sum to 100."""
        self.stages = {}
        cumulative = 0

        for name, weight in stages:
            self.stages[name] = {
                "start": cumulative,
                "weight": weight,
                "end": cumulative + weight
            }
            cumulative += weight

    def start(self, name: str) -> int:
        """Percent at the start of a stage."""
        if name not in self.stages:
            return 0
        return self.stages[name]["start"]

    def complete(self, name: str) -> int:
        """Percent at the end of a stage."""
        if name not in self.stages:
            return 100
        return self.stages[name]["end"]

    def progress(self, name: str, current: int, total: int) -> int:
        """Percent for `current` of `total` items done within a stage."""
        if name not in self.stages or total <= 0:
            return self.start(name)

        stage = self.stages[name]
        stage_progress = min(current / total, 1.0)
        return round(stage["start"] + stage["weight"] * stage_progress)
