"""
Insight Handlers

Processors for REVIEW_ANALYSIS and MONTHLY_INSIGHT_GENERATION.

REVIEW_ANALYSIS turns a performance review narrative into a stored analysis
(summary, themes, strengths, growth areas, achievements). MONTHLY_INSIGHT_GENERATION
summarizes one month of PR evidence against criteria, active goals and the
latest manager review, caching the insight per month.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from app.ai_client import MODEL_NAME, extract_json_from_response, generate_text
from app.jobs.errors import JobProcessingError
from app.jobs.job_types import MonthlyInsightConfig, ReviewAnalysisConfig, ReviewType
from app.jobs.runner import JobContext
from app.jobs.utils import decode_json_field, truncate, utc_now_iso

logger = logging.getLogger(__name__)

REVIEW_ANALYSES_TABLE = "review_analyses"
MONTHLY_INSIGHTS_TABLE = "monthly_insights"

DEFAULT_CONFIDENCE = 50
REGENERATE_AFTER = timedelta(hours=24)
NO_ACTIVITY_SUMMARY = "No pull request activity recorded for this month."


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


# ============================================================================
# REVIEW_ANALYSIS
# ============================================================================

def build_review_prompt(config: ReviewAnalysisConfig) -> str:
    period = f"Review Period: {config.year}\n" if config.year else ""
    return f"""You are analyzing a performance review document for evidence extraction and insight generation.

Analyze the following performance review and extract:

1. Summary: a concise 2-3 sentence summary of the overall review
2. Themes: 3-5 main themes or focus areas discussed in the review
3. Strengths: 3-7 key strengths or accomplishments highlighted
4. Growth Areas: 2-5 areas for growth or development mentioned
5. Key Achievements: 3-7 specific achievements or notable contributions

Review Type: {config.review_type.value}
{period}
Performance Review Text:
{config.review_text}

Respond in JSON format:
{{
  "summary": "Brief 2-3 sentence summary",
  "themes": ["Theme 1", "Theme 2"],
  "strengths": ["Strength 1 with brief context"],
  "growthAreas": ["Growth area 1 with brief context"],
  "achievements": ["Achievement 1 with brief context"],
  "confidenceScore": 85
}}

Focus on concrete, specific information. The confidence score (0-100) should reflect how clear and comprehensive the review is."""


def parse_review_analysis(text: str) -> Dict[str, Any]:
    """Validate the model's review analysis. Raises JobProcessingError when unusable."""
    parsed = extract_json_from_response(text)
    if not parsed or not parsed.get("summary") or not isinstance(parsed.get("themes"), list):
        raise JobProcessingError(
            "Failed to parse AI response: analysis must include summary and themes array"
        )

    try:
        confidence = float(parsed.get("confidenceScore") or DEFAULT_CONFIDENCE)
    except (TypeError, ValueError):
        confidence = float(DEFAULT_CONFIDENCE)

    return {
        "summary": str(parsed["summary"]),
        "themes": _string_list(parsed.get("themes")),
        "strengths": _string_list(parsed.get("strengths")),
        "growthAreas": _string_list(parsed.get("growthAreas")),
        "achievements": _string_list(parsed.get("achievements")),
        "confidenceScore": min(100.0, max(0.0, confidence)),
    }


async def handle_review_analysis(ctx: JobContext) -> Dict[str, Any]:
    """
    Analyze a performance review and store the analysis.

    Stages:
    1. analyzing - Call the AI model with the review text
    2. parsing - Validate the JSON analysis
    3. saving - Insert the review_analyses row
    """
    config = ReviewAnalysisConfig.model_validate(ctx.config)

    ctx.info(f"Analyzing {config.review_type.value} review '{config.title}'")
    ctx.update_progress(20, "Analyzing review content")
    response = await generate_text(
        build_review_prompt(config),
        max_tokens=4096,
        json_output=True,
        temperature=0.3,
    )

    ctx.update_progress(60, "Parsing analysis results")
    analysis = parse_review_analysis(response.text)
    ctx.info(
        f"Found {len(analysis['themes'])} themes, {len(analysis['strengths'])} strengths, "
        f"{len(analysis['growthAreas'])} growth areas, {len(analysis['achievements'])} achievements"
    )

    ctx.raise_if_cancelled()

    ctx.update_progress(80, "Saving analysis")
    result = ctx.supabase.table(REVIEW_ANALYSES_TABLE).insert({
        "title": config.title,
        "year": config.year,
        "review_type": config.review_type.value,
        "source": config.source,
        "original_text": config.review_text,
        "ai_summary": analysis["summary"],
        "themes": analysis["themes"],
        "strengths": analysis["strengths"],
        "growth_areas": analysis["growthAreas"],
        "achievements": analysis["achievements"],
        "confidence_score": analysis["confidenceScore"],
        "metadata": config.metadata,
        "agent_model": MODEL_NAME,
        "created_at": utc_now_iso(),
    }).execute()
    review_analysis_id = result.data[0]["id"]

    ctx.update_progress(100, "Review analysis complete")
    return dict(analysis, reviewAnalysisId=review_analysis_id)


# ============================================================================
# MONTHLY_INSIGHT_GENERATION
# ============================================================================

def month_bounds(month: str) -> Tuple[datetime, datetime]:
    """[start, end) of a YYYY-MM month in UTC."""
    year, month_num = (int(part) for part in month.split("-"))
    start = datetime(year, month_num, 1, tzinfo=timezone.utc)
    if month_num == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month_num + 1, 1, tzinfo=timezone.utc)
    return start, end


def _parse_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def should_regenerate(insight: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """
    A cached insight is regenerated only when it was generated before its month
    ended and is more than a day old. Complete insights are final.
    """
    if insight.get("is_complete"):
        return False

    generated_at = _parse_iso(insight.get("generated_at"))
    if generated_at is None:
        return True

    now = now or datetime.now(timezone.utc)
    _, month_end = month_bounds(insight["month"])
    return generated_at < month_end and generated_at < now - REGENERATE_AFTER


def collect_month_metrics(supabase, month: str) -> Dict[str, Any]:
    """PR evidence counts for a month, deduplicated by URL."""
    start, end = month_bounds(month)
    evidence = supabase.table("evidence_entries")\
        .select("*")\
        .eq("type", "PR")\
        .gte("occurred_at", start.isoformat())\
        .lt("occurred_at", end.isoformat())\
        .order("occurred_at", desc=True)\
        .execute().data or []

    metrics: Dict[str, Any] = {
        "totalPrs": 0,
        "totalChanges": 0,
        "additions": 0,
        "deletions": 0,
        "componentsCount": 0,
        "topComponents": [],
        "categories": {},
        "prTitles": [],
        "latestPrDate": None,
    }
    seen = set()
    categories: Counter = Counter()
    component_prs: Counter = Counter()
    component_changes: Counter = Counter()

    for item in evidence:
        key = item.get("url") or item.get("id")
        if key in seen:
            continue
        seen.add(key)

        meta = decode_json_field(item.get("metadata"), default={}) or {}
        additions = int(meta.get("additions") or 0)
        deletions = int(meta.get("deletions") or 0)

        metrics["totalPrs"] += 1
        metrics["additions"] += additions
        metrics["deletions"] += deletions
        metrics["totalChanges"] += additions + deletions
        if item.get("title"):
            metrics["prTitles"].append(item["title"])
        if metrics["latestPrDate"] is None:
            metrics["latestPrDate"] = item.get("occurred_at")

        categories[item.get("category") or "other"] += 1

        component = meta.get("repository") or item.get("source")
        if component:
            component_prs[component] += 1
            component_changes[component] += additions + deletions

    metrics["categories"] = dict(categories)
    metrics["componentsCount"] = len(component_prs)
    metrics["topComponents"] = [
        {"name": name, "prCount": count, "changes": component_changes[name]}
        for name, count in component_prs.most_common(10)
    ]
    return metrics


def load_insight_context(supabase) -> Dict[str, Any]:
    """Criteria, active goals and the most recent manager review growth areas."""
    criteria = supabase.table("criteria")\
        .select("*")\
        .eq("pr_detectable", True)\
        .order("id")\
        .execute().data or []

    goals = supabase.table("goals")\
        .select("*")\
        .eq("status", "ACTIVE")\
        .order("created_at", desc=True)\
        .execute().data or []

    manager_reviews = supabase.table(REVIEW_ANALYSES_TABLE)\
        .select("*")\
        .eq("review_type", ReviewType.MANAGER.value)\
        .order("created_at", desc=True)\
        .limit(1)\
        .execute().data or []

    growth_areas: List[str] = []
    if manager_reviews:
        growth_areas = _string_list(
            decode_json_field(manager_reviews[0].get("growth_areas"), default=[])
        )

    return {"criteria": criteria, "goals": goals, "growthAreas": growth_areas}


def build_insight_prompt(month: str, metrics: Dict[str, Any], context: Dict[str, Any]) -> str:
    start, _ = month_bounds(month)
    total = metrics["totalPrs"]
    avg_size = round(metrics["totalChanges"] / total) if total else 0

    sections = []
    if context["growthAreas"]:
        sections.append(
            "## Development Focus Areas\n"
            "Weave these themes into the analysis without naming their source:\n"
            + "\n".join(f"- {g}" for g in context["growthAreas"])
        )
    if context["criteria"]:
        sections.append(
            "## Advancement Criteria\n"
            + "\n".join(
                f"- [{c.get('area_of_concentration', '')} / {c.get('subarea', '')}] {c.get('description', '')}"
                for c in context["criteria"]
            )
        )
    if context["goals"]:
        sections.append(
            "## Active Career Goals\n"
            + "\n".join(
                f"- {g.get('title', 'Untitled goal')}: {truncate(g.get('description'), 200)}"
                for g in context["goals"]
            )
        )

    categories = "\n".join(
        f"  {name}: {count} PRs ({round(100 * count / total)}%)"
        for name, count in sorted(metrics["categories"].items(), key=lambda kv: -kv[1])
    )
    components = "\n".join(
        f"  {c['name']}: {c['prCount']} PRs, {c['changes']} changes"
        for c in metrics["topComponents"][:5]
    )
    titles = "\n".join(f'- "{t}"' for t in metrics["prTitles"][:10])
    context_text = "\n\n".join(sections) + "\n\n" if sections else ""

    return f"""You are analyzing a software developer's monthly activity to generate personalized insights for their performance tracking dashboard.

Write in the first person ("I focused on...") using plain sentences without markdown formatting.

{context_text}## Month: {start.strftime('%B %Y')}

## Metrics
- Total PRs: {total}
- Total Code Changes: {metrics['totalChanges']} lines (+{metrics['additions']} / -{metrics['deletions']})
- Average PR Size: {avg_size} lines
- Components Worked On: {metrics['componentsCount']}

## Category Breakdown
{categories or '  No category data available'}

## Top Components
{components or '  No component data available'}

## Recent PR Titles
{titles or 'No PR titles available'}

Provide:
1. Strengths (2-4 items): what went well this month.
2. Areas for Improvement (1-3 items): encouraging, forward-looking next steps.
3. Tags (3-5): e.g. high-velocity, steady-pace, low-activity, feature-focused, bug-fixing, refactoring, infrastructure, small-focused-prs, large-prs.
4. Summary (2-3 sentences): a natural narrative of the month.

Respond in JSON format:
{{
  "strengths": ["..."],
  "weaknesses": ["..."],
  "tags": ["..."],
  "summary": "..."
}}"""


def parse_insight_response(text: str) -> Optional[Dict[str, Any]]:
    """Normalized insight, or None when the response holds no JSON object."""
    parsed = extract_json_from_response(text)
    if not parsed:
        return None
    summary = parsed.get("summary")
    return {
        "strengths": _string_list(parsed.get("strengths")),
        "weaknesses": _string_list(parsed.get("weaknesses")),
        "tags": _string_list(parsed.get("tags")),
        "summary": summary if isinstance(summary, str) else "Analysis generated.",
    }


FALLBACK_INSIGHT = {
    "strengths": ["Analysis could not be completed"],
    "weaknesses": [],
    "tags": ["needs-review"],
    "summary": "Unable to generate detailed analysis. Please try regenerating.",
}


def save_insight(
    supabase,
    month: str,
    metrics: Dict[str, Any],
    insight: Dict[str, Any],
    is_complete: bool
) -> Dict[str, Any]:
    """Insert or update the month's insight row and return it."""
    year, month_num = (int(part) for part in month.split("-"))
    record = {
        "month": month,
        "year": year,
        "month_num": month_num,
        "total_prs": metrics["totalPrs"],
        "total_changes": metrics["totalChanges"],
        "components_count": metrics["componentsCount"],
        "categories": metrics["categories"],
        "strengths": insight["strengths"],
        "weaknesses": insight["weaknesses"],
        "tags": insight["tags"],
        "summary": insight["summary"],
        "generated_at": utc_now_iso(),
        "data_end_date": metrics["latestPrDate"] or utc_now_iso(),
        "is_complete": is_complete,
    }

    existing = supabase.table(MONTHLY_INSIGHTS_TABLE)\
        .select("id")\
        .eq("month", month)\
        .limit(1)\
        .execute()
    if existing.data:
        result = supabase.table(MONTHLY_INSIGHTS_TABLE)\
            .update(record)\
            .eq("id", existing.data[0]["id"])\
            .execute()
    else:
        result = supabase.table(MONTHLY_INSIGHTS_TABLE).insert(record).execute()
    return result.data[0]


async def handle_monthly_insight(ctx: JobContext) -> Dict[str, Any]:
    """
    Generate (or reuse) the insight for one month of PR evidence.

    A cached insight is returned unless `force` is set or it went stale; a month
    without PR evidence gets an empty "no-activity" insight without an AI call.
    """
    config = MonthlyInsightConfig.model_validate(ctx.config)
    supabase = ctx.supabase
    month = config.month

    if not config.force:
        cached = supabase.table(MONTHLY_INSIGHTS_TABLE)\
            .select("*")\
            .eq("month", month)\
            .limit(1)\
            .execute().data
        if cached and not should_regenerate(cached[0]):
            ctx.info(f"Using existing insight for {month}")
            ctx.update_progress(100, "Using existing cached insight")
            return {"cached": True, "insightId": cached[0]["id"], "month": month}

    ctx.update_progress(20, "Fetching month data and context")
    metrics = collect_month_metrics(supabase, month)
    _, month_end = month_bounds(month)
    is_complete = month_end <= datetime.now(timezone.utc)
    ctx.info(f"Found {metrics['totalPrs']} PRs for {month}")

    if metrics["totalPrs"] == 0:
        insight = save_insight(supabase, month, metrics, {
            "strengths": [],
            "weaknesses": [],
            "tags": ["no-activity"],
            "summary": NO_ACTIVITY_SUMMARY,
        }, is_complete)
        ctx.update_progress(100, "No activity for this month")
        return {"insightId": insight["id"], "month": month, "noActivity": True}

    context = load_insight_context(supabase)

    ctx.update_progress(40, "Generating AI analysis")
    response = await generate_text(
        build_insight_prompt(month, metrics, context),
        max_tokens=2000,
        json_output=True,
    )

    ctx.update_progress(70, "Parsing AI response")
    parsed = parse_insight_response(response.text)
    if parsed is None:
        ctx.warn("Could not parse AI insight; storing a placeholder")
        parsed = dict(FALLBACK_INSIGHT)

    ctx.raise_if_cancelled()

    ctx.update_progress(85, "Saving insight")
    insight = save_insight(supabase, month, metrics, parsed, is_complete)

    ctx.update_progress(100, "Monthly insight generated")
    return {
        "insightId": insight["id"],
        "month": month,
        "isComplete": is_complete,
        "metrics": {
            "totalPrs": metrics["totalPrs"],
            "totalChanges": metrics["totalChanges"],
            "componentsCount": metrics["componentsCount"],
        },
    }
