"""
Job Handlers

Implements processor functions for each job type. Each processor receives a
JobContext and returns a result dictionary.
"""

import logging
from typing import Any, Dict, List, Optional

from app.ai_client import MODEL_NAME, extract_json_from_response, generate_text
from app.jobs.errors import JobProcessingError
from app.jobs.job_types import (
    AnalyzeConfig, EvidenceAnalysisConfig, GenerateConfig, JobType, RefineConfig,
)
from app.jobs.runner import JobContext
from app.jobs.utils import ProgressTracker, decode_json_field, truncate, utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVIDENCE = 50
AGENT_PROMPT_LIMIT = 1000


# ============================================================================
# Shared context loading
# ============================================================================

def _fetch_one(supabase, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
    result = supabase.table(table)\
        .select("*")\
        .eq("id", record_id)\
        .limit(1)\
        .execute()
    return result.data[0] if result.data else None


def gather_evidence(supabase, context_config: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Evidence selected by a document's context config, newest first."""
    query = supabase.table("evidence_entries").select("*")

    date_range = context_config.get("evidenceDateRange") or {}
    if date_range.get("start"):
        query = query.gte("occurred_at", date_range["start"])
    if date_range.get("end"):
        query = query.lte("occurred_at", date_range["end"])

    if context_config.get("evidenceTypes"):
        query = query.in_("type", context_config["evidenceTypes"])

    if context_config.get("evidenceCategories"):
        query = query.in_("category", context_config["evidenceCategories"])

    result = query\
        .order("occurred_at", desc=True)\
        .limit(context_config.get("maxEvidence") or DEFAULT_MAX_EVIDENCE)\
        .execute()
    return result.data or []


def format_evidence(evidence: List[Dict[str, Any]]) -> str:
    if not evidence:
        return "No evidence available."

    lines = []
    for item in evidence:
        title = item.get("title") or item.get("summary") or "Untitled"
        when = (item.get("occurred_at") or "")[:10]
        line = f"- [{item.get('type', 'MANUAL')}] {title}"
        if when:
            line += f" ({when})"
        if item.get("summary") and item.get("summary") != title:
            line += f": {truncate(item['summary'], 300)}"
        lines.append(line)
    return "\n".join(lines)


def format_goals(goals: List[Dict[str, Any]]) -> str:
    return "\n".join(
        f"- {g.get('title', 'Untitled goal')}: {truncate(g.get('description'), 300)}"
        for g in goals
    )


def format_reviews(reviews: List[Dict[str, Any]]) -> str:
    return "\n\n".join(
        f"{i + 1}. **{r.get('year')}** ({r.get('type')}, weight: {r.get('weight')})\n"
        f"   {truncate(r.get('content'), 500)}"
        for i, r in enumerate(reviews)
    )


def _load_block(ctx: JobContext) -> Dict[str, Any]:
    block = _fetch_one(ctx.supabase, "report_blocks", ctx.block_id)
    if not block:
        raise JobProcessingError(f"Block {ctx.block_id} not found")
    return block


def _load_document(ctx: JobContext, document_id: Optional[str]) -> Dict[str, Any]:
    document = _fetch_one(ctx.supabase, "report_documents", document_id)
    if not document:
        raise JobProcessingError(f"Document {document_id} not found")
    return document


def _save_block_content(
    ctx: JobContext,
    block: Dict[str, Any],
    content: str,
    metadata: Dict[str, Any],
    change_type: str,
    agent_prompt: str
):
    """Write new block content and record the revision."""
    ctx.supabase.table("report_blocks").update({
        "content": content,
        "metadata": metadata,
        "updated_at": utc_now_iso(),
    }).eq("id", block["id"]).execute()

    ctx.supabase.table("report_block_revisions").insert({
        "block_id": block["id"],
        "previous_content": block.get("content"),
        "new_content": content,
        "change_type": change_type,
        "changed_by": "AGENT",
        "agent_model": MODEL_NAME,
        "agent_prompt": agent_prompt[:AGENT_PROMPT_LIMIT],
        "created_at": utc_now_iso(),
    }).execute()


# ============================================================================
# GENERATE
# ============================================================================

GENERATE_SYSTEM_PROMPT = """You are helping write a performance review or report.
You have access to evidence of work, goals, and previous reviews.
Provide well-structured, professional content that directly addresses the prompt.
Be specific and use concrete examples from the evidence when relevant.
Format your response using markdown."""


async def handle_generate(ctx: JobContext) -> Dict[str, Any]:
    """
    Generate content for a report block.

    Stages:
    1. loading_context - Load block, document context config, evidence, goals, reviews
    2. generating - Call the AI model
    3. saving - Write block content and revision
    """
    config = GenerateConfig.model_validate(ctx.config)
    supabase = ctx.supabase

    ctx.update_progress(10, "Loading report context")
    block = _load_block(ctx)
    document = _load_document(ctx, ctx.document_id or block.get("document_id"))
    context_config = decode_json_field(document.get("context_config"), default={}) or {}

    evidence = gather_evidence(supabase, context_config)

    goals: List[Dict[str, Any]] = []
    if context_config.get("includeGoals"):
        goals = supabase.table("goals")\
            .select("*")\
            .eq("status", "ACTIVE")\
            .order("created_at", desc=True)\
            .execute().data or []

    reviews: List[Dict[str, Any]] = []
    if context_config.get("includeReviews"):
        reviews = supabase.table("review_documents")\
            .select("*")\
            .order("year", desc=True)\
            .execute().data or []

    ctx.info(f"Loaded {len(evidence)} evidence items, {len(goals)} goals, {len(reviews)} reviews")

    context_parts = []
    if evidence:
        context_parts.append(f"## Evidence ({len(evidence)} items)\n\n{format_evidence(evidence)}")
    if goals:
        context_parts.append(f"## Goals\n\n{format_goals(goals)}")
    if reviews:
        context_parts.append(f"## Previous Reviews\n\n{format_reviews(reviews)}")

    context_text = "\n\nContext:\n" + "\n\n".join(context_parts) if context_parts else ""
    prompt = config.prompt or block.get("prompt") or ""
    if not prompt:
        raise JobProcessingError("No prompt provided and block has no prompt")
    user_prompt = f"{prompt}{context_text}"

    ctx.update_progress(30, "Generating content")
    response = await generate_text(
        user_prompt,
        system_instruction=GENERATE_SYSTEM_PROMPT,
        max_tokens=config.max_tokens,
    )
    ctx.info(f"Generated {len(response.text)} characters, {response.tokens_used} tokens")

    ctx.raise_if_cancelled()

    ctx.update_progress(85, "Saving content")
    _save_block_content(
        ctx,
        block,
        response.text,
        {
            "model": MODEL_NAME,
            "tokensUsed": response.tokens_used,
            "generatedAt": utc_now_iso(),
            "evidenceCount": len(evidence),
            "goalsCount": len(goals),
            "reviewsCount": len(reviews),
        },
        "AGENT_GENERATION",
        user_prompt
    )

    ctx.update_progress(100, "Content generated")
    return {
        "content": response.text,
        "tokensUsed": response.tokens_used,
        "evidenceCount": len(evidence),
        "goalsCount": len(goals),
        "reviewsCount": len(reviews),
    }


# ============================================================================
# REFINE
# ============================================================================

REFINE_SYSTEM_PROMPT = """You are helping refine content for a performance review or report.
Improve the content while maintaining its core message and intent.
Make it more concise, clear, and professional."""


async def handle_refine(ctx: JobContext) -> Dict[str, Any]:
    """Refine the current content of a report block."""
    config = RefineConfig.model_validate(ctx.config)

    ctx.update_progress(10, "Loading block")
    block = _load_block(ctx)
    user_prompt = f"{config.prompt}\n\nCurrent content:\n{block.get('content') or ''}"

    ctx.update_progress(30, "Refining content")
    response = await generate_text(
        user_prompt,
        system_instruction=REFINE_SYSTEM_PROMPT,
        max_tokens=config.max_tokens,
    )

    ctx.raise_if_cancelled()

    ctx.update_progress(85, "Saving content")
    _save_block_content(
        ctx,
        block,
        response.text,
        {
            "model": MODEL_NAME,
            "tokensUsed": response.tokens_used,
            "refinedAt": utc_now_iso(),
        },
        "AGENT_REFINEMENT",
        user_prompt
    )

    ctx.update_progress(100, "Content refined")
    return {
        "content": response.text,
        "tokensUsed": response.tokens_used,
    }


# ============================================================================
# ANALYZE
# ============================================================================

ANALYZE_SYSTEM_PROMPT = """You are analyzing evidence for a performance review.
Provide insights, patterns, and recommendations based on the evidence."""


async def handle_analyze(ctx: JobContext) -> Dict[str, Any]:
    """Analyze the evidence selected by a report document. No side effects."""
    config = AnalyzeConfig.model_validate(ctx.config)

    ctx.update_progress(10, "Loading evidence")
    document = _load_document(ctx, ctx.document_id)
    context_config = decode_json_field(document.get("context_config"), default={}) or {}
    evidence = gather_evidence(ctx.supabase, context_config)
    ctx.info(f"Analyzing {len(evidence)} evidence items")

    ctx.update_progress(30, "Analyzing evidence")
    response = await generate_text(
        f"{config.prompt}\n\nEvidence:\n{format_evidence(evidence)}",
        system_instruction=ANALYZE_SYSTEM_PROMPT,
        max_tokens=config.max_tokens,
    )

    ctx.update_progress(100, "Analysis complete")
    return {
        "analysis": response.text,
        "tokensUsed": response.tokens_used,
        "evidenceCount": len(evidence),
    }


# ============================================================================
# AI_ANALYSIS
# ============================================================================

def build_analysis_prompt(evidence: Dict[str, Any], criteria: List[Dict[str, Any]]) -> str:
    criteria_lines = "\n".join(
        f"- {c['id']}: [{c.get('area_of_concentration', '')} / {c.get('subarea', '')}] {c.get('description', '')}"
        for c in criteria
    )
    return f"""You are analyzing evidence for a performance review to extract key information and match it to performance criteria.

Evidence:
- Type: {evidence.get('type')}
- Title: {evidence.get('title') or 'Untitled'}
- Content: {truncate(evidence.get('content'), 2000) or 'No additional content'}
- Current Summary: {evidence.get('summary') or ''}
- Category: {evidence.get('category') or ''}

Available Performance Criteria:
{criteria_lines}

Respond in JSON format:
{{
  "impact": "Specific impact statement",
  "criterionId": 5,
  "criterion": "Brief description of why this criterion matches",
  "summary": "2-3 sentence compelling summary",
  "confidence": 85
}}

If the evidence doesn't clearly match any criterion, set criterionId to null."""


def parse_analysis_response(text: str, criteria: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate the model's analysis JSON. Raises JobProcessingError when unusable."""
    parsed = extract_json_from_response(text)
    if not parsed or not parsed.get("impact") or not parsed.get("summary"):
        raise JobProcessingError("Failed to parse AI response: analysis must include impact and summary")

    criterion_id = parsed.get("criterionId")
    if criterion_id is not None:
        known_ids = {str(c["id"]) for c in criteria}
        if str(criterion_id) not in known_ids:
            logger.warning(f"Criterion ID {criterion_id} not found, ignoring")
            criterion_id = None

    try:
        confidence = float(parsed.get("confidence") or 50)
    except (TypeError, ValueError):
        confidence = 50.0

    return {
        "impact": parsed["impact"],
        "criterion": parsed.get("criterion") or "No specific criterion matched",
        "criterionId": criterion_id,
        "summary": parsed["summary"],
        "confidence": min(100.0, max(0.0, confidence)),
    }


async def _analyze_evidence(
    ctx: JobContext,
    evidence_id: str,
    criteria: List[Dict[str, Any]],
    force_reanalysis: bool
) -> Dict[str, Any]:
    supabase = ctx.supabase

    evidence = _fetch_one(supabase, "evidence_entries", evidence_id)
    if not evidence:
        raise JobProcessingError(f"Evidence {evidence_id} not found")

    existing = supabase.table("evidence_criteria")\
        .select("*")\
        .eq("evidence_id", evidence_id)\
        .execute().data or []

    if existing and not force_reanalysis:
        top = max(existing, key=lambda row: row.get("confidence") or 0)
        ctx.debug(f"Evidence {evidence_id} already analyzed, skipping")
        return {
            "impact": evidence.get("summary"),
            "criterion": top.get("explanation"),
            "criterionId": top.get("criterion_id"),
            "summary": evidence.get("summary"),
            "confidence": top.get("confidence"),
            "skipped": True,
        }

    response = await generate_text(
        build_analysis_prompt(evidence, criteria),
        max_tokens=2000,
        json_output=True,
        temperature=0.3,
    )
    analysis = parse_analysis_response(response.text, criteria)

    if existing:
        supabase.table("evidence_criteria").delete().eq("evidence_id", evidence_id).execute()

    if analysis["criterionId"] is not None:
        supabase.table("evidence_criteria").insert({
            "evidence_id": evidence_id,
            "criterion_id": analysis["criterionId"],
            "confidence": analysis["confidence"],
            "explanation": analysis["impact"],
        }).execute()

    if len(analysis["summary"]) > len(evidence.get("summary") or ""):
        supabase.table("evidence_entries")\
            .update({"summary": analysis["summary"]})\
            .eq("id", evidence_id)\
            .execute()

    return analysis


async def handle_ai_analysis(ctx: JobContext) -> Dict[str, Any]:
    """
    Analyze evidence items: impact, best-matching criterion, summary, confidence.

    Per-item failures are recorded and the job continues; it fails only when
    no item could be analyzed.
    """
    config = EvidenceAnalysisConfig.model_validate(ctx.config)
    evidence_ids = config.target_ids()

    tracker = ProgressTracker([
        ("loading", 15),
        ("analyzing", 80),
        ("finalizing", 5),
    ])

    ctx.update_progress(tracker.start("loading"), "Loading performance criteria")
    criteria = ctx.supabase.table("criteria")\
        .select("*")\
        .order("id")\
        .execute().data or []
    ctx.info(f"Analyzing {len(evidence_ids)} evidence items against {len(criteria)} criteria")

    results = []
    for i, evidence_id in enumerate(evidence_ids):
        ctx.raise_if_cancelled()
        ctx.update_progress(
            tracker.progress("analyzing", i, len(evidence_ids)),
            f"Analyzing evidence {i + 1}/{len(evidence_ids)}"
        )

        try:
            analysis = await _analyze_evidence(ctx, evidence_id, criteria, config.force_reanalysis)
            results.append({"evidenceId": evidence_id, "success": True, "analysis": analysis})
        except Exception as e:
            ctx.warn(f"Failed to analyze evidence {evidence_id}: {str(e)}")
            results.append({"evidenceId": evidence_id, "success": False, "error": str(e)})

    success_count = sum(1 for r in results if r["success"])
    if success_count == 0:
        raise JobProcessingError(f"Failed to analyze all {len(evidence_ids)} evidence items")

    ctx.update_progress(tracker.complete("finalizing"), "AI analysis complete")
    return {
        "totalItems": len(evidence_ids),
        "successCount": success_count,
        "failedCount": len(results) - success_count,
        "results": results,
    }


# ============================================================================
# Register All Handlers
# ============================================================================

def register_all_handlers(registry):
    """Register every built-in processor with a registry."""
    from app.jobs.insight_handlers import handle_monthly_insight, handle_review_analysis
    from app.jobs.sync_handlers import handle_github_sync, handle_jira_sync

    registry.register(JobType.GENERATE, handle_generate)
    registry.register(JobType.REFINE, handle_refine)
    registry.register(JobType.ANALYZE, handle_analyze)
    registry.register(JobType.AI_ANALYSIS, handle_ai_analysis)
    registry.register(JobType.AGENT_GITHUB_SYNC, handle_github_sync)
    registry.register(JobType.AGENT_JIRA_SYNC, handle_jira_sync)
    registry.register(JobType.REVIEW_ANALYSIS, handle_review_analysis)
    registry.register(JobType.MONTHLY_INSIGHT_GENERATION, handle_monthly_insight)

    logger.info("All job handlers registered")
