"""
Tests for the AI processors: GENERATE, REFINE, ANALYZE and AI_ANALYSIS.

Gemini calls are mocked; no real AI requests are made.
"""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock, patch

from app.ai_client import AIResponse
from app.jobs.errors import JobCancelledError, JobProcessingError
from app.jobs.handlers import (
    gather_evidence, handle_ai_analysis, handle_analyze, handle_generate,
    handle_refine, parse_analysis_response,
)
from app.jobs.job_types import JobType


CRITERIA = [
    {"id": 1, "area_of_concentration": "Engineering", "subarea": "Quality", "description": "Writes reliable code"},
    {"id": 2, "area_of_concentration": "Leadership", "subarea": "Mentoring", "description": "Grows the team"},
]


@pytest.fixture
def report_db(fake_db):
    fake_db.tables.update({
        "report_documents": [{
            "id": "doc-1",
            "context_config": {"includeGoals": True, "includeReviews": True, "maxEvidence": 10},
        }],
        "report_blocks": [{
            "id": "block-1",
            "document_id": "doc-1",
            "prompt": "Summarize my year",
            "content": "Old content",
        }],
        "evidence_entries": [
            {"id": "ev-1", "type": "PR", "title": "Add retries", "summary": "short",
             "category": "engineering", "occurred_at": "2024-03-01T00:00:00+00:00"},
            {"id": "ev-2", "type": "JIRA", "title": "Onboard new hire", "summary": "Mentored a new engineer",
             "category": "leadership", "occurred_at": "2024-05-01T00:00:00+00:00"},
            {"id": "ev-3", "type": "MANUAL", "title": "Old talk", "summary": "Conference talk",
             "category": "leadership", "occurred_at": "2023-01-01T00:00:00+00:00"},
        ],
        "goals": [
            {"id": 1, "title": "Ship v2", "description": "Launch the new API", "status": "ACTIVE",
             "created_at": "2024-01-01T00:00:00+00:00"},
            {"id": 2, "title": "Old goal", "description": "Done", "status": "COMPLETED",
             "created_at": "2023-01-01T00:00:00+00:00"},
        ],
        "review_documents": [
            {"id": 1, "year": 2023, "type": "ANNUAL", "weight": 1, "content": "Strong year"},
        ],
        "criteria": list(CRITERIA),
        "evidence_criteria": [],
    })
    return fake_db


def _ai(text="Generated content", tokens=42):
    return AsyncMock(return_value=AIResponse(text=text, tokens_used=tokens))


# =============================================================================
# CONTEXT LOADING
# =============================================================================

class TestGatherEvidence:
    """Evidence selection by a document's context config."""

    def test_newest_first_with_limit(self, report_db):
        evidence = gather_evidence(report_db, {"maxEvidence": 2})
        assert [e["id"] for e in evidence] == ["ev-2", "ev-1"]

    def test_date_range_and_types(self, report_db):
        evidence = gather_evidence(report_db, {
            "evidenceDateRange": {"start": "2024-01-01", "end": "2024-12-31"},
            "evidenceTypes": ["PR"],
        })
        assert [e["id"] for e in evidence] == ["ev-1"]

    def test_categories(self, report_db):
        evidence = gather_evidence(report_db, {"evidenceCategories": ["leadership"]})
        assert [e["id"] for e in evidence] == ["ev-2", "ev-3"]


# =============================================================================
# GENERATE / REFINE / ANALYZE
# =============================================================================

class TestGenerate:
    """Block content generation."""

    def test_generate_writes_block_and_revision(self, report_db, make_context):
        ctx = make_context(JobType.GENERATE, {}, document_id="doc-1", block_id="block-1")
        mock_ai = _ai()

        with patch("app.jobs.handlers.generate_text", new=mock_ai):
            result = asyncio.run(handle_generate(ctx))

        assert result == {
            "content": "Generated content",
            "tokensUsed": 42,
            "evidenceCount": 3,
            "goalsCount": 1,
            "reviewsCount": 1,
        }

        prompt = mock_ai.call_args.args[0]
        assert prompt.startswith("Summarize my year")
        assert "Add retries" in prompt
        assert "Ship v2" in prompt
        assert "Old goal" not in prompt
        assert "Strong year" in prompt

        block = report_db.row("report_blocks", "block-1")
        assert block["content"] == "Generated content"
        assert block["metadata"]["tokensUsed"] == 42

        revisions = report_db.rows("report_block_revisions")
        assert len(revisions) == 1
        assert revisions[0]["change_type"] == "AGENT_GENERATION"
        assert revisions[0]["previous_content"] == "Old content"
        assert revisions[0]["new_content"] == "Generated content"
        assert revisions[0]["changed_by"] == "AGENT"

    def test_generate_config_prompt_overrides_block(self, report_db, make_context):
        ctx = make_context(JobType.GENERATE, {"prompt": "Custom prompt"}, document_id="doc-1", block_id="block-1")
        mock_ai = _ai()

        with patch("app.jobs.handlers.generate_text", new=mock_ai):
            asyncio.run(handle_generate(ctx))

        assert mock_ai.call_args.args[0].startswith("Custom prompt")

    def test_generate_missing_block(self, report_db, make_context):
        ctx = make_context(JobType.GENERATE, {}, document_id="doc-1", block_id="block-missing")

        with patch("app.jobs.handlers.generate_text", new=_ai()):
            with pytest.raises(JobProcessingError, match="Block block-missing not found"):
                asyncio.run(handle_generate(ctx))

    def test_generate_stops_when_cancelled(self, report_db, make_context, manager):
        ctx = make_context(JobType.GENERATE, {}, document_id="doc-1", block_id="block-1")

        async def cancel_during_call(*args, **kwargs):
            manager.cancel_job(ctx.job_id)
            return AIResponse(text="Too late", tokens_used=1)

        with patch("app.jobs.handlers.generate_text", new=AsyncMock(side_effect=cancel_during_call)):
            with pytest.raises(JobCancelledError):
                asyncio.run(handle_generate(ctx))

        assert report_db.row("report_blocks", "block-1")["content"] == "Old content"
        assert report_db.rows("report_block_revisions") == []


class TestRefine:
    """Block content refinement."""

    def test_refine_uses_current_content(self, report_db, make_context):
        ctx = make_context(JobType.REFINE, {"prompt": "Make it shorter"}, document_id="doc-1", block_id="block-1")
        mock_ai = _ai("Refined")

        with patch("app.jobs.handlers.generate_text", new=mock_ai):
            result = asyncio.run(handle_refine(ctx))

        assert result == {"content": "Refined", "tokensUsed": 42}
        assert mock_ai.call_args.args[0] == "Make it shorter\n\nCurrent content:\nOld content"
        assert report_db.row("report_blocks", "block-1")["content"] == "Refined"
        assert report_db.rows("report_block_revisions")[0]["change_type"] == "AGENT_REFINEMENT"


class TestAnalyze:
    """Document evidence analysis."""

    def test_analyze_has_no_side_effects(self, report_db, make_context):
        ctx = make_context(JobType.ANALYZE, {"prompt": "What stands out?"}, document_id="doc-1")

        with patch("app.jobs.handlers.generate_text", new=_ai("Themes: reliability")):
            result = asyncio.run(handle_analyze(ctx))

        assert result == {"analysis": "Themes: reliability", "tokensUsed": 42, "evidenceCount": 3}
        assert report_db.row("report_blocks", "block-1")["content"] == "Old content"
        assert report_db.rows("report_block_revisions") == []


# =============================================================================
# AI_ANALYSIS
# =============================================================================

ANALYSIS_JSON = json.dumps({
    "impact": "Reduced incident volume",
    "criterionId": 1,
    "criterion": "Improved reliability",
    "summary": "Added retries to the payment client, cutting failed checkouts in half.",
    "confidence": 85,
})


class TestParseAnalysisResponse:
    """Validation of the model's analysis JSON."""

    def test_valid_response(self):
        analysis = parse_analysis_response(f"Here you go:\n{ANALYSIS_JSON}", CRITERIA)
        assert analysis["criterionId"] == 1
        assert analysis["confidence"] == 85

    def test_unknown_criterion_is_ignored(self):
        text = json.dumps({"impact": "x", "summary": "y", "criterionId": 99, "confidence": 150})
        analysis = parse_analysis_response(text, CRITERIA)
        assert analysis["criterionId"] is None
        assert analysis["confidence"] == 100
        assert analysis["criterion"] == "No specific criterion matched"

    @pytest.mark.parametrize("text", [
        "no json here",
        json.dumps({"summary": "missing impact"}),
        json.dumps({"impact": "missing summary"}),
    ])
    def test_unusable_response(self, text):
        with pytest.raises(JobProcessingError):
            parse_analysis_response(text, CRITERIA)


class TestAIAnalysis:
    """Per-item evidence analysis."""

    def test_analyzes_and_stores_match(self, report_db, make_context):
        ctx = make_context(JobType.AI_ANALYSIS, {"evidenceId": "ev-1"})

        with patch("app.jobs.handlers.generate_text", new=_ai(ANALYSIS_JSON)):
            result = asyncio.run(handle_ai_analysis(ctx))

        assert result["totalItems"] == 1
        assert result["successCount"] == 1
        assert result["failedCount"] == 0
        assert result["results"][0]["analysis"]["criterionId"] == 1

        links = report_db.rows("evidence_criteria")
        assert [(l["evidence_id"], l["criterion_id"]) for l in links] == [("ev-1", 1)]
        assert report_db.row("evidence_entries", "ev-1")["summary"].startswith("Added retries")

    def test_skips_already_analyzed(self, report_db, make_context):
        report_db.tables["evidence_criteria"].append(
            {"id": "ec-1", "evidence_id": "ev-2", "criterion_id": 2, "confidence": 70, "explanation": "Mentoring"}
        )
        ctx = make_context(JobType.AI_ANALYSIS, {"evidenceIds": ["ev-1", "ev-2"]})
        mock_ai = _ai(ANALYSIS_JSON)

        with patch("app.jobs.handlers.generate_text", new=mock_ai):
            result = asyncio.run(handle_ai_analysis(ctx))

        assert mock_ai.await_count == 1
        skipped = result["results"][1]["analysis"]
        assert skipped["skipped"] is True
        assert skipped["criterionId"] == 2

    def test_force_reanalysis_replaces_links(self, report_db, make_context):
        report_db.tables["evidence_criteria"].append(
            {"id": "ec-1", "evidence_id": "ev-1", "criterion_id": 2, "confidence": 70, "explanation": "old"}
        )
        ctx = make_context(JobType.AI_ANALYSIS, {"evidenceId": "ev-1", "forceReanalysis": True})

        with patch("app.jobs.handlers.generate_text", new=_ai(ANALYSIS_JSON)):
            asyncio.run(handle_ai_analysis(ctx))

        links = report_db.rows("evidence_criteria")
        assert [(l["evidence_id"], l["criterion_id"]) for l in links] == [("ev-1", 1)]

    def test_item_failures_are_recorded(self, report_db, make_context):
        ctx = make_context(JobType.AI_ANALYSIS, {"evidenceIds": ["ev-missing", "ev-1"]})

        with patch("app.jobs.handlers.generate_text", new=_ai(ANALYSIS_JSON)):
            result = asyncio.run(handle_ai_analysis(ctx))

        assert result["successCount"] == 1
        assert result["failedCount"] == 1
        assert result["results"][0] == {
            "evidenceId": "ev-missing",
            "success": False,
            "error": "Evidence ev-missing not found",
        }
        assert any(entry["level"] == "warn" for entry in ctx.logs)

    def test_all_items_failing_fails_job(self, report_db, make_context):
        ctx = make_context(JobType.AI_ANALYSIS, {"evidenceIds": ["ev-1"]})

        with patch("app.jobs.handlers.generate_text", new=_ai("not json")):
            with pytest.raises(JobProcessingError, match="Failed to analyze all 1 evidence items"):
                asyncio.run(handle_ai_analysis(ctx))
