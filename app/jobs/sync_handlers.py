"""
Evidence Sync Handlers

Processors for AGENT_GITHUB_SYNC and AGENT_JIRA_SYNC. Each pulls work items
from the source API for a date range, optionally matches them to PR-detectable
criteria with the AI model, and stores new items as evidence entries.

A failing repository/project is logged and skipped; the job fails only when
every one of them failed.
"""

import json
import logging
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app import ai_client
from app.jobs.errors import JobProcessingError
from app.jobs.job_types import GithubSyncConfig, JiraSyncConfig
from app.jobs.runner import JobContext
from app.jobs.utils import truncate, utc_now_iso

logger = logging.getLogger(__name__)

GITHUB_API_URL = os.environ.get("GITHUB_API_URL", "https://api.github.com")
GITHUB_TOKEN = os.environ.get("GITHUB_TOKEN")

JIRA_HOST = os.environ.get("JIRA_HOST")
JIRA_EMAIL = os.environ.get("JIRA_EMAIL")
JIRA_API_TOKEN = os.environ.get("JIRA_API_TOKEN")

DEFAULT_LOOKBACK_DAYS = 365
DRY_RUN_LIMIT = 5
PAGE_SIZE = 100
SEARCH_RESULT_CAP = 1000
MIN_MATCH_CONFIDENCE = 40
REQUEST_TIMEOUT = 30.0

JIRA_FIELDS = [
    "summary", "description", "status", "issuetype", "priority",
    "assignee", "creator", "created", "updated", "resolutiondate",
]


# ============================================================================
# HTTP clients
# ============================================================================

def github_client() -> httpx.AsyncClient:
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }
    if GITHUB_TOKEN:
        headers["Authorization"] = f"Bearer {GITHUB_TOKEN}"
    return httpx.AsyncClient(base_url=GITHUB_API_URL, headers=headers, timeout=REQUEST_TIMEOUT)


def jira_client(host: str) -> httpx.AsyncClient:
    base_url = host if host.startswith("http") else f"https://{host}"
    return httpx.AsyncClient(
        base_url=base_url,
        auth=(JIRA_EMAIL or "", JIRA_API_TOKEN or ""),
        headers={"Accept": "application/json"},
        timeout=REQUEST_TIMEOUT,
    )


# ============================================================================
# Shared helpers
# ============================================================================

def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def resolve_date_range(
    start_date: Optional[datetime],
    end_date: Optional[datetime]
) -> Tuple[datetime, datetime]:
    """Configured range, defaulting to the year before end_date (or now)."""
    end = _as_utc(end_date) if end_date else datetime.now(timezone.utc)
    start = _as_utc(start_date) if start_date else end - timedelta(days=DEFAULT_LOOKBACK_DAYS)
    return start, end


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        # Jira offsets come as +0000
        value = value.replace("Z", "+00:00")
        value = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", value)
        return _as_utc(datetime.fromisoformat(value))
    except ValueError:
        return None


def load_detectable_criteria(supabase) -> List[Dict[str, Any]]:
    return supabase.table("criteria")\
        .select("*")\
        .eq("pr_detectable", True)\
        .order("id")\
        .execute().data or []


def evidence_exists(supabase, url: str) -> bool:
    result = supabase.table("evidence_entries")\
        .select("id")\
        .eq("url", url)\
        .limit(1)\
        .execute()
    return bool(result.data)


def _extract_json_array(text: str) -> List[Dict[str, Any]]:
    start = text.find("[")
    end = text.rfind("]") + 1
    if start == -1 or end <= start:
        return []
    parsed = json.loads(text[start:end])
    return [item for item in parsed if isinstance(item, dict)]


async def match_criteria(
    ctx: JobContext,
    label: str,
    details: str,
    criteria: List[Dict[str, Any]],
    user_context: Optional[str]
) -> List[Dict[str, Any]]:
    """
    Ask the AI model which criteria a work item demonstrates.
    Returns [{criterionId, confidence (0-1), explanation}]; failures yield [].
    """
    criteria_lines = "\n".join(
        f"{c['id']}. [{c.get('area_of_concentration', '')} - {c.get('subarea', '')}] {c.get('description', '')}"
        for c in criteria
    )
    context_line = f"Context about the engineer: {user_context}\n" if user_context else ""
    prompt = f"""You are analyzing work for a software engineer's performance review.

{context_line}{details}

Review Criteria:
{criteria_lines}

For each criterion this work provides evidence for, respond with a JSON array of objects:
[
  {{"criterion_id": <number>, "confidence": <0-100>, "explanation": "<brief explanation>"}}
]

Only include criteria where there is clear evidence (confidence > {MIN_MATCH_CONFIDENCE}). If no criteria match, return []."""

    try:
        response = await ai_client.generate_text(prompt, max_tokens=4096, json_output=True)
        items = _extract_json_array(response.text)
    except (ai_client.AIServiceError, ValueError) as e:
        ctx.warn(f"AI analysis failed for {label}: {str(e)}")
        return []

    known_ids = {str(c["id"]): c["id"] for c in criteria}
    matches = []
    for item in items:
        criterion_id = known_ids.get(str(item.get("criterion_id")))
        if criterion_id is None:
            continue
        try:
            confidence = float(item.get("confidence") or 0)
        except (TypeError, ValueError):
            continue
        if confidence <= MIN_MATCH_CONFIDENCE:
            continue
        matches.append({
            "criterionId": criterion_id,
            "confidence": min(confidence, 100.0) / 100,
            "explanation": item.get("explanation") or "",
        })
    return matches


def store_evidence(supabase, entry: Dict[str, Any], matches: List[Dict[str, Any]]) -> str:
    """Insert an evidence entry and its criteria links. Returns the evidence id."""
    entry = dict(entry, created_at=utc_now_iso())
    result = supabase.table("evidence_entries").insert(entry).execute()
    evidence_id = result.data[0]["id"]

    for match in matches:
        supabase.table("evidence_criteria").insert({
            "evidence_id": evidence_id,
            "criterion_id": match["criterionId"],
            "confidence": match["confidence"],
            "explanation": match["explanation"],
        }).execute()

    return evidence_id


def _overall_progress(source_index: int, source_count: int, item_index: int, item_count: int) -> int:
    within = item_index / item_count if item_count else 1
    return round(100 * (source_index + within) / source_count)


# ============================================================================
# AGENT_GITHUB_SYNC
# ============================================================================

async def fetch_merged_prs(
    client: httpx.AsyncClient,
    repository: str,
    since: datetime,
    until: datetime,
    dry_run: bool
) -> List[Dict[str, Any]]:
    """
    Merged PRs of a repository in the range, most recently updated first.

    The search query filters on merge date; results are re-checked against the
    exact timestamps and paging runs until a short page or the search cap.
    """
    query = (
        f"repo:{repository} is:pr is:merged "
        f"merged:{since.date().isoformat()}..{until.date().isoformat()}"
    )
    prs: List[Dict[str, Any]] = []
    per_page = DRY_RUN_LIMIT if dry_run else PAGE_SIZE
    page = 1

    while True:
        response = await client.get(
            "/search/issues",
            params={
                "q": query,
                "sort": "updated",
                "order": "desc",
                "per_page": per_page,
                "page": page,
            },
        )
        response.raise_for_status()
        data = response.json()
        batch = data.get("items") or []

        for item in batch:
            # Search results carry the merge time under pull_request
            merged_value = (item.get("pull_request") or {}).get("merged_at")
            merged_at = _parse_timestamp(merged_value)
            if not merged_at or merged_at < since or merged_at > until:
                continue
            prs.append(dict(item, merged_at=merged_value))

        if dry_run and len(prs) >= DRY_RUN_LIMIT:
            return prs[:DRY_RUN_LIMIT]
        total = min(data.get("total_count") or 0, SEARCH_RESULT_CAP)
        if len(batch) < per_page or page * per_page >= total:
            break
        page += 1

    return prs


async def handle_github_sync(ctx: JobContext) -> Dict[str, Any]:
    """
    Sync merged pull requests from GitHub repositories as evidence.
    """
    config = GithubSyncConfig.model_validate(ctx.config)
    supabase = ctx.supabase
    since, until = resolve_date_range(config.start_date, config.end_date)

    ctx.info(f"Starting GitHub sync for {len(config.repositories)} repositories")
    ctx.info(f"Date range: {since.isoformat()} to {until.isoformat()}")
    if config.dry_run:
        ctx.info("Dry run: no evidence will be stored")
    ctx.update_progress(0, "Loading criteria")

    criteria = load_detectable_criteria(supabase) if config.match_criteria else []
    use_ai = bool(criteria) and ai_client.is_configured()
    if config.match_criteria and not use_ai:
        ctx.warn("Criteria matching skipped: no criteria or AI model configured")

    results: Dict[str, Any] = {
        "totalPRs": 0,
        "totalEvidence": 0,
        "skipped": 0,
        "dryRun": config.dry_run,
        "repositories": {},
    }
    failed = 0

    async with github_client() as client:
        for repo_index, repository in enumerate(config.repositories):
            ctx.raise_if_cancelled()
            ctx.info(f"[{repo_index + 1}/{len(config.repositories)}] Processing {repository}")
            repo_result = {"prs": 0, "evidence": 0}
            results["repositories"][repository] = repo_result

            try:
                prs = await fetch_merged_prs(client, repository, since, until, config.dry_run)
                ctx.info(f"Found {len(prs)} merged PRs in {repository}")

                for pr_index, pr in enumerate(prs):
                    ctx.raise_if_cancelled()
                    ctx.update_progress(
                        _overall_progress(repo_index, len(config.repositories), pr_index, len(prs)),
                        f"{repository}#{pr['number']}"
                    )

                    url = pr.get("html_url")
                    if url and evidence_exists(supabase, url):
                        ctx.debug(f"[{repository}#{pr['number']}] Already synced, skipping")
                        results["skipped"] += 1
                        continue

                    detail_response = await client.get(f"/repos/{repository}/pulls/{pr['number']}")
                    detail_response.raise_for_status()
                    details = detail_response.json()

                    matches = []
                    if use_ai:
                        matches = await match_criteria(
                            ctx,
                            f"{repository}#{pr['number']}",
                            f"PR Title: {pr.get('title')}\n"
                            f"PR Description: {pr.get('body') or 'No description provided'}\n"
                            f"Additions: {details.get('additions', 0)} lines\n"
                            f"Deletions: {details.get('deletions', 0)} lines\n"
                            f"Changed Files: {details.get('changed_files', 0)}",
                            criteria,
                            config.user_context
                        )
                        ctx.info(f"[{repository}#{pr['number']}] Matched {len(matches)} criteria")

                    repo_result["prs"] += 1
                    results["totalPRs"] += 1

                    if config.dry_run:
                        continue

                    jira_key = re.search(r"[A-Z]+-\d+", f"{pr.get('title', '')} {pr.get('body') or ''}")
                    store_evidence(supabase, {
                        "type": "PR",
                        "title": pr.get("title"),
                        "summary": truncate(pr.get("body"), 1000),
                        "url": url,
                        "source": repository,
                        "occurred_at": pr.get("merged_at"),
                        "metadata": {
                            "prNumber": pr["number"],
                            "repository": repository,
                            "author": (pr.get("user") or {}).get("login"),
                            "additions": details.get("additions", 0),
                            "deletions": details.get("deletions", 0),
                            "changedFiles": details.get("changed_files", 0),
                            "jiraKey": jira_key.group(0) if jira_key else None,
                        },
                    }, matches)
                    repo_result["evidence"] += 1
                    results["totalEvidence"] += 1

            except httpx.HTTPError as e:
                failed += 1
                repo_result["error"] = str(e)
                ctx.error(f"Error processing {repository}: {str(e)}")

    if failed == len(config.repositories):
        raise JobProcessingError(f"GitHub sync failed for all {failed} repositories")

    ctx.update_progress(100, "Sync complete")
    ctx.info(
        f"Sync completed: {results['totalPRs']} PRs processed, "
        f"{results['totalEvidence']} evidence entries created"
    )
    return results


# ============================================================================
# AGENT_JIRA_SYNC
# ============================================================================

def adf_to_text(node: Any) -> str:
    """Flatten a Jira document (Atlassian Document Format) to plain text."""
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return "".join(adf_to_text(n) for n in node)
    if isinstance(node, dict):
        text = node.get("text", "")
        children = adf_to_text(node.get("content"))
        separator = "\n" if node.get("type") in ("paragraph", "heading", "listItem") else ""
        return f"{text}{children}{separator}"
    return ""


async def fetch_jira_issues(
    client: httpx.AsyncClient,
    project: str,
    since: datetime,
    until: datetime,
    dry_run: bool
) -> List[Dict[str, Any]]:
    """Issues of a project updated within the range, newest first."""
    jql = (
        f'project = {project} AND updated >= "{since.date().isoformat()}" '
        f'AND updated <= "{until.date().isoformat()}" ORDER BY updated DESC'
    )
    issues: List[Dict[str, Any]] = []
    next_page_token = None

    while True:
        body: Dict[str, Any] = {
            "jql": jql,
            "fields": JIRA_FIELDS,
            "maxResults": DRY_RUN_LIMIT if dry_run else PAGE_SIZE,
        }
        if next_page_token:
            body["nextPageToken"] = next_page_token

        response = await client.post("/rest/api/3/search/jql", json=body)
        response.raise_for_status()
        data = response.json()

        issues.extend(data.get("issues") or [])
        next_page_token = data.get("nextPageToken")

        if dry_run or data.get("isLast", True) or not next_page_token:
            break

    return issues[:DRY_RUN_LIMIT] if dry_run else issues


async def handle_jira_sync(ctx: JobContext) -> Dict[str, Any]:
    """
    Sync issues from Jira projects as evidence.
    """
    config = JiraSyncConfig.model_validate(ctx.config)
    supabase = ctx.supabase

    host = config.jira_host or JIRA_HOST
    if not host or not JIRA_EMAIL or not JIRA_API_TOKEN:
        raise JobProcessingError(
            "Jira is not configured. Please set JIRA_HOST, JIRA_EMAIL and JIRA_API_TOKEN."
        )
    browse_host = host.split("://", 1)[-1].rstrip("/")

    since, until = resolve_date_range(config.start_date, config.end_date)

    ctx.info(f"Starting Jira sync for {len(config.projects)} projects on {browse_host}")
    ctx.info(f"Date range: {since.isoformat()} to {until.isoformat()}")
    if config.dry_run:
        ctx.info("Dry run: no evidence will be stored")
    ctx.update_progress(0, "Loading criteria")

    criteria = load_detectable_criteria(supabase) if config.match_criteria else []
    use_ai = bool(criteria) and ai_client.is_configured()
    if config.match_criteria and not use_ai:
        ctx.warn("Criteria matching skipped: no criteria or AI model configured")

    results: Dict[str, Any] = {
        "totalIssues": 0,
        "totalEvidence": 0,
        "skipped": 0,
        "dryRun": config.dry_run,
        "projects": {},
    }
    failed = 0

    async with jira_client(host) as client:
        for project_index, project in enumerate(config.projects):
            ctx.raise_if_cancelled()
            ctx.info(f"[{project_index + 1}/{len(config.projects)}] Processing project {project}")
            project_result = {"issues": 0, "evidence": 0}
            results["projects"][project] = project_result

            try:
                issues = await fetch_jira_issues(client, project, since, until, config.dry_run)
                ctx.info(f"Found {len(issues)} issues in project {project}")

                for issue_index, issue in enumerate(issues):
                    ctx.raise_if_cancelled()
                    ctx.update_progress(
                        _overall_progress(project_index, len(config.projects), issue_index, len(issues)),
                        issue["key"]
                    )

                    fields = issue.get("fields") or {}
                    url = f"https://{browse_host}/browse/{issue['key']}"
                    if evidence_exists(supabase, url):
                        ctx.debug(f"[{issue['key']}] Already synced, skipping")
                        results["skipped"] += 1
                        continue

                    description = adf_to_text(fields.get("description")).strip()
                    issue_type = (fields.get("issuetype") or {}).get("name")
                    status = (fields.get("status") or {}).get("name")

                    matches = []
                    if use_ai:
                        matches = await match_criteria(
                            ctx,
                            issue["key"],
                            f"Jira Issue: {issue['key']}\n"
                            f"Type: {issue_type}\n"
                            f"Status: {status}\n"
                            f"Summary: {fields.get('summary')}\n"
                            f"Description: {truncate(description, 2000) or 'No description provided'}",
                            criteria,
                            config.user_context
                        )
                        ctx.info(f"[{issue['key']}] Matched {len(matches)} criteria")

                    project_result["issues"] += 1
                    results["totalIssues"] += 1

                    if config.dry_run:
                        continue

                    store_evidence(supabase, {
                        "type": "JIRA",
                        "title": f"{issue['key']}: {fields.get('summary')}",
                        "summary": truncate(description, 1000),
                        "url": url,
                        "source": project,
                        "occurred_at": fields.get("resolutiondate") or fields.get("updated"),
                        "metadata": {
                            "key": issue["key"],
                            "issueType": issue_type,
                            "status": status,
                            "priority": (fields.get("priority") or {}).get("name"),
                            "assignee": (fields.get("assignee") or {}).get("displayName"),
                        },
                    }, matches)
                    project_result["evidence"] += 1
                    results["totalEvidence"] += 1

            except httpx.HTTPError as e:
                failed += 1
                project_result["error"] = str(e)
                ctx.error(f"Error processing project {project}: {str(e)}")

    if failed == len(config.projects):
        raise JobProcessingError(f"Jira sync failed for all {failed} projects")

    ctx.update_progress(100, "Sync complete")
    ctx.info(
        f"Sync completed: {results['totalIssues']} issues processed, "
        f"{results['totalEvidence']} evidence entries created"
    )
    return results
