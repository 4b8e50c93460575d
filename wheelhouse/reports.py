"""AI narrative reports for completed assessment submissions."""
from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Callable

from sqlalchemy.orm import Session

from wheelhouse import store
from wheelhouse.db import session_scope
from wheelhouse.llm import LLMClient
from wheelhouse.models import utcnow
from wheelhouse.schemas import TimelineEntry
from wheelhouse.utils import extract_json_text

log = logging.getLogger(__name__)

REPORT_SYSTEM_PROMPT = """\
You are a cybersecurity compliance expert writing assessment reports for \
small and mid-sized companies. Be specific: tie every recommendation to a \
domain score or a flagged risk, and order recommendations by urgency.

Return ONLY a JSON object with these keys:
{
  "executive_summary": "2-3 paragraphs summarising the results",
  "domain_analysis": [
    {"domain": "...", "analysis": "...", "recommendations": ["..."]}
  ],
  "risk_summary": "summary of the identified risks and their impact",
  "recommendations": ["5-10 prioritised recommendations"],
  "conclusion": "closing remarks and next steps"
}"""

# camelCase keys some models reply with anyway
_KEY_ALIASES = {
    "executiveSummary": "executive_summary",
    "domainAnalysis": "domain_analysis",
    "riskSummary": "risk_summary",
}

NARRATIVE_DEFAULTS: dict[str, Any] = {
    "executive_summary": "",
    "domain_analysis": [],
    "risk_summary": "",
    "recommendations": [],
    "conclusion": "",
}


def build_report_prompt(submission: dict[str, Any]) -> str:
    domains = "\n".join(
        f"- {d['domain']}: {d['percentage']}% ({d['score']}/{d['max_score']}), "
        f"{d['risks_identified']} risks"
        for d in submission.get("domain_scores") or []
    )
    risks = "\n".join(
        f"- [{r['risk_level']}] {r['domain']}: {r['question_text']}"
        for r in submission.get("risks_identified") or []
    )
    return (
        f"Company: {submission.get('company_name') or 'Unknown'}\n"
        f"Assessment: {submission.get('assessment_title', '')}\n"
        f"Date: {submission.get('completed_at') or submission.get('submitted_at') or ''}\n"
        f"Overall Score: {submission.get('overall_percentage', 0)}% "
        f"({submission.get('overall_score', 0)}/{submission.get('max_possible_score', 0)})\n"
        f"Maturity Level: {submission.get('maturity_level', '')}\n"
        f"Total Risks Identified: {submission.get('total_risks', 0)}\n\n"
        f"DOMAIN SCORES:\n{domains or 'None'}\n\n"
        f"FLAGGED RISKS:\n{risks or 'None identified'}"
    )


def parse_report(text: str) -> dict[str, Any]:
    """Parse the model's JSON narrative.

    Unparseable replies are kept whole as the executive summary rather than
    discarded.
    """
    try:
        raw = json.loads(extract_json_text(text))
    except json.JSONDecodeError:
        raw = None
    if not isinstance(raw, dict):
        return {**NARRATIVE_DEFAULTS, "executive_summary": text.strip()}
    narrative = dict(NARRATIVE_DEFAULTS)
    for key, val in raw.items():
        key = _KEY_ALIASES.get(key, key)
        if key in narrative and val is not None:
            narrative[key] = val
    return narrative


def compose_report(report_row: dict[str, Any], submission: dict[str, Any]) -> dict[str, Any]:
    """Merge a stored report row with its narrative and the submission's scores."""
    try:
        narrative = json.loads(report_row.get("content") or "{}")
    except json.JSONDecodeError:
        narrative = {}
    return {
        "id": report_row["id"],
        "title": report_row["title"],
        "assessment_id": report_row["assessment_id"],
        "submission_id": report_row["submission_id"],
        "user_id": report_row["user_id"],
        "generated_at": report_row["generated_at"],
        "overall_score": report_row["overall_score"],
        "overall_percentage": report_row["overall_percentage"],
        "maturity_level": report_row["maturity_level"],
        "domain_scores": submission.get("domain_scores") or [],
        **{**NARRATIVE_DEFAULTS, **narrative},
        "flagged_risks": submission.get("risks_identified") or [],
    }


async def generate_report(session: Session, submission: dict[str, Any], client: LLMClient,
                          user_id: str) -> dict[str, Any]:
    """Ask the model for a narrative, store it and point the submission at it."""
    text = await client.complete(REPORT_SYSTEM_PROMPT, build_report_prompt(submission))
    narrative = parse_report(text)
    now = utcnow()
    row = store.create_item(session, "reports", {
        "user_id": user_id,
        "assessment_id": submission["assessment_id"],
        "submission_id": submission["id"],
        "title": f"{submission.get('assessment_title', 'Assessment')} Report",
        "content": json.dumps(narrative),
        "overall_score": submission.get("overall_score", 0),
        "overall_percentage": submission.get("overall_percentage", 0),
        "maturity_level": submission.get("maturity_level", ""),
        "generated_at": now,
    })
    entry = TimelineEntry(
        id=str(uuid.uuid4()),
        assessment_id=submission["assessment_id"],
        user_id=submission["user_id"],
        user_name=submission.get("user_name", ""),
        action="report_generated",
        overall_score=submission.get("overall_score"),
        overall_percentage=submission.get("overall_percentage"),
        timestamp=now.isoformat(),
        notes="AI report generated",
    )
    store.update_item(session, "assessment_submissions", submission["id"], {
        "ai_report_generated": True,
        "ai_report_id": row["id"],
        "timeline": [*(submission.get("timeline") or []), entry.model_dump()],
    })
    log.info("Generated report %s for submission %s", row["id"], submission["id"])
    return compose_report(row, submission)


def list_reports(session: Session, user_id: str | None = None) -> list[dict[str, Any]]:
    """Reports newest first; ``user_id=None`` lists every report."""
    if user_id is None:
        rows = store.scan_items(session, "reports")
    else:
        rows = store.scan_items(session, "reports", user_id=user_id)
    return sorted(rows, key=lambda r: r.get("generated_at") or "", reverse=True)


async def generate_report_in_background(
    session_factory: Callable[[], Session],
    submission_id: str,
    client_factory: Callable[[], LLMClient],
) -> None:
    """Post-submission hook; a failure here is logged and never surfaces to the user."""
    try:
        client = client_factory()
        with session_scope(session_factory) as session:
            submission = store.get_item(session, "assessment_submissions", submission_id)
            if submission is None:
                log.warning("Submission %s vanished before report generation", submission_id)
                return
            await generate_report(session, submission, client, submission["user_id"])
            session.commit()
    except Exception as exc:
        log.warning("Report generation failed for submission %s: %s", submission_id, exc)
