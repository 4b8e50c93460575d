"""Shared business logic behind the Wheelhouse API.

Every function takes an open session and leaves committing to the caller.
"""
from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wheelhouse import store
from wheelhouse.auth import TokenPayload, hash_password, verify_password
from wheelhouse.config import get_settings
from wheelhouse.models import utcnow
from wheelhouse.schemas import Answer, AnswerInput, IdentifiedRisk, Question, TimelineEntry
from wheelhouse.scoring import evaluate_responses, framework_compliance, has_value, percent, summarize
from wheelhouse.utils import as_utc, shorten

log = logging.getLogger(__name__)


class ServiceError(Exception):
    """A request the domain layer refuses; ``status_code`` maps it onto HTTP."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthError(ServiceError):
    status_code = 401


class Forbidden(ServiceError):
    status_code = 403


class NotFound(ServiceError):
    status_code = 404


class Conflict(ServiceError):
    status_code = 409


# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

PUBLIC_USER_FIELDS = (
    "id", "email", "name", "role", "status", "company_name", "last_login_at", "created_at",
)

ARTIFACT_KINDS = ("risks", "assets", "frameworks", "dpias")

ARTIFACT_FIELDS: dict[str, tuple[str, ...]] = {
    "risks": ("category", "likelihood", "impact", "owner", "mitigation_plan"),
    "assets": ("type", "location", "owner"),
    "frameworks": ("type", "version", "domains"),
    "dpias": ("project_name", "data_types", "processing_purpose", "risk_level"),
}
COMMON_ARTIFACT_FIELDS = ("name", "description", "status", "assigned_users")

ARTIFACT_STATUSES: dict[str, set[str]] = {
    "risks": {"draft", "active", "mitigated", "closed", "published", "assigned"},
    "assets": {"draft", "active", "retired", "published", "assigned"},
    "frameworks": {"draft", "published", "assigned"},
    "dpias": {"draft", "published", "assigned"},
}

ARTIFACT_LABELS = {"risks": "Risk", "assets": "Asset", "frameworks": "Framework", "dpias": "DPIA"}

ASSESSMENT_FIELDS = ("title", "description", "questions", "status", "assigned_users")

BOT_SCRIPT_ID = "bot_script"
BOT_SCRIPT_NAME = "AI Assistant System Prompt"

DEFAULT_BOT_SCRIPT = """\
You are Sarah, a friendly cybersecurity advisor on the Cyber Wheelhouse team. \
Talk like a helpful colleague: warm, plain-spoken and professional.

You help with:
- Cybersecurity best practices and threat prevention
- Compliance frameworks (GDPR, ISO 27001, NIST, SOC 2, PCI-DSS)
- Risk assessment and risk management
- Data protection, privacy regulations and DPIAs
- Using the Cyber Wheelhouse platform: assessments, risk register, assets, \
frameworks and reports

Keep answers short and concrete, explain jargon, and offer to go deeper. Point \
users to their dashboard for questions about their own data, and recommend \
involving their security or legal team before critical decisions.
"""


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def public_user(user: dict[str, Any]) -> dict[str, Any]:
    return {f: user.get(f) for f in PUBLIC_USER_FIELDS}


def get_user_by_email(session: Session, email: str) -> dict[str, Any] | None:
    return store.find_item(session, "users", email=email.strip().lower())


def register_user(session: Session, *, email: str, password: str, name: str, company_name: str) -> dict[str, Any]:
    """Create an account.  The very first account becomes an approved admin."""
    if not (email.strip() and password and name.strip() and company_name.strip()):
        raise ServiceError("Email, password, name, and company name are required")
    if get_user_by_email(session, email):
        raise Conflict("User with this email already exists")
    first = store.count_items(session, "users") == 0
    return store.create_item(session, "users", {
        "email": email.strip().lower(),
        "name": name.strip(),
        "company_name": company_name.strip(),
        "password_hash": hash_password(password),
        "role": "admin" if first else "member",
        "status": "approved" if first else "pending",
    })


def authenticate(session: Session, email: str, password: str) -> dict[str, Any]:
    if not email or not password:
        raise ServiceError("Email and password are required")
    user = get_user_by_email(session, email)
    if user is None or not verify_password(password, user["password_hash"]):
        raise AuthError("Invalid email or password")
    if user["status"] == "pending":
        raise Forbidden("Your account is pending admin approval. Please wait for approval.")
    if user["status"] == "rejected":
        raise Forbidden("Your account has been rejected. Please contact support.")
    return record_login(session, user["id"])


def record_login(session: Session, user_id: str) -> dict[str, Any] | None:
    return store.update_item(session, "users", user_id, {"last_login_at": utcnow()})


def list_users(session: Session) -> list[dict[str, Any]]:
    return [public_user(u) for u in store.scan_items(session, "users")]


def update_user_access(session: Session, user_id: str, *, role: str | None = None,
                       status: str | None = None) -> dict[str, Any] | None:
    updates = {k: v for k, v in (("role", role), ("status", status)) if v}
    if store.get_item(session, "users", user_id) is None:
        return None
    return public_user(store.update_item(session, "users", user_id, updates))


def delete_user(session: Session, actor: TokenPayload, user_id: str) -> bool:
    if actor.user_id == user_id:
        raise ServiceError("Cannot delete yourself")
    return store.delete_item(session, "users", user_id)


def _check_password(password: str) -> None:
    if len(password) < get_settings().min_password_length:
        raise ServiceError(
            f"Password must be at least {get_settings().min_password_length} characters long"
        )


def admin_reset_password(session: Session, user_id: str, password: str) -> bool:
    _check_password(password)
    return store.update_item(session, "users", user_id, {"password_hash": hash_password(password)}) is not None


def create_password_reset(session: Session, email: str) -> str | None:
    """Issue a one-hour reset token; ``None`` when no account matches."""
    user = get_user_by_email(session, email)
    if user is None:
        return None
    token = secrets.token_urlsafe(32)
    expires = utcnow() + timedelta(minutes=get_settings().password_reset_ttl_minutes)
    store.update_item(session, "users", user["id"], {
        "password_reset_token": token, "password_reset_expires": expires,
    })
    log.info("Password reset requested for %s", user["email"])
    return token


def reset_password(session: Session, token: str, password: str) -> bool:
    if not token or not password:
        raise ServiceError("Token and password are required")
    _check_password(password)
    user = store.find_item(session, "users", password_reset_token=token)
    if user is None:
        return False
    expires = as_utc(_parse_dt(user.get("password_reset_expires")))
    if expires is None or expires < utcnow():
        return False
    store.update_item(session, "users", user["id"], {
        "password_hash": hash_password(password),
        "password_reset_token": None,
        "password_reset_expires": None,
    })
    return True


# ---------------------------------------------------------------------------
# Visibility
# ---------------------------------------------------------------------------


def is_assigned(item: dict[str, Any], user: TokenPayload) -> bool:
    return any(
        u.get("id") == user.user_id or (u.get("email") and u.get("email") == user.email)
        for u in item.get("assigned_users") or []
    )


def visible_to(item: dict[str, Any], user: TokenPayload) -> bool:
    """Owners see their own records; admin records are shared by publishing or assigning."""
    if user.is_admin or item.get("user_id") == user.user_id:
        return True
    if item.get("source") != "admin":
        return False
    return item.get("status") == "published" or (item.get("status") == "assigned" and is_assigned(item, user))


def assessment_visible_to(item: dict[str, Any], user: TokenPayload) -> bool:
    if user.is_admin:
        return True
    return item.get("status") == "published" or (item.get("status") == "assigned" and is_assigned(item, user))


def can_modify(item: dict[str, Any], user: TokenPayload) -> bool:
    return user.is_admin or item.get("user_id") == user.user_id


def _dump_users(users: Iterable[Any] | None) -> list[dict[str, Any]] | None:
    if users is None:
        return None
    return [u if isinstance(u, dict) else u.model_dump() for u in users]


# ---------------------------------------------------------------------------
# Compliance artifacts (risks, assets, frameworks, DPIAs)
# ---------------------------------------------------------------------------


def _artifact_values(kind: str, data: dict[str, Any]) -> dict[str, Any]:
    fields = COMMON_ARTIFACT_FIELDS + ARTIFACT_FIELDS[kind]
    values = {f: data[f] for f in fields if data.get(f) is not None}
    if "assigned_users" in values:
        values["assigned_users"] = _dump_users(values["assigned_users"])
    status = values.get("status")
    if status is not None and status not in ARTIFACT_STATUSES[kind]:
        raise ServiceError(f"Invalid status {status!r} for {ARTIFACT_LABELS[kind].lower()}")
    return values


def list_artifacts(session: Session, kind: str, user: TokenPayload) -> list[dict[str, Any]]:
    if user.is_admin:
        return store.scan_items(session, kind)
    model = store.TABLES[kind]
    candidates = store.scan_items(
        session, kind,
        or_(model.user_id == user.user_id, model.status.in_(("published", "assigned"))),
    )
    return [item for item in candidates if visible_to(item, user)]


def get_artifact(session: Session, kind: str, item_id: str, user: TokenPayload) -> dict[str, Any] | None:
    item = store.get_item(session, kind, item_id)
    if item is None or not visible_to(item, user):
        return None
    return item


def create_artifact(session: Session, kind: str, data: dict[str, Any], user: TokenPayload) -> dict[str, Any]:
    values = _artifact_values(kind, data)
    if not values.get("name"):
        raise ServiceError("Name is required")
    values.update(
        user_id=user.user_id,
        source="admin" if user.is_admin else "user",
        custom_id=store.generate_custom_id(),
    )
    if kind == "frameworks":
        values.update(controls_data=[], compliance=0, activities=[
            _activity("Framework created", user.name),
        ])
    return store.create_item(session, kind, values)


def _get_modifiable(session: Session, kind: str, item_id: str, user: TokenPayload) -> dict[str, Any] | None:
    item = get_artifact(session, kind, item_id, user)
    if item is None:
        return None
    if not can_modify(item, user):
        raise Forbidden(f"You cannot modify this {ARTIFACT_LABELS[kind].lower()}")
    return item


def update_artifact(session: Session, kind: str, item_id: str, data: dict[str, Any],
                    user: TokenPayload) -> dict[str, Any] | None:
    if _get_modifiable(session, kind, item_id, user) is None:
        return None
    return store.update_item(session, kind, item_id, _artifact_values(kind, data))


def delete_artifact(session: Session, kind: str, item_id: str, user: TokenPayload) -> bool:
    if _get_modifiable(session, kind, item_id, user) is None:
        return False
    return store.delete_item(session, kind, item_id)


# ---------------------------------------------------------------------------
# Frameworks: controls, comments, activity, readiness
# ---------------------------------------------------------------------------


def _activity(action: str, user_name: str) -> dict[str, str]:
    return {"date": utcnow().date().isoformat(), "action": action, "user": user_name}


def _save_controls(session: Session, framework: dict[str, Any], controls: list[dict[str, Any]],
                   action: str, user: TokenPayload) -> dict[str, Any]:
    """Persist a new control list; compliance is recomputed from scratch every time."""
    return store.update_item(session, "frameworks", framework["id"], {
        "controls_data": controls,
        "compliance": framework_compliance(controls),
        "activities": [_activity(action, user.name), *(framework.get("activities") or [])],
    })


def add_control(session: Session, framework_id: str, control: dict[str, Any],
                user: TokenPayload) -> dict[str, Any] | None:
    fw = _get_modifiable(session, "frameworks", framework_id, user)
    if fw is None:
        return None
    now = utcnow().isoformat()
    new = {
        **control,
        "id": str(uuid.uuid4()),
        "frameworks": [framework_id],
        "user_id": fw["user_id"],
        "created_at": now,
        "updated_at": now,
    }
    controls = [*(fw.get("controls_data") or []), new]
    return _save_controls(session, fw, controls, f"Control '{new['name']}' added", user)


def update_control(session: Session, framework_id: str, control_id: str, updates: dict[str, Any],
                   user: TokenPayload) -> dict[str, Any] | None:
    fw = _get_modifiable(session, "frameworks", framework_id, user)
    if fw is None:
        return None
    controls = [dict(c) for c in fw.get("controls_data") or []]
    for c in controls:
        if c.get("id") == control_id:
            c.update({k: v for k, v in updates.items() if v is not None})
            c["updated_at"] = utcnow().isoformat()
            return _save_controls(session, fw, controls, f"Control '{c.get('name')}' updated", user)
    raise NotFound("Control not found")


def delete_control(session: Session, framework_id: str, control_id: str,
                   user: TokenPayload) -> dict[str, Any] | None:
    fw = _get_modifiable(session, "frameworks", framework_id, user)
    if fw is None:
        return None
    controls = fw.get("controls_data") or []
    remaining = [c for c in controls if c.get("id") != control_id]
    if len(remaining) == len(controls):
        raise NotFound("Control not found")
    return _save_controls(session, fw, remaining, "Control removed", user)


def add_framework_comment(session: Session, framework_id: str, text: str,
                          user: TokenPayload) -> dict[str, Any] | None:
    fw = get_artifact(session, "frameworks", framework_id, user)
    if fw is None:
        return None
    if not text.strip():
        raise ServiceError("Comment text is required")
    comment = {
        "id": str(uuid.uuid4()), "text": text.strip(), "author": user.name,
        "created_at": utcnow().isoformat(),
    }
    return store.update_item(session, "frameworks", framework_id, {
        "comments": [*(fw.get("comments") or []), comment],
    })


def set_framework_readiness(session: Session, framework_id: str, readiness: str,
                            user: TokenPayload) -> dict[str, Any] | None:
    fw = _get_modifiable(session, "frameworks", framework_id, user)
    if fw is None:
        return None
    label = "ready" if readiness == "ready" else "not ready"
    return store.update_item(session, "frameworks", framework_id, {
        "readiness": readiness,
        "activities": [_activity(f"Framework marked as {label}", user.name), *(fw.get("activities") or [])],
    })


# ---------------------------------------------------------------------------
# Assessments
# ---------------------------------------------------------------------------


def load_questions(assessment: dict[str, Any]) -> list[Question]:
    return [Question.model_validate(q) for q in assessment.get("questions") or []]


def _assessment_values(data: dict[str, Any]) -> dict[str, Any]:
    values = {f: data[f] for f in ASSESSMENT_FIELDS if data.get(f) is not None}
    if "questions" in values:
        values["questions"] = [
            q if isinstance(q, dict) else q.model_dump(mode="json") for q in values["questions"]
        ]
    if "assigned_users" in values:
        values["assigned_users"] = _dump_users(values["assigned_users"])
    return values


def list_assessments(session: Session, user: TokenPayload) -> list[dict[str, Any]]:
    if user.is_admin:
        return store.scan_items(session, "assessments")
    model = store.TABLES["assessments"]
    candidates = store.scan_items(session, "assessments", model.status.in_(("published", "assigned")))
    return [a for a in candidates if assessment_visible_to(a, user)]


def get_assessment(session: Session, assessment_id: str, user: TokenPayload) -> dict[str, Any] | None:
    item = store.get_item(session, "assessments", assessment_id)
    if item is None or not assessment_visible_to(item, user):
        return None
    return item


def create_assessment(session: Session, data: dict[str, Any], user: TokenPayload) -> dict[str, Any]:
    values = _assessment_values(data)
    if not values.get("title"):
        raise ServiceError("Title is required")
    values.update(user_id=user.user_id, custom_id=store.generate_custom_id())
    return store.create_item(session, "assessments", values)


def update_assessment(session: Session, assessment_id: str, data: dict[str, Any]) -> dict[str, Any] | None:
    return store.update_item(session, "assessments", assessment_id, _assessment_values(data))


def delete_assessment(session: Session, assessment_id: str) -> bool:
    return store.delete_item(session, "assessments", assessment_id)


# ---------------------------------------------------------------------------
# Progress (one record per user/assessment pair)
# ---------------------------------------------------------------------------


def get_progress(session: Session, assessment_id: str, user_id: str) -> dict[str, Any]:
    existing = store.find_item(session, "assessment_progress", user_id=user_id, assessment_id=assessment_id)
    if existing is not None:
        return existing
    return {
        "id": None, "user_id": user_id, "assessment_id": assessment_id, "answers": [],
        "progress": 0, "completed": 0, "pending": 0, "status": "not_started",
        "submitted_at": None, "created_at": None, "updated_at": None,
    }


def _upsert_progress(session: Session, user_id: str, assessment_id: str, answers: list[Answer],
                     total: int, *, status: str, submitted_at=None) -> dict[str, Any]:
    values: dict[str, Any] = {
        "user_id": user_id,
        "assessment_id": assessment_id,
        "answers": [a.model_dump(mode="json") for a in answers],
        "progress": percent(len(answers), total),
        "completed": len(answers),
        "pending": max(total - len(answers), 0),
        "status": status,
        "submitted_at": submitted_at,
    }
    existing = store.find_item(session, "assessment_progress", user_id=user_id, assessment_id=assessment_id)
    if existing is None:
        return store.create_item(session, "assessment_progress", values)
    return store.update_item(session, "assessment_progress", existing["id"], values)


def save_progress(session: Session, assessment: dict[str, Any], responses: list[AnswerInput],
                  user: TokenPayload) -> dict[str, Any]:
    """Replace the in-flight answers for this user; completed assessments are frozen."""
    current = get_progress(session, assessment["id"], user.user_id)
    if current["status"] == "completed":
        raise Conflict("Assessment already completed")
    questions = load_questions(assessment)
    answers = evaluate_responses(questions, responses)
    return _upsert_progress(
        session, user.user_id, assessment["id"], list(answers.values()), len(questions),
        status="in_progress",
    )


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------


def _timeline_entry(action: str, submission_like: dict[str, Any], notes: str) -> dict[str, Any]:
    return TimelineEntry(
        id=str(uuid.uuid4()),
        assessment_id=submission_like["assessment_id"],
        user_id=submission_like["user_id"],
        user_name=submission_like["user_name"],
        action=action,
        overall_score=submission_like.get("overall_score"),
        overall_percentage=submission_like.get("overall_percentage"),
        risks_identified=submission_like.get("total_risks"),
        timestamp=utcnow().isoformat(),
        notes=notes,
    ).model_dump()


def submit_assessment(session: Session, assessment: dict[str, Any], responses: list[AnswerInput],
                      user: TokenPayload) -> dict[str, Any]:
    """Score the answers, persist the snapshot, then push flagged answers into the risk register."""
    account = store.get_item(session, "users", user.user_id)
    if account is None:
        raise NotFound("User not found")
    questions = load_questions(assessment)
    answers = evaluate_responses(questions, responses)
    given = {r.question_id for r in responses if has_value(r)}
    missing = [q.id for q in questions if q.required and q.id not in given]
    if missing:
        raise ServiceError(f"Required questions are unanswered: {', '.join(missing)}")
    summary = summarize(questions, answers)

    now = utcnow()
    progress = get_progress(session, assessment["id"], user.user_id)
    values: dict[str, Any] = {
        "assessment_id": assessment["id"],
        "assessment_title": assessment["title"],
        "user_id": account["id"],
        "user_name": account["name"],
        "user_email": account["email"],
        "company_name": account.get("company_name") or "",
        "answers": [answers[q.id].model_dump(mode="json") for q in questions if q.id in answers],
        "progress": 100,
        "total_questions": len(questions),
        "status": "completed",
        "started_at": as_utc(_parse_dt(progress.get("created_at"))) or now,
        "submitted_at": now,
        "completed_at": now,
        "overall_score": summary.overall_score,
        "max_possible_score": summary.max_possible_score,
        "overall_percentage": summary.overall_percentage,
        "maturity_level": summary.maturity_level,
        "domain_scores": [d.model_dump() for d in summary.domain_scores],
        "risks_identified": [r.model_dump() for r in summary.risks],
        "total_risks": len(summary.risks),
        "ai_report_generated": False,
    }
    timeline = [_timeline_entry(
        "completed", values,
        f"Assessment completed with {summary.overall_percentage}% score. "
        f"{len(summary.risks)} risks identified.",
    )]
    if summary.risks:
        timeline.append(_timeline_entry(
            "risk_flagged", values, f"{len(summary.risks)} answers flagged for the risk register.",
        ))
    values["timeline"] = timeline
    submission = store.create_item(session, "assessment_submissions", values)

    synced = sync_risk_register(session, submission)
    submission = store.update_item(session, "assessment_submissions", submission["id"], {
        "risks_identified": synced,
    })

    _upsert_progress(
        session, user.user_id, assessment["id"], list(answers.values()), len(questions),
        status="completed", submitted_at=now,
    )
    return submission


def _parse_dt(value: str | None):
    return datetime.fromisoformat(value) if value else None


def risk_origin_key(submission_id: str, question_id: str) -> str:
    return f"{submission_id}:{question_id}"


def sync_risk_register(session: Session, submission: dict[str, Any]) -> list[dict[str, Any]]:
    """Create one risk-register entry per flagged answer.

    Keyed by submission and question, so running it again never duplicates an
    entry.  Each insert runs in its own savepoint; a failure is logged and the
    remaining risks are still attempted.
    """
    synced: list[dict[str, Any]] = []
    for raw in submission.get("risks_identified") or []:
        risk = IdentifiedRisk.model_validate(raw)
        key = risk_origin_key(submission["id"], risk.question_id)
        try:
            with session.begin_nested():
                record = store.find_item(session, "risks", origin_key=key)
                if record is None:
                    record = store.create_item(session, "risks", {
                        "custom_id": store.generate_custom_id(),
                        "user_id": submission["user_id"],
                        "name": f"Risk: {shorten(risk.question_text, 50)}",
                        "description": (
                            f'Identified from assessment "{submission["assessment_title"]}" '
                            f"- Question: {risk.question_text}"
                        ),
                        "category": risk.domain,
                        "likelihood": risk.risk_level,
                        "impact": risk.risk_level,
                        "status": "active",
                        "source": "user",
                        "origin_key": key,
                    })
            risk.added_to_risk_register = True
            risk.risk_id = record["id"]
        except SQLAlchemyError as exc:
            log.warning("Risk register sync failed for %s: %s", key, exc)
        synced.append(risk.model_dump())
    return synced


def _submission_sort_key(sub: dict[str, Any]) -> str:
    return sub.get("completed_at") or sub.get("submitted_at") or sub.get("created_at") or ""


def list_submissions(session: Session, user: TokenPayload) -> list[dict[str, Any]]:
    if user.is_admin:
        subs = store.scan_items(session, "assessment_submissions")
    else:
        subs = store.scan_items(session, "assessment_submissions", user_id=user.user_id)
    return sorted(subs, key=_submission_sort_key, reverse=True)


def get_submission(session: Session, submission_id: str, user: TokenPayload) -> dict[str, Any] | None:
    sub = store.get_item(session, "assessment_submissions", submission_id)
    if sub is None or not can_modify(sub, user):
        return None
    return sub


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def get_bot_script(session: Session) -> dict[str, Any]:
    row = store.get_item(session, "settings", BOT_SCRIPT_ID)
    if row is not None:
        return row
    return {
        "id": BOT_SCRIPT_ID, "name": BOT_SCRIPT_NAME, "content": DEFAULT_BOT_SCRIPT,
        "updated_by": None, "created_at": None, "updated_at": None,
    }


def save_bot_script(session: Session, content: str, name: str | None, user: TokenPayload) -> dict[str, Any]:
    if not content.strip():
        raise ServiceError("Content is required")
    values = {"content": content, "name": name or BOT_SCRIPT_NAME, "updated_by": user.user_id}
    if store.get_item(session, "settings", BOT_SCRIPT_ID) is None:
        return store.create_item(session, "settings", {"id": BOT_SCRIPT_ID, **values})
    return store.update_item(session, "settings", BOT_SCRIPT_ID, values)
