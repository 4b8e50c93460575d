from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    def to_dict(self) -> dict[str, Any]:
        """Column values as a plain document; datetimes become ISO strings."""
        doc: dict[str, Any] = {}
        for col in self.__table__.columns:
            val = getattr(self, col.key)
            doc[col.key] = val.isoformat() if isinstance(val, datetime) else val
        return doc


class _Timestamps:
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class User(_Timestamps, Base):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default="member")  # admin | member
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending | approved | rejected
    company_name: Mapped[str] = mapped_column(String(300), default="")
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    password_reset_token: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    password_reset_expires: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class _Artifact(_Timestamps):
    """Columns shared by every owner-scoped, publishable record."""
    custom_id: Mapped[str] = mapped_column(String(10), default="")
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(30), default="draft", index=True)
    source: Mapped[str] = mapped_column(String(10), default="user", index=True)  # admin | user
    assigned_users: Mapped[list] = mapped_column(JSON, default=list)


class Risk(_Artifact, Base):
    __tablename__ = "risks"

    category: Mapped[str] = mapped_column(String(200), default="")
    likelihood: Mapped[str] = mapped_column(String(20), default="Medium")
    impact: Mapped[str] = mapped_column(String(20), default="Medium")
    owner: Mapped[str] = mapped_column(String(200), default="")
    mitigation_plan: Mapped[str] = mapped_column(Text, default="")
    # "{submission_id}:{question_id}" for risks raised by an assessment
    origin_key: Mapped[str | None] = mapped_column(String(80), nullable=True, unique=True, index=True)


class Asset(_Artifact, Base):
    __tablename__ = "assets"

    type: Mapped[str] = mapped_column(String(100), default="")
    location: Mapped[str] = mapped_column(String(300), default="")
    owner: Mapped[str] = mapped_column(String(200), default="")


class Framework(_Artifact, Base):
    __tablename__ = "frameworks"

    type: Mapped[str] = mapped_column(String(100), default="")
    version: Mapped[str] = mapped_column(String(50), default="")
    compliance: Mapped[int] = mapped_column(Integer, default=0)
    readiness: Mapped[str] = mapped_column(String(20), default="not_ready")
    controls_data: Mapped[list] = mapped_column(JSON, default=list)
    comments: Mapped[list] = mapped_column(JSON, default=list)
    domains: Mapped[list] = mapped_column(JSON, default=list)
    activities: Mapped[list] = mapped_column(JSON, default=list)


class DPIA(_Artifact, Base):
    __tablename__ = "dpias"

    project_name: Mapped[str] = mapped_column(String(300), default="")
    data_types: Mapped[list] = mapped_column(JSON, default=list)
    processing_purpose: Mapped[str] = mapped_column(Text, default="")
    risk_level: Mapped[str] = mapped_column(String(20), default="Low")


class Assessment(_Timestamps, Base):
    __tablename__ = "assessments"

    custom_id: Mapped[str] = mapped_column(String(10), default="")
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    questions: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(30), default="draft", index=True)
    assigned_users: Mapped[list] = mapped_column(JSON, default=list)


class AssessmentProgress(_Timestamps, Base):
    __tablename__ = "assessment_progress"
    __table_args__ = (UniqueConstraint("user_id", "assessment_id", name="uq_progress_user_assessment"),)

    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    assessment_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    answers: Mapped[list] = mapped_column(JSON, default=list)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    completed: Mapped[int] = mapped_column(Integer, default=0)
    pending: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="in_progress")  # in_progress | completed
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class AssessmentSubmission(_Timestamps, Base):
    __tablename__ = "assessment_submissions"

    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    assessment_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    assessment_title: Mapped[str] = mapped_column(String(300), default="")
    user_name: Mapped[str] = mapped_column(String(200), default="")
    user_email: Mapped[str] = mapped_column(String(320), default="")
    company_name: Mapped[str] = mapped_column(String(300), default="")
    answers: Mapped[list] = mapped_column(JSON, default=list)
    progress: Mapped[int] = mapped_column(Integer, default=100)
    total_questions: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="completed")
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    overall_score: Mapped[int] = mapped_column(Integer, default=0)
    max_possible_score: Mapped[int] = mapped_column(Integer, default=0)
    overall_percentage: Mapped[int] = mapped_column(Integer, default=0)
    maturity_level: Mapped[str] = mapped_column(String(20), default="Critical")
    domain_scores: Mapped[list] = mapped_column(JSON, default=list)
    risks_identified: Mapped[list] = mapped_column(JSON, default=list)
    total_risks: Mapped[int] = mapped_column(Integer, default=0)
    ai_report_generated: Mapped[bool] = mapped_column(Boolean, default=False)
    ai_report_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    timeline: Mapped[list] = mapped_column(JSON, default=list)


class Report(_Timestamps, Base):
    __tablename__ = "reports"

    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    assessment_id: Mapped[str] = mapped_column(String(36), nullable=False)
    submission_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), default="")
    content: Mapped[str] = mapped_column(Text, default="{}")
    overall_score: Mapped[int] = mapped_column(Integer, default=0)
    overall_percentage: Mapped[int] = mapped_column(Integer, default=0)
    maturity_level: Mapped[str] = mapped_column(String(20), default="")
    generated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Setting(_Timestamps, Base):
    """Global configuration rows, keyed by a well-known id such as ``bot_script``."""
    __tablename__ = "settings"

    name: Mapped[str] = mapped_column(String(200), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    updated_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
