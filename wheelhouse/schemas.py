"""Pydantic request/response schemas and assessment value types for the Wheelhouse API."""
from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class QuestionType(str, Enum):
    YES_NO = "yes_no"
    SINGLE_CHOICE = "single_choice"
    MULTIPLE_CHOICE = "multiple_choice"
    TEXT = "text"


CHOICE_TYPES = {QuestionType.YES_NO, QuestionType.SINGLE_CHOICE, QuestionType.MULTIPLE_CHOICE}

RiskLevel = Literal["Low", "Medium", "High", "Critical"]
MaturityLevel = Literal["Critical", "Low", "Medium", "High", "Excellent"]
PublishStatus = Literal["draft", "published", "assigned"]


# ---------------------------------------------------------------------------
# Assessment value types (stored as JSON inside assessment / submission rows)
# ---------------------------------------------------------------------------


class QuestionOption(BaseModel):
    id: str
    text: str
    is_correct: bool = False


class Question(BaseModel):
    id: str
    text: str
    type: QuestionType
    options: list[QuestionOption] = []
    correct_answer: str | list[str] | None = None  # option id(s), or "Yes"/"No"
    correct_text_answer: str | None = None  # expected keyword(s) for text questions
    domain: str = "General"
    weight: int = Field(1, ge=1, le=5)
    order: int | None = None
    required: bool = False

    @model_validator(mode="after")
    def _check_options(self) -> Question:
        if self.type == QuestionType.YES_NO and not self.options:
            self.options = [QuestionOption(id="1", text="Yes"), QuestionOption(id="2", text="No")]
        if self.type in CHOICE_TYPES and len(self.options) < 2:
            raise ValueError(f"Question {self.id!r}: {self.type.value} needs at least 2 options")
        return self


class AnswerInput(BaseModel):
    """A user's raw response to one question."""
    question_id: str
    selected_option: str | None = None
    selected_options: list[str] | None = None
    text_answer: str | None = None


class Answer(BaseModel):
    question_id: str
    question_text: str
    question_type: QuestionType
    selected_option: str | None = None
    selected_options: list[str] | None = None
    text_answer: str | None = None
    is_correct: bool
    score: int
    max_score: int
    weight: int
    domain: str
    flagged_as_risk: bool
    answered_at: str | None = None


class DomainScore(BaseModel):
    domain: str
    score: int
    max_score: int
    percentage: int
    questions_answered: int
    total_questions: int
    risks_identified: int


class IdentifiedRisk(BaseModel):
    question_id: str
    question_text: str
    domain: str
    score: int
    risk_level: RiskLevel
    flagged_at: str
    added_to_risk_register: bool = False
    risk_id: str | None = None


class TimelineEntry(BaseModel):
    id: str
    assessment_id: str
    user_id: str
    user_name: str
    action: Literal["started", "in_progress", "completed", "risk_flagged", "report_generated"]
    overall_score: int | None = None
    overall_percentage: int | None = None
    risks_identified: int | None = None
    timestamp: str
    notes: str | None = None


class AssignedUser(BaseModel):
    id: str
    name: str = ""
    email: str = ""


# ---------------------------------------------------------------------------
# Auth / users
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str = ""
    password: str = ""
    name: str = ""
    company_name: str = ""


class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""


class ForgotPasswordRequest(BaseModel):
    email: str = ""


class ResetPasswordRequest(BaseModel):
    token: str = ""
    password: str = ""


class AdminPasswordReset(BaseModel):
    password: str


class UserOut(BaseModel):
    id: str
    email: str
    name: str
    role: str
    status: str
    company_name: str = ""
    last_login_at: str | None = None
    created_at: str | None = None


class UserAccessUpdate(BaseModel):
    role: Literal["admin", "member"] | None = None
    status: Literal["pending", "approved", "rejected"] | None = None


# ---------------------------------------------------------------------------
# Assessments
# ---------------------------------------------------------------------------


def _unique_question_ids(questions: list[Question] | None) -> list[Question] | None:
    ids = [q.id for q in questions or []]
    if len(ids) != len(set(ids)):
        raise ValueError("question ids must be unique")
    return questions


class AssessmentCreate(BaseModel):
    title: str
    description: str = ""
    questions: list[Question] = []
    status: PublishStatus = "draft"
    assigned_users: list[AssignedUser] = []

    @field_validator("questions")
    @classmethod
    def question_ids_unique(cls, v):
        return _unique_question_ids(v)


class AssessmentUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    questions: list[Question] | None = None
    status: PublishStatus | None = None
    assigned_users: list[AssignedUser] | None = None

    @field_validator("questions")
    @classmethod
    def question_ids_unique(cls, v):
        return _unique_question_ids(v)


class ProgressSave(BaseModel):
    answers: list[AnswerInput] = []


class SubmissionRequest(BaseModel):
    answers: list[AnswerInput] = []


# ---------------------------------------------------------------------------
# Compliance artifacts
# ---------------------------------------------------------------------------


class _ArtifactBase(BaseModel):
    name: str | None = None
    description: str | None = None
    status: str | None = None
    assigned_users: list[AssignedUser] | None = None


class RiskIn(_ArtifactBase):
    category: str | None = None
    likelihood: RiskLevel | None = None
    impact: RiskLevel | None = None
    owner: str | None = None
    mitigation_plan: str | None = None


class AssetIn(_ArtifactBase):
    type: str | None = None
    location: str | None = None
    owner: str | None = None


class FrameworkIn(_ArtifactBase):
    type: str | None = None
    version: str | None = None
    domains: list[str] | None = None


class DPIAIn(_ArtifactBase):
    project_name: str | None = None
    data_types: list[str] | None = None
    processing_purpose: str | None = None
    risk_level: Literal["Low", "Medium", "High"] | None = None


ControlStatus = Literal["Implemented", "Partially Implemented", "Not Implemented", "Planned"]


class ControlIn(BaseModel):
    name: str
    description: str = ""
    type: str = ""
    status: ControlStatus = "Not Implemented"
    owner: str = ""
    review_frequency: str = "Annually"


class ControlUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    type: str | None = None
    status: ControlStatus | None = None
    owner: str | None = None
    review_frequency: str | None = None


class CommentIn(BaseModel):
    text: str


class ReadinessUpdate(BaseModel):
    readiness: Literal["ready", "not_ready"]


# ---------------------------------------------------------------------------
# AI / settings
# ---------------------------------------------------------------------------


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = []


class GenerateReportRequest(BaseModel):
    submission_id: str


class SpeechRequest(BaseModel):
    text: Any = None


class BotSettingsUpdate(BaseModel):
    content: str = ""
    name: str | None = None


class BotSettingsOut(BaseModel):
    id: str
    name: str
    content: str
    updated_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
