import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Generator

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wheelhouse import reports, services, store
from wheelhouse.auth import (
    TokenPayload, clear_auth_cookie, create_token, current_user, require_admin, set_auth_cookie,
)
from wheelhouse.config import get_settings
from wheelhouse.db import get_session, init_db, session_generator
from wheelhouse.llm import LLMCallError, LLMClient
from wheelhouse.schemas import (
    AdminPasswordReset,
    AssessmentCreate,
    AssessmentUpdate,
    AssetIn,
    BotSettingsOut,
    BotSettingsUpdate,
    ChatRequest,
    CommentIn,
    ControlIn,
    ControlUpdate,
    DPIAIn,
    ForgotPasswordRequest,
    FrameworkIn,
    GenerateReportRequest,
    LoginRequest,
    ProgressSave,
    ReadinessUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    RiskIn,
    SpeechRequest,
    SubmissionRequest,
    UserAccessUpdate,
    UserOut,
)
from wheelhouse.utils import json_parse
from wheelhouse.voice import VoiceClient

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Cyber Wheelhouse",
    version="0.1.0",
    description=(
        "Cybersecurity compliance API: self-assessments with scoring, a risk register, "
        "asset inventory, compliance frameworks, DPIAs and an AI advisor. "
        "Authentication uses an HTTP-only session cookie set by /api/auth/login."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Auth", "description": "Registration, login and password resets."},
        {"name": "Admin", "description": "User approval, global reports and bot settings. Admin only."},
        {"name": "Assessments", "description": "Assessments, progress, submissions and scoring."},
        {"name": "Risks", "description": "Risk register."},
        {"name": "Assets", "description": "Asset inventory."},
        {"name": "Frameworks", "description": "Compliance frameworks, controls and readiness."},
        {"name": "DPIAs", "description": "Data protection impact assessments."},
        {"name": "AI", "description": "Advisor chat, AI reports and voice. Requires OPENAI_API_KEY."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def session_factory() -> Callable[[], Session]:
    """Session maker handed to background tasks, which outlive the request session."""
    return get_session


def llm_factory() -> Callable[[], LLMClient]:
    return LLMClient


def voice_client() -> VoiceClient:
    return VoiceClient()


def _user_summary(user: dict[str, Any]) -> dict[str, Any]:
    return {k: user.get(k) for k in ("id", "email", "name", "role", "status", "company_name")}


def _report_out(row: dict[str, Any]) -> dict[str, Any]:
    return {**row, "content": json_parse(row.get("content"))}


@app.exception_handler(services.ServiceError)
async def service_error_handler(request: Request, exc: services.ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(LLMCallError)
async def llm_error_handler(request: Request, exc: LLMCallError):
    log.warning("AI provider call failed on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    log.error("Store failure on %s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ---------------------------------------------------------------------------
# Routes: Auth
# ---------------------------------------------------------------------------


@app.post("/api/auth/register", tags=["Auth"], summary="Register a new account")
async def register(body: RegisterRequest, session: Session = Depends(db_session)):
    user = services.register_user(
        session, email=body.email, password=body.password,
        name=body.name, company_name=body.company_name,
    )
    session.commit()
    if user["status"] == "approved":
        log.info("First account %s registered as admin", user["email"])
        return {
            "success": True,
            "message": "Admin account created. You can now login.",
            "requires_approval": False,
        }
    return {
        "success": True,
        "message": "Registration successful! Your account is pending admin approval.",
        "requires_approval": True,
    }


@app.post("/api/auth/login", tags=["Auth"], summary="Log in and receive the session cookie")
async def login(body: LoginRequest, response: Response, session: Session = Depends(db_session)):
    user = services.authenticate(session, body.email, body.password)
    session.commit()
    set_auth_cookie(response, create_token(user))
    return {"success": True, "user": _user_summary(user)}


@app.post("/api/auth/logout", tags=["Auth"], summary="Clear the session cookie")
async def logout(response: Response):
    clear_auth_cookie(response)
    return {"success": True}


@app.get("/api/auth/me", tags=["Auth"], summary="Current user")
async def me(user: TokenPayload = Depends(current_user), session: Session = Depends(db_session)):
    account = store.get_item(session, "users", user.user_id)
    if account is None:
        raise HTTPException(401, "Unauthorized")
    return {"user": _user_summary(account)}


@app.post("/api/auth/forgot-password", tags=["Auth"], summary="Request a password reset token")
async def forgot_password(body: ForgotPasswordRequest, session: Session = Depends(db_session)):
    if not body.email.strip():
        raise HTTPException(400, "Email is required")
    token = services.create_password_reset(session, body.email)
    session.commit()
    result: dict[str, Any] = {
        "success": True,
        "message": "If an account exists for that email, a reset link has been issued.",
    }
    if token and get_settings().debug:
        result["reset_token"] = token
    return result


@app.post("/api/auth/reset-password", tags=["Auth"], summary="Reset a password with a reset token")
async def reset_password(body: ResetPasswordRequest, session: Session = Depends(db_session)):
    if not services.reset_password(session, body.token, body.password):
        raise HTTPException(400, "Invalid or expired reset token")
    session.commit()
    return {"success": True}


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.get("/api/admin/users", tags=["Admin"], summary="List all users")
async def list_users(session: Session = Depends(db_session), admin: TokenPayload = Depends(require_admin)):
    return {"users": [UserOut.model_validate(u).model_dump() for u in services.list_users(session)]}


@app.patch("/api/admin/users/{user_id}", tags=["Admin"], summary="Approve, reject or change a user's role")
async def update_user(user_id: str, body: UserAccessUpdate, session: Session = Depends(db_session),
                      admin: TokenPayload = Depends(require_admin)):
    user = services.update_user_access(session, user_id, role=body.role, status=body.status)
    if user is None:
        raise HTTPException(404, "User not found")
    session.commit()
    return {"user": user}


@app.delete("/api/admin/users/{user_id}", tags=["Admin"], summary="Delete a user")
async def delete_user(user_id: str, session: Session = Depends(db_session),
                      admin: TokenPayload = Depends(require_admin)):
    if not services.delete_user(session, admin, user_id):
        raise HTTPException(404, "User not found")
    session.commit()
    return {"success": True}


@app.post("/api/admin/users/{user_id}/reset-password", tags=["Admin"], summary="Set a user's password")
async def admin_reset_password(user_id: str, body: AdminPasswordReset, session: Session = Depends(db_session),
                               admin: TokenPayload = Depends(require_admin)):
    if not services.admin_reset_password(session, user_id, body.password):
        raise HTTPException(404, "User not found")
    session.commit()
    return {"success": True}


@app.get("/api/admin/reports", tags=["Admin"], summary="List every generated report")
async def list_all_reports(session: Session = Depends(db_session), admin: TokenPayload = Depends(require_admin)):
    return {"reports": [_report_out(r) for r in reports.list_reports(session)]}


@app.get("/api/admin/settings", response_model=BotSettingsOut, tags=["Admin"],
         summary="Get the advisor system prompt")
async def get_settings_route(session: Session = Depends(db_session), admin: TokenPayload = Depends(require_admin)):
    return services.get_bot_script(session)


@app.put("/api/admin/settings", response_model=BotSettingsOut, tags=["Admin"],
         summary="Replace the advisor system prompt")
async def put_settings_route(body: BotSettingsUpdate, session: Session = Depends(db_session),
                             admin: TokenPayload = Depends(require_admin)):
    row = services.save_bot_script(session, body.content, body.name, admin)
    session.commit()
    return row


# ---------------------------------------------------------------------------
# Routes: Assessments
# ---------------------------------------------------------------------------


def _visible_assessment(session: Session, assessment_id: str, user: TokenPayload) -> dict[str, Any]:
    assessment = services.get_assessment(session, assessment_id, user)
    if assessment is None:
        raise HTTPException(404, "Assessment not found")
    return assessment


@app.get("/api/assessments", tags=["Assessments"], summary="List visible assessments")
async def list_assessments(session: Session = Depends(db_session), user: TokenPayload = Depends(current_user)):
    return {"assessments": services.list_assessments(session, user)}


@app.post("/api/assessments", status_code=201, tags=["Assessments"], summary="Create an assessment")
async def create_assessment(body: AssessmentCreate, session: Session = Depends(db_session),
                            admin: TokenPayload = Depends(require_admin)):
    assessment = services.create_assessment(session, body.model_dump(mode="json"), admin)
    session.commit()
    return {"assessment": assessment}


# declared before /api/assessments/{assessment_id} so "submissions" is not taken for an id
@app.get("/api/assessments/submissions", tags=["Assessments"], summary="List submissions, newest first")
async def list_submissions(session: Session = Depends(db_session), user: TokenPayload = Depends(current_user)):
    return {"submissions": services.list_submissions(session, user)}


@app.get("/api/assessments/submissions/{submission_id}", tags=["Assessments"], summary="Get one submission")
async def get_submission(submission_id: str, session: Session = Depends(db_session),
                         user: TokenPayload = Depends(current_user)):
    submission = services.get_submission(session, submission_id, user)
    if submission is None:
        raise HTTPException(404, "Submission not found")
    return {"submission": submission}


@app.get("/api/assessments/{assessment_id}", tags=["Assessments"], summary="Get an assessment")
async def get_assessment(assessment_id: str, session: Session = Depends(db_session),
                         user: TokenPayload = Depends(current_user)):
    return {"assessment": _visible_assessment(session, assessment_id, user)}


@app.patch("/api/assessments/{assessment_id}", tags=["Assessments"], summary="Update an assessment")
async def update_assessment(assessment_id: str, body: AssessmentUpdate, session: Session = Depends(db_session),
                            admin: TokenPayload = Depends(require_admin)):
    assessment = services.update_assessment(session, assessment_id, body.model_dump(mode="json", exclude_none=True))
    if assessment is None:
        raise HTTPException(404, "Assessment not found")
    session.commit()
    return {"assessment": assessment}


@app.delete("/api/assessments/{assessment_id}", tags=["Assessments"], summary="Delete an assessment")
async def delete_assessment(assessment_id: str, session: Session = Depends(db_session),
                            admin: TokenPayload = Depends(require_admin)):
    if not services.delete_assessment(session, assessment_id):
        raise HTTPException(404, "Assessment not found")
    session.commit()
    return {"success": True}


@app.get("/api/assessments/{assessment_id}/progress", tags=["Assessments"], summary="Get my progress")
async def get_progress(assessment_id: str, session: Session = Depends(db_session),
                       user: TokenPayload = Depends(current_user)):
    _visible_assessment(session, assessment_id, user)
    return {"progress": services.get_progress(session, assessment_id, user.user_id)}


@app.post("/api/assessments/{assessment_id}/progress", tags=["Assessments"], summary="Save in-flight answers")
async def save_progress(assessment_id: str, body: ProgressSave, session: Session = Depends(db_session),
                        user: TokenPayload = Depends(current_user)):
    assessment = _visible_assessment(session, assessment_id, user)
    progress = services.save_progress(session, assessment, body.answers, user)
    session.commit()
    return {"progress": progress}


@app.post("/api/assessments/{assessment_id}/submit", tags=["Assessments"],
          summary="Submit answers for scoring")
async def submit_assessment(
    assessment_id: str,
    body: SubmissionRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(db_session),
    user: TokenPayload = Depends(current_user),
    make_session: Callable[[], Session] = Depends(session_factory),
    make_llm: Callable[[], LLMClient] = Depends(llm_factory),
):
    assessment = _visible_assessment(session, assessment_id, user)
    submission = services.submit_assessment(session, assessment, body.answers, user)
    session.commit()
    background_tasks.add_task(reports.generate_report_in_background, make_session, submission["id"], make_llm)
    return {
        "success": True,
        "submission": submission,
        "scores": {
            "overall_score": submission["overall_score"],
            "overall_percentage": submission["overall_percentage"],
            "maturity_level": submission["maturity_level"],
            "domain_scores": submission["domain_scores"],
        },
        "risks_identified": submission["risks_identified"],
    }


# ---------------------------------------------------------------------------
# Routes: Compliance artifacts
# ---------------------------------------------------------------------------


def _register_artifact_routes(kind: str, singular: str, schema: type[BaseModel], tag: str) -> None:
    label = services.ARTIFACT_LABELS[kind]

    async def list_items(session: Session = Depends(db_session), user: TokenPayload = Depends(current_user)):
        return {kind: services.list_artifacts(session, kind, user)}

    async def create_item(body: schema, session: Session = Depends(db_session),
                          user: TokenPayload = Depends(current_user)):
        item = services.create_artifact(session, kind, body.model_dump(exclude_none=True), user)
        session.commit()
        return {singular: item}

    async def get_item(item_id: str, session: Session = Depends(db_session),
                       user: TokenPayload = Depends(current_user)):
        item = services.get_artifact(session, kind, item_id, user)
        if item is None:
            raise HTTPException(404, f"{label} not found")
        return {singular: item}

    async def update_item(item_id: str, body: schema, session: Session = Depends(db_session),
                          user: TokenPayload = Depends(current_user)):
        item = services.update_artifact(session, kind, item_id, body.model_dump(exclude_none=True), user)
        if item is None:
            raise HTTPException(404, f"{label} not found")
        session.commit()
        return {singular: item}

    async def delete_item(item_id: str, session: Session = Depends(db_session),
                          user: TokenPayload = Depends(current_user)):
        if not services.delete_artifact(session, kind, item_id, user):
            raise HTTPException(404, f"{label} not found")
        session.commit()
        return {"success": True}

    base = f"/api/{kind}"
    app.add_api_route(base, list_items, methods=["GET"], tags=[tag],
                      summary=f"List visible {label} records", name=f"list_{kind}")
    app.add_api_route(base, create_item, methods=["POST"], status_code=201, tags=[tag],
                      summary=f"Create a {label} record", name=f"create_{singular}")
    app.add_api_route(f"{base}/{{item_id}}", get_item, methods=["GET"], tags=[tag],
                      summary=f"Get a {label} record", name=f"get_{singular}")
    app.add_api_route(f"{base}/{{item_id}}", update_item, methods=["PATCH"], tags=[tag],
                      summary=f"Update a {label} record", name=f"update_{singular}")
    app.add_api_route(f"{base}/{{item_id}}", delete_item, methods=["DELETE"], tags=[tag],
                      summary=f"Delete a {label} record", name=f"delete_{singular}")


_register_artifact_routes("risks", "risk", RiskIn, "Risks")
_register_artifact_routes("assets", "asset", AssetIn, "Assets")
_register_artifact_routes("frameworks", "framework", FrameworkIn, "Frameworks")
_register_artifact_routes("dpias", "dpia", DPIAIn, "DPIAs")


def _framework_or_404(framework: dict[str, Any] | None) -> dict[str, Any]:
    if framework is None:
        raise HTTPException(404, "Framework not found")
    return {"framework": framework}


@app.post("/api/frameworks/{framework_id}/controls", status_code=201, tags=["Frameworks"],
          summary="Add a control and recompute compliance")
async def add_control(framework_id: str, body: ControlIn, session: Session = Depends(db_session),
                      user: TokenPayload = Depends(current_user)):
    result = _framework_or_404(services.add_control(session, framework_id, body.model_dump(), user))
    session.commit()
    return result


@app.patch("/api/frameworks/{framework_id}/controls/{control_id}", tags=["Frameworks"],
           summary="Edit a control and recompute compliance")
async def update_control(framework_id: str, control_id: str, body: ControlUpdate,
                         session: Session = Depends(db_session), user: TokenPayload = Depends(current_user)):
    result = _framework_or_404(
        services.update_control(session, framework_id, control_id, body.model_dump(exclude_none=True), user)
    )
    session.commit()
    return result


@app.delete("/api/frameworks/{framework_id}/controls/{control_id}", tags=["Frameworks"],
            summary="Remove a control and recompute compliance")
async def delete_control(framework_id: str, control_id: str, session: Session = Depends(db_session),
                         user: TokenPayload = Depends(current_user)):
    result = _framework_or_404(services.delete_control(session, framework_id, control_id, user))
    session.commit()
    return result


@app.post("/api/frameworks/{framework_id}/comments", status_code=201, tags=["Frameworks"],
          summary="Comment on a framework")
async def add_comment(framework_id: str, body: CommentIn, session: Session = Depends(db_session),
                      user: TokenPayload = Depends(current_user)):
    result = _framework_or_404(services.add_framework_comment(session, framework_id, body.text, user))
    session.commit()
    return result


@app.put("/api/frameworks/{framework_id}/readiness", tags=["Frameworks"], summary="Mark a framework ready or not")
async def set_readiness(framework_id: str, body: ReadinessUpdate, session: Session = Depends(db_session),
                        user: TokenPayload = Depends(current_user)):
    result = _framework_or_404(services.set_framework_readiness(session, framework_id, body.readiness, user))
    session.commit()
    return result


# ---------------------------------------------------------------------------
# Routes: AI
# ---------------------------------------------------------------------------


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@app.post("/api/ai/chat", tags=["AI"], summary="Stream an advisor reply as server-sent events")
async def chat(body: ChatRequest, session: Session = Depends(db_session),
               user: TokenPayload = Depends(current_user),
               make_llm: Callable[[], LLMClient] = Depends(llm_factory)):
    if not body.messages:
        raise HTTPException(400, "Messages are required")
    system = services.get_bot_script(session)["content"]
    client = make_llm()
    messages = [m.model_dump() for m in body.messages]

    async def event_stream():
        try:
            async for delta in client.stream_chat(system, messages):
                yield _sse({"type": "delta", "content": delta})
        except LLMCallError as exc:
            log.warning("Chat stream failed for %s: %s", user.email, exc)
            yield _sse({"type": "error", "message": "Failed to get AI response"})
            return
        yield _sse({"type": "done"})

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.post("/api/ai/generate-report", tags=["AI"], summary="Generate an AI report for a submission")
async def generate_report(body: GenerateReportRequest, session: Session = Depends(db_session),
                          user: TokenPayload = Depends(current_user),
                          make_llm: Callable[[], LLMClient] = Depends(llm_factory)):
    submission = services.get_submission(session, body.submission_id, user)
    if submission is None:
        raise HTTPException(404, "Submission not found")
    report = await reports.generate_report(session, submission, make_llm(), submission["user_id"])
    session.commit()
    return {"report": report}


@app.get("/api/reports", tags=["AI"], summary="List my generated reports")
async def list_my_reports(session: Session = Depends(db_session), user: TokenPayload = Depends(current_user)):
    return {"reports": [_report_out(r) for r in reports.list_reports(session, user.user_id)]}


@app.post("/api/ai/realtime/session", tags=["AI"], summary="Mint an ephemeral realtime voice session")
async def realtime_session(user: TokenPayload = Depends(current_user),
                           voice: VoiceClient = Depends(voice_client)):
    return await voice.create_realtime_session()


@app.post("/api/ai/speech", tags=["AI"], summary="Convert text to MP3 speech")
async def speech(body: SpeechRequest, user: TokenPayload = Depends(current_user),
                 voice: VoiceClient = Depends(voice_client)):
    if not isinstance(body.text, str) or not body.text.strip():
        raise HTTPException(400, "Text is required")
    audio = await voice.synthesize_speech(body.text)
    return Response(content=audio, media_type="audio/mpeg")


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("wheelhouse.app:app", host="127.0.0.1", port=8000, reload=get_settings().debug)


if __name__ == "__main__":
    main()
