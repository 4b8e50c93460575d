"""Tests for AI report generation, the LLM client wrapper and the voice client."""
from __future__ import annotations

import json
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from wheelhouse import reports, store
from wheelhouse.config import Settings
from wheelhouse.db import enable_savepoints
from wheelhouse.llm import LLMCallError, LLMClient
from wheelhouse.models import Base
from wheelhouse.voice import VoiceClient

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_savepoints(engine)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def submission(session):
    sub = store.create_item(session, "assessment_submissions", {
        "user_id": "u1",
        "user_name": "Alice",
        "assessment_id": "a1",
        "assessment_title": "Baseline",
        "company_name": "Corp",
        "overall_score": 20,
        "max_possible_score": 30,
        "overall_percentage": 67,
        "maturity_level": "Medium",
        "total_risks": 1,
        "domain_scores": [
            {"domain": "Resilience", "score": 0, "max_score": 10, "percentage": 0,
             "questions_answered": 1, "total_questions": 1, "risks_identified": 1},
        ],
        "risks_identified": [
            {"question_id": "q2", "question_text": "Are backups tested?", "domain": "Resilience",
             "score": 0, "risk_level": "Medium", "flagged_at": "2026-01-01T00:00:00+00:00"},
        ],
        "timeline": [],
    })
    session.commit()
    return sub


def _llm(reply: str) -> MagicMock:
    client = MagicMock()
    client.complete = AsyncMock(return_value=reply)
    return client


# ---------------------------------------------------------------------------
# Prompt and parsing
# ---------------------------------------------------------------------------


class TestReportPrompt:
    def test_contains_scores_and_risks(self, submission):
        prompt = reports.build_report_prompt(submission)
        assert "Company: Corp" in prompt
        assert "Overall Score: 67% (20/30)" in prompt
        assert "- Resilience: 0% (0/10), 1 risks" in prompt
        assert "- [Medium] Resilience: Are backups tested?" in prompt

    def test_no_risks(self, submission):
        prompt = reports.build_report_prompt({**submission, "risks_identified": []})
        assert "None identified" in prompt


class TestParseReport:
    def test_fenced_json(self):
        text = '```json\n{"executive_summary": "Fine", "recommendations": ["A"]}\n```'
        report = reports.parse_report(text)
        assert report["executive_summary"] == "Fine"
        assert report["recommendations"] == ["A"]
        assert report["domain_analysis"] == []

    def test_camel_case_keys(self):
        report = reports.parse_report(json.dumps({"executiveSummary": "Hi", "riskSummary": "Low"}))
        assert report["executive_summary"] == "Hi"
        assert report["risk_summary"] == "Low"

    def test_prose_falls_back_to_summary(self):
        report = reports.parse_report("Just a paragraph of prose.")
        assert report["executive_summary"] == "Just a paragraph of prose."
        assert report["recommendations"] == []

    def test_unknown_keys_dropped(self):
        assert "extra" not in reports.parse_report('{"extra": 1}')


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


class TestGenerateReport:
    @pytest.mark.asyncio
    async def test_persists_and_marks_submission(self, session, submission):
        llm = _llm('{"executive_summary": "Summary", "conclusion": "Done"}')
        report = await reports.generate_report(session, submission, llm, "u1")
        session.commit()

        assert report["executive_summary"] == "Summary"
        assert report["flagged_risks"][0]["question_id"] == "q2"
        assert report["maturity_level"] == "Medium"
        system, prompt = llm.complete.await_args.args
        assert system == reports.REPORT_SYSTEM_PROMPT
        assert "Baseline" in prompt

        sub = store.get_item(session, "assessment_submissions", submission["id"])
        assert sub["ai_report_generated"] is True
        assert sub["ai_report_id"] == report["id"]
        assert sub["timeline"][-1]["action"] == "report_generated"
        assert [r["id"] for r in reports.list_reports(session, "u1")] == [report["id"]]
        assert reports.list_reports(session, "someone-else") == []

    @pytest.mark.asyncio
    async def test_background_success(self, session_factory, submission):
        llm = _llm('{"executive_summary": "Later"}')
        await reports.generate_report_in_background(session_factory, submission["id"], lambda: llm)
        check = session_factory()
        try:
            sub = store.get_item(check, "assessment_submissions", submission["id"])
            assert sub["ai_report_generated"] is True
        finally:
            check.close()

    @pytest.mark.asyncio
    async def test_background_failure_is_logged(self, session_factory, submission, caplog):
        llm = MagicMock()
        llm.complete = AsyncMock(side_effect=LLMCallError("provider down"))
        with caplog.at_level(logging.WARNING, logger="wheelhouse.reports"):
            await reports.generate_report_in_background(session_factory, submission["id"], lambda: llm)
        assert "provider down" in caplog.text
        check = session_factory()
        try:
            assert store.count_items(check, "reports") == 0
            sub = store.get_item(check, "assessment_submissions", submission["id"])
            assert sub["ai_report_generated"] is False
        finally:
            check.close()

    @pytest.mark.asyncio
    async def test_background_missing_submission(self, session_factory, caplog):
        llm = _llm("{}")
        with caplog.at_level(logging.WARNING, logger="wheelhouse.reports"):
            await reports.generate_report_in_background(session_factory, "ghost", lambda: llm)
        llm.complete.assert_not_awaited()
        assert "ghost" in caplog.text


# ---------------------------------------------------------------------------
# LLM client
# ---------------------------------------------------------------------------


class _Stream:
    def __init__(self, chunks):
        self._chunks = iter(chunks)

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return next(self._chunks)
        except StopIteration:
            raise StopAsyncIteration from None


def _chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class TestLLMClient:
    @pytest.fixture()
    def client(self):
        c = LLMClient(provider="openai", api_key="sk-test")
        c._client = MagicMock()
        return c

    @pytest.mark.asyncio
    async def test_provider_error_wrapped(self, client):
        client._client.chat.completions.create = AsyncMock(side_effect=RuntimeError("503"))
        with pytest.raises(LLMCallError, match="503"):
            await client.complete("sys", "user")

    @pytest.mark.asyncio
    async def test_stream_chat(self, client):
        chunks = [_chunk("Hel"), SimpleNamespace(choices=[]), _chunk(None), _chunk("lo")]
        client._client.chat.completions.create = AsyncMock(return_value=_Stream(chunks))
        deltas = [d async for d in client.stream_chat("sys", [{"role": "user", "content": "hi"}])]
        assert deltas == ["Hel", "lo"]
        sent = client._client.chat.completions.create.await_args.kwargs
        assert sent["stream"] is True
        assert sent["messages"][0] == {"role": "system", "content": "sys"}

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMClient(provider="carrier-pigeon")


# ---------------------------------------------------------------------------
# Voice client
# ---------------------------------------------------------------------------


def _voice(handler, **overrides) -> VoiceClient:
    settings = Settings(openai_api_key="sk-test", openai_base_url="https://vendor.test/v1", **overrides)
    return VoiceClient(settings, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestVoiceClient:
    @pytest.mark.asyncio
    async def test_realtime_session(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer sk-test"
            body = json.loads(request.content)
            assert body["voice"] == "sage"
            return httpx.Response(200, json={"client_secret": {"value": "ek"}, "expires_at": 99})

        data = await _voice(handler).create_realtime_session()
        assert data == {"client_secret": {"value": "ek"}, "expires_at": 99}

    @pytest.mark.asyncio
    async def test_speech_truncates_input(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return httpx.Response(200, content=b"mp3")

        audio = await _voice(handler, speech_max_chars=10).synthesize_speech("x" * 50)
        assert audio == b"mp3"
        assert seen["input"] == "x" * 10
        assert seen["voice"] == "nova"

    @pytest.mark.asyncio
    async def test_error_status(self):
        client = _voice(lambda request: httpx.Response(401, text="bad key"))
        with pytest.raises(LLMCallError):
            await client.synthesize_speech("hi")

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(LLMCallError, match="unreachable"):
            await _voice(handler).create_realtime_session()

    @pytest.mark.asyncio
    async def test_missing_key(self):
        client = VoiceClient(Settings(openai_api_key=""))
        with pytest.raises(LLMCallError, match="not configured"):
            await client.create_realtime_session()
