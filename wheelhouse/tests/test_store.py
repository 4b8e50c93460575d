"""Tests for the table-store adapter."""
from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from wheelhouse import store
from wheelhouse.db import enable_savepoints
from wheelhouse.models import Base


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    enable_savepoints(engine)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


def _risk(**kw):
    return {"user_id": "u1", "name": "Phishing", **kw}


class TestCreateGet:
    def test_generates_id_and_timestamps(self, session):
        item = store.create_item(session, "risks", _risk())
        assert item["id"]
        assert item["created_at"] == item["updated_at"]
        assert store.get_item(session, "risks", item["id"])["name"] == "Phishing"

    def test_unknown_keys_ignored(self, session):
        item = store.create_item(session, "risks", _risk(bogus="x"))
        assert "bogus" not in item

    def test_supplied_id_kept(self, session):
        item = store.create_item(session, "settings", {"id": "bot_script", "content": "hi"})
        assert item["id"] == "bot_script"

    def test_missing_returns_none(self, session):
        assert store.get_item(session, "risks", "nope") is None

    def test_unknown_table(self, session):
        with pytest.raises(KeyError, match="Unknown table"):
            store.get_item(session, "nonsense", "x")


class TestUpdateDelete:
    def test_merge_keeps_id_and_created_at(self, session):
        item = store.create_item(session, "risks", _risk())
        updated = store.update_item(session, "risks", item["id"], {
            "name": "Vishing", "id": "other", "created_at": None,
        })
        assert updated["id"] == item["id"]
        assert updated["name"] == "Vishing"
        assert updated["created_at"] == item["created_at"]
        assert updated["updated_at"] >= item["updated_at"]

    def test_update_missing(self, session):
        assert store.update_item(session, "risks", "nope", {"name": "x"}) is None

    def test_delete(self, session):
        item = store.create_item(session, "risks", _risk())
        assert store.delete_item(session, "risks", item["id"]) is True
        assert store.delete_item(session, "risks", item["id"]) is False


class TestScan:
    def test_equality_filters(self, session):
        store.create_item(session, "risks", _risk(user_id="u1"))
        store.create_item(session, "risks", _risk(user_id="u2"))
        assert len(store.scan_items(session, "risks")) == 2
        assert [r["user_id"] for r in store.scan_items(session, "risks", user_id="u2")] == ["u2"]

    def test_criteria(self, session):
        model = store.TABLES["risks"]
        store.create_item(session, "risks", _risk(status="published"))
        store.create_item(session, "risks", _risk(status="draft"))
        found = store.scan_items(session, "risks", model.status == "published")
        assert [r["status"] for r in found] == ["published"]

    def test_find_and_count(self, session):
        store.create_item(session, "users", {"email": "a@x.io", "name": "A", "password_hash": "h"})
        assert store.find_item(session, "users", email="a@x.io")["name"] == "A"
        assert store.find_item(session, "users", email="b@x.io") is None
        assert store.count_items(session, "users") == 1


class TestNestedRoundTrip:
    def test_json_columns_survive_commit(self, session):
        domain_scores = [{"domain": "Network", "score": 5, "max_score": 10, "percentage": 50,
                          "questions_answered": 2, "total_questions": 3, "risks_identified": 1}]
        risks = [{"question_id": "q1", "question_text": "MFA?", "domain": "Network", "score": 0,
                  "risk_level": "High", "flagged_at": "2026-01-01T00:00:00+00:00",
                  "added_to_risk_register": True, "risk_id": "r1"}]
        sub = store.create_item(session, "assessment_submissions", {
            "user_id": "u1", "assessment_id": "a1",
            "domain_scores": domain_scores, "risks_identified": risks,
        })
        session.commit()
        session.expire_all()
        fetched = store.get_item(session, "assessment_submissions", sub["id"])
        assert fetched["domain_scores"] == domain_scores
        assert fetched["risks_identified"] == risks


def test_custom_id_is_five_digits():
    for _ in range(50):
        cid = store.generate_custom_id()
        assert len(cid) == 5 and cid.isdigit()
