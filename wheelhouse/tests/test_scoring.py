"""Tests for per-question evaluation, domain rollups and compliance math."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from wheelhouse.schemas import AnswerInput, Question, QuestionOption, QuestionType
from wheelhouse.scoring import (
    evaluate_answer,
    evaluate_responses,
    framework_compliance,
    maturity_level,
    percent,
    risk_level,
    round_half_up,
    summarize,
)


def _yes_no(qid="q1", weight=1, domain="Access Control", **kw):
    return Question(id=qid, text=f"Question {qid}?", type=QuestionType.YES_NO,
                    weight=weight, domain=domain, **kw)


def _multi(qid="m1", correct=("a", "c")):
    return Question(
        id=qid, text="Which controls apply?", type=QuestionType.MULTIPLE_CHOICE,
        options=[QuestionOption(id=o, text=o.upper(), is_correct=o in correct) for o in ("a", "b", "c")],
    )


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestMaturityLevel:
    @pytest.mark.parametrize("pct,expected", [
        (100, "Excellent"), (95, "Excellent"), (90, "Excellent"),
        (89, "High"), (70, "High"),
        (69, "Medium"), (50, "Medium"),
        (49, "Low"), (30, "Low"),
        (29, "Critical"), (0, "Critical"),
    ])
    def test_bands(self, pct, expected):
        assert maturity_level(pct) == expected


class TestRounding:
    def test_half_rounds_up(self):
        assert round_half_up(62.5) == 63
        assert round_half_up(0.5) == 1
        assert round_half_up(2.4999) == 2

    def test_percent_of_zero_is_zero(self):
        assert percent(0, 0) == 0
        assert percent(5, 0) == 0

    def test_percent(self):
        assert percent(1, 3) == 33
        assert percent(2, 3) == 67

    def test_exact_half_rounds_up(self):
        # 115 / 200 * 100 is 57.49999999999999 in floating point
        assert percent(115, 200) == 58
        assert percent(1, 8) == 13
        assert percent(2.5, 4) == 63


class TestRiskLevel:
    def test_weights(self):
        assert [risk_level(w) for w in (1, 2, 3, 4, 5)] == ["Low", "Medium", "Medium", "High", "High"]


class TestFrameworkCompliance:
    def test_mixed_controls(self):
        controls = [
            {"status": "Implemented"}, {"status": "Implemented"},
            {"status": "Partially Implemented"}, {"status": "Not Implemented"},
        ]
        assert framework_compliance(controls) == 63

    def test_no_controls(self):
        assert framework_compliance([]) == 0

    def test_planned_counts_nothing(self):
        assert framework_compliance([{"status": "Planned"}, {"status": "Implemented"}]) == 50


# ---------------------------------------------------------------------------
# Evaluators
# ---------------------------------------------------------------------------


class TestYesNo:
    def test_default_options(self):
        q = _yes_no()
        assert [o.text for o in q.options] == ["Yes", "No"]

    def test_yes_is_correct_by_default(self):
        a = evaluate_answer(_yes_no(weight=3), AnswerInput(question_id="q1", selected_option="Yes"))
        assert a.is_correct
        assert a.score == 15
        assert a.max_score == 15
        assert not a.flagged_as_risk

    def test_option_id_accepted(self):
        a = evaluate_answer(_yes_no(), AnswerInput(question_id="q1", selected_option="1"))
        assert a.is_correct

    def test_no_always_flagged(self):
        a = evaluate_answer(_yes_no(), AnswerInput(question_id="q1", selected_option="No"))
        assert not a.is_correct
        assert a.score == 0
        assert a.flagged_as_risk

    def test_no_flagged_even_when_correct(self):
        q = _yes_no(correct_answer="No")
        a = evaluate_answer(q, AnswerInput(question_id="q1", selected_option="no"))
        assert a.is_correct
        assert a.flagged_as_risk

    def test_correct_answer_as_option_id(self):
        q = _yes_no(correct_answer="2")
        a = evaluate_answer(q, AnswerInput(question_id="q1", selected_option="No"))
        assert a.is_correct


class TestSingleChoice:
    @pytest.fixture()
    def question(self):
        return Question(
            id="s1", text="Backup frequency?", type=QuestionType.SINGLE_CHOICE, weight=2,
            options=[
                QuestionOption(id="d", text="Daily", is_correct=True),
                QuestionOption(id="m", text="Monthly"),
            ],
        )

    def test_correct(self, question):
        a = evaluate_answer(question, AnswerInput(question_id="s1", selected_option="d"))
        assert a.is_correct and a.score == 10 and not a.flagged_as_risk

    def test_incorrect_is_flagged(self, question):
        a = evaluate_answer(question, AnswerInput(question_id="s1", selected_option="m"))
        assert not a.is_correct and a.score == 0 and a.flagged_as_risk

    def test_unknown_option(self, question):
        a = evaluate_answer(question, AnswerInput(question_id="s1", selected_option="zzz"))
        assert not a.is_correct


class TestMultipleChoice:
    def test_exact_set(self):
        a = evaluate_answer(_multi(), AnswerInput(question_id="m1", selected_options=["c", "a"]))
        assert a.is_correct
        assert not a.flagged_as_risk

    def test_superset_is_wrong(self):
        a = evaluate_answer(_multi(), AnswerInput(question_id="m1", selected_options=["a", "b", "c"]))
        assert not a.is_correct
        assert a.flagged_as_risk

    def test_empty_selection_not_flagged(self):
        a = evaluate_answer(_multi(), AnswerInput(question_id="m1", selected_options=[]))
        assert not a.is_correct
        assert not a.flagged_as_risk

    def test_labels_accepted(self):
        a = evaluate_answer(_multi(), AnswerInput(question_id="m1", selected_options=["a", " c "]))
        assert a.is_correct
        a = evaluate_answer(_multi(), AnswerInput(question_id="m1", selected_options=["A", "b"]))
        assert not a.is_correct and a.flagged_as_risk

    def test_unknown_option_is_wrong(self):
        a = evaluate_answer(_multi(), AnswerInput(question_id="m1", selected_options=["a", "c", "zzz"]))
        assert not a.is_correct


class TestText:
    def _q(self, expected="firewall", weight=3):
        return Question(id="t1", text="Perimeter?", type=QuestionType.TEXT,
                        correct_text_answer=expected, weight=weight)

    def test_substring_match(self):
        a = evaluate_answer(self._q(), AnswerInput(question_id="t1", text_answer="We have a Firewall installed"))
        assert a.is_correct
        assert a.score == 15 and a.max_score == 15
        assert not a.flagged_as_risk

    def test_answer_inside_keywords(self):
        a = evaluate_answer(self._q("next-gen firewall"), AnswerInput(question_id="t1", text_answer="firewall"))
        assert a.is_correct

    def test_mismatch_flagged(self):
        a = evaluate_answer(self._q(), AnswerInput(question_id="t1", text_answer="antivirus"))
        assert not a.is_correct and a.flagged_as_risk

    @pytest.mark.parametrize("blank", ["", "   "])
    def test_blank_answer_matches_any_keywords(self, blank):
        a = evaluate_answer(self._q(), AnswerInput(question_id="t1", text_answer=blank))
        assert a.is_correct
        assert a.score == 15 and a.max_score == 15
        assert not a.flagged_as_risk

    def test_no_keywords_always_correct(self):
        a = evaluate_answer(self._q(expected=""), AnswerInput(question_id="t1", text_answer="anything"))
        assert a.is_correct


class TestQuestionValidation:
    def test_choice_needs_two_options(self):
        with pytest.raises(ValidationError):
            Question(id="x", text="?", type=QuestionType.SINGLE_CHOICE,
                     options=[QuestionOption(id="a", text="A")])

    def test_weight_bounds(self):
        with pytest.raises(ValidationError):
            _yes_no(weight=6)
        with pytest.raises(ValidationError):
            _yes_no(weight=0)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


class TestSummarize:
    def test_domains_in_question_order(self):
        questions = [
            _yes_no("a", domain="Network"),
            _yes_no("b", domain="Access"),
            _yes_no("c", domain="Network"),
        ]
        answers = evaluate_responses(questions, [
            AnswerInput(question_id=q.id, selected_option="Yes") for q in questions
        ])
        summary = summarize(questions, answers)
        assert [d.domain for d in summary.domain_scores] == ["Network", "Access"]
        assert summary.overall_percentage == 100
        assert summary.maturity_level == "Excellent"

    def test_unanswered_counts_toward_total_only(self):
        questions = [_yes_no("a"), _yes_no("b")]
        answers = evaluate_responses(questions, [AnswerInput(question_id="a", selected_option="Yes")])
        summary = summarize(questions, answers)
        domain = summary.domain_scores[0]
        assert domain.total_questions == 2
        assert domain.questions_answered == 1
        assert domain.max_score == 5
        assert domain.percentage == 100

    def test_domain_without_answers_is_zero(self):
        questions = [_yes_no("a", domain="Empty")]
        summary = summarize(questions, {})
        assert summary.domain_scores[0].percentage == 0
        assert summary.overall_percentage == 0
        assert summary.maturity_level == "Critical"

    def test_risks_carry_weight_level(self):
        questions = [_yes_no("a", weight=5), _yes_no("b", weight=2), _yes_no("c", weight=1)]
        answers = evaluate_responses(questions, [
            AnswerInput(question_id=q.id, selected_option="No") for q in questions
        ])
        summary = summarize(questions, answers)
        assert [r.risk_level for r in summary.risks] == ["High", "Medium", "Low"]
        assert summary.domain_scores[0].risks_identified == 3

    def test_percentages_within_bounds(self):
        questions = [_yes_no("a", weight=4), _yes_no("b", weight=1)]
        answers = evaluate_responses(questions, [
            AnswerInput(question_id="a", selected_option="No"),
            AnswerInput(question_id="b", selected_option="Yes"),
        ])
        summary = summarize(questions, answers)
        assert summary.overall_score == 5
        assert summary.max_possible_score == 25
        assert summary.overall_percentage == 20
        for d in summary.domain_scores:
            assert 0 <= d.percentage <= 100

    def test_overall_half_percent_rounds_up(self):
        weights = [5] * 7 + [3, 2]
        questions = [_yes_no(f"q{i}", weight=w) for i, w in enumerate(weights)]
        passed = {"q0", "q1", "q2", "q3", "q7"}
        answers = evaluate_responses(questions, [
            AnswerInput(question_id=q.id, selected_option="Yes" if q.id in passed else "No")
            for q in questions
        ])
        summary = summarize(questions, answers)
        assert (summary.overall_score, summary.max_possible_score) == (115, 200)
        assert summary.overall_percentage == 58
        assert summary.domain_scores[0].percentage == 58

    def test_unknown_and_empty_responses_dropped(self):
        questions = [_yes_no("a")]
        answers = evaluate_responses(questions, [
            AnswerInput(question_id="zzz", selected_option="Yes"),
            AnswerInput(question_id="a"),
        ])
        assert answers == {}
