"""Assessment scoring: per-question evaluation and deterministic aggregation.

Evaluation
----------
Each question type has one evaluator implementing
``evaluate(question, response) -> Evaluation``:

- **yes_no**: the chosen label is compared to the correct reference
  (``"Yes"`` when unset).  A "No" is always flagged as a risk.
- **single_choice**: correctness is the chosen option's ``is_correct`` flag;
  every incorrect choice is flagged.
- **multiple_choice**: correct iff the selection equals the set of correct
  options exactly and is non-empty; a wrong non-empty selection is flagged.
- **text**: case-insensitive substring match in either direction against the
  expected keywords, so a blank answer or unset keywords are always correct.
  Wrong non-empty answers are flagged.

A correct answer scores ``weight * 5``; the maximum is always ``weight * 5``.

Aggregation
-----------
Questions are grouped by domain in first-seen order.  Every question counts
toward ``total_questions``; only answered questions add to score and max.
Percentages use round-half-up and are 0 when the max is 0.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from fractions import Fraction
from typing import Iterable

from wheelhouse.schemas import (
    Answer, AnswerInput, DomainScore, IdentifiedRisk, Question, QuestionOption, QuestionType,
)

POINTS_PER_WEIGHT = 5

# (lower bound inclusive, label), checked top-down
MATURITY_BANDS: list[tuple[int, str]] = [
    (90, "Excellent"),
    (70, "High"),
    (50, "Medium"),
    (30, "Low"),
]

CONTROL_CREDIT = {"Implemented": 1.0, "Partially Implemented": 0.5}


def round_half_up(value: float | Fraction) -> int:
    return math.floor(value + Fraction(1, 2))


def percent(part: float, whole: float) -> int:
    """``part / whole`` as a whole percentage, computed exactly before rounding."""
    if whole <= 0:
        return 0
    return round_half_up(Fraction(part) * 100 / Fraction(whole))


def maturity_level(percentage: float) -> str:
    """Map an overall percentage to a maturity label."""
    for floor, label in MATURITY_BANDS:
        if percentage >= floor:
            return label
    return "Critical"


def risk_level(weight: int) -> str:
    if weight >= 4:
        return "High"
    if weight >= 2:
        return "Medium"
    return "Low"


def framework_compliance(controls: Iterable[dict]) -> int:
    """Implemented controls count fully, partially implemented ones count half."""
    controls = list(controls)
    if not controls:
        return 0
    credit = sum(CONTROL_CREDIT.get(c.get("status", ""), 0.0) for c in controls)
    return percent(credit, len(controls))


# ---------------------------------------------------------------------------
# Evaluators
# ---------------------------------------------------------------------------


@dataclass
class Evaluation:
    correct: bool
    score: int
    max_score: int
    flagged: bool


def _points(question: Question, correct: bool, flagged: bool) -> Evaluation:
    max_score = question.weight * POINTS_PER_WEIGHT
    return Evaluation(correct=correct, score=max_score if correct else 0, max_score=max_score, flagged=flagged)


def _find_option(question: Question, value: str | None) -> QuestionOption | None:
    if value is None:
        return None
    for opt in question.options:
        if opt.id == value:
            return opt
    for opt in question.options:
        if opt.text.strip().lower() == value.strip().lower():
            return opt
    return None


def _label(question: Question, value: str | None) -> str:
    opt = _find_option(question, value)
    text = opt.text if opt is not None else (value or "")
    return text.strip().lower()


class Evaluator:
    def evaluate(self, question: Question, response: AnswerInput) -> Evaluation:
        raise NotImplementedError


class YesNoEvaluator(Evaluator):
    def evaluate(self, question: Question, response: AnswerInput) -> Evaluation:
        chosen = _label(question, response.selected_option)
        expected = question.correct_answer
        if isinstance(expected, list):
            expected = expected[0] if expected else None
        correct = chosen == _label(question, expected or "Yes")
        return _points(question, correct, flagged=chosen == "no" or not correct)


class SingleChoiceEvaluator(Evaluator):
    def evaluate(self, question: Question, response: AnswerInput) -> Evaluation:
        opt = _find_option(question, response.selected_option)
        correct = bool(opt and opt.is_correct)
        return _points(question, correct, flagged=not correct)


class MultipleChoiceEvaluator(Evaluator):
    def evaluate(self, question: Question, response: AnswerInput) -> Evaluation:
        chosen = [_find_option(question, value) for value in response.selected_options or []]
        selected = {opt.id if opt is not None else None for opt in chosen}
        expected = {o.id for o in question.options if o.is_correct}
        correct = bool(selected) and selected == expected
        return _points(question, correct, flagged=bool(selected) and not correct)


class TextEvaluator(Evaluator):
    def evaluate(self, question: Question, response: AnswerInput) -> Evaluation:
        expected = (question.correct_text_answer or "").strip().lower()
        given = (response.text_answer or "").strip().lower()
        correct = expected in given or given in expected
        return _points(question, correct, flagged=bool(given) and not correct)


EVALUATORS: dict[QuestionType, Evaluator] = {
    QuestionType.YES_NO: YesNoEvaluator(),
    QuestionType.SINGLE_CHOICE: SingleChoiceEvaluator(),
    QuestionType.MULTIPLE_CHOICE: MultipleChoiceEvaluator(),
    QuestionType.TEXT: TextEvaluator(),
}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def evaluate_answer(question: Question, response: AnswerInput, answered_at: str | None = None) -> Answer:
    result = EVALUATORS[question.type].evaluate(question, response)
    return Answer(
        question_id=question.id,
        question_text=question.text,
        question_type=question.type,
        selected_option=response.selected_option,
        selected_options=response.selected_options,
        text_answer=response.text_answer,
        is_correct=result.correct,
        score=result.score,
        max_score=result.max_score,
        weight=question.weight,
        domain=question.domain,
        flagged_as_risk=result.flagged,
        answered_at=answered_at or _now_iso(),
    )


def has_value(response: AnswerInput) -> bool:
    """Whether the response carries a real answer; empty selections and blank text do not count."""
    return bool(
        response.selected_option
        or response.selected_options
        or (response.text_answer or "").strip()
    )


def evaluate_responses(questions: list[Question], responses: Iterable[AnswerInput]) -> dict[str, Answer]:
    """Evaluate responses against their questions.

    Responses to unknown questions, and responses carrying no value at all, are
    dropped so the question stays unanswered.
    """
    by_id = {q.id: q for q in questions}
    now = _now_iso()
    answers: dict[str, Answer] = {}
    for resp in responses:
        if resp.selected_option is None and resp.selected_options is None and resp.text_answer is None:
            continue
        q = by_id.get(resp.question_id)
        if q is not None:
            answers[q.id] = evaluate_answer(q, resp, answered_at=now)
    return answers


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


@dataclass
class ScoreSummary:
    overall_score: int
    max_possible_score: int
    overall_percentage: int
    maturity_level: str
    domain_scores: list[DomainScore] = field(default_factory=list)
    risks: list[IdentifiedRisk] = field(default_factory=list)


@dataclass
class _DomainTally:
    score: int = 0
    max_score: int = 0
    answered: int = 0
    total: int = 0
    risks: int = 0


def summarize(questions: list[Question], answers: dict[str, Answer]) -> ScoreSummary:
    tallies: dict[str, _DomainTally] = {}
    risks: list[IdentifiedRisk] = []

    for q in questions:
        tally = tallies.setdefault(q.domain, _DomainTally())
        tally.total += 1
        answer = answers.get(q.id)
        if answer is None:
            continue
        tally.answered += 1
        tally.score += answer.score
        tally.max_score += answer.max_score
        if answer.flagged_as_risk:
            tally.risks += 1
            risks.append(IdentifiedRisk(
                question_id=q.id,
                question_text=q.text,
                domain=q.domain,
                score=answer.score,
                risk_level=risk_level(q.weight),
                flagged_at=answer.answered_at or _now_iso(),
            ))

    domain_scores = [
        DomainScore(
            domain=domain, score=t.score, max_score=t.max_score,
            percentage=percent(t.score, t.max_score),
            questions_answered=t.answered, total_questions=t.total,
            risks_identified=t.risks,
        )
        for domain, t in tallies.items()
    ]
    total = sum(d.score for d in domain_scores)
    total_max = sum(d.max_score for d in domain_scores)
    overall = percent(total, total_max)
    return ScoreSummary(
        overall_score=total,
        max_possible_score=total_max,
        overall_percentage=overall,
        maturity_level=maturity_level(overall),
        domain_scores=domain_scores,
        risks=risks,
    )
