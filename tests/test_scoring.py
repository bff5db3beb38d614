import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fakes import make_question  # noqa: E402
from models import Question  # noqa: E402
from scoring import percentage, score, section_breakdown  # noqa: E402


def test_single_select_correct_answer_counts():
    q = Question.model_validate({
        "id": 1, "type": "multiple-choice",
        "answers": [{"id": "a", "isCorrect": False}, {"id": "b", "isCorrect": True}],
    })
    result = score([q], {0: ["b"]})
    assert result.total_correct == 1
    assert result.correct_indices == {0}
    assert result.incorrect_indices == frozenset()


def test_multi_select_is_set_equality_not_sequence_equality():
    q = make_question(7, correct=("a", "c"), qtype="multi-select")
    assert score([q], {0: ["c", "a"]}).correct_indices == {0}
    assert score([q], {0: ["a", "c"]}).correct_indices == {0}


def test_multi_select_subset_is_incorrect():
    q = make_question(7, correct=("a", "c"), qtype="multi-select")
    result = score([q], {0: ["a"]})
    assert result.total_correct == 0
    assert result.incorrect_indices == {0}


def test_multi_select_superset_is_incorrect():
    q = make_question(7, correct=("a", "c"), qtype="multi-select")
    assert score([q], {0: ["a", "b", "c"]}).incorrect_indices == {0}


def test_unanswered_questions_are_in_neither_set_but_count_in_total():
    qs = [make_question(i) for i in range(1, 6)]
    result = score(qs, {0: ["a"], 2: ["b"]})
    assert result.correct_indices == {0}
    assert result.incorrect_indices == {2}
    assert result.questions_answered == 2
    assert result.total_questions == 5
    assert result.percentage == 20


def test_empty_committed_answer_is_treated_as_unanswered():
    qs = [make_question(1)]
    result = score(qs, {0: []})
    assert result.questions_answered == 0
    assert result.incorrect_indices == frozenset()


def test_out_of_range_indices_are_ignored():
    qs = [make_question(1)]
    assert score(qs, {3: ["a"], -1: ["a"]}).questions_answered == 0


@pytest.mark.parametrize("correct,total,expected", [
    (0, 57, 0),
    (1, 8, 13),      # 12.5 rounds up
    (5, 8, 63),      # 62.5 rounds up
    (1, 3, 33),
    (2, 3, 67),
    (57, 57, 100),
    (0, 0, 0),
])
def test_percentage_rounds_half_up(correct, total, expected):
    assert percentage(correct, total) == expected


def test_section_breakdown_groups_in_first_seen_order():
    qs = [
        make_question(1, section="Joins"),
        make_question(2, section="Dates"),
        make_question(3, section="Joins"),
        make_question(4, section=""),
    ]
    result = score(qs, {0: ["a"], 1: ["b"], 2: ["a"]})
    rows = section_breakdown(qs, result)
    assert [r["section"] for r in rows] == ["Joins", "Dates", "General"]
    assert rows[0] == {"section": "Joins", "total": 2, "correct": 2, "percentage": 100}
    assert rows[1]["correct"] == 0
