# scoring.py
# -----------------------------------------------------------------------------
# Pure scoring over committed answers. No I/O, no session mutation.
# - A question is correct when the committed ids set-equal its correct ids
# - Indices without a committed answer sit in neither result set
# - Percentage rounds half up
# -----------------------------------------------------------------------------
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Sequence

from models import Question


@dataclass(frozen=True)
class ScoreResult:
    total_correct: int
    correct_indices: FrozenSet[int]
    incorrect_indices: FrozenSet[int]
    total_questions: int
    questions_answered: int

    @property
    def percentage(self) -> int:
        return percentage(self.total_correct, self.total_questions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_correct": self.total_correct,
            "correct_indices": sorted(self.correct_indices),
            "incorrect_indices": sorted(self.incorrect_indices),
            "total_questions": self.total_questions,
            "questions_answered": self.questions_answered,
            "percentage": self.percentage,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ScoreResult":
        return cls(
            total_correct=int(d.get("total_correct") or 0),
            correct_indices=frozenset(int(i) for i in d.get("correct_indices") or []),
            incorrect_indices=frozenset(int(i) for i in d.get("incorrect_indices") or []),
            total_questions=int(d.get("total_questions") or 0),
            questions_answered=int(d.get("questions_answered") or 0),
        )


def percentage(correct: int, total: int) -> int:
    """round(100 * correct / total) with halves rounded up; 0 for an empty exam."""
    if total <= 0:
        return 0
    # integer form of floor(100*c/t + 0.5), exact for every c, t
    return (200 * correct + total) // (2 * total)


def is_correct(question: Question, committed: Iterable[str]) -> bool:
    expected = question.correct_ids
    got = sorted(str(a) for a in committed)
    return len(got) == len(expected) and got == expected


def score(questions: Sequence[Question], answers_by_index: Mapping[int, Sequence[str]]) -> ScoreResult:
    correct: List[int] = []
    incorrect: List[int] = []
    for idx, committed in answers_by_index.items():
        if not (0 <= idx < len(questions)) or not committed:
            continue
        if is_correct(questions[idx], committed):
            correct.append(idx)
        else:
            incorrect.append(idx)
    return ScoreResult(
        total_correct=len(correct),
        correct_indices=frozenset(correct),
        incorrect_indices=frozenset(incorrect),
        total_questions=len(questions),
        questions_answered=len(correct) + len(incorrect),
    )


def section_breakdown(questions: Sequence[Question], result: ScoreResult) -> List[Dict[str, Any]]:
    """Per-section totals in first-seen order; questions without a section group under 'General'."""
    buckets: Dict[str, Dict[str, int]] = {}
    for idx, q in enumerate(questions):
        name = q.section or "General"
        b = buckets.setdefault(name, {"total": 0, "correct": 0})
        b["total"] += 1
        if idx in result.correct_indices:
            b["correct"] += 1
    return [
        {"section": name, "total": b["total"], "correct": b["correct"],
         "percentage": percentage(b["correct"], b["total"])}
        for name, b in buckets.items()
    ]
