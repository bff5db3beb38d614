# exam_session.py
# -----------------------------------------------------------------------------
# Exam session state machine shared by the mock test and the practice sets.
#   not-started -> in-progress -> complete -> review
# Every transition returns the names of the fields it changed; () means no-op.
# The machine never touches storage; callers write the returned fields through.
# -----------------------------------------------------------------------------
import os
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from pydantic import ValidationError

from models import Question
from scoring import ScoreResult, score

MOCK_TIME_LIMIT_MIN = int(os.getenv("MOCK_TEST_TIME_LIMIT_MIN") or 90)

NOT_STARTED = "not-started"
IN_PROGRESS = "in-progress"
COMPLETE = "complete"
REVIEW = "review"
PHASES = (NOT_STARTED, IN_PROGRESS, COMPLETE, REVIEW)

SESSION_FIELDS: Tuple[str, ...] = (
    "meta", "questions", "current_index", "answers", "answered", "saved",
    "remaining_seconds", "started_at_ms", "phase", "selection", "attempt_id", "result",
)

Dirty = Tuple[str, ...]


class ExamSession:
    def __init__(self, questions: Optional[Sequence[Question]] = None, mode: str = "mock",
                 test_name: str = "", set_id: Optional[str] = None, time_limit_seconds: int = 0):
        self.questions: List[Question] = list(questions or [])
        self.mode = mode
        self.test_name = test_name
        self.set_id = set_id
        self.time_limit_seconds = max(0, int(time_limit_seconds or 0))

        self.current_index = 0
        self.answers: Dict[int, List[str]] = {}
        self.answered: Set[int] = set()
        self.saved: Set[int] = set()
        self.remaining_seconds = self.time_limit_seconds
        self.started_at_ms: Optional[int] = None
        self.phase = NOT_STARTED
        self.selection: List[str] = []
        self.attempt_id: Optional[str] = None
        self.result: Optional[ScoreResult] = None

    # ---- read helpers ----------------------------------------------------------
    @property
    def timed(self) -> bool:
        return self.time_limit_seconds > 0

    @property
    def last_index(self) -> int:
        return max(0, len(self.questions) - 1)

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_index < len(self.questions):
            return self.questions[self.current_index]
        return None

    @property
    def reveals_answers(self) -> bool:
        return self.phase in (COMPLETE, REVIEW)

    def committed(self, index: int) -> List[str]:
        return list(self.answers.get(index) or [])

    def elapsed_seconds(self, now_ms: Optional[int] = None) -> int:
        if self.timed:
            return self.time_limit_seconds - self.remaining_seconds
        if self.started_at_ms is None or now_ms is None:
            return 0
        return max(0, (int(now_ms) - int(self.started_at_ms)) // 1000)

    # ---- transitions -----------------------------------------------------------
    def start(self, now_ms: int, attempt_id: str) -> Dirty:
        if self.phase != NOT_STARTED:
            return ()
        self.current_index = 0
        self.answers = {}
        self.answered = set()
        self.saved = set()
        self.selection = []
        self.remaining_seconds = self.time_limit_seconds
        self.started_at_ms = int(now_ms)
        self.attempt_id = attempt_id
        self.result = None
        self.phase = IN_PROGRESS
        return SESSION_FIELDS

    def select_answer(self, answer_id: str) -> Dirty:
        q = self.current_question
        if self.phase != IN_PROGRESS or q is None:
            return ()
        answer_id = str(answer_id)
        if answer_id not in q.answer_ids:
            raise ValueError(f"unknown answer id '{answer_id}' for question {q.id}")
        if q.is_multi:
            if answer_id in self.selection:
                self.selection = [a for a in self.selection if a != answer_id]
            else:
                self.selection = self.selection + [answer_id]
        else:
            if self.selection == [answer_id]:
                return ()
            self.selection = [answer_id]
        return ("selection",)

    def save_answer(self) -> Dirty:
        if self.phase != IN_PROGRESS or not self.selection:
            return ()
        idx = self.current_index
        self.answers[idx] = list(self.selection)
        self.answered.add(idx)
        self.saved.add(idx)
        dirty = ["answers", "answered", "saved"]
        if idx < self.last_index:
            self.current_index = idx + 1
            self.selection = self.committed(self.current_index)
            dirty += ["current_index", "selection"]
        return tuple(dirty)

    def clear_selection(self) -> Dirty:
        if self.phase != IN_PROGRESS or not self.selection:
            return ()
        self.selection = []
        return ("selection",)

    def navigate(self, index: int) -> Dirty:
        if self.phase == NOT_STARTED:
            return ()
        index = int(index)
        if not (0 <= index < len(self.questions)) or index == self.current_index:
            return ()
        # an unsaved selection is dropped here
        self.current_index = index
        self.selection = self.committed(index)
        return ("current_index", "selection")

    def next(self) -> Dirty:
        return self.navigate(self.current_index + 1)

    def previous(self) -> Dirty:
        return self.navigate(self.current_index - 1)

    def tick(self, seconds: int = 1) -> Dirty:
        if self.phase != IN_PROGRESS or not self.timed:
            return ()
        seconds = int(seconds)
        if seconds <= 0:
            return ()
        self.remaining_seconds = max(0, self.remaining_seconds - seconds)
        if self.remaining_seconds == 0:
            return ("remaining_seconds",) + self._finish()
        return ("remaining_seconds",)

    def submit(self) -> Dirty:
        if self.phase != IN_PROGRESS:
            return ()
        return self._finish()

    def _finish(self) -> Dirty:
        # scores committed answers only; the live selection never counts
        self.result = score(self.questions, self.answers)
        self.phase = COMPLETE
        self.selection = self.committed(self.current_index)
        return ("result", "phase", "selection")

    def enter_review(self) -> Dirty:
        if self.phase != COMPLETE:
            return ()
        self.phase = REVIEW
        self.current_index = 0
        self.selection = self.committed(0)
        return ("phase", "current_index", "selection")

    @classmethod
    def for_review(cls, questions: Sequence[Question], answers: Dict[int, List[str]],
                   mode: str = "mock", test_name: str = "", attempt_id: Optional[str] = None) -> "ExamSession":
        s = cls(questions, mode=mode, test_name=test_name)
        s.answers = {i: list(ids) for i, ids in answers.items() if ids}
        s.answered = set(s.answers)
        s.saved = set(s.answers)
        s.attempt_id = attempt_id
        s.result = score(s.questions, s.answers)
        s.phase = REVIEW
        s.current_index = 0
        s.selection = s.committed(0)
        return s

    # ---- serialization ---------------------------------------------------------
    def dump_field(self, name: str) -> Any:
        if name == "meta":
            return {"mode": self.mode, "test_name": self.test_name, "set_id": self.set_id,
                    "time_limit_seconds": self.time_limit_seconds}
        if name == "questions":
            return [q.to_snapshot() for q in self.questions]
        if name == "answers":
            return [[i, ids] for i, ids in sorted(self.answers.items())]
        if name in ("answered", "saved"):
            return sorted(getattr(self, name))
        if name == "result":
            return self.result.to_dict() if self.result else None
        if name in SESSION_FIELDS:
            return getattr(self, name)
        raise KeyError(name)

    def dump_all(self) -> Dict[str, Any]:
        return {f: self.dump_field(f) for f in SESSION_FIELDS}

    @classmethod
    def from_fields(cls, data: Dict[str, Any]) -> Optional["ExamSession"]:
        """Rebuild from cached fields; bad fields fall back to defaults, bad questions mean no session."""
        try:
            questions = [Question.model_validate(q) for q in data.get("questions") or []]
        except (ValidationError, TypeError) as e:
            print(f"[cache] cached questions unusable: {e}")
            return None
        meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
        s = cls(questions, mode=str(meta.get("mode") or "mock"), test_name=str(meta.get("test_name") or ""),
                set_id=meta.get("set_id"), time_limit_seconds=_as_int(meta.get("time_limit_seconds"), 0))

        s.current_index = min(max(0, _as_int(data.get("current_index"), 0)), s.last_index)
        try:
            s.answers = {int(i): [str(a) for a in ids] for i, ids in (data.get("answers") or []) if ids}
        except (TypeError, ValueError):
            print("[cache] cached answers unusable; starting empty")
            s.answers = {}
        s.answered = _int_set(data.get("answered"))
        s.saved = _int_set(data.get("saved"))
        s.remaining_seconds = max(0, _as_int(data.get("remaining_seconds"), s.time_limit_seconds))
        started = data.get("started_at_ms")
        s.started_at_ms = _as_int(started, 0) if started is not None else None
        phase = data.get("phase")
        s.phase = phase if phase in PHASES else NOT_STARTED
        sel = data.get("selection")
        s.selection = [str(a) for a in sel] if isinstance(sel, list) else s.committed(s.current_index)
        attempt_id = data.get("attempt_id")
        s.attempt_id = str(attempt_id) if attempt_id else None
        result = data.get("result")
        if isinstance(result, dict):
            s.result = ScoreResult.from_dict(result)
        elif s.phase in (COMPLETE, REVIEW):
            s.result = score(s.questions, s.answers)
        return s

    # ---- client view -----------------------------------------------------------
    def view(self) -> Dict[str, Any]:
        q = self.current_question
        reveal = self.reveals_answers
        d: Dict[str, Any] = {
            "phase": self.phase,
            "mode": self.mode,
            "test_name": self.test_name,
            "set_id": self.set_id,
            "attempt_id": self.attempt_id,
            "current_index": self.current_index,
            "total_questions": len(self.questions),
            "question": q.public_view(reveal=reveal) if q else None,
            "selection": list(self.selection),
            "committed": self.committed(self.current_index),
            "answered": sorted(self.answered),
            "saved": sorted(self.saved),
            "timed": self.timed,
            "remaining_seconds": self.remaining_seconds if self.timed else None,
        }
        if reveal and self.result is not None:
            d["result"] = self.result.to_dict()
            idx = self.current_index
            if idx in self.result.correct_indices:
                d["question_status"] = "correct"
            elif idx in self.result.incorrect_indices:
                d["question_status"] = "incorrect"
            else:
                d["question_status"] = "unanswered"
        return d


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return default

def _int_set(v: Any) -> Set[int]:
    if not isinstance(v, list):
        return set()
    out = set()
    for x in v:
        try:
            out.add(int(x))
        except (TypeError, ValueError):
            continue
    return out
