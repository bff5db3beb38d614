# models.py: typed entities and the validation boundary for rows and cached JSON
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

QuestionType = Literal["multiple-choice", "multi-select"]
TestType = Literal["mock", "practice"]

_MULTI_TYPES = {"multi-select", "multiselect", "multiple-select", "multiple-response", "multi"}


def _text(v: Any) -> str:
    return "" if v is None else str(v)

def _json_or_value(v: Any) -> Any:
    # jsonb comes back decoded; text columns and cached strings do not
    if isinstance(v, (str, bytes)):
        return json.loads(v)
    return v

def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# ---- Questions -----------------------------------------------------------------
class Answer(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(pattern=r"^[a-z]$")
    text: str = ""
    is_correct: bool = Field(default=False, alias="isCorrect")
    feedback: str = ""

    @field_validator("text", "feedback", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return _text(v)


class Question(BaseModel):
    """
    One bank question, immutable once loaded.
    Serialized with the bank's snapshot keys (question, explanation, links, setName).
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: int
    type: QuestionType = "multiple-choice"
    prompt_html: str = Field(default="", alias="question")
    answers: Tuple[Answer, ...] = ()
    explanation_html: str = Field(default="", alias="explanation")
    section: str = ""
    reference_links: Tuple[str, ...] = Field(default=(), alias="links")
    source_set: str = Field(default="", alias="setName")

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v):
        s = _text(v).strip().lower()
        return "multi-select" if s in _MULTI_TYPES else "multiple-choice"

    @field_validator("prompt_html", "explanation_html", "section", "source_set", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return _text(v)

    @field_validator("reference_links", mode="before")
    @classmethod
    def _links(cls, v):
        if not v:
            return ()
        if isinstance(v, str):
            return (v,)
        return tuple(str(x) for x in v if x)

    @model_validator(mode="after")
    def _unique_answer_ids(self):
        ids = [a.id for a in self.answers]
        if len(ids) != len(set(ids)):
            raise ValueError(f"question {self.id}: duplicate answer ids")
        return self

    @property
    def is_multi(self) -> bool:
        return self.type == "multi-select"

    @property
    def answer_ids(self) -> List[str]:
        return [a.id for a in self.answers]

    @property
    def correct_ids(self) -> List[str]:
        return sorted(a.id for a in self.answers if a.is_correct)

    def to_snapshot(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def public_view(self, reveal: bool = False) -> Dict[str, Any]:
        """Question payload for the client; correctness only once the attempt is over."""
        d = {
            "id": self.id,
            "type": self.type,
            "question": self.prompt_html,
            "section": self.section,
            "answers": [{"id": a.id, "text": a.text} for a in self.answers],
        }
        if reveal:
            d["answers"] = [a.model_dump(by_alias=True) for a in self.answers]
            d["explanation"] = self.explanation_html
            d["links"] = list(self.reference_links)
        return d


# ---- Submissions ---------------------------------------------------------------
class SubmissionRecord(BaseModel):
    """Finalized attempt; one per attempt id, never mutated after creation."""

    id: str = Field(min_length=1)
    user_id: int
    register_no: str = ""
    student_name: str = ""
    test_name: str
    test_type: TestType
    score: int = Field(ge=0)
    total_questions: int = Field(ge=0)
    questions_answered: int = Field(ge=0)
    percentage: int = Field(ge=0, le=100)
    time_spent: str = "0:00"
    taken_at: datetime
    questions_map: Dict[str, List[str]] = Field(default_factory=dict)
    questions_snapshot: Optional[List[Dict[str, Any]]] = None

    @field_validator("register_no", "student_name", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return _text(v)

    @model_validator(mode="after")
    def _score_within_total(self):
        if self.score > self.total_questions:
            raise ValueError("score exceeds total_questions")
        return self

    def to_row(self) -> Dict[str, Any]:
        row = self.model_dump()
        row["taken_at"] = _aware(self.taken_at)
        if self.questions_snapshot is None:
            row.pop("questions_snapshot")
        return row


# ---- Remote rows -----------------------------------------------------------------
class UserRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    register_no: str
    password: Optional[str] = None
    student_name: str = ""
    is_admin: bool = False

    @field_validator("student_name", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return _text(v)

    @field_validator("is_admin", mode="before")
    @classmethod
    def _none_to_false(cls, v):
        return bool(v)

    @property
    def has_password(self) -> bool:
        return bool(self.password)


class SessionRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    user_id: int
    token: str
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _tz(cls, v: datetime) -> datetime:
        return _aware(v)

    def expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or datetime.now(timezone.utc))


class AttemptRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: Optional[int] = None
    register_no: str = ""
    student_name: str = ""
    test_name: str = ""
    test_type: str = ""
    score: int = 0
    total_questions: int = 0
    questions_answered: int = 0
    percentage: Optional[int] = None
    time_spent: str = ""
    taken_at: Optional[datetime] = None
    questions_map: Optional[Dict[str, List[str]]] = None
    questions_snapshot: Optional[List[Question]] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_str(cls, v):
        return _text(v)

    @field_validator("register_no", "student_name", "test_name", "test_type", "time_spent", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return _text(v)

    @field_validator("score", "total_questions", "questions_answered", mode="before")
    @classmethod
    def _int_or_zero(cls, v):
        return int(round(float(v))) if v is not None else 0

    @field_validator("percentage", mode="before")
    @classmethod
    def _pct(cls, v):
        return None if v is None else int(round(float(v)))

    @field_validator("questions_map", "questions_snapshot", mode="before")
    @classmethod
    def _decode(cls, v):
        return _json_or_value(v)

    @property
    def is_mock(self) -> bool:
        return self.test_type == "mock" or "mock" in self.test_name.lower()

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "test_name": self.test_name,
            "test_type": self.test_type,
            "score": self.score,
            "total_questions": self.total_questions,
            "questions_answered": self.questions_answered,
            "percentage": self.percentage,
            "time_spent": self.time_spent,
            "taken_at": self.taken_at.isoformat() if self.taken_at else None,
            "reviewable": self.test_type == "mock" and self.questions_map is not None,
        }


# ---- Identity claim --------------------------------------------------------------
class IdentityClaim(BaseModel):
    """Lightweight identity cached client-side; never trusted without a session check."""
    model_config = ConfigDict(extra="ignore")

    id: int
    register_no: str = ""
    student_name: str = ""
    is_admin: bool = False

    @field_validator("register_no", "student_name", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return _text(v)

    @classmethod
    def from_user(cls, user: UserRow) -> "IdentityClaim":
        return cls(id=user.id, register_no=user.register_no,
                   student_name=user.student_name, is_admin=user.is_admin)


# ---- Discussion input ------------------------------------------------------------
class DiscussionIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    body: str = Field(min_length=1)
    category: str = "general"
    question_id: Optional[int] = None

    @field_validator("title", "body", mode="before")
    @classmethod
    def _strip(cls, v):
        return _text(v).strip()

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v):
        return _text(v).strip() or "general"

    @field_validator("question_id", mode="before")
    @classmethod
    def _blank_none(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return v


class ReplyIn(BaseModel):
    body: str = Field(min_length=1)
    parent_reply_id: Optional[int] = None

    @field_validator("body", mode="before")
    @classmethod
    def _strip(cls, v):
        return _text(v).strip()

    @field_validator("parent_reply_id", mode="before")
    @classmethod
    def _blank_none(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return v
