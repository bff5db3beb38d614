"""Question bank loading: raw set files on disk -> normalized, deduplicated Questions."""

from __future__ import annotations

import json
import os
import random
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, MutableSequence, Optional, Sequence, Tuple, TypeVar

from pydantic import ValidationError

from models import Question

QUESTION_BANK_DIR = Path(os.getenv("QUESTION_BANK_DIR") or (Path(__file__).resolve().parent / "data"))
MOCK_TEST_QUESTIONS = int(os.getenv("MOCK_TEST_QUESTIONS") or 57)

# Declared order matters: dedup keeps the first set a question id appears in.
QUESTION_SETS: List[Dict[str, Any]] = [
    {"id": "questions",  "name": "Practice Set 1", "category": "practice1", "description": "Oracle Database Fundamentals", "count": 80},
    {"id": "questions1", "name": "Practice Set 2", "category": "practice2", "description": "Table Joins and SQL Syntax", "count": 20},
    {"id": "questions2", "name": "Practice Set 3", "category": "practice3", "description": "Transaction Management", "count": 40},
    {"id": "questions3", "name": "Practice Set 4", "category": "practice4", "description": "Date/Time Functions", "count": 80},
    {"id": "questions4", "name": "Practice Set 5", "category": "practice5", "description": "Sequences and Constraints", "count": 80},
    {"id": "questions6", "name": "Practice Set 6", "category": "practice6", "description": "Advanced SQL Queries", "count": 80},
]
SET_IDS: Tuple[str, ...] = tuple(s["id"] for s in QUESTION_SETS)

T = TypeVar("T")


def set_label(set_id: str) -> str:
    for s in QUESTION_SETS:
        if s["id"] == set_id:
            return s["name"]
    return f"Practice: {set_id}"


def shuffle(items: MutableSequence[T], rng: Optional[random.Random] = None) -> MutableSequence[T]:
    """In-place Fisher–Yates; returns the same sequence."""
    r = rng or random
    for i in range(len(items) - 1, 0, -1):
        j = r.randint(0, i)
        items[i], items[j] = items[j], items[i]
    return items


@lru_cache(maxsize=32)
def _read_set_file(path: str) -> Tuple[Dict[str, Any], ...]:
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    results = data.get("results") if isinstance(data, dict) else data
    if not isinstance(results, list):
        raise ValueError("missing 'results' list")
    return tuple(r for r in results if isinstance(r, dict))


def load_raw_set(set_id: str, bank_dir: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Raw records of one set; a set that cannot be read is logged and yields nothing."""
    path = Path(bank_dir or QUESTION_BANK_DIR) / f"{set_id}.json"
    try:
        return list(_read_set_file(str(path)))
    except (OSError, ValueError) as exc:
        print(f"[bank] failed to load '{path}': {exc}")
        return []


def normalize_question(raw: Dict[str, Any], set_name: str = "",
                       rng: Optional[random.Random] = None) -> Question:
    prompt = raw.get("prompt") or {}
    texts = prompt.get("answers") or []
    feedbacks = prompt.get("feedbacks") or []
    correct = {str(c).strip().lower() for c in (raw.get("correct_response") or [])}

    answers = []
    for index, text in enumerate(texts):
        answer_id = chr(97 + index)
        answers.append({
            "id": answer_id,
            "text": text,
            "isCorrect": answer_id in correct,
            "feedback": feedbacks[index] if index < len(feedbacks) else "",
        })
    # display order only; id/isCorrect/feedback stay attached to their text
    shuffle(answers, rng)

    return Question.model_validate({
        "id": raw.get("id"),
        "type": raw.get("assessment_type"),
        "question": prompt.get("question"),
        "answers": answers,
        "explanation": prompt.get("explanation"),
        "section": raw.get("section"),
        "links": prompt.get("links"),
        "setName": set_name,
    })


def load_question_sets(set_ids: Sequence[str] = SET_IDS, bank_dir: Optional[Path] = None,
                       rng: Optional[random.Random] = None) -> List[Question]:
    """
    Normalize the given sets in order, dropping any question id already seen in an
    earlier set. Malformed records are skipped.
    """
    seen_ids = set()
    out: List[Question] = []
    for set_id in set_ids:
        name = set_label(set_id)
        for raw in load_raw_set(set_id, bank_dir):
            raw_id = raw.get("id")
            if raw_id in seen_ids:
                continue
            try:
                q = normalize_question(raw, name, rng)
            except (ValidationError, ValueError, TypeError, AttributeError) as exc:
                print(f"[bank] skipping record {raw_id!r} in {set_id}: {exc}")
                continue
            if q.id in seen_ids:
                continue
            seen_ids.add(q.id)
            seen_ids.add(raw_id)
            out.append(q)
    return out


def assemble_mock_exam(size: int = MOCK_TEST_QUESTIONS, bank_dir: Optional[Path] = None,
                       rng: Optional[random.Random] = None) -> List[Question]:
    """Pool every set, shuffle the pool, keep the first `size`. A short pool shortens the exam."""
    pool = load_question_sets(SET_IDS, bank_dir, rng)
    shuffle(pool, rng)
    if len(pool) < size:
        print(f"[bank] mock pool has {len(pool)} questions (< {size}); exam shortened")
    return pool[:size]


def load_practice_set(set_id: str, bank_dir: Optional[Path] = None,
                      rng: Optional[random.Random] = None) -> List[Question]:
    if set_id not in SET_IDS:
        raise ValueError(f"unknown question set: {set_id}")
    return load_question_sets((set_id,), bank_dir, rng)


__all__ = [
    "QUESTION_SETS", "SET_IDS", "MOCK_TEST_QUESTIONS", "set_label", "shuffle",
    "load_raw_set", "normalize_question", "load_question_sets",
    "assemble_mock_exam", "load_practice_set",
]
