# review.py: rebuild a read-only review session from a stored test_logs row.
# Scores are recomputed from snapshot + map; nothing cached client-side is trusted.
from typing import Dict, List, Tuple

from pydantic import ValidationError

from exam_session import ExamSession
from models import AttemptRow


class ReviewUnavailable(Exception):
    """The record is missing, malformed, or lacks a snapshot or answer map."""


def reconstruct_review(store, record_id: str) -> Tuple[ExamSession, AttemptRow]:
    row = store.select_one("test_logs", {"id": str(record_id)})
    if not row:
        raise ReviewUnavailable("record not found")
    try:
        log = AttemptRow.model_validate(row)
    except ValidationError as e:
        print(f"[review] record {record_id} failed validation: {e}")
        raise ReviewUnavailable("record is malformed") from e
    if log.questions_snapshot is None or log.questions_map is None:
        raise ReviewUnavailable("no review available")

    position = {q.id: i for i, q in enumerate(log.questions_snapshot)}
    answers: Dict[int, List[str]] = {}
    for bank_id, ids in log.questions_map.items():
        try:
            pos = position[int(bank_id)]
        except (KeyError, ValueError):
            print(f"[review] record {record_id}: question {bank_id!r} not in snapshot; ignored")
            continue
        answers[pos] = list(ids)

    session = ExamSession.for_review(
        log.questions_snapshot, answers,
        mode="mock" if log.test_type == "mock" else "practice",
        test_name=log.test_name, attempt_id=log.id,
    )
    return session, log
