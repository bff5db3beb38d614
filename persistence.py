# persistence.py
# -----------------------------------------------------------------------------
# Submission payloads + the reconciler that pushes each attempt exactly once.
# Idempotency key: SubmissionRecord.id (the attempt id stamped at start).
# Local "savedResultIds" is the first guard; the test_logs primary key is the
# backstop when two tabs race past it.
# -----------------------------------------------------------------------------
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Sequence

from exam_session import ExamSession
from local_cache import Storage, read_json, write_json
from models import IdentityClaim, Question, SubmissionRecord
from scoring import score
from store import DuplicateRecord, StoreError

SAVED_IDS_KEY = "savedResultIds"
HISTORY_KEY = "mockTestResults"

STATUS_SAVED = "saved"
STATUS_ALREADY_SAVED = "already-saved"


def format_time_spent(seconds: int) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


def build_questions_map(questions: Sequence[Question], answers: Mapping[int, Sequence[str]]) -> Dict[str, List[str]]:
    """{str(bank id): committed answer ids} for every committed index."""
    out: Dict[str, List[str]] = {}
    for idx in sorted(answers):
        ids = answers[idx]
        if ids and 0 <= idx < len(questions):
            out[str(questions[idx].id)] = list(ids)
    return out


def build_submission(session: ExamSession, identity: IdentityClaim,
                     now: Optional[datetime] = None) -> SubmissionRecord:
    now = now or datetime.now(timezone.utc)
    result = session.result or score(session.questions, session.answers)
    now_ms = int(now.timestamp() * 1000)
    return SubmissionRecord(
        id=session.attempt_id or "",
        user_id=identity.id,
        register_no=identity.register_no,
        student_name=identity.student_name,
        test_name=session.test_name,
        test_type="mock" if session.mode == "mock" else "practice",
        score=result.total_correct,
        total_questions=result.total_questions,
        questions_answered=result.questions_answered,
        percentage=result.percentage,
        time_spent=format_time_spent(session.elapsed_seconds(now_ms)),
        taken_at=now,
        questions_map=build_questions_map(session.questions, session.answers),
        # practice attempts carry no snapshot, so they cannot be reviewed remotely
        questions_snapshot=[q.to_snapshot() for q in session.questions] if session.mode == "mock" else None,
    )


class Reconciler:
    def __init__(self, store, storage: Storage):
        self.store = store
        self.storage = storage

    def saved_ids(self) -> List[str]:
        ids = read_json(self.storage, SAVED_IDS_KEY, [])
        return [str(i) for i in ids] if isinstance(ids, list) else []

    def _mark_saved(self, record_id: str) -> None:
        with self.storage.transaction():
            ids = self.saved_ids()
            if record_id not in ids:
                ids.append(record_id)
                write_json(self.storage, SAVED_IDS_KEY, ids)

    def _refresh_local_history(self, record: SubmissionRecord) -> None:
        # only entries that already exist are refreshed; remote history is authoritative
        history = read_json(self.storage, HISTORY_KEY, [])
        if not isinstance(history, list):
            return
        changed = False
        for i, entry in enumerate(history):
            if isinstance(entry, dict) and str(entry.get("id")) == record.id:
                history[i] = record.model_dump(mode="json")
                changed = True
        if changed:
            write_json(self.storage, HISTORY_KEY, history)

    def reconcile(self, record: SubmissionRecord) -> str:
        self._refresh_local_history(record)

        if record.id in self.saved_ids():
            print(f"[save] {record.id} already saved; skipping remote insert")
            return STATUS_ALREADY_SAVED
        try:
            self.store.insert("test_logs", record.to_row())
        except DuplicateRecord:
            print(f"[save] {record.id} already present remotely")
            self._mark_saved(record.id)
            return STATUS_ALREADY_SAVED
        except StoreError as e:
            print(f"[save] insert failed for {record.id}: {e}")
            return f"error: {e}"
        self._mark_saved(record.id)
        print(f"[save] {record.id} saved ({record.test_type}, {record.score}/{record.total_questions})")
        return STATUS_SAVED

