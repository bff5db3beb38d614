import json
import sys
from datetime import datetime, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from exam_session import ExamSession  # noqa: E402
from fakes import FakeStore, make_questions  # noqa: E402
from local_cache import MemoryStorage, read_json  # noqa: E402
from models import IdentityClaim  # noqa: E402
from persistence import (  # noqa: E402
    HISTORY_KEY, SAVED_IDS_KEY, Reconciler, build_questions_map, build_submission, format_time_spent,
)
from store import StoreError  # noqa: E402

NOW = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
IDENTITY = IdentityClaim(id=7, register_no="REG007", student_name="Ada")


def _finished(mode="mock", test_name="Oracle SQL Mock Test", time_limit=5400):
    s = ExamSession(make_questions(4), mode=mode, test_name=test_name, time_limit_seconds=time_limit)
    s.start(now_ms=int(NOW.timestamp() * 1000) - 125_000, attempt_id="attempt-1")
    s.select_answer("a")
    s.save_answer()            # q0 correct
    s.select_answer("a")
    s.save_answer()            # q1 (needs a,c) incorrect
    s.tick(125)
    s.submit()
    return s


def test_format_time_spent():
    assert format_time_spent(0) == "0:00"
    assert format_time_spent(65) == "1:05"
    assert format_time_spent(5400) == "90:00"


def test_questions_map_uses_bank_ids():
    qs = make_questions(3, start=100)
    assert build_questions_map(qs, {0: ["a"], 2: ["b", "c"], 1: []}) == {"100": ["a"], "102": ["b", "c"]}


def test_mock_submission_carries_snapshot():
    record = build_submission(_finished(), IDENTITY, NOW)
    assert record.id == "attempt-1"
    assert record.test_type == "mock"
    assert record.score == 1
    assert record.total_questions == 4
    assert record.questions_answered == 2
    assert record.percentage == 25
    assert record.time_spent == "2:05"
    assert record.questions_map == {"1": ["a"], "2": ["a"]}
    assert len(record.questions_snapshot) == 4
    assert record.questions_snapshot[0]["question"] == "<p>Question 1</p>"
    assert "questions_snapshot" in record.to_row()


def test_practice_submission_omits_snapshot_and_uses_wall_clock():
    record = build_submission(_finished(mode="practice", test_name="Practice Set 1", time_limit=0), IDENTITY, NOW)
    assert record.test_type == "practice"
    assert record.questions_snapshot is None
    assert "questions_snapshot" not in record.to_row()
    assert record.time_spent == "2:05"


def test_same_record_twice_inserts_once():
    store = FakeStore()
    storage = MemoryStorage()
    reconciler = Reconciler(store, storage)
    record = build_submission(_finished(), IDENTITY, NOW)

    assert reconciler.reconcile(record) == "saved"
    assert reconciler.reconcile(record) == "already-saved"
    assert store.inserts["test_logs"] == 1
    assert read_json(storage, SAVED_IDS_KEY) == ["attempt-1"]


def test_failed_insert_reports_error_and_allows_retry():
    store = FakeStore()
    storage = MemoryStorage()
    reconciler = Reconciler(store, storage)
    record = build_submission(_finished(), IDENTITY, NOW)

    store.fail_inserts = StoreError("connection refused")
    status = reconciler.reconcile(record)
    assert status == "error: connection refused"
    assert reconciler.saved_ids() == []

    store.fail_inserts = None
    assert reconciler.reconcile(record) == "saved"
    assert store.inserts["test_logs"] == 1


def test_two_tabs_racing_keep_one_row():
    store = FakeStore()
    record = build_submission(_finished(), IDENTITY, NOW)
    tab_a = Reconciler(store, MemoryStorage())
    tab_b = Reconciler(store, MemoryStorage())  # did not see tab A's savedResultIds

    assert tab_a.reconcile(record) == "saved"
    assert tab_b.reconcile(record) == "already-saved"
    assert len(store.tables["test_logs"]) == 1
    assert tab_b.saved_ids() == ["attempt-1"]


def test_local_history_is_refreshed_but_never_grown():
    store = FakeStore()
    storage = MemoryStorage()
    reconciler = Reconciler(store, storage)
    record = build_submission(_finished(), IDENTITY, NOW)

    reconciler.reconcile(record)
    assert read_json(storage, HISTORY_KEY) is None

    storage.set_item(HISTORY_KEY, json.dumps([{"id": "attempt-1", "score": 0}, {"id": "other"}]))
    storage.remove_item(SAVED_IDS_KEY)
    store.tables["test_logs"].clear()
    reconciler.reconcile(record)
    history = read_json(storage, HISTORY_KEY)
    assert len(history) == 2
    assert history[0]["score"] == 1
    assert history[1] == {"id": "other"}
