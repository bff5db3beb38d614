import copy
import itertools
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from models import Question  # noqa: E402
from store import DuplicateRecord, StoreError  # noqa: E402

UNIQUE_KEYS = {
    "users": ("id", "register_no"),
    "sessions": ("id", "token"),
    "test_logs": ("id",),
    "discussions": ("id",),
    "discussion_replies": ("id",),
    "client_cache": (),
}
NO_SERIAL_ID = ("test_logs", "client_cache")


class FakeStore:
    """In-memory stand-in for store.RemoteStore with the same operations."""

    def __init__(self):
        self.tables = {name: [] for name in UNIQUE_KEYS}
        self.inserts = {name: 0 for name in UNIQUE_KEYS}
        self.fail_inserts = None
        self.fail_selects = None
        self._ids = itertools.count(1)

    # ---- helpers ----
    @staticmethod
    def _match(row, filters):
        for col, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set, frozenset)):
                if row.get(col) not in value:
                    return False
            elif row.get(col) != value:
                return False
        return True

    @staticmethod
    def _project(row, columns):
        if not columns:
            return copy.deepcopy(row)
        return {c: copy.deepcopy(row.get(c)) for c in columns}

    # ---- operations ----
    def insert(self, table, record):
        if self.fail_inserts is not None:
            raise self.fail_inserts
        row = copy.deepcopy(record)
        if table not in NO_SERIAL_ID and row.get("id") is None:
            row["id"] = next(self._ids)
        for key in UNIQUE_KEYS[table]:
            if row.get(key) is not None and any(r.get(key) == row[key] for r in self.tables[table]):
                raise DuplicateRecord(f'duplicate key value violates unique constraint "{table}_{key}_key"')
        self.tables[table].append(row)
        self.inserts[table] += 1
        return copy.deepcopy(row)

    def select_one(self, table, filters, columns=None):
        rows = self.select_many(table, filters, limit=1, columns=columns)
        return rows[0] if rows else None

    def select_many(self, table, filters=None, order=None, limit=None, columns=None):
        if self.fail_selects is not None:
            raise self.fail_selects
        rows = [r for r in self.tables[table] if self._match(r, filters)]
        for col, direction in reversed(list(order or [])):
            rows.sort(key=lambda r: (r.get(col) is None, r.get(col)), reverse=(direction == "desc"))
        if limit is not None:
            rows = rows[:limit]
        return [self._project(r, columns) for r in rows]

    def update(self, table, filters, patch):
        updated = None
        for r in self.tables[table]:
            if self._match(r, filters):
                r.update(copy.deepcopy(patch))
                updated = copy.deepcopy(r)
        return updated

    def delete(self, table, filters):
        before = len(self.tables[table])
        self.tables[table] = [r for r in self.tables[table] if not self._match(r, filters)]
        return before - len(self.tables[table])

    def upsert(self, table, record, conflict):
        if self.fail_inserts is not None:
            raise self.fail_inserts
        key = {c: record[c] for c in conflict}
        for r in self.tables[table]:
            if self._match(r, key):
                r.update(copy.deepcopy(record))
                return copy.deepcopy(r)
        row = copy.deepcopy(record)
        self.tables[table].append(row)
        self.inserts[table] += 1
        return copy.deepcopy(row)

    def purge_before(self, table, column, cutoff):
        before = len(self.tables[table])
        self.tables[table] = [r for r in self.tables[table] if not (r.get(column) is not None and r[column] < cutoff)]
        return before - len(self.tables[table])


def make_question(qid, correct=("a",), n_answers=4, qtype="multiple-choice", section="General"):
    answers = [
        {"id": chr(97 + i), "text": f"answer {chr(97 + i)}", "isCorrect": chr(97 + i) in correct, "feedback": ""}
        for i in range(n_answers)
    ]
    return Question.model_validate({
        "id": qid, "type": qtype, "question": f"<p>Question {qid}</p>",
        "answers": answers, "explanation": f"explanation {qid}", "section": section,
    })


def make_questions(n, start=1):
    """Alternating single-select (correct 'a') and multi-select (correct 'a','c')."""
    out = []
    for i in range(n):
        if i % 2:
            out.append(make_question(start + i, correct=("a", "c"), qtype="multi-select"))
        else:
            out.append(make_question(start + i))
    return out


__all__ = ["FakeStore", "make_question", "make_questions", "PROJECT_ROOT", "StoreError", "DuplicateRecord"]
