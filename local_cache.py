"""
local_cache.py: per-client key/value storage (string values, localStorage surface)
and the exam-session repository that writes session fields through to it.

Production storage is the public.client_cache table keyed by the cookie-bound
client id, so attempts survive reloads on any worker or instance. Rows idle
longer than CLIENT_CACHE_TTL_SEC are swept. The signed-in claim and token ride
in the Flask session cookie. MemoryStorage is the in-process double.
"""

import json
import os
import threading
import zlib
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, MutableMapping, Optional, Tuple, Union

from exam_session import ExamSession, SESSION_FIELDS
from store import StoreError

CLIENT_CACHE_TTL_SEC = int(os.getenv("CLIENT_CACHE_TTL_SEC") or 7 * 24 * 3600)
CLIENT_CACHE_SWEEP_SEC = int(os.getenv("CLIENT_CACHE_SWEEP_SEC") or 600)

MOCK_PREFIX = "mockTest_"
AUTH_USER_KEY = "auth_user"
AUTH_TOKEN_KEY = "auth_token"


class MemoryStorage:
    """Thread-safe string store: get_item / set_item / remove_item."""

    def __init__(self):
        self._items: Dict[str, str] = {}
        self._lock = threading.RLock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = str(value)

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._items.keys())

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    @contextmanager
    def transaction(self):
        """Hold the storage lock across a read-modify-write."""
        with self._lock:
            yield self


class SessionStorage:
    """Storage surface over a Flask session mapping (signed cookie)."""

    def __init__(self, mapping: MutableMapping[str, Any]):
        self._mapping = mapping

    def get_item(self, key: str) -> Optional[str]:
        value = self._mapping.get(key)
        return None if value is None else str(value)

    def set_item(self, key: str, value: str) -> None:
        if self._mapping.get(key) != str(value):
            self._mapping[key] = str(value)

    def remove_item(self, key: str) -> None:
        self._mapping.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._mapping.keys())

    @contextmanager
    def transaction(self):
        yield self


# a fixed stripe of locks; two requests of one client on one worker serialize here,
# across workers the test_logs primary key is the backstop
_CLIENT_LOCKS = tuple(threading.RLock() for _ in range(64))

def _client_lock(client_id: str) -> threading.RLock:
    return _CLIENT_LOCKS[zlib.crc32(client_id.encode("utf-8")) % len(_CLIENT_LOCKS)]


class DbStorage:
    """
    One client's rows in public.client_cache. Rows are read once per instance
    (and again on entering a transaction); writes go straight through.
    """

    TABLE = "client_cache"

    def __init__(self, store, client_id: str,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.store = store
        self.client_id = client_id
        self._clock = clock
        self._items: Optional[Dict[str, str]] = None

    def _load(self) -> Dict[str, str]:
        if self._items is None:
            rows = self.store.select_many(self.TABLE, {"client_id": self.client_id}, columns=("key", "value"))
            self._items = {r["key"]: r["value"] for r in rows}
        return self._items

    def get_item(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        value = str(value)
        self.store.upsert(self.TABLE, {
            "client_id": self.client_id, "key": key, "value": value, "updated_at": self._clock(),
        }, conflict=("client_id", "key"))
        self._load()[key] = value

    def remove_item(self, key: str) -> None:
        items = self._load()
        if key in items:
            self.store.delete(self.TABLE, {"client_id": self.client_id, "key": key})
            items.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._load().keys())

    def clear(self) -> None:
        self.store.delete(self.TABLE, {"client_id": self.client_id})
        self._items = {}

    @contextmanager
    def transaction(self):
        """Hold this client's lock across a read-modify-write, starting from fresh rows."""
        with _client_lock(self.client_id):
            self._items = None
            yield self


class ClientCache:
    """Hands out DbStorage per client id and sweeps idle rows at most every `sweep_every` seconds."""

    def __init__(self, store, ttl: int = CLIENT_CACHE_TTL_SEC, sweep_every: int = CLIENT_CACHE_SWEEP_SEC,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.store = store
        self.ttl = ttl
        self.sweep_every = sweep_every
        self._clock = clock
        self._lock = threading.Lock()
        self._last_sweep: Optional[datetime] = None

    def for_client(self, client_id: str) -> DbStorage:
        self.maybe_sweep()
        return DbStorage(self.store, client_id, clock=self._clock)

    def maybe_sweep(self) -> int:
        now = self._clock()
        with self._lock:
            due = self._last_sweep is None or (now - self._last_sweep).total_seconds() >= self.sweep_every
            if due:
                self._last_sweep = now
        return self.cleanup_expired(now) if due else 0

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or self._clock()) - timedelta(seconds=self.ttl)
        try:
            removed = self.store.purge_before(DbStorage.TABLE, "updated_at", cutoff)
        except StoreError as e:
            print(f"[cache] sweep failed: {e}")
            return 0
        if removed:
            print(f"[cache] swept {removed} idle client rows")
        return removed


Storage = Union[MemoryStorage, SessionStorage, DbStorage]


# ---- JSON helpers ----------------------------------------------------------------
def read_json(storage: Storage, key: str, default: Any = None) -> Any:
    """Decoded value, or `default` when the key is absent or holds malformed JSON."""
    raw = storage.get_item(key)
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except ValueError as e:
        print(f"[cache] ignoring malformed '{key}': {e}")
        return default

def write_json(storage: Storage, key: str, value: Any) -> None:
    storage.set_item(key, json.dumps(value, ensure_ascii=False))


def practice_prefix(set_id: str) -> str:
    return f"quizState_{set_id}_"


# ---- Session repository ------------------------------------------------------------
class ExamSessionRepository:
    """
    load() / save(session, *fields) / clear() over one attempt's keys.
    The finished attempt is kept separately under `<prefix>lastCompleted` so results,
    review and save retries survive clear().
    """

    FIELD_KEYS: Dict[str, str] = {
        "meta": "meta",
        "questions": "questions",
        "current_index": "currentQuestionIndex",
        "answers": "userAnswers",
        "answered": "answeredQuestions",
        "saved": "savedQuestions",
        "remaining_seconds": "timeRemaining",
        "started_at_ms": "startTime",
        "phase": "phase",
        "selection": "selectedAnswers",
        "attempt_id": "attemptId",
        "result": "result",
    }
    COMPLETED_KEY = "lastCompleted"

    def __init__(self, storage: Storage, prefix: str = MOCK_PREFIX):
        self.storage = storage
        self.prefix = prefix

    def _key(self, field: str) -> str:
        return self.prefix + self.FIELD_KEYS[field]

    def lock(self):
        return self.storage.transaction()

    def load(self) -> Optional[ExamSession]:
        data = {}
        for field in SESSION_FIELDS:
            value = read_json(self.storage, self._key(field))
            if value is not None:
                data[field] = value
        if not data.get("questions"):
            return None
        return ExamSession.from_fields(data)

    def save(self, session: ExamSession, *fields: str) -> None:
        for field in (fields or SESSION_FIELDS):
            write_json(self.storage, self._key(field), session.dump_field(field))

    def clear(self) -> None:
        for field in SESSION_FIELDS:
            self.storage.remove_item(self._key(field))

    # ---- finished attempt ----
    def save_completed(self, session: ExamSession, record: Optional[Dict[str, Any]], status: str) -> None:
        write_json(self.storage, self.prefix + self.COMPLETED_KEY, {
            "session": session.dump_all(),
            "record": record,
            "status": status,
        })

    def load_completed(self) -> Optional[Tuple[ExamSession, Optional[Dict[str, Any]], str]]:
        entry = read_json(self.storage, self.prefix + self.COMPLETED_KEY)
        if not isinstance(entry, dict) or not isinstance(entry.get("session"), dict):
            return None
        session = ExamSession.from_fields(entry["session"])
        if session is None:
            return None
        return session, entry.get("record"), str(entry.get("status") or "")

    def clear_completed(self) -> None:
        self.storage.remove_item(self.prefix + self.COMPLETED_KEY)
