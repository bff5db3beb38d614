from typing import Any, Dict, Iterable, List, Optional

from flask import Blueprint, g, jsonify
from pydantic import ValidationError

from models import AttemptRow
from scoring import percentage
from store import StoreError

HISTORY_COLUMNS = (
    "id", "user_id", "test_name", "test_type", "score", "total_questions",
    "questions_answered", "percentage", "time_spent", "taken_at", "questions_map",
)


# =============================== Attempt stats ================================
def build_catalogue(question_sets: Iterable[Dict[str, Any]]) -> List[Dict[str, str]]:
    """[{key, name}] for the mock test followed by every practice set."""
    return [{"key": "mock", "name": "Mock Test"}] + [
        {"key": s["id"], "name": s["name"]} for s in question_sets
    ]

def matches_test(log: AttemptRow, key: str, name: str) -> bool:
    if key == "mock":
        return log.is_mock
    ln = log.test_name.strip().lower()
    en = name.strip().lower()
    if not ln or not en:
        return False
    return ln == en or en in ln or ln in en

def attempt_percentage(log: AttemptRow) -> Optional[int]:
    if log.percentage is not None:
        return log.percentage
    if log.total_questions:
        return percentage(log.score, log.total_questions)
    return None

def best_of(logs: Iterable[AttemptRow]) -> Optional[int]:
    best = None
    for log in logs:
        pct = attempt_percentage(log)
        if pct is not None and (best is None or pct > best):
            best = pct
    return best

def per_test_stats(logs: List[AttemptRow], catalogue: List[Dict[str, str]]) -> List[Dict[str, Any]]:
    out = []
    for t in catalogue:
        entries = [l for l in logs if matches_test(l, t["key"], t["name"])]
        out.append({"key": t["key"], "name": t["name"], "attempts": len(entries), "best_percentage": best_of(entries)})
    return out

def parse_logs(rows: Iterable[Dict[str, Any]]) -> List[AttemptRow]:
    logs = []
    for r in rows or []:
        try:
            logs.append(AttemptRow.model_validate(r))
        except ValidationError as e:
            print(f"[profile] skipping unreadable test_logs row {r.get('id')!r}: {e.error_count()} errors")
    return logs


# =============================== Blueprint ====================================
def create_profile_blueprint(base_path: str, deps: Dict[str, Any], name: str = "profile") -> Blueprint:
    """
    Registers:
      - GET "/profile"  identity + attempts / best percentage per test
      - GET "/history"  own attempts, newest first
    Required deps: store, QUESTION_SETS
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)
    store = deps["store"]
    catalogue = build_catalogue(deps["QUESTION_SETS"])

    def _own_logs() -> List[AttemptRow]:
        rows = store.select_many("test_logs", {"user_id": g.user_id},
                                 order=[("taken_at", "desc")], columns=HISTORY_COLUMNS)
        return parse_logs(rows)

    @bp.get("/profile")
    def profile_view():
        user = g.user
        try:
            logs = _own_logs()
        except StoreError as e:
            print(f"[profile] stats unavailable: {e}")
            return jsonify({"ok": False, "error": "profile temporarily unavailable"}), 503
        return jsonify({
            "ok": True,
            "user": {"id": user.id, "register_no": user.register_no,
                     "student_name": user.student_name, "is_admin": user.is_admin},
            "stats": per_test_stats(logs, catalogue),
        })

    @bp.get("/history")
    def history_view():
        try:
            logs = _own_logs()
        except StoreError as e:
            print(f"[profile] history unavailable: {e}")
            return jsonify({"ok": False, "error": "history temporarily unavailable"}), 503
        return jsonify({"ok": True, "attempts": [l.summary() for l in logs]})

    return bp
