# admin.py
# Admin report over test_logs. The session guard already answers non-admins with
# "forbidden" for every /admin path; require_admin() re-checks inside the views.

from typing import Any, Dict, List

from flask import Blueprint, g, jsonify, request

from models import UserRow
from profiles import attempt_percentage, best_of, build_catalogue, matches_test, parse_logs
from store import StoreError

ADMIN_LOG_COLUMNS = (
    "id", "user_id", "register_no", "test_name", "test_type", "score",
    "total_questions", "percentage", "taken_at",
)


def create_admin_blueprint(base_path: str, deps: Dict[str, Any], name: str = "admin") -> Blueprint:
    """
    Registers:
      - GET "/admin"              per-test summary
      - GET "/admin?test=<key>"   every user's attempts / best for one test
    Required deps: store, QUESTION_SETS
    """
    bp = Blueprint(name, __name__, url_prefix=f"{base_path}/admin" if base_path else "/admin")
    store = deps["store"]
    catalogue = build_catalogue(deps["QUESTION_SETS"])
    by_key = {t["key"]: t for t in catalogue}

    def require_admin():
        if not getattr(g, "is_admin", False):
            return jsonify({"ok": False, "error": "forbidden"}), 403
        return None

    def _users() -> List[UserRow]:
        rows = store.select_many("users", columns=("id", "register_no", "student_name", "is_admin"),
                                 order=[("register_no", "asc")])
        return [UserRow.model_validate(r) for r in rows]

    def _summary(logs) -> List[Dict[str, Any]]:
        out = []
        for t in catalogue:
            entries = [l for l in logs if matches_test(l, t["key"], t["name"])]
            pcts = [p for p in (attempt_percentage(l) for l in entries) if p is not None]
            out.append({
                "key": t["key"],
                "name": t["name"],
                "attempts": len(entries),
                "students": len({l.user_id for l in entries if l.user_id is not None}),
                "best_percentage": best_of(entries),
                "average_percentage": round(sum(pcts) / len(pcts)) if pcts else None,
            })
        return out

    @bp.get("")
    def admin_home():
        denied = require_admin()
        if denied:
            return denied
        test_key = (request.args.get("test") or "").strip()
        if test_key and test_key not in by_key:
            return jsonify({"ok": False, "error": f"unknown test: {test_key}"}), 404
        try:
            logs = parse_logs(store.select_many("test_logs", columns=ADMIN_LOG_COLUMNS,
                                                order=[("taken_at", "desc")]))
            users = _users() if test_key else []
        except StoreError as e:
            print(f"[admin] report unavailable: {e}")
            return jsonify({"ok": False, "error": "report temporarily unavailable"}), 503

        if not test_key:
            return jsonify({"ok": True, "tests": _summary(logs)})

        t = by_key[test_key]
        rows = []
        for u in users:
            entries = [l for l in logs if l.user_id == u.id and matches_test(l, t["key"], t["name"])]
            rows.append({
                "user_id": u.id,
                "register_no": u.register_no,
                "student_name": u.student_name,
                "attempts": len(entries),
                "best_percentage": best_of(entries),
            })
        return jsonify({"ok": True, "test": t, "students": rows})

    return bp
