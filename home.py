# home.py
from typing import Any, Dict, List
from flask import g, jsonify, render_template_string, request

from exam_session import IN_PROGRESS
from local_cache import MOCK_PREFIX, ExamSessionRepository, practice_prefix

_HOME_HTML = """
<!doctype html>
<html lang="en"><meta charset="utf-8">
<title>SQL Mock Exam</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<body style="font-family:system-ui,sans-serif;max-width:860px;margin:32px auto;padding:0 16px">
  <header style="display:flex;justify-content:space-between;align-items:center">
    <h1 style="font-size:1.5rem">Oracle SQL Practice</h1>
    <nav>
      <a href="{{ bp('/profile') }}">Profile</a> ·
      <a href="{{ bp('/history') }}">History</a> ·
      <a href="{{ bp('/discussions') }}">Discussions</a>
      {% if is_admin %} · <a href="{{ bp('/admin') }}">Admin</a>{% endif %} ·
      <a href="{{ bp('/logout') }}">Sign out</a>
    </nav>
  </header>
  <p>Welcome, {{ student_name or register_no }}.</p>
  <section style="border:1px solid #ddd;border-radius:8px;padding:16px;margin:16px 0">
    <h2 style="font-size:1.1rem;margin:0">{{ mock.test_name }}</h2>
    <p>{{ mock.questions }} questions · {{ mock.minutes }} minutes
      {% if mock.in_progress %}<strong>· in progress</strong>{% endif %}</p>
  </section>
  {% for s in sets %}
  <section style="border:1px solid #eee;border-radius:8px;padding:12px;margin:8px 0">
    <h3 style="font-size:1rem;margin:0">{{ s.name }}</h3>
    <p style="margin:4px 0">{{ s.description }} · {{ s.count }} questions
      {% if s.in_progress %}<strong>· in progress</strong>{% endif %}</p>
  </section>
  {% endfor %}
</body></html>
"""


def register_home_routes(app, base_path: str, deps: Dict[str, Any]):
    """
    Registers:
      - GET "/" -> endpoint 'index'  (set catalogue + mock card; JSON when asked)
    Also creates a BASE_PATH alias without changing the endpoint name.
    """
    client_storage = deps["client_storage"]
    question_sets: List[Dict[str, Any]] = deps["QUESTION_SETS"]
    mock_meta = {
        "test_name": deps["MOCK_TEST_NAME"],
        "questions": deps["MOCK_TEST_QUESTIONS"],
        "minutes": deps["MOCK_TIME_LIMIT_MIN"],
    }

    def _bp(path: str) -> str:
        return (base_path + path) if base_path else path

    def _alias(rule: str, view_func, methods=None, endpoint_suffix="alias"):
        if not base_path:
            return
        alias_rule = f"{base_path}{rule if rule.startswith('/') else '/' + rule}"
        endpoint = f"{view_func.__name__}_{endpoint_suffix}"
        app.add_url_rule(alias_rule, endpoint=endpoint, view_func=view_func, methods=methods or ["GET"])

    def _in_progress(storage, prefix: str) -> bool:
        session = ExamSessionRepository(storage, prefix).load()
        return bool(session and session.phase == IN_PROGRESS)

    # ----- Routes -----
    def index():
        storage = client_storage()
        sets = [dict(s, in_progress=_in_progress(storage, practice_prefix(s["id"]))) for s in question_sets]
        mock = dict(mock_meta, in_progress=_in_progress(storage, MOCK_PREFIX))
        user = getattr(g, "user", None)

        wants_json = request.accept_mimetypes.best == "application/json" or request.args.get("format") == "json"
        if wants_json:
            return jsonify({"ok": True, "mock": mock, "sets": sets})
        return render_template_string(
            _HOME_HTML, sets=sets, mock=mock, bp=_bp,
            student_name=getattr(user, "student_name", ""),
            register_no=getattr(user, "register_no", ""),
            is_admin=bool(getattr(g, "is_admin", False)),
        )

    app.add_url_rule("/", endpoint="index", view_func=index, methods=["GET"])
    _alias("/", index)
