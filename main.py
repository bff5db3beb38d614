# main.py — SQL mock exam portal, BASE_PATH-aware (psycopg3 + pooling)
# Every page except login/health requires a live server-side session.

import os
import uuid
from datetime import datetime, timezone

from flask import Flask, jsonify, session

from admin import create_admin_blueprint
from auth import create_auth_blueprint, install_guard
from discussion import create_discussion_blueprint
from exam import MOCK_TEST_NAME, create_exam_blueprint
from exam_session import MOCK_TIME_LIMIT_MIN
from home import register_home_routes
from local_cache import ClientCache, SessionStorage
from profiles import create_profile_blueprint
from question_bank import MOCK_TEST_QUESTIONS, QUESTION_SETS, assemble_mock_exam, load_practice_set
from store import RemoteStore, StoreError, ensure_schema, fetch_one

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
STATIC_URL_PATH = (BASE_PATH + "/static") if BASE_PATH else "/static"

app = Flask(__name__, static_url_path=STATIC_URL_PATH)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

AUTO_MIGRATE = os.getenv("AUTO_MIGRATE", "0").lower() in {"1", "true", "yes"}

# =============================================================================
# Stores
# =============================================================================
store = RemoteStore()
client_cache = ClientCache(store)

if AUTO_MIGRATE:
    ensure_schema()

def client_storage():
    """This browser's key/value rows, keyed by an id kept in the signed session cookie.
    Only signed-in views call this, so anonymous hits never mint an id."""
    cid = session.get("cid")
    if not cid:
        cid = session["cid"] = uuid.uuid4().hex
        session.permanent = True
    return client_cache.for_client(cid)

def auth_storage():
    return SessionStorage(session)

# =============================================================================
# Routes (health)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

@app.get("/favicon.ico")
def favicon():
    return ("", 204)

@app.errorhandler(StoreError)
def _store_unavailable(e):
    print(f"[DB] unhandled store error: {e}")
    return jsonify({"ok": False, "error": "service temporarily unavailable"}), 503

# =============================================================================
# Guard + blueprints
# =============================================================================
_deps = {
    "store": store,
    "client_storage": client_storage,
    "auth_storage": auth_storage,
    "QUESTION_SETS": QUESTION_SETS,
    "MOCK_TEST_NAME": MOCK_TEST_NAME,
    "MOCK_TEST_QUESTIONS": MOCK_TEST_QUESTIONS,
    "MOCK_TIME_LIMIT_MIN": MOCK_TIME_LIMIT_MIN,
    "load_mock": lambda size: assemble_mock_exam(size),
    "load_practice": lambda set_id: load_practice_set(set_id),
    "clock": lambda: datetime.now(timezone.utc),
}

install_guard(app, BASE_PATH, _deps)
app.register_blueprint(create_auth_blueprint(BASE_PATH, _deps))
register_home_routes(app, BASE_PATH, _deps)
app.register_blueprint(create_exam_blueprint(BASE_PATH, _deps))
app.register_blueprint(create_profile_blueprint(BASE_PATH, _deps))
app.register_blueprint(create_admin_blueprint(BASE_PATH, _deps))
app.register_blueprint(create_discussion_blueprint(BASE_PATH, _deps))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
