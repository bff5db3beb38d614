import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from flask import Flask, g, jsonify, session

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import auth  # noqa: E402
from auth import (  # noqa: E402
    AUTHORIZED, FORBIDDEN, UNAUTHENTICATED, check_access, close_session, create_auth_blueprint,
    hash_password, install_guard, open_session, sanitize_next, verify_password,
)
from fakes import FakeStore  # noqa: E402
from local_cache import AUTH_TOKEN_KEY, AUTH_USER_KEY, MemoryStorage, SessionStorage, write_json  # noqa: E402
from models import UserRow  # noqa: E402
from store import StoreError  # noqa: E402


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch):
    monkeypatch.setattr(auth, "BCRYPT_ROUNDS", 4)


def _seed_user(store, register_no="REG001", password=None, is_admin=False, name="Student One"):
    return store.insert("users", {
        "register_no": register_no,
        "password": hash_password(password) if password else None,
        "student_name": name,
        "is_admin": is_admin,
    })


def _signed_in(store, cache, **kw):
    user = UserRow.model_validate(_seed_user(store, **kw))
    open_session(cache, store, user)
    return user


# ---- passwords ----
def test_password_hash_round_trip():
    hashed = hash_password("correct horse")
    assert hashed.startswith("$2")
    assert verify_password("correct horse", hashed)
    assert not verify_password("wrong horse", hashed)
    assert not verify_password("anything", None)
    assert not verify_password("anything", "plaintext-from-legacy-import")


# ---- access check ----
def test_no_claim_or_token_is_unauthenticated():
    assert check_access(MemoryStorage(), FakeStore()).status == UNAUTHENTICATED


def test_valid_session_is_authorized_and_refreshes_claim():
    store, cache = FakeStore(), MemoryStorage()
    user = _signed_in(store, cache)
    write_json(cache, AUTH_USER_KEY, {"id": user.id, "register_no": "forged", "is_admin": True})

    access = check_access(cache, store)

    assert access.status == AUTHORIZED
    assert access.user_id == user.id
    assert '"is_admin": false' in cache.get_item(AUTH_USER_KEY)


def test_admin_route_for_non_admin_is_forbidden():
    store, cache = FakeStore(), MemoryStorage()
    _signed_in(store, cache)
    assert check_access(cache, store, admin=True).status == FORBIDDEN


def test_admin_user_is_authorized_on_admin_route():
    store, cache = FakeStore(), MemoryStorage()
    _signed_in(store, cache, is_admin=True)
    assert check_access(cache, store, admin=True).status == AUTHORIZED


def test_expired_session_clears_cached_identity():
    store, cache = FakeStore(), MemoryStorage()
    user = _signed_in(store, cache)
    store.tables["sessions"][0]["expires_at"] = datetime.now(timezone.utc) - timedelta(minutes=1)

    assert check_access(cache, store).status == UNAUTHENTICATED
    assert cache.get_item(AUTH_USER_KEY) is None
    assert cache.get_item(AUTH_TOKEN_KEY) is None
    assert user.id


def test_token_for_another_user_fails_closed():
    store, cache = FakeStore(), MemoryStorage()
    _signed_in(store, cache)
    other = UserRow.model_validate(_seed_user(store, register_no="REG002"))
    write_json(cache, AUTH_USER_KEY, {"id": other.id, "register_no": "REG002"})

    assert check_access(cache, store).status == UNAUTHENTICATED
    assert cache.get_item(AUTH_TOKEN_KEY) is None


def test_store_outage_is_unauthenticated_but_keeps_token():
    store, cache = FakeStore(), MemoryStorage()
    _signed_in(store, cache)
    store.fail_selects = StoreError("db down")
    assert check_access(cache, store).status == UNAUTHENTICATED
    assert cache.get_item(AUTH_TOKEN_KEY) is not None


def test_close_session_deletes_remote_row():
    store, cache = FakeStore(), MemoryStorage()
    _signed_in(store, cache)
    close_session(cache, store)
    assert store.tables["sessions"] == []
    assert cache.get_item(AUTH_TOKEN_KEY) is None


@pytest.mark.parametrize("raw,expected", [
    (None, "/"),
    ("https://evil.example/x", "/"),
    ("//evil.example/x", "/"),
    ("/login", "/"),
    ("/logout", "/"),
    ("/profile?tab=history", "/profile?tab=history"),
])
def test_sanitize_next(raw, expected):
    assert sanitize_next(raw) == expected


# ---- login blueprint + guard ----
def _app(store, cache=None):
    app = Flask(__name__)
    app.config["TESTING"] = True
    app.secret_key = "test-secret"
    if cache is None:
        auth_storage = lambda: SessionStorage(session)  # noqa: E731
    else:
        auth_storage = lambda: cache  # noqa: E731
    deps = {"store": store, "auth_storage": auth_storage}
    install_guard(app, "", deps)
    app.register_blueprint(create_auth_blueprint("", deps))

    @app.get("/protected")
    def protected():
        return jsonify({"user_id": g.user_id, "is_admin": g.is_admin})

    @app.route("/admin/report", methods=["GET", "POST"])
    def admin_report():
        return jsonify({"ok": True})

    return app


def test_first_login_sets_password_then_signs_in():
    store, cache = FakeStore(), MemoryStorage()
    _seed_user(store)
    client = _app(store, cache).test_client()

    r = client.post("/login", json={"register_no": "REG001"})
    assert r.get_json() == {"ok": True, "step": "create"}

    r = client.post("/login", json={"register_no": "REG001", "step": "create", "password": "short", "confirm": "short"})
    assert r.status_code == 400

    r = client.post("/login", json={"register_no": "REG001", "step": "create",
                                    "password": "longenough", "confirm": "different"})
    assert r.status_code == 400
    assert r.get_json()["error"] == "Passwords do not match."

    r = client.post("/login", json={"register_no": "REG001", "step": "create",
                                    "password": "longenough", "confirm": "longenough"})
    assert r.status_code == 200
    assert r.get_json()["user"]["register_no"] == "REG001"
    assert verify_password("longenough", store.tables["users"][0]["password"])
    assert len(store.tables["sessions"]) == 1
    assert client.get("/protected").get_json()["user_id"] == store.tables["users"][0]["id"]


def test_returning_user_login_and_wrong_password():
    store, cache = FakeStore(), MemoryStorage()
    _seed_user(store, password="s3cret-pass")
    client = _app(store, cache).test_client()

    assert client.post("/login", json={"register_no": "REG001"}).get_json()["step"] == "login"
    r = client.post("/login", json={"register_no": "REG001", "step": "login", "password": "nope"})
    assert r.status_code == 401
    assert store.tables["sessions"] == []

    r = client.post("/login", json={"register_no": "REG001", "step": "login", "password": "s3cret-pass",
                                    "next": "/profile"})
    assert r.get_json()["next"] == "/profile"


def test_unknown_register_number_and_outage():
    store, cache = FakeStore(), MemoryStorage()
    client = _app(store, cache).test_client()
    assert client.post("/login", json={"register_no": "NOPE"}).status_code == 404
    assert client.post("/login", json={}).status_code == 400
    store.fail_selects = StoreError("db down")
    assert client.post("/login", json={"register_no": "REG001"}).status_code == 503


def test_login_page_renders_html():
    client = _app(FakeStore(), MemoryStorage()).test_client()
    r = client.get("/login?next=/profile")
    assert r.status_code == 200
    assert b"Register number" in r.data
    assert b'value="/profile"' in r.data


def test_guard_redirects_pages_and_rejects_api_calls():
    client = _app(FakeStore(), MemoryStorage()).test_client()
    r = client.get("/protected?x=1")
    assert r.status_code == 302
    assert "/login?next=/protected?x=1" in r.headers["Location"]

    r = client.post("/admin/report")
    assert r.status_code == 401
    assert r.get_json() == {"ok": False, "error": "unauthorized"}


def test_guard_sends_non_admins_home_from_admin_pages():
    store, cache = FakeStore(), MemoryStorage()
    _signed_in(store, cache)
    client = _app(store, cache).test_client()
    r = client.get("/admin/report")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/")
    assert client.post("/admin/report").status_code == 403
    assert client.get("/protected").get_json()["is_admin"] is False


def test_logout_clears_session():
    store, cache = FakeStore(), MemoryStorage()
    _signed_in(store, cache)
    client = _app(store, cache).test_client()
    r = client.get("/logout")
    assert r.status_code == 302
    assert store.tables["sessions"] == []
    assert client.get("/protected").status_code == 302


def test_session_cookie_sign_in_is_honoured_by_another_worker():
    store = FakeStore()
    _seed_user(store, password="s3cret-pass")
    worker_a = _app(store).test_client(use_cookies=False)
    worker_b = _app(store).test_client(use_cookies=False)

    r = worker_a.post("/login", json={"register_no": "REG001", "step": "login", "password": "s3cret-pass"})
    assert r.status_code == 200
    cookie = r.headers["Set-Cookie"].split(";", 1)[0]

    r = worker_b.get("/protected", headers={"Cookie": cookie})
    assert r.status_code == 200
    assert r.get_json()["user_id"] == store.tables["users"][0]["id"]

    store.tables["sessions"].clear()
    assert worker_b.get("/protected", headers={"Cookie": cookie}).status_code == 302


def test_anonymous_requests_leave_no_session_behind():
    client = _app(FakeStore()).test_client(use_cookies=False)
    for _ in range(50):
        r = client.get("/protected")
        assert r.status_code == 302
        assert "Set-Cookie" not in r.headers
