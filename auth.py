# auth.py
# -----------------------------------------------------------------------------
# Register-number login (bcrypt) + server-side session tokens + route guard.
# - The cached identity claim is display-only; every protected request resolves
#   the token against public.sessions and re-reads the user row
# - Admin routes answer "forbidden" (-> home), everything else "unauthenticated" (-> login)
# -----------------------------------------------------------------------------
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote, urlsplit, urlunsplit

import bcrypt
from flask import Blueprint, g, jsonify, redirect, render_template_string, request
from pydantic import ValidationError

from local_cache import AUTH_TOKEN_KEY, AUTH_USER_KEY, Storage, read_json, write_json
from models import IdentityClaim, SessionRow, UserRow
from store import StoreError

SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS") or 24)
PASSWORD_MIN_LENGTH = int(os.getenv("PASSWORD_MIN_LENGTH") or 8)
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS") or 10)

UNAUTHENTICATED = "unauthenticated"
FORBIDDEN = "forbidden"
AUTHORIZED = "authorized"


# ---- Passwords -------------------------------------------------------------------
def hash_password(password: str) -> str:
    # bcrypt only looks at the first 72 bytes
    return bcrypt.hashpw(password.encode("utf-8")[:72], bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")

def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        print("[auth] stored password hash is not a bcrypt hash")
        return False


# ---- Access check ------------------------------------------------------------------
@dataclass(frozen=True)
class Access:
    status: str
    user: Optional[UserRow] = None

    @property
    def user_id(self) -> Optional[int]:
        return self.user.id if self.user else None


def _invalidate(cache: Storage) -> Access:
    cache.remove_item(AUTH_USER_KEY)
    cache.remove_item(AUTH_TOKEN_KEY)
    return Access(UNAUTHENTICATED)


def check_access(cache: Storage, store, admin: bool = False,
                 now: Optional[datetime] = None) -> Access:
    """
    unauthenticated | forbidden | authorized(user).
    Any unresolvable state clears the cached claim and token (fail closed).
    """
    claim_data = read_json(cache, AUTH_USER_KEY)
    token = cache.get_item(AUTH_TOKEN_KEY)
    if not claim_data or not token:
        return Access(UNAUTHENTICATED)
    try:
        claim = IdentityClaim.model_validate(claim_data)
    except ValidationError:
        return _invalidate(cache)

    try:
        session_row = store.select_one("sessions", {"token": token})
        if not session_row:
            return _invalidate(cache)
        sess = SessionRow.model_validate(session_row)
        if sess.expired(now):
            return _invalidate(cache)

        user_row = store.select_one("users", {"id": claim.id})
        if not user_row:
            return _invalidate(cache)
        user = UserRow.model_validate(user_row)
    except ValidationError as e:
        print(f"[auth] unreadable session/user row: {e}")
        return _invalidate(cache)
    except StoreError as e:
        print(f"[auth] session check failed: {e}")
        return Access(UNAUTHENTICATED)

    if user.id != sess.user_id:
        print(f"[auth] token bound to user {sess.user_id} presented with claim for {user.id}")
        return _invalidate(cache)

    # server copy replaces whatever the client cached
    fresh = IdentityClaim.from_user(user).model_dump()
    if claim_data != fresh:
        write_json(cache, AUTH_USER_KEY, fresh)
    if admin and not user.is_admin:
        return Access(FORBIDDEN, user)
    return Access(AUTHORIZED, user)


def open_session(cache: Storage, store, user: UserRow, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    token = secrets.token_urlsafe(32)
    store.insert("sessions", {
        "user_id": user.id,
        "token": token,
        "expires_at": now + timedelta(hours=SESSION_TTL_HOURS),
    })
    cache.set_item(AUTH_TOKEN_KEY, token)
    write_json(cache, AUTH_USER_KEY, IdentityClaim.from_user(user).model_dump())
    return token


def close_session(cache: Storage, store) -> None:
    token = cache.get_item(AUTH_TOKEN_KEY)
    if token:
        try:
            store.delete("sessions", {"token": token})
        except StoreError as e:
            print(f"[auth] session delete failed (safe): {e}")
    cache.remove_item(AUTH_USER_KEY)
    cache.remove_item(AUTH_TOKEN_KEY)


def cached_claim(cache: Storage) -> Optional[IdentityClaim]:
    data = read_json(cache, AUTH_USER_KEY)
    if not data:
        return None
    try:
        return IdentityClaim.model_validate(data)
    except ValidationError:
        return None


# ---- Route guard -------------------------------------------------------------------
def _bp_join(base_path: str, path: str) -> str:
    p = path if path.startswith("/") else "/" + path
    return (base_path + p) if base_path else p

def sanitize_next(next_url: Optional[str], base_path: str = "") -> str:
    home = _bp_join(base_path, "/")
    if not next_url:
        return home
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return home
    path = parts.path or "/"
    blocked = {_bp_join(base_path, "/login"), _bp_join(base_path, "/logout"), "/login", "/logout"}
    if any(path == p or path.startswith(p + "/") for p in blocked):
        return home
    return urlunsplit(("", "", path, parts.query, "")) or home


def install_guard(app, base_path: str, deps: Dict[str, Any]):
    """
    before_request gate. Sets g.user / g.user_id / g.is_admin on success.
    Required deps: store, auth_storage (claim + token holder, the Flask session in production)
    """
    store = deps["store"]
    auth_storage: Callable[[], Any] = deps["auth_storage"]
    static_prefix = _bp_join(base_path, "/static")

    public_exact = {
        _bp_join(base_path, p) for p in ("/login", "/logout", "/healthz", "/favicon.ico")
    } | {"/healthz", "/favicon.ico"}
    admin_prefixes = {_bp_join(base_path, "/admin")}

    def _is_admin_path(path: str) -> bool:
        return any(path == p or path.startswith(p + "/") for p in admin_prefixes)

    @app.before_request
    def _session_gate():
        path = request.path
        if path in public_exact or path.startswith(static_prefix):
            return None
        access = check_access(auth_storage(), store, admin=_is_admin_path(path))
        if access.status == AUTHORIZED:
            g.user = access.user
            g.user_id = access.user.id
            g.is_admin = access.user.is_admin
            return None
        wants_json = request.method != "GET" or request.is_json
        if access.status == FORBIDDEN:
            if wants_json:
                return jsonify({"ok": False, "error": "forbidden"}), 403
            return redirect(_bp_join(base_path, "/"))
        if wants_json:
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        full = request.full_path if request.query_string else request.path
        next_url = sanitize_next(full, base_path)
        return redirect(f"{_bp_join(base_path, '/login')}?next={quote(next_url, safe='/:?&=')}")


# ---- Login / logout blueprint --------------------------------------------------------
_LOGIN_HTML = """
<!doctype html>
<html lang="en"><meta charset="utf-8">
<title>Sign in · SQL Mock Exam</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<body style="font-family:system-ui,sans-serif;max-width:420px;margin:48px auto;padding:0 16px">
  <h1 style="font-size:1.4rem">Sign in</h1>
  {% if error %}<p style="color:#b91c1c">{{ error }}</p>{% endif %}
  <form method="post">
    <input type="hidden" name="next" value="{{ next_url }}">
    <input type="hidden" name="step" value="{{ step }}">
    <label>Register number<br>
      <input name="register_no" value="{{ register_no }}" {% if step != 'check' %}readonly{% endif %} required>
    </label><br><br>
    {% if step == 'create' %}
      <p>First sign-in: choose a password (at least {{ min_len }} characters).</p>
      <label>Password<br><input type="password" name="password" required></label><br><br>
      <label>Confirm password<br><input type="password" name="confirm" required></label><br><br>
    {% elif step == 'login' %}
      <label>Password<br><input type="password" name="password" required></label><br><br>
    {% endif %}
    <button type="submit">{{ 'Continue' if step == 'check' else 'Sign in' }}</button>
  </form>
</body></html>
"""


def create_auth_blueprint(base_path: str, deps: Dict[str, Any], name: str = "auth") -> Blueprint:
    """
    Registers:
      - GET/POST "/login"  (steps: check -> create | login)
      - GET      "/logout"
    Required deps: store, auth_storage
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)
    store = deps["store"]
    auth_storage: Callable[[], Any] = deps["auth_storage"]

    def _respond(step: str, register_no: str, next_url: str, error: Optional[str] = None, code: int = 200):
        if request.is_json:
            body = {"ok": error is None, "step": step}
            if error:
                body["error"] = error
            return jsonify(body), (code if error else 200)
        html = render_template_string(_LOGIN_HTML, step=step, register_no=register_no,
                                      next_url=next_url, error=error, min_len=PASSWORD_MIN_LENGTH)
        return html, code

    def _signed_in(user: UserRow, next_url: str):
        open_session(auth_storage(), store, user)
        print(f"[auth] signed in {user.register_no}")
        if request.is_json:
            return jsonify({"ok": True, "user": IdentityClaim.from_user(user).model_dump(), "next": next_url})
        return redirect(next_url)

    @bp.route("/login", methods=["GET", "POST"])
    def login():
        data = (request.get_json(silent=True) or {}) if request.is_json else request.form
        next_url = sanitize_next(data.get("next") or request.args.get("next"), base_path)
        if request.method == "GET":
            return _respond("check", "", next_url)

        register_no = (data.get("register_no") or "").strip()
        step = (data.get("step") or "check").strip()
        if not register_no:
            return _respond("check", "", next_url, "Enter your register number.", 400)

        try:
            row = store.select_one("users", {"register_no": register_no})
        except StoreError as e:
            print(f"[auth] user lookup failed: {e}")
            return _respond("check", register_no, next_url, "Sign-in is temporarily unavailable.", 503)
        if not row:
            return _respond("check", register_no, next_url, "Register number not found.", 404)
        user = UserRow.model_validate(row)

        if step == "check" or (step == "create" and user.has_password) or (step == "login" and not user.has_password):
            return _respond("login" if user.has_password else "create", register_no, next_url)

        password = data.get("password") or ""
        try:
            if step == "create":
                confirm = data.get("confirm") or ""
                if len(password) < PASSWORD_MIN_LENGTH:
                    return _respond("create", register_no, next_url,
                                    f"Password must be at least {PASSWORD_MIN_LENGTH} characters.", 400)
                if password != confirm:
                    return _respond("create", register_no, next_url, "Passwords do not match.", 400)
                updated = store.update("users", {"id": user.id}, {"password": hash_password(password)})
                user = UserRow.model_validate(updated) if updated else user
                return _signed_in(user, next_url)

            if not verify_password(password, user.password):
                return _respond("login", register_no, next_url, "Incorrect password. Please try again.", 401)
            return _signed_in(user, next_url)
        except StoreError as e:
            print(f"[auth] sign-in failed for {register_no}: {e}")
            return _respond(step, register_no, next_url, "Sign-in is temporarily unavailable.", 503)

    @bp.get("/logout")
    def logout():
        close_session(auth_storage(), store)
        if request.is_json:
            return jsonify({"ok": True})
        return redirect(_bp_join(base_path, "/login"))

    return bp
