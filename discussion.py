# discussion.py
# -----------------------------------------------------------------------------
# Threaded discussions.
# - Threads newest first; optional category filter and text search (title + body)
# - Replies oldest first, nested by parent_reply_id; a reply whose parent is
#   missing is shown at the top level
# - Bodies are stored as written and rendered as Markdown on the way out
# -----------------------------------------------------------------------------
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

import bleach
import markdown
from flask import Blueprint, g, jsonify, request
from markupsafe import Markup
from pydantic import ValidationError

from models import DiscussionIn, ReplyIn
from store import StoreError

SANITIZE_HTML = os.getenv("SANITIZE_HTML", "1").lower() in {"1", "true", "yes"}
THREAD_LIST_LIMIT = int(os.getenv("DISCUSSION_LIST_LIMIT") or 200)

CATEGORIES = ("general", "mock", "practice1", "practice2", "practice3",
              "practice4", "practice5", "practice6", "question")

BLEACH_ALLOWED_TAGS = [
    "a", "abbr", "b", "blockquote", "code", "em", "i", "li", "ol", "strong", "ul",
    "p", "h1", "h2", "h3", "h4", "h5", "h6", "pre", "hr", "br", "span", "div",
    "table", "thead", "tbody", "tr", "th", "td",
]
BLEACH_ALLOWED_ATTRS = {
    "*": ["class", "title"],
    "a": ["href", "name", "target", "rel"],
}
BLEACH_ALLOWED_PROTOCOLS = ["http", "https", "mailto"]


# =============================================================================
# Rendering helpers (Markdown)
# =============================================================================
def _sanitize_if_enabled(html: str) -> str:
    if not SANITIZE_HTML:
        return html
    return bleach.clean(
        html,
        tags=BLEACH_ALLOWED_TAGS,
        attributes=BLEACH_ALLOWED_ATTRS,
        protocols=BLEACH_ALLOWED_PROTOCOLS,
        strip=True,
    )

@lru_cache(maxsize=512)
def _render_rich_cached(text: str, sanitize_flag: bool) -> str:
    if not text:
        return ""
    html = markdown.markdown(text, extensions=["fenced_code", "tables", "sane_lists"], output_format="html5")
    return _sanitize_if_enabled(html) if sanitize_flag else html

def render_rich(text: Optional[str]) -> Markup:
    if text is None:
        return Markup("")
    return Markup(_render_rich_cached(str(text), SANITIZE_HTML))


# =============================================================================
# Reply tree
# =============================================================================
def build_reply_tree(replies: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    nodes = {r["id"]: dict(r, children=[]) for r in replies}
    roots: List[Dict[str, Any]] = []
    for r in replies:
        node = nodes[r["id"]]
        parent = nodes.get(r.get("parent_reply_id"))
        if parent is not None and parent is not node:
            parent["children"].append(node)
        else:
            roots.append(node)
    return roots

def matches_search(thread: Dict[str, Any], query: str) -> bool:
    if not query:
        return True
    q = query.lower()
    return q in (thread.get("title") or "").lower() or q in (thread.get("body") or "").lower()


def _iso(v) -> Optional[str]:
    return v.isoformat() if hasattr(v, "isoformat") else (str(v) if v is not None else None)

def _present(row: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(row)
    out["created_at"] = _iso(row.get("created_at"))
    out["body_html"] = str(render_rich(row.get("body")))
    return out


# =============================================================================
# Blueprint
# =============================================================================
def create_discussion_blueprint(base_path: str, deps: Dict[str, Any], name: str = "discussion") -> Blueprint:
    """
    Registers:
      - GET  "/discussions"                      ?category=<c|all>&q=<text>
      - POST "/discussions"                      {title, body, category, question_id?}
      - POST "/discussions/<id>/replies"         {body, parent_reply_id?}
    Required deps: store
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)
    store = deps["store"]

    def _username() -> str:
        user = getattr(g, "user", None)
        if user is None:
            return "anonymous"
        return user.student_name or user.register_no

    def _bad_input(e: ValidationError):
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ())) or "input"
        return jsonify({"ok": False, "error": f"{field}: {first.get('msg', 'invalid')}"}), 400

    @bp.get("/discussions")
    def list_discussions():
        category = (request.args.get("category") or "all").strip()
        query = (request.args.get("q") or "").strip()
        filters = {} if category in ("", "all") else {"category": category}
        try:
            threads = store.select_many("discussions", filters, order=[("created_at", "desc")],
                                        limit=THREAD_LIST_LIMIT)
            threads = [t for t in threads if matches_search(t, query)]
            ids = [t["id"] for t in threads]
            replies = store.select_many("discussion_replies", {"discussion_id": ids},
                                        order=[("created_at", "asc")]) if ids else []
        except StoreError as e:
            print(f"[discussion] list failed: {e}")
            return jsonify({"ok": False, "error": "discussions temporarily unavailable"}), 503

        by_thread: Dict[Any, List[Dict[str, Any]]] = {}
        for r in replies:
            by_thread.setdefault(r.get("discussion_id"), []).append(_present(r))
        out = []
        for t in threads:
            item = _present(t)
            thread_replies = by_thread.get(t["id"], [])
            item["reply_count"] = len(thread_replies)
            item["replies"] = build_reply_tree(thread_replies)
            out.append(item)
        return jsonify({"ok": True, "categories": list(CATEGORIES), "discussions": out})

    @bp.post("/discussions")
    def create_discussion():
        try:
            payload = DiscussionIn.model_validate(request.get_json(silent=True) or request.form.to_dict())
        except ValidationError as e:
            return _bad_input(e)
        if payload.category not in CATEGORIES:
            return jsonify({"ok": False, "error": f"unknown category: {payload.category}"}), 400
        record = {
            "user_id": g.user_id,
            "username": _username(),
            "title": payload.title,
            "body": payload.body,
            "category": payload.category,
            "question_id": payload.question_id if payload.category == "question" else None,
        }
        try:
            row = store.insert("discussions", record)
        except StoreError as e:
            print(f"[discussion] create failed: {e}")
            return jsonify({"ok": False, "error": "could not create discussion"}), 503
        return jsonify({"ok": True, "discussion": _present(row)}), 201

    @bp.post("/discussions/<int:discussion_id>/replies")
    def create_reply(discussion_id: int):
        try:
            payload = ReplyIn.model_validate(request.get_json(silent=True) or request.form.to_dict())
        except ValidationError as e:
            return _bad_input(e)
        try:
            if not store.select_one("discussions", {"id": discussion_id}, columns=("id",)):
                return jsonify({"ok": False, "error": "discussion not found"}), 404
            if payload.parent_reply_id is not None and not store.select_one(
                    "discussion_replies", {"id": payload.parent_reply_id, "discussion_id": discussion_id},
                    columns=("id",)):
                return jsonify({"ok": False, "error": "parent reply not found"}), 404
            row = store.insert("discussion_replies", {
                "discussion_id": discussion_id,
                "user_id": g.user_id,
                "username": _username(),
                "body": payload.body,
                "parent_reply_id": payload.parent_reply_id,
            })
        except StoreError as e:
            print(f"[discussion] reply failed: {e}")
            return jsonify({"ok": False, "error": "could not post reply"}), 503
        return jsonify({"ok": True, "reply": _present(row)}), 201

    return bp
