import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from flask import Flask, g

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from discussion import build_reply_tree, create_discussion_blueprint, render_rich  # noqa: E402
from fakes import FakeStore  # noqa: E402
from models import UserRow  # noqa: E402
from store import StoreError  # noqa: E402

T0 = datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def client(store):
    app = Flask(__name__)
    app.config["TESTING"] = True
    user = UserRow(id=1, register_no="REG001", student_name="Ada")

    @app.before_request
    def _fake_login():
        g.user = user
        g.user_id = user.id
        g.is_admin = False

    app.register_blueprint(create_discussion_blueprint("", {"store": store}))
    return app.test_client()


def _thread(store, title, body="", category="general", minutes=0):
    return store.insert("discussions", {
        "user_id": 1, "username": "Ada", "title": title, "body": body,
        "category": category, "question_id": None, "created_at": T0 + timedelta(minutes=minutes),
    })


def _reply(store, discussion_id, body, parent=None, minutes=0):
    return store.insert("discussion_replies", {
        "discussion_id": discussion_id, "user_id": 1, "username": "Ada", "body": body,
        "parent_reply_id": parent, "created_at": T0 + timedelta(minutes=minutes),
    })


def test_render_rich_strips_scripts():
    html = str(render_rich("**bold** <script>alert(1)</script>"))
    assert "<strong>bold</strong>" in html
    assert "<script>" not in html
    assert str(render_rich(None)) == ""


def test_reply_tree_nests_and_promotes_orphans():
    replies = [
        {"id": 1, "parent_reply_id": None},
        {"id": 2, "parent_reply_id": 1},
        {"id": 3, "parent_reply_id": 2},
        {"id": 4, "parent_reply_id": 99},
    ]
    roots = build_reply_tree(replies)
    assert [r["id"] for r in roots] == [1, 4]
    assert roots[0]["children"][0]["id"] == 2
    assert roots[0]["children"][0]["children"][0]["id"] == 3


def test_list_filters_and_orders(client, store):
    _thread(store, "Old joins question", "LEFT JOIN vs RIGHT JOIN", category="practice2", minutes=0)
    newest = _thread(store, "Timer ran out", "mock felt short", category="mock", minutes=10)
    _reply(store, newest["id"], "first", minutes=11)
    _reply(store, newest["id"], "second", minutes=12)

    body = client.get("/discussions").get_json()
    assert [d["title"] for d in body["discussions"]] == ["Timer ran out", "Old joins question"]
    assert body["discussions"][0]["reply_count"] == 2
    assert [r["body"] for r in body["discussions"][0]["replies"]] == ["first", "second"]
    assert body["discussions"][0]["created_at"] == (T0 + timedelta(minutes=10)).isoformat()
    assert "question" in body["categories"]

    only_joins = client.get("/discussions?category=practice2").get_json()["discussions"]
    assert [d["title"] for d in only_joins] == ["Old joins question"]
    searched = client.get("/discussions?q=RIGHT join").get_json()["discussions"]
    assert [d["title"] for d in searched] == ["Old joins question"]


def test_create_discussion(client, store):
    r = client.post("/discussions", json={"title": "  Help  ", "body": "Why *this*?",
                                          "category": "question", "question_id": 1042})
    assert r.status_code == 201
    d = r.get_json()["discussion"]
    assert d["title"] == "Help"
    assert d["username"] == "Ada"
    assert d["question_id"] == 1042
    assert "<em>this</em>" in d["body_html"]

    r = client.post("/discussions", json={"title": "x", "body": "y", "category": "general", "question_id": 7})
    assert r.get_json()["discussion"]["question_id"] is None


def test_create_discussion_rejects_bad_input(client):
    assert client.post("/discussions", json={"title": "", "body": "y"}).status_code == 400
    assert client.post("/discussions", json={"title": "t", "body": "y", "category": "memes"}).status_code == 400


def test_reply_and_nested_reply(client, store):
    t = _thread(store, "Thread")
    r = client.post(f"/discussions/{t['id']}/replies", json={"body": "top"})
    assert r.status_code == 201
    top_id = r.get_json()["reply"]["id"]
    r = client.post(f"/discussions/{t['id']}/replies", json={"body": "nested", "parent_reply_id": top_id})
    assert r.status_code == 201
    assert store.tables["discussion_replies"][-1]["parent_reply_id"] == top_id


def test_reply_errors(client, store):
    t = _thread(store, "Thread")
    other = _thread(store, "Other")
    foreign = _reply(store, other["id"], "elsewhere")
    assert client.post("/discussions/999/replies", json={"body": "hi"}).status_code == 404
    r = client.post(f"/discussions/{t['id']}/replies", json={"body": "hi", "parent_reply_id": foreign["id"]})
    assert r.status_code == 404
    assert client.post(f"/discussions/{t['id']}/replies", json={"body": "   "}).status_code == 400


def test_list_outage(client, store):
    store.fail_selects = StoreError("db down")
    assert client.get("/discussions").status_code == 503
