# exam.py
# -----------------------------------------------------------------------------
# Mock test + practice set + review endpoints (JSON).
# - Mock: 57 pooled questions, 90-minute client-driven timer (POST .../tick)
# - Practice: one set, bank order, untimed; same state machine
# - Submit needs {"confirm": true}; timer expiry submits on its own
# - Correctness, feedback and explanations stay hidden until the attempt is over
# - Review of a stored attempt: owner or admin only; mock attempts only
# -----------------------------------------------------------------------------

import os
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, g, jsonify, request

from attempt import ACTIONS, AttemptController
from exam_session import IN_PROGRESS, MOCK_TIME_LIMIT_MIN
from local_cache import MOCK_PREFIX, ExamSessionRepository, practice_prefix
from models import IdentityClaim
from persistence import Reconciler
from question_bank import MOCK_TEST_QUESTIONS, SET_IDS, set_label
from review import ReviewUnavailable, reconstruct_review
from store import StoreError

MOCK_TEST_NAME = os.getenv("MOCK_TEST_NAME") or "Oracle SQL Mock Test"


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Required deps: store, client_storage, load_mock, load_practice
    Optional deps: clock, id_factory
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)

    # ---- Required deps -------------------------------------------------------
    store = deps["store"]
    client_storage: Callable = deps["client_storage"]
    load_mock: Callable = deps["load_mock"]
    load_practice: Callable = deps["load_practice"]
    controller_kwargs = {k: deps[k] for k in ("clock", "id_factory") if deps.get(k)}

    # ---- Config --------------------------------------------------------------
    time_limit_seconds = int(deps.get("MOCK_TIME_LIMIT_MIN") or MOCK_TIME_LIMIT_MIN) * 60
    mock_size = int(deps.get("MOCK_TEST_QUESTIONS") or MOCK_TEST_QUESTIONS)

    # ------------------------------- helpers ----------------------------------
    def _controller(prefix: str) -> AttemptController:
        storage = client_storage()
        user = getattr(g, "user", None)
        identity = IdentityClaim.from_user(user) if user is not None else None
        return AttemptController(ExamSessionRepository(storage, prefix), Reconciler(store, storage),
                                 identity, **controller_kwargs)

    def _payload(ctrl: AttemptController, session=None, status: Optional[str] = None, loaded: bool = False):
        if not loaded:
            session, _ = ctrl.current()
        return jsonify({
            "ok": True,
            "session": session.view() if session else None,
            "save_status": status or ctrl.save_status(),
        })

    def _start(ctrl: AttemptController, mode: str, set_id: Optional[str]):
        data = request.get_json(silent=True) or {}
        session, _ = ctrl.current()
        if session is not None and session.phase == IN_PROGRESS and not data.get("restart"):
            return _payload(ctrl, session, loaded=True)  # resume
        try:
            if mode == "mock":
                questions = load_mock(mock_size)
            else:
                questions = load_practice(set_id)
        except ValueError as e:
            return jsonify({"ok": False, "error": str(e)}), 404
        if not questions:
            return jsonify({"ok": False, "error": "question bank unavailable"}), 503
        session = ctrl.start(
            questions, mode=mode,
            test_name=MOCK_TEST_NAME if mode == "mock" else set_label(set_id),
            set_id=set_id,
            time_limit_seconds=time_limit_seconds if mode == "mock" else 0,
        )
        return _payload(ctrl, session, loaded=True)

    def _action(ctrl: AttemptController, mode: str, set_id: Optional[str], action: str):
        if action == "start":
            return _start(ctrl, mode, set_id)
        if action == "new":
            ctrl.discard()
            return jsonify({"ok": True, "session": None, "save_status": None})
        if action == "retry-save":
            status = ctrl.retry_save()
            if status is None:
                return jsonify({"ok": False, "error": "no finished attempt to save"}), 409
            return _payload(ctrl, status=status)
        if action not in ACTIONS:
            return jsonify({"ok": False, "error": f"unknown action: {action}"}), 404

        data = request.get_json(silent=True) or {}
        if action == "submit" and data.get("confirm") is not True:
            return jsonify({"ok": False, "error": "confirmation required"}), 400
        kwargs: Dict[str, Any] = {}
        try:
            if action == "select":
                answer_id = data.get("answer_id")
                if not answer_id:
                    return jsonify({"ok": False, "error": "answer_id required"}), 400
                kwargs["answer_id"] = str(answer_id)
            elif action == "navigate":
                kwargs["index"] = int(data.get("index"))
            elif action == "tick":
                kwargs["seconds"] = int(data.get("seconds") or 1)
            session, status = ctrl.apply(action, **kwargs)
        except (TypeError, ValueError) as e:
            return jsonify({"ok": False, "error": str(e)}), 400
        if session is None:
            return jsonify({"ok": False, "error": "no attempt in progress"}), 409
        return _payload(ctrl, session, status=status, loaded=True)

    # --------------------------------- mock -----------------------------------
    @bp.get("/mock")
    def mock_state():
        ctrl = _controller(MOCK_PREFIX)
        resp = _payload(ctrl)
        body = resp.get_json()
        body["config"] = {"test_name": MOCK_TEST_NAME, "questions": mock_size,
                          "time_limit_seconds": time_limit_seconds}
        return jsonify(body)

    @bp.post("/mock/<action>")
    def mock_action(action: str):
        return _action(_controller(MOCK_PREFIX), "mock", None, action)

    # ------------------------------- practice ---------------------------------
    @bp.get("/practice/<set_id>")
    def practice_state(set_id: str):
        if set_id not in SET_IDS:
            return jsonify({"ok": False, "error": f"unknown question set: {set_id}"}), 404
        ctrl = _controller(practice_prefix(set_id))
        resp = _payload(ctrl)
        body = resp.get_json()
        body["config"] = {"test_name": set_label(set_id), "set_id": set_id}
        return jsonify(body)

    @bp.post("/practice/<set_id>/<action>")
    def practice_action(set_id: str, action: str):
        if set_id not in SET_IDS:
            return jsonify({"ok": False, "error": f"unknown question set: {set_id}"}), 404
        return _action(_controller(practice_prefix(set_id)), "practice", set_id, action)

    # -------------------------------- review ----------------------------------
    @bp.get("/review/<record_id>")
    def review_record(record_id: str):
        try:
            session, log = reconstruct_review(store, record_id)
        except ReviewUnavailable as e:
            return jsonify({"ok": False, "error": "no review available", "detail": str(e)}), 404
        except StoreError as e:
            print(f"[review] fetch failed for {record_id}: {e}")
            return jsonify({"ok": False, "error": "review temporarily unavailable"}), 503

        if log.user_id != getattr(g, "user_id", None) and not getattr(g, "is_admin", False):
            return jsonify({"ok": False, "error": "forbidden"}), 403

        index = request.args.get("index", type=int)
        if index is not None:
            session.navigate(index)
        body = {"ok": True, "record": log.summary(), "session": session.view()}
        body["questions"] = [
            {"index": i, "id": q.id,
             "status": "correct" if i in session.result.correct_indices
             else "incorrect" if i in session.result.incorrect_indices else "unanswered"}
            for i, q in enumerate(session.questions)
        ]
        return jsonify(body)

    return bp
