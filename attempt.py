# attempt.py: drives one client's attempt: load session, apply a transition,
# write the changed fields back, and finalize on completion.
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence, Tuple

from exam_session import COMPLETE, IN_PROGRESS, ExamSession
from local_cache import ExamSessionRepository
from models import IdentityClaim, Question, SubmissionRecord
from persistence import Reconciler, build_submission

ACTIONS = ("select", "save", "clear", "navigate", "next", "previous", "tick", "submit", "review")


class AttemptController:
    def __init__(self, repo: ExamSessionRepository, reconciler: Reconciler,
                 identity: Optional[IdentityClaim],
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
                 id_factory: Callable[[], str] = lambda: uuid.uuid4().hex):
        self.repo = repo
        self.reconciler = reconciler
        self.identity = identity
        self.clock = clock
        self.id_factory = id_factory

    # ---- loading -------------------------------------------------------------------
    def current(self) -> Tuple[Optional[ExamSession], bool]:
        """(session, is_completed_copy). In-progress state wins over the finished copy."""
        live = self.repo.load()
        if live is not None and live.phase == IN_PROGRESS:
            return live, False
        done = self.repo.load_completed()
        if done is not None:
            return done[0], True
        return None, False

    def save_status(self) -> Optional[str]:
        done = self.repo.load_completed()
        return done[2] if done else None

    # ---- transitions ---------------------------------------------------------------
    def start(self, questions: Sequence[Question], mode: str, test_name: str,
              set_id: Optional[str] = None, time_limit_seconds: int = 0) -> ExamSession:
        with self.repo.lock():
            self.repo.clear()
            self.repo.clear_completed()
            session = ExamSession(questions, mode=mode, test_name=test_name,
                                  set_id=set_id, time_limit_seconds=time_limit_seconds)
            now_ms = int(self.clock().timestamp() * 1000)
            dirty = session.start(now_ms, self.id_factory())
            self.repo.save(session, *dirty)
        print(f"[exam] started {mode} attempt {session.attempt_id} ({len(session.questions)} questions)")
        return session

    def apply(self, action: str, **kwargs) -> Tuple[Optional[ExamSession], Optional[str]]:
        """Run one transition; returns (session, save status when this call finished the attempt)."""
        if action not in ACTIONS:
            raise ValueError(f"unknown action: {action}")
        with self.repo.lock():
            session, finished_copy = self.current()
            if session is None:
                return None, None
            dirty = self._dispatch(session, action, kwargs)
            if not dirty:
                return session, None
            if finished_copy:
                done = self.repo.load_completed()
                self.repo.save_completed(session, done[1] if done else None, done[2] if done else "")
                return session, None
            if session.phase == COMPLETE and "phase" in dirty:
                return session, self._finalize(session)
            self.repo.save(session, *dirty)
            return session, None

    @staticmethod
    def _dispatch(session: ExamSession, action: str, kwargs) -> Tuple[str, ...]:
        if action == "select":
            return session.select_answer(kwargs["answer_id"])
        if action == "save":
            return session.save_answer()
        if action == "clear":
            return session.clear_selection()
        if action == "navigate":
            return session.navigate(int(kwargs["index"]))
        if action == "next":
            return session.next()
        if action == "previous":
            return session.previous()
        if action == "tick":
            return session.tick(int(kwargs.get("seconds", 1)))
        if action == "submit":
            return session.submit()
        return session.enter_review()

    def _finalize(self, session: ExamSession) -> str:
        record: Optional[SubmissionRecord] = None
        if self.identity is None:
            status = "error: no session"
        else:
            record = build_submission(session, self.identity, self.clock())
            status = self.reconciler.reconcile(record)
        self.repo.save_completed(session, record.model_dump(mode="json") if record else None, status)
        self.repo.clear()
        print(f"[exam] attempt {session.attempt_id} complete: {status}")
        return status

    def retry_save(self) -> Optional[str]:
        with self.repo.lock():
            done = self.repo.load_completed()
            if done is None:
                return None
            session, record_data, _ = done
            if record_data is None:
                if self.identity is None:
                    return "error: no session"
                record = build_submission(session, self.identity, self.clock())
            else:
                record = SubmissionRecord.model_validate(record_data)
            status = self.reconciler.reconcile(record)
            self.repo.save_completed(session, record.model_dump(mode="json"), status)
            return status

    def discard(self) -> None:
        with self.repo.lock():
            self.repo.clear()
            self.repo.clear_completed()
