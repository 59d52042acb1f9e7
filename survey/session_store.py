from __future__ import annotations

import threading
from datetime import datetime, timedelta

from core.models import Session
from survey.store_interface import SessionNotFoundError


class InMemorySessionStore:
    """Process-local sessions keyed by LINE user id.

    Every read and write goes through one lock, so ``try_set_in_flight`` is a
    true compare-and-set. Readers get snapshots, never the stored object.
    """

    def __init__(self, root_step_id: str = "welcome", session_ttl_minutes: int = 30) -> None:
        self.root_step_id = root_step_id
        self.session_ttl = timedelta(minutes=max(1, int(session_ttl_minutes)))
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def get_or_create(self, user_id: str, now: datetime) -> Session:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is not None and now - session.last_activity_at <= self.session_ttl:
                session.last_activity_at = now
                return session.snapshot()
            fresh = Session(
                user_id=user_id,
                current_step_id=self.root_step_id,
                created_at=now,
                last_activity_at=now,
            )
            self._sessions[user_id] = fresh
            return fresh.snapshot()

    def get(self, user_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(user_id)
            return session.snapshot() if session is not None else None

    def try_set_in_flight(self, user_id: str) -> bool:
        with self._lock:
            session = self._require(user_id)
            if session.in_flight:
                return False
            session.in_flight = True
            return True

    def clear_in_flight(self, user_id: str) -> None:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is not None:
                session.in_flight = False

    def record_answer(self, user_id: str, key: str, value: str) -> None:
        with self._lock:
            self._require(user_id).answers[key] = value

    def advance(self, user_id: str, next_step_id: str) -> None:
        with self._lock:
            self._require(user_id).current_step_id = next_step_id

    def reset(self, user_id: str) -> None:
        with self._lock:
            session = self._require(user_id)
            session.current_step_id = self.root_step_id
            session.answers = {}

    def set_display_name(self, user_id: str, display_name: str) -> None:
        with self._lock:
            self._require(user_id).display_name = display_name

    def delete(self, user_id: str) -> None:
        with self._lock:
            self._sessions.pop(user_id, None)

    def sweep(self, now: datetime) -> int:
        with self._lock:
            user_ids = list(self._sessions)
        removed = 0
        for user_id in user_ids:
            with self._lock:
                session = self._sessions.get(user_id)
                if session is None or session.in_flight:
                    continue
                if now - session.last_activity_at > self.session_ttl:
                    del self._sessions[user_id]
                    removed += 1
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _require(self, user_id: str) -> Session:
        session = self._sessions.get(user_id)
        if session is None:
            raise SessionNotFoundError(user_id)
        return session
