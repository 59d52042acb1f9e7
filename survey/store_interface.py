from __future__ import annotations

from datetime import datetime
from typing import Protocol

from core.enums import PostbackOutcome
from core.models import PostbackRecord, Session


class SessionNotFoundError(LookupError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"no session for user_id={user_id}")
        self.user_id = user_id


class SessionStoreProtocol(Protocol):
    root_step_id: str

    def get_or_create(self, user_id: str, now: datetime) -> Session: ...

    def try_set_in_flight(self, user_id: str) -> bool: ...

    def clear_in_flight(self, user_id: str) -> None: ...

    def record_answer(self, user_id: str, key: str, value: str) -> None: ...

    def advance(self, user_id: str, next_step_id: str) -> None: ...

    def reset(self, user_id: str) -> None: ...

    def set_display_name(self, user_id: str, display_name: str) -> None: ...

    def get(self, user_id: str) -> Session | None: ...

    def delete(self, user_id: str) -> None: ...

    def sweep(self, now: datetime) -> int: ...


class RateLimiterProtocol(Protocol):
    def allow(self, user_id: str, now: datetime) -> bool: ...

    def sweep(self, now: datetime) -> int: ...


class PostbackDeduplicatorProtocol(Protocol):
    def check_and_record(
        self,
        user_id: str,
        fingerprint: str,
        current_step_id: str,
        now: datetime,
    ) -> PostbackOutcome: ...

    def records(self, user_id: str, now: datetime) -> list[PostbackRecord]: ...

    def forget(self, user_id: str) -> None: ...

    def sweep(self, now: datetime) -> int: ...
