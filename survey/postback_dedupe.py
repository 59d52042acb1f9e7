from __future__ import annotations

import threading
from datetime import datetime, timedelta

from core.enums import PostbackOutcome
from core.models import PostbackRecord


class InMemoryPostbackDeduplicator:
    """Bounded per-user history of postback fingerprints.

    Only exact replays are caught here. A button from an older message with a
    never-seen payload is ACCEPTED and left to the transition check.
    """

    def __init__(self, postback_ttl_minutes: int = 30, max_records: int = 20) -> None:
        self.postback_ttl = timedelta(minutes=max(1, int(postback_ttl_minutes)))
        self.max_records = max(1, int(max_records))
        self._lock = threading.Lock()
        self._records: dict[str, list[PostbackRecord]] = {}

    def check_and_record(
        self,
        user_id: str,
        fingerprint: str,
        current_step_id: str,
        now: datetime,
    ) -> PostbackOutcome:
        with self._lock:
            records = self._prune(user_id, now)
            if any(record.fingerprint == fingerprint for record in records):
                return PostbackOutcome.DUPLICATE
            records.append(PostbackRecord(fingerprint=fingerprint, seen_at=now, step_at_time=current_step_id))
            if len(records) > self.max_records:
                records.sort(key=lambda record: record.seen_at)
                del records[: len(records) - self.max_records]
            self._records[user_id] = records
            return PostbackOutcome.ACCEPTED

    def records(self, user_id: str, now: datetime) -> list[PostbackRecord]:
        with self._lock:
            return list(self._prune(user_id, now))

    def forget(self, user_id: str) -> None:
        with self._lock:
            self._records.pop(user_id, None)

    def sweep(self, now: datetime) -> int:
        with self._lock:
            user_ids = list(self._records)
        removed = 0
        for user_id in user_ids:
            with self._lock:
                before = len(self._records.get(user_id, []))
                remaining = self._prune(user_id, now)
                removed += before - len(remaining)
                if not remaining:
                    self._records.pop(user_id, None)
        return removed

    def _prune(self, user_id: str, now: datetime) -> list[PostbackRecord]:
        cutoff = now - self.postback_ttl
        kept = [record for record in self._records.get(user_id, []) if record.seen_at >= cutoff]
        if kept:
            self._records[user_id] = kept
        else:
            self._records.pop(user_id, None)
        return kept
