from __future__ import annotations

import threading
from datetime import datetime, timedelta

from core.models import RateWindow


class InMemoryRateLimiter:
    """Fixed-window counter per user.

    A denied call still increments the counter and never moves the window
    end, so hammering cannot shorten the block.
    """

    def __init__(self, window_sec: float = 10, max_events: int = 3) -> None:
        self.window = timedelta(seconds=max(0.001, float(window_sec)))
        self.max_events = max(1, int(max_events))
        self._lock = threading.Lock()
        self._windows: dict[str, RateWindow] = {}

    def allow(self, user_id: str, now: datetime) -> bool:
        with self._lock:
            window = self._windows.get(user_id)
            if window is None or now > window.window_reset_at:
                self._windows[user_id] = RateWindow(count=1, window_reset_at=now + self.window)
                return True
            window.count += 1
            return window.count <= self.max_events

    def sweep(self, now: datetime) -> int:
        with self._lock:
            expired = [user_id for user_id, window in self._windows.items() if now > window.window_reset_at]
            for user_id in expired:
                del self._windows[user_id]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
