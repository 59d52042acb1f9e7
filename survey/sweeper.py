from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Iterable, Protocol

from core.models import utc_now

logger = logging.getLogger(__name__)


class SweepableProtocol(Protocol):
    def sweep(self, now: datetime) -> int: ...


class Sweeper:
    """Background removal of expired sessions, rate windows and postback records.

    ``wait`` receives the interval and returns True when the loop should
    stop; it defaults to the internal stop event so ``stop()`` wakes the
    thread immediately. Tests drive ``run_once`` with an explicit ``now``.
    """

    def __init__(
        self,
        stores: Iterable[SweepableProtocol],
        interval_sec: float = 300,
        clock: Callable[[], datetime] = utc_now,
        wait: Callable[[float], bool] | None = None,
    ) -> None:
        self.stores = list(stores)
        self.interval_sec = max(1.0, float(interval_sec))
        self.clock = clock
        self._stop_event = threading.Event()
        self._wait = wait or self._stop_event.wait
        self._thread: threading.Thread | None = None

    def run_once(self, now: datetime | None = None) -> int:
        now = now or self.clock()
        removed = 0
        for store in self.stores:
            try:
                removed += int(store.sweep(now))
            except Exception:  # noqa: BLE001
                logger.exception("sweep-failed store=%s", type(store).__name__)
        if removed:
            logger.info("sweep-completed removed=%d", removed)
        return removed

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="survey-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout_sec: float = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout_sec)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            if self._wait(self.interval_sec):
                break
            self.run_once()
