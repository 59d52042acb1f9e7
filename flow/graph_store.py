from __future__ import annotations

import threading
from typing import Mapping, Protocol

from core.models import FlowChoice, FlowStep


class FlowGraphStoreProtocol(Protocol):
    @property
    def root_step_id(self) -> str: ...

    def get_step(self, step_id: str) -> FlowStep | None: ...

    def list_choices(self, step_id: str) -> list[FlowChoice]: ...


class InMemoryFlowGraphStore:
    """Read-mostly step lookup. ``replace`` swaps the whole graph at once."""

    def __init__(self, steps: Mapping[str, FlowStep], root_step_id: str = "welcome") -> None:
        self._lock = threading.Lock()
        self._root_step_id = root_step_id
        self._steps: dict[str, FlowStep] = dict(steps)

    @property
    def root_step_id(self) -> str:
        return self._root_step_id

    def get_step(self, step_id: str) -> FlowStep | None:
        key = (step_id or "").strip()
        if not key:
            return None
        return self._steps.get(key)

    def list_choices(self, step_id: str) -> list[FlowChoice]:
        step = self.get_step(step_id)
        if step is None:
            return []
        return list(step.choices)

    def step_ids(self) -> list[str]:
        return list(self._steps)

    def replace(self, steps: Mapping[str, FlowStep], root_step_id: str | None = None) -> None:
        fresh = dict(steps)
        with self._lock:
            self._steps = fresh
            if root_step_id:
                self._root_step_id = root_step_id
