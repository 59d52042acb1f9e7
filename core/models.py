from __future__ import annotations

from dataclasses import asdict, dataclass, field, is_dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from core.enums import NOTICE_OUTCOMES, DispatchOutcome, EventType


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _serialize(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value):
        return {k: _serialize(v) for k, v in asdict(value).items()}
    if isinstance(value, tuple):
        return [_serialize(v) for v in value]
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    return value


@dataclass(slots=True, frozen=True)
class FlowChoice:
    label: str
    action: str
    value: Optional[str] = None
    next_step_id: Optional[str] = None


@dataclass(slots=True, frozen=True)
class FlowStep:
    id: str
    title: str
    message: str
    choices: tuple[FlowChoice, ...] = ()

    def next_step_ids(self) -> set[str]:
        return {choice.next_step_id for choice in self.choices if choice.next_step_id}


@dataclass(slots=True)
class Session:
    user_id: str
    current_step_id: str
    created_at: datetime
    last_activity_at: datetime
    answers: dict[str, str] = field(default_factory=dict)
    display_name: Optional[str] = None
    in_flight: bool = False

    def snapshot(self) -> "Session":
        return replace(self, answers=dict(self.answers))


@dataclass(slots=True)
class RateWindow:
    count: int
    window_reset_at: datetime


@dataclass(slots=True, frozen=True)
class PostbackRecord:
    fingerprint: str
    seen_at: datetime
    step_at_time: str


@dataclass(slots=True, frozen=True)
class StartAction:
    next_step_id: Optional[str] = None


@dataclass(slots=True, frozen=True)
class AnswerAction:
    key: str
    next_step_id: str
    value: Optional[str] = None


@dataclass(slots=True, frozen=True)
class RestartAction:
    next_step_id: Optional[str] = None


@dataclass(slots=True, frozen=True)
class UnknownAction:
    action: str
    value: Optional[str] = None


PostbackAction = Union[StartAction, AnswerAction, RestartAction, UnknownAction]


@dataclass(slots=True, frozen=True)
class InboundEvent:
    event_type: EventType
    user_id: str
    reply_token: str = ""
    text: Optional[str] = None
    postback_data: Optional[str] = None


@dataclass(slots=True, frozen=True)
class DispatchResult:
    outcome: DispatchOutcome
    user_id: str = ""
    step: Optional[FlowStep] = None
    display_name: Optional[str] = None

    @property
    def has_notice(self) -> bool:
        return self.outcome in NOTICE_OUTCOMES

    @property
    def should_reply(self) -> bool:
        return self.step is not None or self.has_notice

    def to_dict(self) -> dict[str, Any]:
        return _serialize(self)
