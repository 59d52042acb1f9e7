from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    MESSAGE = "message"
    POSTBACK = "postback"
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"


class PostbackOutcome(str, Enum):
    ACCEPTED = "ACCEPTED"
    DUPLICATE = "DUPLICATE"


class DispatchOutcome(str, Enum):
    RENDER = "RENDER"
    THROTTLED = "THROTTLED"
    DUPLICATE = "DUPLICATE"
    STALE = "STALE"
    IN_FLIGHT = "IN_FLIGHT"
    MALFORMED = "MALFORMED"
    IGNORED = "IGNORED"
    ERROR = "ERROR"


NOTICE_OUTCOMES = (
    DispatchOutcome.THROTTLED,
    DispatchOutcome.DUPLICATE,
    DispatchOutcome.STALE,
    DispatchOutcome.ERROR,
)
