from __future__ import annotations

import hashlib
import json
import secrets
from typing import Any

from core.models import AnswerAction, PostbackAction, RestartAction, StartAction, UnknownAction

START_ACTION = "start"
RESTART_ACTION = "restart"


class MalformedPostbackError(ValueError):
    pass


def build_postback_data(action: str, value: str | None = None, next_step_id: str | None = None) -> str:
    payload = {"action": action, "value": value or "", "next": next_step_id or ""}
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def new_restart_token() -> str:
    """Per-render value for restart buttons, so each rendered button fingerprints differently."""
    return secrets.token_hex(4)


def parse_postback_data(
    data: str,
    start_action: str = START_ACTION,
    restart_action: str = RESTART_ACTION,
) -> PostbackAction:
    text = str(data or "").strip()
    if not text:
        raise MalformedPostbackError("postback data is empty")
    try:
        payload: Any = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedPostbackError(f"postback data is not json: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise MalformedPostbackError("postback data must be an object")

    action = _text(payload.get("action"))
    if not action:
        raise MalformedPostbackError("postback action is missing")
    value = _text(payload.get("value")) or None
    next_step_id = _text(payload.get("next")) or None

    if action == restart_action:
        return RestartAction(next_step_id=next_step_id)
    if action == start_action:
        return StartAction(next_step_id=next_step_id)
    if next_step_id is None:
        return UnknownAction(action=action, value=value)
    return AnswerAction(key=action, value=value, next_step_id=next_step_id)


def postback_fingerprint(data: str) -> str:
    return hashlib.sha256(str(data or "").encode("utf-8")).hexdigest()


def _text(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, (str, int, float)):
        raise MalformedPostbackError(f"unexpected postback field type: {type(value).__name__}")
    return str(value).strip()
