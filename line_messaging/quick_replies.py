from __future__ import annotations

from typing import Any

MAX_QUICK_REPLY_ITEMS = 13
MAX_LABEL_LENGTH = 20
MAX_DATA_LENGTH = 300


def postback_action(label: str, data: str, display_text: str | None = None) -> dict[str, Any]:
    action: dict[str, Any] = {
        "type": "postback",
        "label": label[:MAX_LABEL_LENGTH],
        "data": data[:MAX_DATA_LENGTH],
    }
    if display_text:
        action["displayText"] = display_text[:MAX_DATA_LENGTH]
    return action


def with_quick_reply(text: str, actions: list[dict[str, Any]]) -> dict[str, Any]:
    items = [{"type": "action", "action": action} for action in actions[:MAX_QUICK_REPLY_ITEMS]]
    message: dict[str, Any] = {
        "type": "text",
        "text": text[:5000],
    }
    if items:
        message["quickReply"] = {"items": items}
    return message
