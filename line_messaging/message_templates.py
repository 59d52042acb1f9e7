from __future__ import annotations

from typing import Any

from core.enums import DispatchOutcome
from core.models import DispatchResult, FlowStep
from flow.default_survey import NAME_PLACEHOLDER, ROOT_STEP_ID
from line_messaging.postback_data import RESTART_ACTION, build_postback_data, new_restart_token
from line_messaging.profile_client import DEFAULT_PLACEHOLDER_NAME
from line_messaging.quick_replies import postback_action, with_quick_reply

BRAND_COLOR = "#304992"
TEXT_COLOR = "#333333"
RESTART_LABEL = "最初から"

NOTICE_TEXTS = {
    DispatchOutcome.THROTTLED: "操作が続いています。少し時間をおいてからもう一度お試しください。",
    DispatchOutcome.DUPLICATE: "この操作はすでに受け付けています。",
    DispatchOutcome.STALE: "このボタンは現在ご利用いただけません。最新のメッセージから操作してください。",
    DispatchOutcome.ERROR: "エラーが発生しました。お手数ですが「最初から」をタップして、もう一度お試しください。",
}


def personalize(text: str, display_name: str | None) -> str:
    return text.replace(NAME_PLACEHOLDER, display_name or DEFAULT_PLACEHOLDER_NAME)


def build_step_message(
    step: FlowStep,
    display_name: str | None = None,
    restart_action: str = RESTART_ACTION,
) -> list[dict[str, Any]]:
    """Render one survey step as a Flex bubble with a postback button per choice."""
    title = personalize(step.title, display_name) or step.id
    body_text = personalize(step.message, display_name) or title
    buttons = []
    for index, choice in enumerate(step.choices):
        value = choice.value
        if choice.action == restart_action and not value:
            value = new_restart_token()
        data = build_postback_data(choice.action, value, choice.next_step_id)
        button: dict[str, Any] = {
            "type": "button",
            "style": "primary" if index == 0 else "secondary",
            "height": "sm",
            "margin": "sm",
            "action": postback_action(choice.label, data, choice.label),
        }
        if index == 0:
            button["color"] = BRAND_COLOR
        buttons.append(button)

    bubble: dict[str, Any] = {
        "type": "bubble",
        "header": {
            "type": "box",
            "layout": "vertical",
            "backgroundColor": BRAND_COLOR,
            "paddingAll": "16px",
            "contents": [
                {"type": "text", "text": title, "weight": "bold", "size": "lg", "color": "#FFFFFF", "wrap": True},
            ],
        },
        "body": {
            "type": "box",
            "layout": "vertical",
            "paddingAll": "16px",
            "contents": [
                {"type": "text", "text": body_text, "size": "md", "color": TEXT_COLOR, "wrap": True},
            ],
        },
    }
    if buttons:
        bubble["footer"] = {
            "type": "box",
            "layout": "vertical",
            "spacing": "sm",
            "contents": buttons,
        }
    return [{"type": "flex", "altText": title[:400], "contents": bubble}]


def build_notice_message(
    outcome: DispatchOutcome,
    restart_action: str = RESTART_ACTION,
    root_step_id: str = ROOT_STEP_ID,
) -> list[dict[str, Any]]:
    text = NOTICE_TEXTS.get(outcome)
    if text is None:
        return []
    if outcome == DispatchOutcome.DUPLICATE:
        return [{"type": "text", "text": text}]
    data = build_postback_data(restart_action, new_restart_token(), root_step_id)
    restart = postback_action(RESTART_LABEL, data, RESTART_LABEL)
    return [with_quick_reply(text, [restart])]


def build_result_messages(
    result: DispatchResult,
    restart_action: str = RESTART_ACTION,
    root_step_id: str = ROOT_STEP_ID,
) -> list[dict[str, Any]]:
    """Messages to reply with for a dispatch result; empty means stay silent."""
    if result.step is not None:
        return build_step_message(result.step, result.display_name, restart_action=restart_action)
    if result.has_notice:
        return build_notice_message(result.outcome, restart_action=restart_action, root_step_id=root_step_id)
    return []
