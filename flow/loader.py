from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

import yaml

from core.models import FlowChoice, FlowStep
from flow.default_survey import DEFAULT_SURVEY, ROOT_STEP_ID
from flow.graph_store import InMemoryFlowGraphStore

logger = logging.getLogger(__name__)


class FlowGraphError(ValueError):
    pass


def parse_flow_graph(raw: Mapping[str, Any]) -> dict[str, FlowStep]:
    """Build steps from the editor's export shape.

    Accepts ``{step_id: {...}}`` directly or wrapped in ``steps`` /
    ``flowConfig``. Buttons may be listed under ``buttons`` or ``choices``.
    """
    if not isinstance(raw, Mapping):
        raise FlowGraphError("flow graph must be a mapping")
    for wrapper in ("steps", "flowConfig"):
        inner = raw.get(wrapper)
        if isinstance(inner, Mapping):
            raw = inner
            break

    steps: dict[str, FlowStep] = {}
    for step_id, body in raw.items():
        key = str(step_id or "").strip()
        if not key:
            raise FlowGraphError("step id is empty")
        if not isinstance(body, Mapping):
            raise FlowGraphError(f"step {key} must be a mapping")
        buttons = body.get("buttons", body.get("choices", []))
        if buttons is None:
            buttons = []
        if not isinstance(buttons, list):
            raise FlowGraphError(f"step {key} buttons must be a list")
        steps[key] = FlowStep(
            id=key,
            title=str(body.get("title", "") or ""),
            message=str(body.get("message", "") or ""),
            choices=tuple(_parse_choice(key, button) for button in buttons),
        )
    if not steps:
        raise FlowGraphError("flow graph has no steps")
    return steps


def _parse_choice(step_id: str, button: Any) -> FlowChoice:
    if not isinstance(button, Mapping):
        raise FlowGraphError(f"step {step_id} has a non-mapping button")
    action = str(button.get("action", "") or "").strip()
    if not action:
        raise FlowGraphError(f"step {step_id} has a button without action")
    return FlowChoice(
        label=str(button.get("label", "") or action),
        action=action,
        value=_optional_text(button.get("value")),
        next_step_id=_optional_text(button.get("next", button.get("next_step_id"))),
    )


def find_dangling_references(steps: Mapping[str, FlowStep]) -> list[tuple[str, str]]:
    dangling: list[tuple[str, str]] = []
    for step in steps.values():
        for next_step_id in sorted(step.next_step_ids()):
            if next_step_id not in steps:
                dangling.append((step.id, next_step_id))
    return dangling


def load_flow_graph(flow_path: str | None, root_step_id: str = ROOT_STEP_ID) -> InMemoryFlowGraphStore:
    raw: Mapping[str, Any] = DEFAULT_SURVEY
    if flow_path:
        path = Path(flow_path)
        if not path.exists():
            raise FlowGraphError(f"flow file not found: {path}")
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text) or {}

    steps = parse_flow_graph(raw)
    if root_step_id not in steps:
        raise FlowGraphError(f"root step {root_step_id} is missing from the flow graph")
    for step_id, next_step_id in find_dangling_references(steps):
        logger.warning("flow-dangling-next step_id=%s next=%s", step_id, next_step_id)
    return InMemoryFlowGraphStore(steps, root_step_id=root_step_id)


def create_flow_graph_store(config: dict[str, Any]) -> InMemoryFlowGraphStore:
    survey_conf = config.get("survey", {})
    flow_path = survey_conf.get("flow_path")
    root_step_id = str(survey_conf.get("root_step_id", ROOT_STEP_ID) or ROOT_STEP_ID)
    return load_flow_graph(str(flow_path) if flow_path else None, root_step_id=root_step_id)


def _optional_text(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None
