from __future__ import annotations

from flow.graph_store import FlowGraphStoreProtocol

RESTART_ACTION = "restart"


def can_transition(
    flow_graph: FlowGraphStoreProtocol,
    current_step_id: str,
    requested_next_step_id: str,
    action: str | None = None,
    restart_action: str = RESTART_ACTION,
) -> bool:
    """Return True when ``requested_next_step_id`` is reachable from the current step.

    Buttons rendered for an earlier step stop working once the session has
    moved on. Restart is accepted from anywhere; the root step may jump to
    any step that exists; a current step missing from the graph rejects.
    """
    if action is not None and action == restart_action:
        return True

    current = flow_graph.get_step(current_step_id)
    if current is None:
        return False

    target = (requested_next_step_id or "").strip()
    if not target:
        return False
    if target in current.next_step_ids():
        return True
    if current_step_id == flow_graph.root_step_id:
        return flow_graph.get_step(target) is not None
    return False
