from typing import Optional

from voice_relay.domain.models.workflow import Workflow, Edge


def resolve_transition(
    workflow: Workflow,
    current_node_id: Optional[str],
    assistant_response: str,
    user_utterance: str,
) -> Optional[Edge]:
    """Pick the outgoing edge to follow from the current node.

    A single outgoing edge is followed unconditionally. With several edges the
    first one in declaration order that is direct, or whose intent appears in
    the user utterance, wins; when nothing matches the first declared edge is
    the fallback. Returns None for unknown nodes and dead ends.
    """
    if not workflow.has_node(current_node_id):
        return None

    edges = workflow.outgoing_edges(current_node_id)
    if not edges:
        return None
    if len(edges) == 1:
        return edges[0]

    for edge in edges:
        if edge.is_direct or edge.matches(user_utterance):
            return edge

    return edges[0]


def resolve_next_node(
    workflow: Workflow,
    current_node_id: Optional[str],
    assistant_response: str,
    user_utterance: str,
) -> Optional[str]:
    edge = resolve_transition(workflow, current_node_id, assistant_response, user_utterance)
    return edge.target if edge else None
