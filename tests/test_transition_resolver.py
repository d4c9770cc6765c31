import pytest

from voice_relay.domain.workflow.transition_resolver import resolve_next_node, resolve_transition

from conftest import make_workflow


def branching_workflow(edges):
    return make_workflow(
        nodes=[
            {"id": "A", "type": "conversation"},
            {"id": "B", "type": "conversation"},
            {"id": "D", "type": "conversation"},
            {"id": "E", "type": "conversation"},
        ],
        edges=[{"source": "A", "target": "B"}] + edges,
    )


@pytest.mark.parametrize("condition", [
    None,
    {"type": "direct"},
    {"type": "intent", "intent": ["never said"]},
])
def test_single_outgoing_edge_is_followed_regardless_of_condition(condition):
    workflow = make_workflow(
        nodes=[{"id": "A", "type": "conversation"}, {"id": "B", "type": "conversation"}],
        edges=[{"source": "A", "target": "B", "condition": condition}],
    )
    assert resolve_next_node(workflow, "A", "reply", "something unrelated") == "B"


def test_billing_intent_declared_first_resolves_to_intent_target():
    workflow = branching_workflow([
        {"source": "B", "target": "D", "condition": {"type": "intent", "intent": "billing"}},
        {"source": "B", "target": "E", "condition": {"type": "direct"}},
    ])
    assert resolve_next_node(workflow, "B", "", "I have a billing question") == "D"


def test_direct_edge_declared_first_wins():
    workflow = branching_workflow([
        {"source": "B", "target": "E", "condition": {"type": "direct"}},
        {"source": "B", "target": "D", "condition": {"type": "intent", "intent": "billing"}},
    ])
    assert resolve_next_node(workflow, "B", "", "I have a billing question") == "E"


def test_unmatched_intent_falls_through_to_direct_edge():
    workflow = branching_workflow([
        {"source": "B", "target": "D", "condition": {"type": "intent", "intent": "billing"}},
        {"source": "B", "target": "E", "condition": {"type": "direct"}},
    ])
    assert resolve_next_node(workflow, "B", "", "Can I book a table?") == "E"


def test_no_match_falls_back_to_first_declared_edge():
    workflow = branching_workflow([
        {"source": "B", "target": "D", "condition": {"type": "intent", "intent": "billing"}},
        {"source": "B", "target": "E", "condition": {"type": "intent", "intent": "booking"}},
    ])
    assert resolve_next_node(workflow, "B", "", "Just saying hello") == "D"


def test_intent_match_is_case_insensitive():
    workflow = branching_workflow([
        {"source": "B", "target": "D", "condition": {"type": "intent", "intent": ["Refund"]}},
        {"source": "B", "target": "E", "condition": {"type": "intent", "intent": ["REFUND please"]}},
    ])
    edge = resolve_transition(workflow, "B", "", "i want a REFUND please")
    assert edge.target == "D"


def test_dead_end_and_unknown_nodes_resolve_to_none():
    workflow = branching_workflow([
        {"source": "B", "target": "D"},
        {"source": "B", "target": "E"},
    ])
    assert resolve_next_node(workflow, "E", "", "hello") is None
    assert resolve_next_node(workflow, "missing", "", "hello") is None
    assert resolve_next_node(workflow, None, "", "hello") is None
