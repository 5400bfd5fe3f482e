"""Tests for the pure graph mutation operations"""

import pytest

from conftest import agent, edge
from service.workflow.exceptions import (
    ConnectionRuleError,
    NodeNotFoundError,
    UserInputError,
)
from service.workflow.graph_mutations import (
    ConnectionConfig,
    add_edge,
    add_node,
    connect_agent,
    delete_edge,
    delete_node,
    normalize_agent_node_id,
    recompute_entry_node,
    set_entry_node,
    update_node,
)
from service.workflow.workflow_model import (
    UI_CLUSTER_CONDITION,
    AgentNode,
    ConditionalNode,
    FanoutNode,
    LoopNode,
    WorkflowDefinition,
)


def _pairs(graph):
    return [(e.from_node, e.to_node, e.condition) for e in graph.edges]


# ============================================================================
# ADD NODE
# ============================================================================

def test_add_node_scopes_id_by_type_and_stores_position():
    graph, node_id = add_node(WorkflowDefinition(), "agent", agent_id="X", position={"x": 5, "y": 6})

    node = graph.get_node(node_id)
    assert node_id.startswith("agent_") and len(node_id) == len("agent_") + 8
    assert isinstance(node, AgentNode)
    assert node.agent_id == "X"
    assert node.params == {"position": {"x": 5, "y": 6}}
    assert node.inputs == {} and node.outputs == {}


def test_add_node_does_not_mutate_input():
    original = WorkflowDefinition()
    add_node(original, "fanout")
    assert original.nodes == []


def test_add_loop_inserts_whole_cluster_and_selects_head():
    graph, selected = add_node(WorkflowDefinition(), "loop", loop_max_iters=4)

    assert [n.type for n in graph.nodes] == ["loop", "loop_body", "loop_exit"]
    assert selected == graph.nodes[0].id
    assert graph.nodes[0].max_iters == 4
    assert len(graph.edges) == 2
    assert all(e.condition == UI_CLUSTER_CONDITION for e in graph.edges)


@pytest.mark.parametrize("node_type", ["loop_body", "loop_exit", "start", ""])
def test_add_node_rejects_helper_and_unknown_types(node_type):
    with pytest.raises(UserInputError):
        add_node(WorkflowDefinition(), node_type)


# ============================================================================
# DELETE NODE
# ============================================================================

def test_delete_splices_predecessor_to_successor(chain_graph):
    graph = delete_node(chain_graph, "b")

    assert [n.id for n in graph.nodes] == ["a", "c"]
    assert _pairs(graph) == [("a", "c", None)]
    assert all("b" not in (e.from_node, e.to_node) for e in graph.edges)
    assert [n.id for n in chain_graph.nodes] == ["a", "b", "c"]


def test_delete_splices_cross_product_without_duplicates():
    graph = WorkflowDefinition(
        nodes=[agent("p1"), agent("p2"), agent("m"), agent("s1"), agent("s2")],
        edges=[
            edge("p1", "m"), edge("p2", "m", "x > 1"),
            edge("m", "s1"), edge("m", "s2"),
            edge("p1", "s1"),
        ],
    )
    result = delete_node(graph, "m")

    assert sorted(_pairs(result), key=str) == sorted([
        ("p1", "s1", None),
        ("p1", "s2", None),
        ("p2", "s1", None),
        ("p2", "s2", None),
    ], key=str)


def test_delete_skips_self_loop_splice():
    graph = WorkflowDefinition(
        nodes=[agent("a"), agent("b")],
        edges=[edge("a", "b"), edge("b", "a")],
    )
    result = delete_node(graph, "b")
    assert result.edges == []


def test_delete_recomputes_entry_node(chain_graph):
    result = delete_node(chain_graph, "a")
    assert result.entry_node_id == "b"


def test_delete_unknown_node_raises(chain_graph):
    with pytest.raises(NodeNotFoundError):
        delete_node(chain_graph, "zzz")


@pytest.mark.parametrize("member", ["loop", "body", "exit"])
def test_deleting_any_cluster_member_removes_whole_cluster(loop_graph, member):
    loop = next(n for n in loop_graph.nodes if isinstance(n, LoopNode))
    target = {"loop": loop.id, "body": f"{loop.id}_body", "exit": f"{loop.id}_exit"}[member]

    result = delete_node(loop_graph, target)

    assert [n.id for n in result.nodes] == ["start", "worker", "done"]
    assert all(e.condition != UI_CLUSTER_CONDITION for e in result.edges)
    # start fed the loop; body led to worker and exit to done
    assert ("start", "worker", None) in _pairs(result)
    assert ("start", "done", None) in _pairs(result)
    assert ("worker", "done", None) in _pairs(result)


# ============================================================================
# ENTRY NODE
# ============================================================================

def test_recompute_entry_prefers_node_without_incoming(chain_graph):
    assert recompute_entry_node(chain_graph.nodes, chain_graph.edges) == "a"
    cyclic = [edge("a", "b"), edge("b", "c"), edge("c", "a")]
    assert recompute_entry_node(chain_graph.nodes, cyclic) == "a"
    assert recompute_entry_node([], []) is None


def test_set_entry_node_rejects_helpers(loop_graph):
    body = next(n for n in loop_graph.nodes if n.type == "loop_body")
    with pytest.raises(UserInputError):
        set_entry_node(loop_graph, body.id)
    assert set_entry_node(loop_graph, "worker").entry_node_id == "worker"


# ============================================================================
# EDGES
# ============================================================================

def test_add_edge_ignores_exact_duplicates(chain_graph):
    result = add_edge(chain_graph, edge("a", "b"))
    assert len(result.edges) == 2


def test_add_edge_unknown_endpoint(chain_graph):
    with pytest.raises(NodeNotFoundError):
        add_edge(chain_graph, edge("a", "nope"))


def test_edge_dragged_into_helper_is_reversed():
    graph, loop_id = add_node(WorkflowDefinition(nodes=[agent("w")]), "loop")
    result = add_edge(graph, edge("w", f"{loop_id}_body"))
    assert (f"{loop_id}_body", "w", None) in _pairs(result)


def test_loop_may_only_connect_to_its_helpers():
    graph, loop_id = add_node(WorkflowDefinition(nodes=[agent("w")]), "loop")
    with pytest.raises(ConnectionRuleError):
        add_edge(graph, edge(loop_id, "w"))

    graph, other_loop = add_node(graph, "loop")
    with pytest.raises(ConnectionRuleError):
        add_edge(graph, edge(loop_id, f"{other_loop}_exit"))


def test_helper_to_helper_rejected():
    graph, loop_id = add_node(WorkflowDefinition(), "loop")
    with pytest.raises(ConnectionRuleError):
        add_edge(graph, edge(f"{loop_id}_body", f"{loop_id}_exit"))


def test_helper_attaches_to_one_node_only():
    graph, loop_id = add_node(WorkflowDefinition(nodes=[agent("w1"), agent("w2")]), "loop")
    graph = add_edge(graph, edge(f"{loop_id}_exit", "w1"))
    with pytest.raises(ConnectionRuleError):
        add_edge(graph, edge(f"{loop_id}_exit", "w2"))


def test_stray_cluster_condition_rejected(chain_graph):
    with pytest.raises(ConnectionRuleError):
        add_edge(chain_graph, edge("a", "c", UI_CLUSTER_CONDITION))


def test_delete_edge_by_condition():
    graph = WorkflowDefinition(
        nodes=[agent("a"), agent("b")],
        edges=[edge("a", "b"), edge("a", "b", "ok")],
    )
    assert _pairs(delete_edge(graph, "a", "b", "ok")) == [("a", "b", None)]
    assert delete_edge(graph, "a", "b").edges == []


def test_delete_edge_refuses_cluster_edge():
    graph, loop_id = add_node(WorkflowDefinition(), "loop")
    with pytest.raises(ConnectionRuleError):
        delete_edge(graph, loop_id, f"{loop_id}_body")
    with pytest.raises(ConnectionRuleError):
        delete_edge(graph, loop_id, f"{loop_id}_exit", UI_CLUSTER_CONDITION)

    assert len(graph.edges) == 2

    graph = add_edge(graph.model_copy(update={"nodes": graph.nodes + [agent("a")]}),
                     edge(f"{loop_id}_body", "a"))
    graph = delete_edge(graph, f"{loop_id}_body", "a")
    assert all(e.condition == UI_CLUSTER_CONDITION for e in graph.edges)
    assert len(graph.edges) == 2


def test_fanout_branches_track_edge_mutations():
    graph = WorkflowDefinition(nodes=[FanoutNode(id="f"), agent("a"), agent("b")])
    graph = add_edge(graph, edge("f", "a"))
    graph = add_edge(graph, edge("f", "b"))
    assert graph.fanout_branches("f") == ["a", "b"]

    graph = delete_edge(graph, "f", "a")
    assert graph.fanout_branches("f") == ["b"]


# ============================================================================
# UPDATE NODE
# ============================================================================

def test_update_node_revalidates(chain_graph):
    result = update_node(chain_graph, "a", params={"temperature": 0.2})
    assert result.get_node("a").params == {"temperature": 0.2}
    assert chain_graph.get_node("a").params == {}


def test_update_node_rejects_id_and_type(chain_graph):
    with pytest.raises(UserInputError):
        update_node(chain_graph, "a", id="z")
    with pytest.raises(UserInputError):
        update_node(chain_graph, "a", type="loop")


def test_update_node_invalid_value():
    graph, loop_id = add_node(WorkflowDefinition(), "loop")
    with pytest.raises(UserInputError):
        update_node(graph, loop_id, max_iters=0)


# ============================================================================
# CONNECT AGENT
# ============================================================================

@pytest.mark.parametrize("agent_id,expected", [
    ("News Reporter", "news_reporter"),
    ("  Triage/Agent!  ", "triageagent"),
    ("reviewer-v2", "reviewer-v2"),
])
def test_normalize_agent_node_id(agent_id, expected):
    assert normalize_agent_node_id(agent_id) == expected


def test_connect_agent_creates_target_once(chain_graph):
    config = ConnectionConfig(target_input_path="triage.result")
    graph, target_id = connect_agent(chain_graph, "c", "News Reporter", config)

    target = graph.get_node(target_id)
    assert target_id == "news_reporter"
    assert target.agent_id == "News Reporter"
    assert target.inputs == {"goal": "triage.result"}
    assert target.outputs == {"result": "news_reporter"}
    assert ("c", "news_reporter", None) in _pairs(graph)

    again, same_id = connect_agent(graph, "c", "News Reporter")
    assert same_id == target_id
    assert len(again.nodes) == len(graph.nodes)
    assert len(again.edges) - len(graph.edges) <= 1


def test_connect_agent_reuses_existing_agent_node(chain_graph):
    graph, target_id = connect_agent(chain_graph, "a", "C")
    assert target_id == "c"
    assert len(graph.nodes) == 3
    assert ("a", "c", None) in _pairs(graph)


def test_connect_agent_avoids_unrelated_id_collision(chain_graph):
    graph, target_id = connect_agent(chain_graph, "a", "b ")
    assert target_id == "b_2"


def test_connect_agent_with_condition_tags_edge(chain_graph):
    graph, target_id = connect_agent(chain_graph, "c", "reviewer", ConnectionConfig(condition="score < 5"))
    assert ("c", target_id, "score < 5") in _pairs(graph)


def test_connect_agent_auto_conditional_inserts_gate(chain_graph):
    config = ConnectionConfig(condition="needs_review", auto_conditional=True)
    graph, target_id = connect_agent(chain_graph, "c", "reviewer", config)

    gates = [n for n in graph.nodes if isinstance(n, ConditionalNode)]
    assert len(gates) == 1
    gate = gates[0]
    assert gate.id.startswith("conditional_")
    assert gate.condition == "needs_review"
    assert ("c", gate.id, None) in _pairs(graph)
    assert (gate.id, target_id, "needs_review") in _pairs(graph)
    assert ("c", target_id, None) not in _pairs(graph)


def test_connect_agent_auto_conditional_reuses_gate(chain_graph):
    config = ConnectionConfig(condition="needs_review", auto_conditional=True)
    graph, target_id = connect_agent(chain_graph, "c", "reviewer", config)
    again, same_id = connect_agent(graph, "c", "reviewer", config)

    assert same_id == target_id
    assert again.nodes == graph.nodes
    assert again.edges == graph.edges

    other, _ = connect_agent(graph, "c", "reviewer", ConnectionConfig(
        condition="too_long", auto_conditional=True,
    ))
    assert sum(isinstance(n, ConditionalNode) for n in other.nodes) == 2


def test_connect_agent_unknown_source(chain_graph):
    with pytest.raises(NodeNotFoundError):
        connect_agent(chain_graph, "ghost", "reviewer")
