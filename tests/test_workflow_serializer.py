"""Tests for collapsing and re-expanding loop clusters"""

import logging

import pytest

from conftest import agent, edge
from service.workflow.exceptions import ClusterLeakError, UserInputError
from service.workflow.graph_mutations import add_edge, add_node
from service.workflow.loop_cluster import create_loop_cluster
from service.workflow.workflow_model import (
    LOOP_CONTINUE,
    LOOP_EXIT,
    UI_CLUSTER_CONDITION,
    LoopBodyNode,
    LoopNode,
    WorkflowDefinition,
)
from service.workflow.workflow_serializer import (
    assert_no_cluster_leak,
    check_loop_branches,
    deserialize_definition,
    deserialize_from_backend,
    export_workflow_json,
    find_cluster_leaks,
    import_workflow_json,
    serialize_definition,
    serialize_for_backend,
    validate_before_save,
)


def _loop_id(graph):
    return next(n.id for n in graph.nodes if isinstance(n, LoopNode))


def _edge_set(edges):
    return {(e.from_node, e.to_node, e.condition) for e in edges}


def _node_set(nodes):
    return {(n.id, n.type) for n in nodes}


# ============================================================================
# COLLAPSE
# ============================================================================

def test_collapse_retags_helper_edges(loop_graph):
    loop_id = _loop_id(loop_graph)
    nodes, edges = serialize_for_backend(loop_graph.nodes, loop_graph.edges)

    assert [n.id for n in nodes] == ["start", loop_id, "worker", "done"]
    assert _edge_set(edges) == {
        ("start", loop_id, None),
        (loop_id, "worker", LOOP_CONTINUE),
        ("worker", loop_id, None),
        (loop_id, "done", LOOP_EXIT),
    }


def test_collapse_preserves_edge_order(loop_graph):
    loop_id = _loop_id(loop_graph)
    _, edges = serialize_for_backend(loop_graph.nodes, loop_graph.edges)
    assert [(e.from_node, e.to_node) for e in edges] == [
        ("start", loop_id),
        (loop_id, "worker"),
        ("worker", loop_id),
        (loop_id, "done"),
    ]


def test_collapse_leaves_loopless_graph_unchanged(chain_graph):
    nodes, edges = serialize_for_backend(chain_graph.nodes, chain_graph.edges)
    assert nodes == chain_graph.nodes
    assert edges == chain_graph.edges


def test_collapse_drops_legacy_cluster_spelling():
    cluster = create_loop_cluster()
    edges = [edge(cluster.loop_id, cluster.body_node.id, "ui_cluster")]
    _, result = serialize_for_backend(cluster.nodes, edges)
    assert result == []


def test_collapse_drops_orphaned_helper_edges(caplog):
    orphan = LoopBodyNode(id="ghost_body", linked_loop_id="ghost")
    nodes = [agent("a"), orphan]
    with caplog.at_level(logging.WARNING):
        result_nodes, result_edges = serialize_for_backend(nodes, [edge("ghost_body", "a")])

    assert [n.id for n in result_nodes] == ["a"]
    assert result_edges == []
    assert "ghost" in caplog.text


def test_collapse_drops_edges_into_helpers():
    cluster = create_loop_cluster()
    nodes = [agent("a"), *cluster.nodes]
    _, result = serialize_for_backend(nodes, [edge("a", cluster.exit_node.id)])
    assert result == []


def test_untagged_loop_edge_passes_with_warning(caplog):
    cluster = create_loop_cluster()
    nodes = [agent("a"), *cluster.nodes]
    with caplog.at_level(logging.WARNING):
        _, result = serialize_for_backend(nodes, [edge(cluster.loop_id, "a")])

    assert _edge_set(result) == {(cluster.loop_id, "a", None)}
    assert "Untagged loop edge" in caplog.text


def test_collapse_does_not_mutate_input(loop_graph):
    before = loop_graph.model_copy(deep=True)
    serialize_definition(loop_graph)
    assert loop_graph == before


# ============================================================================
# NO-LEAK
# ============================================================================

@pytest.mark.parametrize("clusters", [1, 2, 3])
def test_no_cluster_edge_survives_collapse(clusters):
    graph = WorkflowDefinition(nodes=[agent("a")])
    for _ in range(clusters):
        graph, loop_id = add_node(graph, "loop")
        graph = add_edge(graph, edge("a", loop_id))
        graph = add_edge(graph, edge(f"{loop_id}_body", "a"))

    backend = serialize_definition(graph)

    assert find_cluster_leaks(backend.edges) == []
    assert_no_cluster_leak(backend.edges)
    assert not any(n.type in ("loop_body", "loop_exit") for n in backend.nodes)


def test_leak_check_raises_and_logs_critical(caplog):
    leaked = [edge("l", "l_body", UI_CLUSTER_CONDITION), edge("l", "x", "my_ui_cluster_thing")]
    with caplog.at_level(logging.CRITICAL):
        with pytest.raises(ClusterLeakError) as excinfo:
            assert_no_cluster_leak(leaked)

    assert excinfo.value.leaked_edges == leaked
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)


# ============================================================================
# EXPAND
# ============================================================================

def test_expand_recreates_cluster_after_loop():
    backend = WorkflowDefinition(
        nodes=[agent("a"), LoopNode(id="rev", max_iters=2), agent("b"), agent("c")],
        edges=[
            edge("a", "rev"),
            edge("rev", "b", LOOP_CONTINUE),
            edge("b", "rev"),
            edge("rev", "c", LOOP_EXIT),
        ],
    )
    nodes, edges = deserialize_from_backend(backend)

    assert [n.id for n in nodes] == ["a", "rev", "rev_body", "rev_exit", "b", "c"]
    assert nodes[2].linked_loop_id == "rev" and nodes[3].linked_loop_id == "rev"
    assert _edge_set(edges) == {
        ("rev", "rev_body", UI_CLUSTER_CONDITION),
        ("rev", "rev_exit", UI_CLUSTER_CONDITION),
        ("a", "rev", None),
        ("rev_body", "b", None),
        ("b", "rev", None),
        ("rev_exit", "c", None),
    }
    assert [e.to_node for e in edges[:2]] == ["rev_body", "rev_exit"]


def test_expand_is_idempotent_on_editing_form(loop_graph):
    expanded = deserialize_definition(loop_graph)
    assert _node_set(expanded.nodes) == _node_set(loop_graph.nodes)
    assert _edge_set(expanded.edges) == _edge_set(loop_graph.edges)


def test_expand_avoids_taken_helper_ids():
    backend = WorkflowDefinition(
        nodes=[LoopNode(id="rev"), agent("rev_body")],
        edges=[edge("rev", "rev_body", LOOP_CONTINUE)],
    )
    nodes, edges = deserialize_from_backend(backend)
    body = next(n for n in nodes if n.type == "loop_body")

    assert body.id != "rev_body"
    assert (body.id, "rev_body", None) in _edge_set(edges)


# ============================================================================
# ROUND TRIP
# ============================================================================

def test_backend_round_trip(loop_graph):
    backend = serialize_definition(loop_graph)
    again = serialize_definition(deserialize_definition(backend))

    assert _node_set(again.nodes) == _node_set(backend.nodes)
    assert _edge_set(again.edges) == _edge_set(backend.edges)


def test_end_to_end_loop_scenario():
    graph = WorkflowDefinition()
    graph, n1 = add_node(graph, "agent", agent_id="X")
    graph, loop_id = add_node(graph, "loop")
    loop_region = [n for n in graph.nodes if n.id != n1]

    assert len(graph.nodes) == 4
    assert len(loop_region) == 3
    assert len(graph.edges) == 2
    assert all(e.condition == UI_CLUSTER_CONDITION for e in graph.edges)

    graph, body_target = add_node(graph, "agent", agent_id="Y")
    graph, exit_target = add_node(graph, "agent", agent_id="Z")
    graph = add_edge(graph, edge(n1, loop_id))
    graph = add_edge(graph, edge(f"{loop_id}_body", body_target))
    graph = add_edge(graph, edge(body_target, loop_id))
    graph = add_edge(graph, edge(f"{loop_id}_exit", exit_target))
    backend_nodes, backend_edges = serialize_for_backend(graph.nodes, graph.edges)

    assert _node_set(backend_nodes) == {
        (n1, "agent"), (loop_id, "loop"), (body_target, "agent"), (exit_target, "agent"),
    }
    assert not any("ui_cluster" in (e.condition or "") for e in backend_edges)
    loop_out = sorted(
        (e.condition, e.to_node) for e in backend_edges if e.from_node == loop_id
    )
    assert loop_out == [(LOOP_CONTINUE, body_target), (LOOP_EXIT, exit_target)]

    restored_nodes, restored_edges = deserialize_from_backend(
        WorkflowDefinition(nodes=backend_nodes, edges=backend_edges)
    )
    restored_region = [n for n in restored_nodes if n.type in ("loop", "loop_body", "loop_exit")]
    cluster_edges = [e for e in restored_edges if e.condition == UI_CLUSTER_CONDITION]

    assert sorted(n.type for n in restored_region) == ["loop", "loop_body", "loop_exit"]
    assert len(cluster_edges) == 2
    assert {e.from_node for e in cluster_edges} == {loop_id}
    assert (f"{loop_id}_body", body_target, None) in _edge_set(restored_edges)
    assert (f"{loop_id}_exit", exit_target, None) in _edge_set(restored_edges)


def test_end_to_end_with_connected_branches():
    graph = WorkflowDefinition(nodes=[agent("n1", "X"), agent("fix"), agent("ship")])
    graph, loop_id = add_node(graph, "loop")
    graph = add_edge(graph, edge("n1", loop_id))
    graph = add_edge(graph, edge(f"{loop_id}_body", "fix"))
    graph = add_edge(graph, edge("fix", loop_id))
    graph = add_edge(graph, edge(f"{loop_id}_exit", "ship"))

    backend = serialize_definition(graph)
    assert (loop_id, "fix", LOOP_CONTINUE) in _edge_set(backend.edges)
    assert (loop_id, "ship", LOOP_EXIT) in _edge_set(backend.edges)
    assert check_loop_branches(backend.nodes, backend.edges) == []

    restored = deserialize_definition(backend)
    assert _node_set(restored.nodes) == _node_set(graph.nodes)
    assert _edge_set(restored.edges) == _edge_set(graph.edges)


# ============================================================================
# CHECKS
# ============================================================================

def test_check_loop_branches_reports_missing_edges():
    nodes = [LoopNode(id="l"), agent("a")]
    assert check_loop_branches(nodes, [edge("l", "a", LOOP_EXIT)]) == [
        "Loop l missing loop_continue edge",
    ]
    assert len(check_loop_branches(nodes, [])) == 2


def test_validate_before_save_requires_attached_helpers():
    graph, loop_id = add_node(WorkflowDefinition(nodes=[agent("a"), agent("b")]), "loop")
    errors = validate_before_save(graph.nodes, graph.edges)
    assert f"Loop Body of loop {loop_id} must connect to a body entry node." in errors
    assert f"Exit Loop of loop {loop_id} must connect to an exit node." in errors

    graph = add_edge(graph, edge(f"{loop_id}_body", "a"))
    graph = add_edge(graph, edge(f"{loop_id}_exit", "b"))
    assert validate_before_save(graph.nodes, graph.edges) == []


def test_validate_before_save_flags_incomplete_cluster():
    cluster = create_loop_cluster()
    nodes = [cluster.loop_node, cluster.body_node]
    assert validate_before_save(nodes, []) == [f"Loop {cluster.loop_id} missing helper cards"]


def test_validate_before_save_flags_multi_attached_helper():
    cluster = create_loop_cluster()
    nodes = [*cluster.nodes, agent("a"), agent("b")]
    edges = [
        *cluster.cluster_edges(),
        edge(cluster.body_node.id, "a"),
        edge(cluster.body_node.id, "b"),
        edge(cluster.exit_node.id, "a"),
    ]
    assert validate_before_save(nodes, edges) == [
        f"Loop Body of loop {cluster.loop_id} can connect to only one node.",
    ]


# ============================================================================
# EXPORT / IMPORT
# ============================================================================

def test_export_import_keeps_editing_form(loop_graph):
    text = export_workflow_json(loop_graph)
    assert "__ui_cluster__" in text
    assert import_workflow_json(text) == loop_graph


@pytest.mark.parametrize("text", ["", "   ", "not json", '{"nodes": [{"id": "x", "type": "warp"}]}'])
def test_import_rejects_bad_documents(text):
    with pytest.raises(UserInputError):
        import_workflow_json(text)
