"""
Graph Mutations — pure editing operations on a WorkflowDefinition.

Every function takes a definition and returns a new one; the input is
never modified.  ``WorkflowSession`` composes these and keeps track of
selection and the saved baseline.

Loop clusters are treated as one unit here: adding a loop inserts the
head plus its two helpers, and deleting any member removes the whole
cluster.
"""

from __future__ import annotations

import re
import uuid
from logging import getLogger
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ValidationError

from service.workflow.exceptions import (
    ConnectionRuleError,
    NodeNotFoundError,
    UserInputError,
)
from service.workflow.loop_cluster import (
    cluster_member_ids,
    create_loop_cluster,
    is_helper,
)
from service.workflow.workflow_model import (
    DEFAULT_LOOP_MAX_ITERS,
    EXECUTION_NODE_TYPES,
    HELPER_NODE_TYPES,
    UI_CLUSTER_CONDITION,
    AgentNode,
    ConditionalNode,
    LoopNode,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
    parse_node,
)

logger = getLogger(__name__)

ANY = object()
"""Wildcard for ``delete_edge``'s ``condition`` argument."""

_UNSAFE_ID_CHARS = re.compile(r"[^a-z0-9_\-]")


def _copy(graph: WorkflowDefinition) -> WorkflowDefinition:
    return graph.model_copy(deep=True)


def _require_node(graph: WorkflowDefinition, node_id: str) -> WorkflowNode:
    node = graph.get_node(node_id)
    if node is None:
        raise NodeNotFoundError(node_id)
    return node


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


def _has_edge(
    edges: Sequence[WorkflowEdge],
    from_node: str,
    to_node: str,
    condition: Optional[str],
) -> bool:
    cond = condition or None
    return any(
        e.from_node == from_node and e.to_node == to_node and (e.condition or None) == cond
        for e in edges
    )


# ============================================================================
# Entry node
# ============================================================================


def recompute_entry_node(
    nodes: Sequence[WorkflowNode],
    edges: Sequence[WorkflowEdge],
) -> Optional[str]:
    """First non-helper node with no incoming edges, else the first node."""
    if not nodes:
        return None
    targets = {e.to_node for e in edges}
    for node in nodes:
        if not is_helper(node) and node.id not in targets:
            return node.id
    return nodes[0].id


def set_entry_node(graph: WorkflowDefinition, node_id: str) -> WorkflowDefinition:
    node = _require_node(graph, node_id)
    if is_helper(node):
        raise UserInputError("Loop helper cards cannot be the entry node")
    result = _copy(graph)
    result.entry_node_id = node_id
    return result


# ============================================================================
# Add / delete node
# ============================================================================


def add_node(
    graph: WorkflowDefinition,
    node_type: str,
    agent_id: Optional[str] = None,
    position: Optional[Dict[str, float]] = None,
    loop_max_iters: int = DEFAULT_LOOP_MAX_ITERS,
) -> Tuple[WorkflowDefinition, str]:
    """Insert a new node and return ``(graph, id_to_select)``.

    A ``loop`` inserts a whole cluster (head, body, exit and the two
    cluster edges); the head is the node to select.
    """
    if node_type in HELPER_NODE_TYPES:
        raise UserInputError(
            f"'{node_type}' cards are created together with their loop; add a 'loop' node instead"
        )
    if node_type not in EXECUTION_NODE_TYPES:
        raise UserInputError(f"Unknown node type: '{node_type}'")

    result = _copy(graph)

    if node_type == "loop":
        cluster = create_loop_cluster(base_position=position, max_iters=loop_max_iters)
        result.nodes.extend(cluster.nodes)
        result.edges.extend(cluster.cluster_edges())
        logger.debug(f"Added loop cluster {cluster.node_ids}")
        return result, cluster.loop_id

    data: Dict[str, Any] = {"id": f"{node_type}_{_short_id()}", "type": node_type}
    if position is not None:
        data["params"] = {"position": dict(position)}
    if node_type == "agent" and agent_id:
        data["agent_id"] = agent_id

    node = parse_node(data)
    result.nodes.append(node)
    logger.debug(f"Added node {node.id} ({node_type})")
    return result, node.id


def delete_node(graph: WorkflowDefinition, node_id: str) -> WorkflowDefinition:
    """Remove a node (or its whole loop cluster) and splice its neighbours.

    Every predecessor outside the removed set is wired to every successor
    outside it with an unconditional edge, skipping self-loops and pairs
    that already have an unconditional edge.
    """
    _require_node(graph, node_id)
    removed = set(cluster_member_ids(graph.nodes, node_id))

    predecessors: List[str] = []
    successors: List[str] = []
    kept_edges: List[WorkflowEdge] = []
    for edge in graph.edges:
        src_in = edge.from_node in removed
        dst_in = edge.to_node in removed
        if not src_in and not dst_in:
            kept_edges.append(edge.model_copy())
            continue
        if dst_in and not src_in and edge.from_node not in predecessors:
            predecessors.append(edge.from_node)
        if src_in and not dst_in and edge.to_node not in successors:
            successors.append(edge.to_node)

    for pred in predecessors:
        for succ in successors:
            if pred == succ or _has_edge(kept_edges, pred, succ, None):
                continue
            kept_edges.append(WorkflowEdge(from_node=pred, to_node=succ))
            logger.debug(f"Spliced {pred} -> {succ} after deleting {node_id}")

    result = _copy(graph)
    result.nodes = [n for n in result.nodes if n.id not in removed]
    result.edges = kept_edges
    if result.entry_node_id in removed:
        result.entry_node_id = recompute_entry_node(result.nodes, result.edges)

    if len(removed) > 1:
        logger.debug(f"Deleted loop cluster {sorted(removed)}")
    return result


def update_node(
    graph: WorkflowDefinition,
    node_id: str,
    **changes: Any,
) -> WorkflowDefinition:
    """Replace fields of a node, re-validating it. ``id``/``type`` are fixed."""
    node = _require_node(graph, node_id)
    fixed = {"id", "type"} & set(changes)
    if fixed:
        raise UserInputError(f"Node fields cannot be changed: {', '.join(sorted(fixed))}")

    data = node.model_dump()
    data.update(changes)
    try:
        updated = parse_node(data)
    except ValidationError as e:
        raise UserInputError(f"Invalid value for node '{node_id}': {e}") from e

    result = _copy(graph)
    result.nodes = [updated if n.id == node_id else n for n in result.nodes]
    return result


# ============================================================================
# Edges
# ============================================================================


def _check_connection(
    graph: WorkflowDefinition,
    edge: WorkflowEdge,
) -> Optional[WorkflowEdge]:
    """Apply the editor connection rules.

    Returns the edge to insert (possibly reversed or retagged), or None
    when an identical edge already exists.
    """
    source = _require_node(graph, edge.from_node)
    target = _require_node(graph, edge.to_node)

    if is_helper(target) and not is_helper(source):
        if isinstance(source, LoopNode):
            if target.linked_loop_id != source.id:
                raise ConnectionRuleError(
                    f"Loop '{source.id}' can only connect to its own body / exit cards"
                )
            # loop head to its own helper is the cluster link itself
            edge = WorkflowEdge(
                from_node=source.id, to_node=target.id, condition=UI_CLUSTER_CONDITION,
            )
        else:
            # dragged into a helper: the helper is the source
            edge = WorkflowEdge(
                from_node=target.id, to_node=source.id, condition=edge.condition,
            )
            source, target = target, source
    elif edge.is_ui_cluster:
        raise ConnectionRuleError("Cluster edges may only link a loop to its own helper cards")

    if isinstance(source, LoopNode) and not is_helper(target):
        raise ConnectionRuleError(
            "Loop can only connect to Loop Body or Exit Loop helper cards; "
            "attach body / exit nodes to the helper cards"
        )
    if is_helper(source) and is_helper(target):
        raise ConnectionRuleError("Cannot connect between loop helper cards")

    if _has_edge(graph.edges, edge.from_node, edge.to_node, edge.condition):
        return None

    if is_helper(source):
        attached = [
            e for e in graph.edges if e.from_node == source.id and not e.is_ui_cluster
        ]
        if attached:
            label = "Loop Body" if source.type == "loop_body" else "Exit Loop"
            raise ConnectionRuleError(f"{label} can connect to only one node")

    return edge


def add_edge(graph: WorkflowDefinition, edge: WorkflowEdge) -> WorkflowDefinition:
    """Insert an edge, enforcing loop-cluster connection rules."""
    checked = _check_connection(graph, edge)
    result = _copy(graph)
    if checked is None:
        logger.debug(f"Ignored duplicate edge {edge.from_node} -> {edge.to_node}")
        return result
    result.edges.append(checked)
    return result


def delete_edge(
    graph: WorkflowDefinition,
    from_node: str,
    to_node: str,
    condition: Any = ANY,
) -> WorkflowDefinition:
    """Remove matching edges; ``condition`` narrows the match when given.

    Cluster edges cannot be removed on their own; they go with their loop.
    """

    def _matches(e: WorkflowEdge) -> bool:
        if e.from_node != from_node or e.to_node != to_node:
            return False
        return condition is ANY or (e.condition or None) == (condition or None)

    if any(e.is_ui_cluster for e in graph.edges if _matches(e)):
        raise ConnectionRuleError(
            f"Cluster edge {from_node} -> {to_node} is removed with its loop; delete the loop instead"
        )

    result = _copy(graph)
    before = len(result.edges)
    result.edges = [e for e in result.edges if not _matches(e)]
    if len(result.edges) == before:
        logger.debug(f"No edge {from_node} -> {to_node} to delete")
    return result


# ============================================================================
# Connect agent
# ============================================================================


class ConnectionConfig(BaseModel):
    """Optional wiring details for ``connect_agent``."""

    source_output_path: Optional[str] = None
    target_input_path: Optional[str] = None
    condition: Optional[str] = None
    auto_conditional: bool = False


def normalize_agent_node_id(agent_id: str) -> str:
    """Path-safe node id derived from an agent id.

    Lower-cased, whitespace runs become ``_``, other unsafe characters
    are dropped.
    """
    token = re.sub(r"\s+", "_", agent_id.strip().lower())
    token = _UNSAFE_ID_CHARS.sub("", token)
    return token or "agent"


def _allocate_agent_node_id(graph: WorkflowDefinition, agent_id: str) -> str:
    base = normalize_agent_node_id(agent_id)
    candidate = base
    counter = 2
    while graph.has_node(candidate):
        candidate = f"{base}_{counter}"
        counter += 1
    return candidate


def find_agent_node(graph: WorkflowDefinition, agent_id: str) -> Optional[AgentNode]:
    for node in graph.nodes:
        if isinstance(node, AgentNode) and node.agent_id == agent_id:
            return node
    return None


def _find_gate(
    graph: WorkflowDefinition, source_id: str, target_id: str, condition: str,
) -> Optional[ConditionalNode]:
    """A conditional already routing ``source -> gate -> target`` on ``condition``."""
    gate_ids = {e.to_node for e in graph.edges if e.from_node == source_id}
    for node in graph.nodes:
        if not isinstance(node, ConditionalNode) or node.id not in gate_ids:
            continue
        if node.condition != condition:
            continue
        if any(e.from_node == node.id and e.to_node == target_id for e in graph.edges):
            return node
    return None


def connect_agent(
    graph: WorkflowDefinition,
    source_node_id: str,
    target_agent_id: str,
    config: Optional[ConnectionConfig] = None,
) -> Tuple[WorkflowDefinition, str]:
    """Wire ``source`` to the node running ``target_agent_id``.

    The target agent node is reused when one already exists, so calling
    this repeatedly never creates a second node for the same agent.
    Returns ``(graph, target_node_id)``.
    """
    config = config or ConnectionConfig()
    _require_node(graph, source_node_id)
    if not target_agent_id:
        raise UserInputError("Target agent id is required")

    result = _copy(graph)

    target = find_agent_node(result, target_agent_id)
    if target is None:
        target_id = _allocate_agent_node_id(result, target_agent_id)
        target = AgentNode(
            id=target_id,
            agent_id=target_agent_id,
            inputs={"goal": config.target_input_path} if config.target_input_path else {},
            outputs={"result": target_id},
        )
        result.nodes.append(target)
        logger.info(f"Created agent node '{target_id}' for agent '{target_agent_id}'")

    condition = config.condition or None
    if config.auto_conditional and condition:
        existing = _find_gate(result, source_node_id, target.id, condition)
        if existing is not None:
            logger.debug(f"Gate {existing.id} already routes {source_node_id} -> {target.id}")
            return result, target.id
        gate = ConditionalNode(id=f"conditional_{_short_id()}", condition=condition)
        result.nodes.append(gate)
        first = _check_connection(
            result, WorkflowEdge(from_node=source_node_id, to_node=gate.id)
        )
        if first is not None:
            result.edges.append(first)
        result.edges.append(
            WorkflowEdge(from_node=gate.id, to_node=target.id, condition=condition)
        )
        logger.debug(f"Connected {source_node_id} -> {gate.id} -> {target.id}")
        return result, target.id

    edge = _check_connection(
        result, WorkflowEdge(from_node=source_node_id, to_node=target.id, condition=condition)
    )
    if edge is not None:
        result.edges.append(edge)
    logger.debug(f"Connected {source_node_id} -> {target.id}")
    return result, target.id
