"""
Change Detector — is the graph different from what was last saved?

The dirty flag OR-s three independent diffs:

- graph content (nodes and edges)
- activation (``is_active`` is stored next to the graph, not in it)
- metadata (name, description, entry node)

Without a baseline (a workflow that was never saved or loaded) nothing
is dirty; ``can_save`` then falls back to "the graph is not empty".
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from service.workflow.workflow_model import WorkflowDefinition, WorkflowEdge, WorkflowNode

# Node fields that make up a node's content; anything else is presentation.
_COMPARED_FIELDS = (
    "type",
    "agent_id",
    "params",
    "inputs",
    "outputs",
    "condition",
    "max_iters",
    "loop_condition",
    "linked_loop_id",
)


def _node_signature(node: WorkflowNode) -> Dict[str, Any]:
    data = node.model_dump(mode="json")
    return {field: data.get(field) for field in _COMPARED_FIELDS}


def _edge_multiset(edges: List[WorkflowEdge]) -> str:
    ordered = sorted(edges, key=lambda e: e.sort_key())
    return json.dumps(
        [
            {"from_node": e.from_node, "to_node": e.to_node, "condition": e.condition or None}
            for e in ordered
        ],
        sort_keys=True,
    )


def has_changed(
    current: WorkflowDefinition,
    original: Optional[WorkflowDefinition],
) -> bool:
    """Content diff of nodes and edges against the baseline."""
    if original is None:
        return False

    if len(current.nodes) != len(original.nodes):
        return True
    if len(current.edges) != len(original.edges):
        return True

    baseline = {n.id: n for n in original.nodes}
    for node in current.nodes:
        before = baseline.get(node.id)
        if before is None:
            return True
        if _node_signature(node) != _node_signature(before):
            return True

    return _edge_multiset(current.edges) != _edge_multiset(original.edges)


def has_activation_changed(is_active: bool, original_is_active: bool) -> bool:
    return bool(is_active) != bool(original_is_active)


def has_metadata_changed(
    current: WorkflowDefinition,
    original: Optional[WorkflowDefinition],
) -> bool:
    if original is None:
        return False
    return (
        current.name != original.name
        or current.description != original.description
        or current.entry_node_id != original.entry_node_id
    )


def is_dirty(
    current: WorkflowDefinition,
    original: Optional[WorkflowDefinition],
    is_active: bool = False,
    original_is_active: bool = False,
) -> bool:
    """Final dirty flag; always False without a baseline."""
    if original is None:
        return False
    return (
        has_changed(current, original)
        or has_activation_changed(is_active, original_is_active)
        or has_metadata_changed(current, original)
    )


def can_save(
    current: WorkflowDefinition,
    original: Optional[WorkflowDefinition],
    is_active: bool = False,
    original_is_active: bool = False,
) -> bool:
    """Whether the save action should be enabled."""
    if original is None:
        return bool(current.nodes)
    return is_dirty(current, original, is_active, original_is_active)
