"""
Workflow Serializer — editing form <-> backend form.

Editing form: every loop is a cluster of three cards (loop head,
``loop_body``, ``loop_exit``) tied together by ``__ui_cluster__``
edges, and the flow leaves the loop from the helper cards.

Backend form: helpers and cluster edges are gone; the loop head owns
its two branches directly, tagged ``loop_continue`` (body) and
``loop_exit`` (exit).

    editing:  A -> loop ~~> body -> B          backend:  A -> loop -[loop_continue]-> B
                     ~~> exit -> C                             loop -[loop_exit]-----> C

``serialize_for_backend`` must never let a cluster edge through;
``assert_no_cluster_leak`` is the check run before anything is
transported.

Export / import is a plain structural JSON round-trip of the editing
form with no collapse or expansion.
"""

from __future__ import annotations

from logging import getLogger
from typing import Dict, List, Sequence, Tuple

from pydantic import ValidationError

from service.workflow.exceptions import ClusterLeakError, UserInputError
from service.workflow.loop_cluster import (
    LoopCluster,
    expand_loop,
    helpers_by_loop,
    is_helper,
)
from service.workflow.workflow_model import (
    LOOP_CONTINUE,
    LOOP_EXIT,
    LoopNode,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
    is_ui_cluster_condition,
)

logger = getLogger(__name__)

_BRANCH_BY_HELPER = {"loop_body": LOOP_CONTINUE, "loop_exit": LOOP_EXIT}
_HELPER_BY_BRANCH = {LOOP_CONTINUE: "loop_body", LOOP_EXIT: "loop_exit"}


def _format_edge(edge: WorkflowEdge) -> str:
    suffix = f" [{edge.condition}]" if edge.condition else ""
    return f"{edge.from_node} -> {edge.to_node}{suffix}"


# ============================================================================
# Collapse (editing -> backend)
# ============================================================================


def serialize_for_backend(
    nodes: Sequence[WorkflowNode],
    edges: Sequence[WorkflowEdge],
) -> Tuple[List[WorkflowNode], List[WorkflowEdge]]:
    """Collapse loop clusters into backend form.

    - helper nodes and every cluster edge are dropped
    - ``body -> X`` becomes ``loop -> X [loop_continue]``
    - ``exit -> Y`` becomes ``loop -> Y [loop_exit]``
    - edges into helpers, and edges of helpers whose loop is missing,
      are dropped with a warning
    - untagged ``loop -> X`` edges pass through with a warning
    - everything else passes unchanged; order is preserved
    """
    by_id: Dict[str, WorkflowNode] = {n.id: n for n in nodes}
    loop_ids = {n.id for n in nodes if isinstance(n, LoopNode)}

    backend_nodes = [n.model_copy(deep=True) for n in nodes if not is_helper(n)]
    backend_edges: List[WorkflowEdge] = []

    for edge in edges:
        if is_ui_cluster_condition(edge.condition):
            logger.debug(f"Dropping UI cluster edge {_format_edge(edge)}")
            continue

        source = by_id.get(edge.from_node)
        target = by_id.get(edge.to_node)

        if target is not None and is_helper(target):
            logger.warning(f"Dropping edge into loop helper card: {_format_edge(edge)}")
            continue

        if source is not None and is_helper(source):
            if source.linked_loop_id not in loop_ids:
                logger.warning(
                    f"Dropping edge of orphaned {source.type} card "
                    f"(loop '{source.linked_loop_id}' not found): {_format_edge(edge)}"
                )
                continue
            branch = _BRANCH_BY_HELPER[source.type]
            collapsed = WorkflowEdge(
                from_node=source.linked_loop_id,
                to_node=edge.to_node,
                condition=branch,
            )
            logger.debug(f"Collapsed {_format_edge(edge)} into {_format_edge(collapsed)}")
            backend_edges.append(collapsed)
            continue

        if source is not None and isinstance(source, LoopNode) and not edge.condition:
            logger.warning(
                f"Untagged loop edge {_format_edge(edge)}; "
                f"loops should connect through their helper cards"
            )

        backend_edges.append(edge.model_copy())

    for node in nodes:
        if is_helper(node) and node.linked_loop_id not in loop_ids:
            logger.warning(f"Orphaned {node.type} card '{node.id}' dropped")

    return backend_nodes, backend_edges


def serialize_definition(definition: WorkflowDefinition) -> WorkflowDefinition:
    """Whole-definition form of ``serialize_for_backend``."""
    nodes, edges = serialize_for_backend(definition.nodes, definition.edges)
    return definition.model_copy(update={"nodes": nodes, "edges": edges}, deep=True)


# ============================================================================
# Expand (backend -> editing)
# ============================================================================


def deserialize_from_backend(
    definition: WorkflowDefinition,
) -> Tuple[List[WorkflowNode], List[WorkflowEdge]]:
    """Re-expand loop heads into clusters.

    Each loop is followed by its body / exit cards, and its two cluster
    edges are emitted right after it.  ``loop_continue`` / ``loop_exit``
    edges move onto the body / exit card without a condition.

    Helper cards already present (an editing-form input) are reused, so
    expanding twice does not duplicate them.  Helper ids are derived from
    the loop id; a definition written by hand may get suffixed ids when
    those are taken.
    """
    existing = helpers_by_loop(definition.nodes)
    loop_ids = {n.id for n in definition.nodes if isinstance(n, LoopNode)}
    taken = {n.id for n in definition.nodes}

    ui_nodes: List[WorkflowNode] = []
    ui_edges: List[WorkflowEdge] = []
    helper_for: Dict[Tuple[str, str], str] = {}

    for node in definition.nodes:
        if is_helper(node):
            # re-emitted next to its loop below, kept in place if orphaned
            if node.linked_loop_id not in loop_ids:
                ui_nodes.append(node.model_copy(deep=True))
            continue

        ui_nodes.append(node.model_copy(deep=True))
        if not isinstance(node, LoopNode):
            continue

        have = existing.get(node.id, {})
        fresh = expand_loop(node, taken)
        body = have.get("loop_body") or fresh.body_node
        exit_ = have.get("loop_exit") or fresh.exit_node
        taken.update((body.id, exit_.id))

        ui_nodes.extend([body.model_copy(deep=True), exit_.model_copy(deep=True)])
        helper_for[(node.id, "loop_body")] = body.id
        helper_for[(node.id, "loop_exit")] = exit_.id
        ui_edges.extend(
            LoopCluster(loop_node=node, body_node=body, exit_node=exit_).cluster_edges()
        )

    for edge in definition.edges:
        if is_ui_cluster_condition(edge.condition):
            # cluster edges were regenerated above
            continue
        helper_type = _HELPER_BY_BRANCH.get(edge.condition or "")
        helper_id = helper_for.get((edge.from_node, helper_type)) if helper_type else None
        if helper_id is not None:
            ui_edges.append(WorkflowEdge(from_node=helper_id, to_node=edge.to_node))
            continue
        ui_edges.append(edge.model_copy())

    return ui_nodes, ui_edges


def deserialize_definition(definition: WorkflowDefinition) -> WorkflowDefinition:
    """Whole-definition form of ``deserialize_from_backend``."""
    nodes, edges = deserialize_from_backend(definition)
    return definition.model_copy(update={"nodes": nodes, "edges": edges}, deep=True)


# ============================================================================
# Checks
# ============================================================================


def find_cluster_leaks(edges: Sequence[WorkflowEdge]) -> List[WorkflowEdge]:
    """Edges whose condition mentions ``ui_cluster`` in any form."""
    return [e for e in edges if e.condition and "ui_cluster" in e.condition]


def assert_no_cluster_leak(edges: Sequence[WorkflowEdge]) -> None:
    """Raise ``ClusterLeakError`` if a cluster edge reached backend form.

    A leak means the collapse step is broken, not that the user's graph
    is invalid.
    """
    leaked = find_cluster_leaks(edges)
    if leaked:
        logger.critical(
            f"UI cluster edges leaked into backend payload: "
            f"{[_format_edge(e) for e in leaked]}"
        )
        raise ClusterLeakError(leaked)


def check_loop_branches(
    nodes: Sequence[WorkflowNode],
    edges: Sequence[WorkflowEdge],
) -> List[str]:
    """Every backend loop needs a ``loop_continue`` and a ``loop_exit`` edge."""
    errors: List[str] = []
    for node in nodes:
        if not isinstance(node, LoopNode):
            continue
        conditions = {e.condition for e in edges if e.from_node == node.id}
        if LOOP_CONTINUE not in conditions:
            errors.append(f"Loop {node.id} missing loop_continue edge")
        if LOOP_EXIT not in conditions:
            errors.append(f"Loop {node.id} missing loop_exit edge")
    return errors


def validate_before_save(
    nodes: Sequence[WorkflowNode],
    edges: Sequence[WorkflowEdge],
) -> List[str]:
    """Cluster completeness checks on the editing form.

    Each loop needs both helper cards, and each helper card must lead to
    exactly one real node.
    """
    errors: List[str] = []
    helpers = helpers_by_loop(nodes)
    loop_ids = {n.id for n in nodes if isinstance(n, LoopNode)}

    for node in nodes:
        if not isinstance(node, LoopNode):
            continue
        pair = helpers.get(node.id, {})
        body = pair.get("loop_body")
        exit_ = pair.get("loop_exit")
        if body is None or exit_ is None:
            errors.append(f"Loop {node.id} missing helper cards")
            continue

        for helper, label, what in (
            (body, "Loop Body", "a body entry node"),
            (exit_, "Exit Loop", "an exit node"),
        ):
            attached = [
                e for e in edges
                if e.from_node == helper.id and not is_ui_cluster_condition(e.condition)
            ]
            if not attached:
                errors.append(f"{label} of loop {node.id} must connect to {what}.")
            elif len(attached) > 1:
                errors.append(f"{label} of loop {node.id} can connect to only one node.")

    for node in nodes:
        if is_helper(node) and node.linked_loop_id not in loop_ids:
            errors.append(f"Helper card {node.id} is linked to missing loop {node.linked_loop_id}")

    return errors


# ============================================================================
# Export / import
# ============================================================================


def export_workflow_json(definition: WorkflowDefinition) -> str:
    """The editing-form definition as an indented JSON document."""
    return definition.model_dump_json(indent=2, exclude_none=True)


def import_workflow_json(text: str) -> WorkflowDefinition:
    """Parse a document written by ``export_workflow_json``.

    Raises ``UserInputError`` for anything that is not a valid definition.
    """
    if not text or not text.strip():
        raise UserInputError("Import file is empty")
    try:
        return WorkflowDefinition.model_validate_json(text)
    except ValidationError as e:
        raise UserInputError(f"Invalid workflow file: {e}") from e
