"""
Loop Clusters — the three-card editing shape of one bounded loop.

In the editor a loop is never a single node: the loop head is paired
with a ``loop_body`` card (where the repeated branch continues) and a
``loop_exit`` card (where the flow continues once the loop is done),
joined by two ``__ui_cluster__`` edges.  ``workflow_serializer``
collapses the helpers away before anything is sent to the backend.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Collection, Dict, List, Optional, Sequence, Tuple

from service.workflow.workflow_model import (
    DEFAULT_LOOP_MAX_ITERS,
    UI_CLUSTER_CONDITION,
    LoopBodyNode,
    LoopExitNode,
    LoopNode,
    WorkflowEdge,
    WorkflowNode,
)

BODY_OFFSET_X = 200
EXIT_OFFSET_X = 400


@dataclass(frozen=True)
class LoopCluster:
    loop_node: LoopNode
    body_node: LoopBodyNode
    exit_node: LoopExitNode

    @property
    def loop_id(self) -> str:
        return self.loop_node.id

    @property
    def node_ids(self) -> Tuple[str, str, str]:
        return (self.loop_node.id, self.body_node.id, self.exit_node.id)

    @property
    def nodes(self) -> List[WorkflowNode]:
        return [self.loop_node, self.body_node, self.exit_node]

    def cluster_edges(self) -> List[WorkflowEdge]:
        """The two presentation-only edges tying the helpers to the head."""
        return [
            WorkflowEdge(
                from_node=self.loop_node.id,
                to_node=self.body_node.id,
                condition=UI_CLUSTER_CONDITION,
            ),
            WorkflowEdge(
                from_node=self.loop_node.id,
                to_node=self.exit_node.id,
                condition=UI_CLUSTER_CONDITION,
            ),
        ]


def _offset(position: Optional[Dict[str, float]], dx: float) -> Optional[Dict[str, float]]:
    if position is None:
        return None
    return {"x": position.get("x", 0) + dx, "y": position.get("y", 0)}


def _helper_params(position: Optional[Dict[str, float]]) -> Dict[str, object]:
    return {"position": position} if position is not None else {}


def helper_ids_for(loop_id: str, taken: Collection[str] = ()) -> Tuple[str, str]:
    """Body / exit ids for ``loop_id``.

    ``<loop>_body`` / ``<loop>_exit``; a short random suffix is added only
    when the derived id already belongs to another node.
    """
    body_id = f"{loop_id}_body"
    exit_id = f"{loop_id}_exit"
    if body_id in taken:
        body_id = f"{body_id}_{uuid.uuid4().hex[:6]}"
    if exit_id in taken:
        exit_id = f"{exit_id}_{uuid.uuid4().hex[:6]}"
    return body_id, exit_id


def create_loop_cluster(
    base_position: Optional[Dict[str, float]] = None,
    max_iters: int = DEFAULT_LOOP_MAX_ITERS,
) -> LoopCluster:
    """Build a fresh loop head plus its body / exit helpers.

    Pure: the caller inserts the three nodes and ``cluster_edges()``
    together.  Every call yields ids disjoint from any earlier call.
    """
    loop_id = f"loop_{uuid.uuid4().hex}"
    body_id, exit_id = helper_ids_for(loop_id)

    loop_node = LoopNode(
        id=loop_id,
        max_iters=max_iters,
        params=_helper_params(base_position),
    )
    body_node = LoopBodyNode(
        id=body_id,
        linked_loop_id=loop_id,
        params=_helper_params(_offset(base_position, BODY_OFFSET_X)),
    )
    exit_node = LoopExitNode(
        id=exit_id,
        linked_loop_id=loop_id,
        params=_helper_params(_offset(base_position, EXIT_OFFSET_X)),
    )
    return LoopCluster(loop_node=loop_node, body_node=body_node, exit_node=exit_node)


def expand_loop(loop_node: LoopNode, taken: Collection[str] = ()) -> LoopCluster:
    """Helpers for an existing loop head (used when loading backend form).

    Helper positions follow the head's position when it has one.
    """
    body_id, exit_id = helper_ids_for(loop_node.id, taken)
    base = loop_node.position
    return LoopCluster(
        loop_node=loop_node,
        body_node=LoopBodyNode(
            id=body_id,
            linked_loop_id=loop_node.id,
            params=_helper_params(_offset(base, BODY_OFFSET_X)),
        ),
        exit_node=LoopExitNode(
            id=exit_id,
            linked_loop_id=loop_node.id,
            params=_helper_params(_offset(base, EXIT_OFFSET_X)),
        ),
    )


# ============================================================================
# Recognition
# ============================================================================


def is_helper(node: WorkflowNode) -> bool:
    return isinstance(node, (LoopBodyNode, LoopExitNode))


def helpers_by_loop(
    nodes: Sequence[WorkflowNode],
) -> Dict[str, Dict[str, WorkflowNode]]:
    """``{loop_id: {"loop_body": node, "loop_exit": node}}`` from helper links.

    The first helper of each kind wins when a loop has duplicates.
    """
    result: Dict[str, Dict[str, WorkflowNode]] = {}
    for node in nodes:
        if is_helper(node):
            result.setdefault(node.linked_loop_id, {}).setdefault(node.type, node)
    return result


def find_loop_clusters(nodes: Sequence[WorkflowNode]) -> List[LoopCluster]:
    """Complete clusters (loop head with both helpers), in node order."""
    helpers = helpers_by_loop(nodes)
    clusters: List[LoopCluster] = []
    for node in nodes:
        if not isinstance(node, LoopNode):
            continue
        pair = helpers.get(node.id, {})
        body = pair.get("loop_body")
        exit_ = pair.get("loop_exit")
        if body is not None and exit_ is not None:
            clusters.append(LoopCluster(loop_node=node, body_node=body, exit_node=exit_))
    return clusters


def cluster_member_ids(nodes: Sequence[WorkflowNode], node_id: str) -> List[str]:
    """Every id of the cluster containing ``node_id``.

    The loop head comes first, then its helpers.  For a node outside any
    cluster (or an unknown id) the result is just ``[node_id]``.
    """
    node = next((n for n in nodes if n.id == node_id), None)
    if node is None:
        return [node_id]
    if isinstance(node, LoopNode):
        loop_id = node.id
    elif is_helper(node):
        loop_id = node.linked_loop_id
    else:
        return [node_id]

    members = [
        n.id for n in nodes
        if n.id == loop_id or (is_helper(n) and n.linked_loop_id == loop_id)
    ]
    if node_id not in members:
        members.append(node_id)
    return members
