"""
Workflow Data Models — definitions, nodes, and edges.

These are the serializable data structures that describe a
user-designed execution graph.  The same models carry both the
editing form (loop clusters expanded, UI-only helper nodes and
``__ui_cluster__`` edges present) and the backend form produced by
``workflow_serializer`` (clusters collapsed, loop branches tagged
``loop_continue`` / ``loop_exit``).
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# Reserved edge conditions — structural tags, never evaluated by the engine.
UI_CLUSTER_CONDITION = "__ui_cluster__"
LOOP_CONTINUE = "loop_continue"
LOOP_EXIT = "loop_exit"

DEFAULT_LOOP_MAX_ITERS = 3


class NodeType(str, Enum):
    """Discriminator values for ``WorkflowNode``."""
    AGENT = "agent"
    CONDITIONAL = "conditional"
    FANOUT = "fanout"
    LOOP = "loop"
    MERGE = "merge"
    # Editing-only helpers of a loop cluster
    LOOP_BODY = "loop_body"
    LOOP_EXIT = "loop_exit"


EXECUTION_NODE_TYPES = frozenset({
    NodeType.AGENT.value,
    NodeType.CONDITIONAL.value,
    NodeType.FANOUT.value,
    NodeType.LOOP.value,
    NodeType.MERGE.value,
})
HELPER_NODE_TYPES = frozenset({NodeType.LOOP_BODY.value, NodeType.LOOP_EXIT.value})


class MergeStrategy(str, Enum):
    """How a merge node combines its incoming branches."""
    STITCH = "stitch"
    CONCAT_TEXT = "concat_text"
    COLLECT_LIST = "collect_list"
    MERGE_DICT = "merge_dict"
    CUSTOM_TEMPLATE = "custom_template"


# ============================================================================
# Edges
# ============================================================================


class WorkflowEdge(BaseModel):
    """A directed edge between two nodes.

    ``condition`` is overloaded: empty means unconditional, the reserved
    sentinels tag cluster / loop-branch structure, anything else is an
    expression evaluated by the orchestration engine.
    """

    from_node: str
    to_node: str
    condition: Optional[str] = None

    @property
    def is_unconditional(self) -> bool:
        return not self.condition

    @property
    def is_ui_cluster(self) -> bool:
        return is_ui_cluster_condition(self.condition)

    def sort_key(self) -> str:
        return f"{self.from_node}‖{self.to_node}‖{self.condition or ''}"


def is_ui_cluster_condition(condition: Optional[str]) -> bool:
    """True for the presentation-only cluster marker (either spelling)."""
    if not condition:
        return False
    return condition in (UI_CLUSTER_CONDITION, "ui_cluster")


# ============================================================================
# Nodes
# ============================================================================


class _NodeBase(BaseModel):
    """Fields shared by every node type.

    ``params`` is an open bag: type-specific settings plus presentation
    data such as ``params["position"]``.
    """

    id: str
    inputs: Dict[str, str] = Field(default_factory=dict)
    outputs: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)

    @property
    def position(self) -> Optional[Dict[str, float]]:
        return self.params.get("position")


class AgentNode(_NodeBase):
    type: Literal["agent"] = "agent"
    agent_id: Optional[str] = None


class ConditionalNode(_NodeBase):
    type: Literal["conditional"] = "conditional"
    condition: Optional[str] = None


class FanoutNode(_NodeBase):
    """Parallel split.  Branches are derived from outgoing edges."""

    type: Literal["fanout"] = "fanout"


class LoopNode(_NodeBase):
    type: Literal["loop"] = "loop"
    max_iters: int = Field(default=DEFAULT_LOOP_MAX_ITERS, ge=1)
    loop_condition: Optional[str] = None


class MergeNode(_NodeBase):
    """Join point; ``params["strategy"]`` selects a ``MergeStrategy``."""

    type: Literal["merge"] = "merge"

    @property
    def strategy(self) -> Optional[str]:
        return self.params.get("strategy")


class LoopBodyNode(_NodeBase):
    """Editing-only card marking a loop's continue branch."""

    type: Literal["loop_body"] = "loop_body"
    linked_loop_id: str
    is_ui_helper: Literal[True] = True


class LoopExitNode(_NodeBase):
    """Editing-only card marking a loop's exit branch."""

    type: Literal["loop_exit"] = "loop_exit"
    linked_loop_id: str
    is_ui_helper: Literal[True] = True


WorkflowNode = Annotated[
    Union[
        AgentNode,
        ConditionalNode,
        FanoutNode,
        LoopNode,
        MergeNode,
        LoopBodyNode,
        LoopExitNode,
    ],
    Field(discriminator="type"),
]

_node_adapter: TypeAdapter = TypeAdapter(WorkflowNode)

NODE_CLASSES = {
    "agent": AgentNode,
    "conditional": ConditionalNode,
    "fanout": FanoutNode,
    "loop": LoopNode,
    "merge": MergeNode,
    "loop_body": LoopBodyNode,
    "loop_exit": LoopExitNode,
}


def parse_node(data: Dict[str, Any]) -> WorkflowNode:
    """Validate a raw dict into the matching node model."""
    return _node_adapter.validate_python(data)


def derive_fanout_branches(node_id: str, edges: List[WorkflowEdge]) -> List[str]:
    """Distinct targets of ``node_id``'s outgoing edges, first-seen order."""
    return list(dict.fromkeys(e.to_node for e in edges if e.from_node == node_id))


# ============================================================================
# Definition
# ============================================================================


class GraphLimits(BaseModel):
    max_steps: Optional[int] = None
    timeout_ms: Optional[int] = None
    max_iters: Optional[int] = None
    max_parallel: Optional[int] = None


class WorkflowDefinition(BaseModel):
    """A complete workflow graph definition.

    ``is_active`` is persisted alongside the graph body, not inside it,
    so it is excluded from ``to_backend_payload()``.
    """

    workflow_id: Optional[str] = None
    name: str = ""
    description: str = ""
    version: Optional[str] = None
    entry_node_id: Optional[str] = None
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)
    toolsets: Optional[List[str]] = None
    policy_profile: Optional[str] = None
    limits: Optional[GraphLimits] = None
    is_active: bool = False

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        """Find a node by ID."""
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def has_node(self, node_id: str) -> bool:
        return self.get_node(node_id) is not None

    def get_edges_from(self, node_id: str) -> List[WorkflowEdge]:
        """Get all edges originating from a node."""
        return [e for e in self.edges if e.from_node == node_id]

    def get_edges_to(self, node_id: str) -> List[WorkflowEdge]:
        """Get all edges pointing to a node."""
        return [e for e in self.edges if e.to_node == node_id]

    def get_entry_node(self) -> Optional[WorkflowNode]:
        """The explicit entry node, or the first node by convention."""
        if self.entry_node_id:
            return self.get_node(self.entry_node_id)
        return self.nodes[0] if self.nodes else None

    def nodes_of_type(self, node_type: str) -> List[WorkflowNode]:
        return [n for n in self.nodes if n.type == node_type]

    def fanout_branches(self, node_id: str) -> List[str]:
        """Derived branch set of a fanout node."""
        return derive_fanout_branches(node_id, self.edges)

    def is_empty(self) -> bool:
        return not self.nodes and not self.edges

    def to_backend_payload(self) -> Dict[str, Any]:
        """JSON-ready dict for transport (``is_active`` travels separately)."""
        return self.model_dump(mode="json", exclude_none=True, exclude={"is_active"})


# ============================================================================
# Collaborator payloads
# ============================================================================


class AgentInfo(BaseModel):
    """An agent from the external agent directory."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    model: Optional[str] = None
    description: Optional[str] = None
    instructions: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)

    @classmethod
    def from_errors(cls, errors: List[str]) -> "ValidationResult":
        return cls(valid=not errors, errors=list(errors))


class WorkflowSummary(BaseModel):
    """One entry of the saved-workflows list."""

    model_config = ConfigDict(extra="ignore")

    workflow_id: str
    name: str = ""
    description: Optional[str] = None
    is_active: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class WorkflowVersion(BaseModel):
    """One entry of a workflow's version history."""

    model_config = ConfigDict(extra="ignore")

    version: str
    created_at: Optional[str] = None
    description: Optional[str] = None
