"""
Workflow Validator — structural checks before save / execute.

Local rules run on the editing form (clusters expanded), because rules
such as "a loop needs both a body and an exit path" only make sense
there.  ``check_backend_shape`` covers what can only be judged after
collapse.  ``WorkflowValidator`` adds the remote validation service on
top of the local rules.
"""

from __future__ import annotations

from logging import getLogger
from typing import Any, Collection, Dict, List, Optional, Union

from pydantic import ValidationError

from service.workflow.collaborators import ValidationBackend
from service.workflow.exceptions import CollaboratorError
from service.workflow.loop_cluster import is_helper
from service.workflow.workflow_compiler import WorkflowCompiler
from service.workflow.workflow_model import (
    EXECUTION_NODE_TYPES,
    HELPER_NODE_TYPES,
    AgentNode,
    ConditionalNode,
    FanoutNode,
    LoopNode,
    MergeNode,
    MergeStrategy,
    ValidationResult,
    WorkflowDefinition,
    derive_fanout_branches,
)
from service.workflow.workflow_serializer import check_loop_branches, validate_before_save

logger = getLogger(__name__)

_VALID_TYPES = EXECUTION_NODE_TYPES | HELPER_NODE_TYPES
_STRATEGIES = {s.value for s in MergeStrategy}


# ============================================================================
# Merge parameters
# ============================================================================


def merge_params_errors(node: MergeNode) -> List[str]:
    """Per-strategy required fields of a merge node.

    A missing strategy means ``stitch``.
    """
    params = node.params
    strategy = params.get("strategy") or MergeStrategy.STITCH.value
    if strategy not in _STRATEGIES:
        return [
            f"Merge node {node.id} has invalid strategy '{strategy}' "
            f"(expected one of: {', '.join(sorted(_STRATEGIES))})"
        ]

    errors: List[str] = []
    if strategy == MergeStrategy.STITCH.value:
        expected = params.get("expected_keys")
        if not isinstance(expected, list) or not expected:
            errors.append(f"Merge node {node.id} (stitch) must list expected_keys")
    elif strategy in (MergeStrategy.COLLECT_LIST.value, MergeStrategy.MERGE_DICT.value):
        if not params.get("merge_key"):
            errors.append(f"Merge node {node.id} ({strategy}) must have a merge_key")
    elif strategy == MergeStrategy.CUSTOM_TEMPLATE.value:
        if not params.get("template"):
            errors.append(f"Merge node {node.id} (custom_template) must have a template")
    # concat_text: separator / header_template are optional
    return errors


# ============================================================================
# Local validation (editing form)
# ============================================================================


def validate_workflow(
    definition: WorkflowDefinition,
    agent_ids: Optional[Collection[str]] = None,
) -> List[str]:
    """Return a list of human-readable complaints (empty if valid).

    ``agent_ids``, when given, is the agent directory; agent nodes
    referencing an id outside it are reported.
    """
    errors: List[str] = []
    nodes = definition.nodes
    edges = definition.edges

    if not nodes:
        errors.append("Workflow must have at least one node")

    node_ids = set()
    for node in nodes:
        if node.id in node_ids:
            errors.append(f"Duplicate node ID: {node.id}")
        node_ids.add(node.id)

        if isinstance(node, AgentNode):
            if not node.agent_id:
                errors.append(f"Agent node {node.id} must have an agent_id")
            elif agent_ids is not None and node.agent_id not in agent_ids:
                errors.append(f"Agent node {node.id} references unknown agent: {node.agent_id}")
        elif isinstance(node, ConditionalNode):
            if not node.condition:
                errors.append(f"Conditional node {node.id} must have a condition")
        elif isinstance(node, FanoutNode):
            branches = derive_fanout_branches(node.id, edges)
            if len(branches) < 2:
                errors.append(
                    f"Fanout node {node.id} must connect to at least two branch nodes. "
                    f"Current connections: {len(branches)}"
                )
        elif isinstance(node, LoopNode):
            if not node.max_iters or node.max_iters < 1:
                errors.append(f"Loop node {node.id} must have max_iters")
            for edge in edges:
                if edge.from_node == node.id and not edge.is_ui_cluster and not edge.condition:
                    errors.append(
                        f"Loop node {node.id} has an untagged edge to {edge.to_node}; "
                        f"connect body / exit nodes through the helper cards"
                    )
        elif isinstance(node, MergeNode):
            errors.extend(merge_params_errors(node))

    for edge in edges:
        if edge.from_node not in node_ids:
            errors.append(f"Edge references unknown source node: {edge.from_node}")
        if edge.to_node not in node_ids:
            errors.append(f"Edge references unknown target node: {edge.to_node}")
        if edge.from_node == edge.to_node:
            errors.append(f"Self-loop detected: {edge.from_node} -> {edge.to_node}")

    if definition.entry_node_id and definition.entry_node_id not in node_ids:
        errors.append(f"Entry node {definition.entry_node_id} not found in nodes")

    if len(nodes) > 1:
        connected = set()
        for edge in edges:
            connected.add(edge.from_node)
            connected.add(edge.to_node)
        for node in nodes:
            if node.id not in connected:
                errors.append(f"Node {node.id} is not connected to any other node")

    errors.extend(validate_before_save(nodes, edges))
    return errors


def validate_workflow_data(
    data: Dict[str, Any],
    agent_ids: Optional[Collection[str]] = None,
) -> List[str]:
    """Validate a raw (not yet parsed) definition dict.

    Catches what the typed model cannot represent: unknown node types,
    missing ids and stale fanout ``branches`` lists.  If those pass,
    the parsed definition goes through ``validate_workflow``.
    """
    errors: List[str] = []
    raw_nodes = data.get("nodes") or []
    raw_edges = data.get("edges") or []

    for index, raw in enumerate(raw_nodes):
        if not isinstance(raw, dict):
            errors.append(f"nodes[{index}] is not an object")
            continue
        if not raw.get("id"):
            errors.append(f"nodes[{index}]: Node ID is required")
        node_type = raw.get("type")
        if not node_type:
            errors.append(f"nodes[{index}]: Node type is required")
        elif node_type not in _VALID_TYPES:
            errors.append(f"Invalid node type: {node_type}")
        elif node_type == "fanout" and raw.get("branches"):
            derived = {
                e.get("to_node") for e in raw_edges
                if isinstance(e, dict) and e.get("from_node") == raw.get("id")
            }
            if set(raw["branches"]) != derived:
                errors.append(
                    f"Fanout node {raw.get('id')} branches property "
                    f"[{', '.join(raw['branches'])}] doesn't match graph connections "
                    f"[{', '.join(sorted(str(d) for d in derived))}]. Connections are used."
                )
    if errors:
        return errors

    try:
        definition = WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        return [f"Invalid workflow definition: {err['msg']} at {'.'.join(str(p) for p in err['loc'])}"
                for err in e.errors()]
    return validate_workflow(definition, agent_ids)


# ============================================================================
# Backend form
# ============================================================================


def check_backend_shape(backend: WorkflowDefinition) -> List[str]:
    """Rules that apply after cluster collapse."""
    errors: List[str] = []
    entry = backend.get_entry_node()
    if isinstance(entry, LoopNode):
        errors.append(
            f"Loop node {entry.id} cannot be the entry node; "
            f"start the workflow with a node that feeds the loop"
        )
    errors.extend(check_loop_branches(backend.nodes, backend.edges))
    if any(is_helper(n) for n in backend.nodes):
        errors.append("Loop helper cards must not appear in the backend definition")
    if not errors:
        errors.extend(WorkflowCompiler(backend).check())
    return errors


# ============================================================================
# Local + remote
# ============================================================================


class WorkflowValidator:
    """Local rules first, then the remote validation service (if any).

    The remote service is only consulted when the local rules pass.
    A failure to reach it becomes a single complaint rather than an
    exception, so the caller always gets a ``ValidationResult``.
    """

    def __init__(self, remote: Optional[ValidationBackend] = None) -> None:
        self._remote = remote

    async def validate(
        self,
        definition: WorkflowDefinition,
        agent_ids: Optional[Collection[str]] = None,
    ) -> ValidationResult:
        errors = validate_workflow(definition, agent_ids)
        if errors or self._remote is None:
            return ValidationResult.from_errors(errors)

        try:
            remote_result = await self._remote.validate(definition)
        except CollaboratorError as e:
            logger.error(f"Remote validation failed: {e.message}")
            return ValidationResult.from_errors([f"Validation service error: {e.detail or e.message}"])

        if not remote_result.valid and not remote_result.errors:
            return ValidationResult.from_errors(["Validation failed"])
        return remote_result
