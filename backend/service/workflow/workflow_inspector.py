"""
Workflow Inspector — a readable view of what will be sent to the backend.

Takes the editing-form definition, collapses it the same way a save
does, and reports:

* High-level stats (node / edge counts, entry node, loops, node types,
  terminal nodes)
* Per-node detail with the derived fanout branches
* Validation of both the editing form and the backend form
* Mermaid and Graphviz DOT renderings of the backend form
"""

from __future__ import annotations

import re
from collections import Counter
from logging import getLogger
from typing import Any, Dict, List

from service.workflow.workflow_model import (
    AgentNode,
    ConditionalNode,
    FanoutNode,
    LoopNode,
    MergeNode,
    WorkflowDefinition,
    WorkflowNode,
)
from service.workflow.workflow_serializer import serialize_definition
from service.workflow.workflow_validator import check_backend_shape, validate_workflow

logger = getLogger(__name__)

_MERMAID_SAFE = re.compile(r"[^A-Za-z0-9_]")


# ====================================================================
# Public API
# ====================================================================


def summarize_workflow(workflow: WorkflowDefinition) -> Dict[str, Any]:
    """High-level stats of a (backend-form) definition."""
    sources = {e.from_node for e in workflow.edges}
    entry = workflow.get_entry_node()
    return {
        "workflow_name": workflow.name,
        "workflow_id": workflow.workflow_id,
        "total_nodes": len(workflow.nodes),
        "total_edges": len(workflow.edges),
        "entry_node": entry.id if entry else None,
        "has_loops": any(isinstance(n, LoopNode) for n in workflow.nodes),
        "node_types": dict(Counter(n.type for n in workflow.nodes)),
        "terminal_nodes": [n.id for n in workflow.nodes if n.id not in sources],
    }


def inspect_workflow(workflow: WorkflowDefinition) -> Dict[str, Any]:
    """Inspect an editing-form workflow.

    Returns a dict containing:
        - ``summary``    : Stats of the backend form
        - ``nodes``      : Per-node detail list (backend form)
        - ``validation`` : Editing-form and backend-form complaints
        - ``mermaid``    : Mermaid flowchart source
        - ``dot``        : Graphviz DOT source
    """
    editing_errors = validate_workflow(workflow)
    backend = serialize_definition(workflow)
    backend_errors = check_backend_shape(backend)
    errors = editing_errors + backend_errors

    return {
        "summary": {**summarize_workflow(backend), "is_valid": not errors},
        "nodes": [_node_detail(backend, n) for n in backend.nodes],
        "validation": {"valid": not errors, "errors": errors},
        "mermaid": to_mermaid(backend),
        "dot": to_dot(backend),
    }


# ====================================================================
# Node detail
# ====================================================================


def _describe(node: WorkflowNode) -> str:
    if isinstance(node, AgentNode):
        return f"agent: {node.agent_id or '?'}"
    if isinstance(node, ConditionalNode):
        return f"if {node.condition or '?'}"
    if isinstance(node, LoopNode):
        suffix = f" while {node.loop_condition}" if node.loop_condition else ""
        return f"loop ≤{node.max_iters}{suffix}"
    if isinstance(node, MergeNode):
        return f"merge: {node.strategy or 'stitch'}"
    return node.type


def _node_detail(workflow: WorkflowDefinition, node: WorkflowNode) -> Dict[str, Any]:
    detail: Dict[str, Any] = {
        "id": node.id,
        "type": node.type,
        "description": _describe(node),
        "inputs": dict(node.inputs),
        "outputs": dict(node.outputs),
        "targets": [
            {"target_id": e.to_node, "condition": e.condition}
            for e in workflow.get_edges_from(node.id)
        ],
    }
    if isinstance(node, FanoutNode):
        detail["branches"] = workflow.fanout_branches(node.id)
    return detail


# ====================================================================
# Renderings
# ====================================================================


def _mermaid_id(node_id: str) -> str:
    return _MERMAID_SAFE.sub("_", node_id)


def _escape_label(text: str) -> str:
    return text.replace('"', "'")


def to_mermaid(workflow: WorkflowDefinition) -> str:
    """Mermaid ``flowchart TD`` source; conditionals and loops as diamonds."""
    lines: List[str] = ["flowchart TD"]
    entry = workflow.get_entry_node()
    if entry is not None:
        lines.append("    __start__((start))")

    for node in workflow.nodes:
        nid = _mermaid_id(node.id)
        label = _escape_label(f"{node.id}<br/>{_describe(node)}")
        if isinstance(node, (ConditionalNode, LoopNode)):
            lines.append(f'    {nid}{{"{label}"}}')
        else:
            lines.append(f'    {nid}["{label}"]')

    if entry is not None:
        lines.append(f"    __start__ --> {_mermaid_id(entry.id)}")
    for edge in workflow.edges:
        src, dst = _mermaid_id(edge.from_node), _mermaid_id(edge.to_node)
        if edge.condition:
            lines.append(f'    {src} -->|"{_escape_label(edge.condition)}"| {dst}')
        else:
            lines.append(f"    {src} --> {dst}")
    return "\n".join(lines)


def _dot_quote(text: str) -> str:
    # backslash escapes such as \n are left for Graphviz
    return '"' + text.replace('"', '\\"') + '"'


def to_dot(workflow: WorkflowDefinition) -> str:
    """Graphviz DOT source of the backend form."""
    title = workflow.name or workflow.workflow_id or "workflow"
    lines: List[str] = [f"digraph {_dot_quote(title)} {{", "    rankdir=LR;"]
    entry = workflow.get_entry_node()

    for node in workflow.nodes:
        shape = "diamond" if isinstance(node, (ConditionalNode, LoopNode)) else "box"
        label = _dot_quote(f"{node.id}\\n{_describe(node)}")
        attrs = [f"label={label}", f"shape={shape}"]
        if entry is not None and node.id == entry.id:
            attrs.append("penwidth=2")
        lines.append(f"    {_dot_quote(node.id)} [{', '.join(attrs)}];")

    for edge in workflow.edges:
        attrs = f" [label={_dot_quote(edge.condition)}]" if edge.condition else ""
        lines.append(f"    {_dot_quote(edge.from_node)} -> {_dot_quote(edge.to_node)}{attrs};")

    lines.append("}")
    return "\n".join(lines)
