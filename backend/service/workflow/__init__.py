"""
Workflow Graph Builder — editing model for orchestration workflows.

Provides the data model, editing operations and transport contract of
user-designed execution graphs (agents, conditionals, fan-outs, bounded
loops, merges) that an external orchestration engine runs.

Architecture:
    workflow_model      — Data models for workflow definitions
    loop_cluster        — Loop head + body / exit helper cards
    graph_mutations     — Pure add / delete / connect operations
    workflow_serializer — Editing form <-> backend form, export / import
    change_detector     — Dirty flag against the saved baseline
    workflow_validator  — Local + remote structural validation
    workflow_compiler   — LangGraph compile check of the backend form
    workflow_inspector  — Summary, Mermaid and DOT views
    workflow_session    — Editing session composing all of the above
    workflow_client     — HTTP client for the workflow / agent services
    workflow_store      — Local JSON-file persistence
    templates           — Agent connection templates
"""

from service.workflow.exceptions import (
    ActivationError,
    ClusterLeakError,
    CollaboratorError,
    ConflictError,
    ConnectionRuleError,
    InvariantViolationError,
    NodeNotFoundError,
    NotFoundError,
    StructuralValidationError,
    UserInputError,
    WorkflowEditorError,
)
from service.workflow.workflow_model import (
    AgentInfo,
    NodeType,
    ValidationResult,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
    WorkflowSummary,
    WorkflowVersion,
)
from service.workflow.loop_cluster import LoopCluster, create_loop_cluster
from service.workflow.graph_mutations import ConnectionConfig
from service.workflow.workflow_serializer import (
    assert_no_cluster_leak,
    deserialize_from_backend,
    serialize_for_backend,
)
from service.workflow.change_detector import has_changed, is_dirty
from service.workflow.workflow_validator import WorkflowValidator, validate_workflow
from service.workflow.workflow_compiler import WorkflowCompiler
from service.workflow.workflow_session import WorkflowSession
from service.workflow.workflow_client import WorkflowApiClient
from service.workflow.workflow_store import WorkflowStore, get_workflow_store

__all__ = [
    "ActivationError",
    "ClusterLeakError",
    "CollaboratorError",
    "ConflictError",
    "ConnectionRuleError",
    "InvariantViolationError",
    "NodeNotFoundError",
    "NotFoundError",
    "StructuralValidationError",
    "UserInputError",
    "WorkflowEditorError",
    "AgentInfo",
    "NodeType",
    "ValidationResult",
    "WorkflowDefinition",
    "WorkflowEdge",
    "WorkflowNode",
    "WorkflowSummary",
    "WorkflowVersion",
    "LoopCluster",
    "create_loop_cluster",
    "ConnectionConfig",
    "assert_no_cluster_leak",
    "deserialize_from_backend",
    "serialize_for_backend",
    "has_changed",
    "is_dirty",
    "WorkflowValidator",
    "validate_workflow",
    "WorkflowCompiler",
    "WorkflowSession",
    "WorkflowApiClient",
    "WorkflowStore",
    "get_workflow_store",
]
