"""
Workflow Editor Exceptions

Exception Hierarchy:
- WorkflowEditorError (base)
  - UserInputError                (dismissible, editing continues)
    - NodeNotFoundError
    - ConnectionRuleError
  - StructuralValidationError     (list of complaints, blocks save / execute)
  - InvariantViolationError       (defect in the editor itself)
    - ClusterLeakError
  - CollaboratorError             (transport / remote service failure)
    - NotFoundError
    - ConflictError
    - ActivationError

None of these are retried by the editor; the in-memory graph is left
as it was before the failed attempt.
"""

from __future__ import annotations

from typing import Any, List, Optional


class WorkflowEditorError(Exception):
    """Base exception for all workflow editor errors"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ============================================================================
# USER INPUT
# ============================================================================

class UserInputError(WorkflowEditorError):
    """
    The request itself is unusable (missing name, duplicate name, empty
    goal, unparsable import file).
    """
    pass


class NodeNotFoundError(UserInputError):
    """A mutation referenced a node id that is not in the graph."""

    def __init__(self, node_id: str):
        super().__init__(f"Node '{node_id}' not found")
        self.node_id = node_id


class ConnectionRuleError(UserInputError):
    """An edge would break the loop-cluster connection rules."""
    pass


# ============================================================================
# VALIDATION
# ============================================================================

class StructuralValidationError(WorkflowEditorError):
    """
    Local or remote validation rejected the graph.
    The save / execute is blocked until the graph is fixed.
    """

    def __init__(self, errors: List[str], message: Optional[str] = None):
        super().__init__(message or f"Workflow validation failed: {'; '.join(errors)}")
        self.errors = list(errors)


# ============================================================================
# DEFECTS
# ============================================================================

class InvariantViolationError(WorkflowEditorError):
    """
    Internal invariant broken. Signals a bug in the editor, not a
    problem with the user's graph.
    """
    pass


class ClusterLeakError(InvariantViolationError):
    """A presentation-only cluster edge survived backend serialization."""

    def __init__(self, leaked_edges: List[Any]):
        super().__init__(
            f"UI cluster edges leaked into backend payload ({len(leaked_edges)} edge(s)); "
            f"the loop collapse step is defective"
        )
        self.leaked_edges = list(leaked_edges)


# ============================================================================
# COLLABORATORS
# ============================================================================

class CollaboratorError(WorkflowEditorError):
    """
    A remote collaborator (persistence, validation, execution, agent
    directory) failed or could not be reached.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class NotFoundError(CollaboratorError):
    """The requested workflow / version does not exist (404)."""
    pass


class ConflictError(CollaboratorError):
    """The collaborator rejected the request as conflicting (409)."""
    pass


class ActivationError(CollaboratorError):
    """
    The workflow was saved but marking it active failed.
    ``workflow_id`` is the id the save assigned.
    """

    def __init__(self, message: str, workflow_id: str, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.workflow_id = workflow_id
