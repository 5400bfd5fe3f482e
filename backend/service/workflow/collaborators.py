"""
Collaborator interfaces used by ``WorkflowSession``.

Persistence, validation, execution and the agent directory live
outside the editor.  ``WorkflowApiClient`` implements all four over
HTTP; ``WorkflowStore`` implements persistence on local JSON files.

Definitions crossing these interfaces are in backend form (clusters
collapsed), except for ``ValidationBackend.validate`` which receives
the editing form.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from service.workflow.workflow_model import (
    AgentInfo,
    ValidationResult,
    WorkflowDefinition,
    WorkflowSummary,
    WorkflowVersion,
)


class PersistenceBackend(ABC):
    """Stores backend-form definitions keyed by ``workflow_id``."""

    @abstractmethod
    async def save(
        self,
        definition: WorkflowDefinition,
        name: str,
        is_active: bool = False,
    ) -> str:
        """Create or update a definition and return its ``workflow_id``.

        Raises:
            ConflictError: Another workflow already uses ``name``.
            ActivationError: Saved, but marking it active failed.
        """

    @abstractmethod
    async def list_workflows(self) -> List[WorkflowSummary]:
        ...

    @abstractmethod
    async def get(self, workflow_id: str) -> WorkflowDefinition:
        """Raises ``NotFoundError`` for an unknown id."""

    @abstractmethod
    async def get_active(self) -> Optional[WorkflowDefinition]:
        """The active definition, or None when nothing is active."""

    @abstractmethod
    async def set_active(self, workflow_id: str) -> None:
        ...

    @abstractmethod
    async def delete(self, workflow_id: str) -> None:
        ...

    @abstractmethod
    async def list_versions(self, workflow_id: str) -> List[WorkflowVersion]:
        ...

    @abstractmethod
    async def get_version(self, workflow_id: str, version: str) -> WorkflowDefinition:
        ...


class ValidationBackend(ABC):

    @abstractmethod
    async def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        """Validate an editing-form definition."""


class ExecutionBackend(ABC):

    @abstractmethod
    async def execute(self, goal: str, definition: WorkflowDefinition) -> str:
        """Start a run of a backend-form definition and return its run id."""


class AgentDirectory(ABC):

    @abstractmethod
    async def list_agents(self) -> List[AgentInfo]:
        ...
