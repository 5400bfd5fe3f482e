"""
Workflow Session — the editing session that owns one workflow graph.

A session holds the definition being edited (editing form), the
selected node, and the baseline snapshot of what was last saved or
loaded.  Edits go through the pure functions in ``graph_mutations``;
the session only swaps in the result and tracks selection.

Collaborator actions (save, load, validate, execute, ...) take a
private copy of the graph before their first ``await`` and only touch
session state once the collaborator call succeeded.  A failed action
leaves the session exactly as it was.

Usage::

    session = WorkflowSession.with_client(WorkflowApiClient())
    await session.refresh_agents()
    loop_id = session.add_node("loop")
    workflow_id = await session.save("Review loop")
"""

from __future__ import annotations

from logging import getLogger
from typing import Any, Dict, List, Optional

from service.config.base import get_config
from service.config.sub_config.general.workflow_config import WorkflowEditorConfig
from service.workflow import change_detector, graph_mutations
from service.workflow.collaborators import (
    AgentDirectory,
    ExecutionBackend,
    PersistenceBackend,
    ValidationBackend,
)
from service.workflow.exceptions import (
    ActivationError,
    CollaboratorError,
    NodeNotFoundError,
    StructuralValidationError,
    UserInputError,
)
from service.workflow.graph_mutations import ANY, ConnectionConfig
from service.workflow.loop_cluster import is_helper
from service.workflow.workflow_inspector import summarize_workflow
from service.workflow.workflow_model import (
    AgentInfo,
    ValidationResult,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowSummary,
    WorkflowVersion,
)
from service.workflow.workflow_serializer import (
    assert_no_cluster_leak,
    deserialize_definition,
    export_workflow_json,
    import_workflow_json,
    serialize_definition,
)
from service.workflow.workflow_validator import WorkflowValidator, check_backend_shape

logger = getLogger(__name__)


class WorkflowSession:
    """One editing session; not shared between users."""

    def __init__(
        self,
        persistence: Optional[PersistenceBackend] = None,
        validation: Optional[ValidationBackend] = None,
        execution: Optional[ExecutionBackend] = None,
        agent_directory: Optional[AgentDirectory] = None,
        config: Optional[WorkflowEditorConfig] = None,
    ) -> None:
        self._persistence = persistence
        self._execution = execution
        self._agent_directory = agent_directory
        self._validator = WorkflowValidator(validation)
        self._config = config or get_config(WorkflowEditorConfig)

        self.workflow = WorkflowDefinition()
        self.selected_node_id: Optional[str] = None
        self.snapshot: Optional[WorkflowDefinition] = None
        self.snapshot_is_active = False
        self.is_active = False
        self.agents: List[AgentInfo] = []
        self.saved_workflows: List[WorkflowSummary] = []

    @classmethod
    def with_client(cls, client: Any, **kwargs: Any) -> "WorkflowSession":
        """Session whose collaborators are all served by one client."""
        return cls(
            persistence=client,
            validation=client,
            execution=client,
            agent_directory=client,
            **kwargs,
        )

    # ========================================================================
    # Definition lifecycle
    # ========================================================================

    def new_workflow(self, name: str = "", description: str = "") -> None:
        """Start a fresh, never-saved definition (no baseline)."""
        self.workflow = WorkflowDefinition(name=name, description=description)
        self.selected_node_id = None
        self.snapshot = None
        self.snapshot_is_active = False
        self.is_active = False

    def set_workflow(self, definition: WorkflowDefinition, as_baseline: bool = False) -> None:
        """Replace the edited definition (editing form)."""
        self.workflow = definition.model_copy(deep=True)
        self.selected_node_id = None
        self.is_active = definition.is_active
        if as_baseline:
            self._reset_baseline(self.workflow, self.is_active)

    def clear_workflow(self) -> None:
        """Remove every node and edge; metadata and baseline are kept."""
        self.workflow = self.workflow.model_copy(
            update={"nodes": [], "edges": [], "entry_node_id": None}, deep=True,
        )
        self.selected_node_id = None

    def rename(self, name: str, description: Optional[str] = None) -> None:
        update: Dict[str, Any] = {"name": name}
        if description is not None:
            update["description"] = description
        self.workflow = self.workflow.model_copy(update=update, deep=True)

    def set_active(self, is_active: bool) -> None:
        self.is_active = bool(is_active)

    def _reset_baseline(self, definition: WorkflowDefinition, is_active: bool) -> None:
        self.snapshot = definition.model_copy(deep=True)
        self.snapshot_is_active = is_active

    # ========================================================================
    # Mutations
    # ========================================================================

    def add_node(
        self,
        node_type: str,
        agent_id: Optional[str] = None,
        position: Optional[Dict[str, float]] = None,
    ) -> str:
        """Add a node (a whole cluster for ``loop``) and select it."""
        self.workflow, selected = graph_mutations.add_node(
            self.workflow,
            node_type,
            agent_id=agent_id,
            position=position,
            loop_max_iters=self._config.default_loop_max_iters,
        )
        self.selected_node_id = selected
        return selected

    def delete_node(self, node_id: str) -> None:
        before = {n.id for n in self.workflow.nodes}
        self.workflow = graph_mutations.delete_node(self.workflow, node_id)
        removed = before - {n.id for n in self.workflow.nodes}
        if self.selected_node_id in removed:
            self.selected_node_id = None

    def add_edge(self, from_node: str, to_node: str, condition: Optional[str] = None) -> None:
        self.workflow = graph_mutations.add_edge(
            self.workflow,
            WorkflowEdge(from_node=from_node, to_node=to_node, condition=condition or None),
        )

    def delete_edge(self, from_node: str, to_node: str, condition: Any = ANY) -> None:
        self.workflow = graph_mutations.delete_edge(self.workflow, from_node, to_node, condition)

    def update_node(self, node_id: str, **changes: Any) -> None:
        self.workflow = graph_mutations.update_node(self.workflow, node_id, **changes)

    def set_entry_node(self, node_id: str) -> None:
        self.workflow = graph_mutations.set_entry_node(self.workflow, node_id)

    def select_node(self, node_id: Optional[str]) -> None:
        """Select a node; helper cards have no properties and clear selection."""
        if node_id is None:
            self.selected_node_id = None
            return
        node = self.workflow.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        self.selected_node_id = None if is_helper(node) else node_id

    def connect_agent(
        self,
        source_node_id: str,
        target_agent_id: str,
        config: Optional[ConnectionConfig] = None,
    ) -> str:
        """Connect ``source`` to the node of ``target_agent_id``; returns its id."""
        if self.agents and target_agent_id not in {a.id for a in self.agents}:
            raise UserInputError(f"Agent '{target_agent_id}' is not in the agent directory")
        self.workflow, target_id = graph_mutations.connect_agent(
            self.workflow, source_node_id, target_agent_id, config,
        )
        return target_id

    # ========================================================================
    # Derived state
    # ========================================================================

    @property
    def is_dirty(self) -> bool:
        return change_detector.is_dirty(
            self.workflow, self.snapshot, self.is_active, self.snapshot_is_active,
        )

    @property
    def can_save(self) -> bool:
        return change_detector.can_save(
            self.workflow, self.snapshot, self.is_active, self.snapshot_is_active,
        )

    @property
    def selected_node(self):
        if self.selected_node_id is None:
            return None
        return self.workflow.get_node(self.selected_node_id)

    def fanout_branches(self, node_id: str) -> List[str]:
        return self.workflow.fanout_branches(node_id)

    def summary(self) -> Dict[str, Any]:
        """Stats of the graph as the backend would see it."""
        return summarize_workflow(serialize_definition(self.workflow))

    # ========================================================================
    # Collaborator actions
    # ========================================================================

    def _require(self, collaborator: Optional[Any], what: str) -> Any:
        if collaborator is None:
            raise CollaboratorError(f"No {what} configured for this session")
        return collaborator

    def _require_saved(self) -> str:
        if not self.workflow.workflow_id:
            raise UserInputError("Workflow has not been saved yet")
        return self.workflow.workflow_id

    async def refresh_agents(self) -> List[AgentInfo]:
        directory = self._require(self._agent_directory, "agent directory")
        agents = await directory.list_agents()
        self.agents = agents
        return agents

    async def refresh_workflows(self) -> List[WorkflowSummary]:
        persistence = self._require(self._persistence, "persistence backend")
        workflows = await persistence.list_workflows()
        self.saved_workflows = workflows
        return workflows

    async def validate(self, definition: Optional[WorkflowDefinition] = None) -> ValidationResult:
        """Validate the editing form (local rules, then the remote service)."""
        source = definition if definition is not None else self.workflow
        working = source.model_copy(deep=True)
        agent_ids = {a.id for a in self.agents} if self.agents else None
        return await self._validator.validate(working, agent_ids)

    async def _prepare_backend(self, working: WorkflowDefinition) -> WorkflowDefinition:
        """Validate, collapse and check a private copy of the graph."""
        result = await self.validate(working)
        if not result.valid:
            raise StructuralValidationError(result.errors)

        backend = serialize_definition(working)
        assert_no_cluster_leak(backend.edges)

        shape_errors = check_backend_shape(backend)
        if shape_errors:
            raise StructuralValidationError(shape_errors)
        return backend

    async def save(self, name: Optional[str] = None) -> str:
        """Validate, collapse and persist; returns the ``workflow_id``.

        Raises:
            UserInputError: Missing or duplicate name.
            StructuralValidationError: The graph failed validation.
            ClusterLeakError: Collapse left a cluster edge behind (defect).
            CollaboratorError: The persistence backend failed.
        """
        persistence = self._require(self._persistence, "persistence backend")
        final_name = (name if name is not None else self.workflow.name).strip()
        if not final_name:
            raise UserInputError("Workflow name is required")
        for existing in self.saved_workflows:
            if existing.name == final_name and existing.workflow_id != self.workflow.workflow_id:
                raise UserInputError(f"A workflow named '{final_name}' already exists")

        working = self.workflow.model_copy(update={"name": final_name}, deep=True)
        is_active = self.is_active

        backend = await self._prepare_backend(working)
        try:
            workflow_id = await persistence.save(backend, final_name, is_active)
        except ActivationError as e:
            # saved, but not activated: baseline records it as inactive
            self._commit_save(working, e.workflow_id, final_name, False)
            raise

        self._commit_save(working, workflow_id, final_name, is_active)
        logger.info(f"Workflow '{final_name}' saved ({workflow_id}), active={is_active}")
        return workflow_id

    def _commit_save(
        self,
        working: WorkflowDefinition,
        workflow_id: str,
        name: str,
        is_active: bool,
    ) -> None:
        working.workflow_id = workflow_id
        self.workflow = self.workflow.model_copy(
            update={"workflow_id": workflow_id, "name": name}, deep=True,
        )
        self._reset_baseline(working, is_active)

        entry = WorkflowSummary(
            workflow_id=workflow_id,
            name=name,
            description=working.description or None,
            is_active=is_active,
        )
        others = [w for w in self.saved_workflows if w.workflow_id != workflow_id]
        if is_active:
            others = [w.model_copy(update={"is_active": False}) for w in others]
        self.saved_workflows = [*others, entry]

    def _commit_load(self, backend: WorkflowDefinition) -> WorkflowDefinition:
        editing = deserialize_definition(backend)
        self.workflow = editing
        self.selected_node_id = None
        self.is_active = backend.is_active
        self._reset_baseline(editing, backend.is_active)
        return editing

    async def load(self, workflow_id: str) -> WorkflowDefinition:
        """Fetch a saved workflow and make it the new baseline."""
        persistence = self._require(self._persistence, "persistence backend")
        backend = await persistence.get(workflow_id)
        # the definitions endpoint does not carry the flag; the list does
        if any(w.workflow_id == workflow_id and w.is_active for w in self.saved_workflows):
            backend.is_active = True
        editing = self._commit_load(backend)
        logger.info(f"Workflow loaded: {editing.name} ({workflow_id})")
        return editing

    async def load_active(self) -> Optional[WorkflowDefinition]:
        """Load the active workflow; None (session untouched) if there is none."""
        persistence = self._require(self._persistence, "persistence backend")
        backend = await persistence.get_active()
        if backend is None:
            logger.info("No active workflow to load")
            return None
        backend.is_active = True
        editing = self._commit_load(backend)
        logger.info(f"Active workflow loaded: {editing.name} ({editing.workflow_id})")
        return editing

    async def list_versions(self) -> List[WorkflowVersion]:
        persistence = self._require(self._persistence, "persistence backend")
        return await persistence.list_versions(self._require_saved())

    async def load_version(self, version: str) -> WorkflowDefinition:
        """Bring an older version into the editor.

        The baseline stays the latest saved state, so the restored
        version shows up as unsaved changes.
        """
        persistence = self._require(self._persistence, "persistence backend")
        workflow_id = self._require_saved()
        backend = await persistence.get_version(workflow_id, version)
        editing = deserialize_definition(backend)
        editing.workflow_id = workflow_id
        editing.name = editing.name or self.workflow.name
        self.workflow = editing
        self.selected_node_id = None
        logger.info(f"Workflow {workflow_id} version {version} restored into the editor")
        return editing

    async def delete(self) -> None:
        """Delete the saved workflow and start a fresh one."""
        persistence = self._require(self._persistence, "persistence backend")
        workflow_id = self._require_saved()
        await persistence.delete(workflow_id)
        self.saved_workflows = [w for w in self.saved_workflows if w.workflow_id != workflow_id]
        self.new_workflow()
        logger.info(f"Workflow deleted: {workflow_id}")

    async def execute(self, goal: str) -> str:
        """Validate, collapse and start a run; returns the run id."""
        execution = self._require(self._execution, "execution backend")
        if not goal or not goal.strip():
            raise UserInputError("A goal is required to execute the workflow")

        working = self.workflow.model_copy(deep=True)
        backend = await self._prepare_backend(working)
        run_id = await execution.execute(goal.strip(), backend)
        logger.info(f"Workflow execution started: {run_id}")
        return run_id

    # ========================================================================
    # Export / import
    # ========================================================================

    def export_json(self) -> str:
        return export_workflow_json(self.workflow)

    def import_json(self, text: str) -> WorkflowDefinition:
        """Replace the edited graph with an exported document.

        The import is not a saved state: no baseline, not active.
        """
        definition = import_workflow_json(text)
        definition.is_active = False
        self.workflow = definition
        self.selected_node_id = None
        self.snapshot = None
        self.snapshot_is_active = False
        self.is_active = False
        logger.info(f"Workflow imported: {definition.name or '(unnamed)'}")
        return definition
