"""
Pytest fixtures for the workflow graph builder tests

- Small editing-form graphs (chain, loop cluster)
- In-memory fakes of the four collaborators
- Isolated config (env-driven) per test
"""

from typing import Dict, List, Optional

import pytest

from service.config.base import reset_config
from service.workflow.collaborators import (
    AgentDirectory,
    ExecutionBackend,
    PersistenceBackend,
    ValidationBackend,
)
from service.workflow.exceptions import NotFoundError
from service.workflow.loop_cluster import create_loop_cluster
from service.workflow.workflow_model import (
    AgentInfo,
    AgentNode,
    ValidationResult,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowSummary,
    WorkflowVersion,
)


# ============================================================================
# CONFIG
# ============================================================================

@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Fresh config per test, with local storage under tmp_path."""
    for name in (
        "WORKFLOW_API_URL",
        "AGENT_API_URL",
        "WORKFLOW_API_TIMEOUT",
        "WORKFLOW_LOOP_MAX_ITERS",
        "WORKFLOW_MAX_VERSIONS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("WORKFLOW_STORAGE_DIR", str(tmp_path / "workflows"))
    reset_config()
    yield
    reset_config()


# ============================================================================
# GRAPHS
# ============================================================================

def agent(node_id: str, agent_id: Optional[str] = None) -> AgentNode:
    return AgentNode(id=node_id, agent_id=agent_id or node_id.upper())


def edge(src: str, dst: str, condition: Optional[str] = None) -> WorkflowEdge:
    return WorkflowEdge(from_node=src, to_node=dst, condition=condition)


@pytest.fixture
def chain_graph() -> WorkflowDefinition:
    """a → b → c"""
    return WorkflowDefinition(
        name="Chain",
        entry_node_id="a",
        nodes=[agent("a"), agent("b"), agent("c")],
        edges=[edge("a", "b"), edge("b", "c")],
    )


@pytest.fixture
def loop_graph() -> WorkflowDefinition:
    """start → loop; body → worker → loop; exit → done (editing form)."""
    cluster = create_loop_cluster()
    loop_id = cluster.loop_id
    return WorkflowDefinition(
        name="Review loop",
        entry_node_id="start",
        nodes=[agent("start"), *cluster.nodes, agent("worker"), agent("done")],
        edges=[
            *cluster.cluster_edges(),
            edge("start", loop_id),
            edge(cluster.body_node.id, "worker"),
            edge("worker", loop_id),
            edge(cluster.exit_node.id, "done"),
        ],
    )


@pytest.fixture
def agents() -> List[AgentInfo]:
    return [
        AgentInfo(id="triage", name="Triage Agent", model="gpt-4o"),
        AgentInfo(id="news_reporter", name="News Reporter"),
        AgentInfo(id="reviewer", name="Reviewer"),
        AgentInfo(id="summarizer", name="Summarizer"),
    ]


# ============================================================================
# FAKE COLLABORATORS
# ============================================================================

class FakePersistence(PersistenceBackend):
    """In-memory persistence recording every call."""

    def __init__(self):
        self.definitions: Dict[str, WorkflowDefinition] = {}
        self.names: Dict[str, str] = {}
        self.active_id: Optional[str] = None
        self.saved: List[WorkflowDefinition] = []
        self.fail_with: Optional[Exception] = None
        self._counter = 0

    async def save(self, definition, name, is_active=False):
        if self.fail_with is not None:
            raise self.fail_with
        self._counter += 1
        workflow_id = definition.workflow_id or f"wf_{self._counter}"
        self.definitions[workflow_id] = definition.model_copy(deep=True)
        self.names[workflow_id] = name
        self.saved.append(definition.model_copy(deep=True))
        if is_active:
            self.active_id = workflow_id
        return workflow_id

    async def list_workflows(self):
        return [
            WorkflowSummary(workflow_id=wid, name=self.names[wid], is_active=wid == self.active_id)
            for wid in self.definitions
        ]

    async def get(self, workflow_id):
        if workflow_id not in self.definitions:
            raise NotFoundError(f"Workflow definition not found: {workflow_id}", status_code=404)
        return self.definitions[workflow_id].model_copy(
            update={"workflow_id": workflow_id}, deep=True,
        )

    async def get_active(self):
        if self.active_id is None:
            return None
        return await self.get(self.active_id)

    async def set_active(self, workflow_id):
        self.active_id = workflow_id

    async def delete(self, workflow_id):
        if workflow_id not in self.definitions:
            raise NotFoundError(f"Workflow not found: {workflow_id}", status_code=404)
        del self.definitions[workflow_id]

    async def list_versions(self, workflow_id):
        return [WorkflowVersion(version="1")]

    async def get_version(self, workflow_id, version):
        return await self.get(workflow_id)


class FakeValidation(ValidationBackend):

    def __init__(self, result: Optional[ValidationResult] = None):
        self.result = result or ValidationResult(valid=True)
        self.received: List[WorkflowDefinition] = []

    async def validate(self, definition):
        self.received.append(definition)
        return self.result


class FakeExecution(ExecutionBackend):

    def __init__(self):
        self.runs = []

    async def execute(self, goal, definition):
        self.runs.append((goal, definition))
        return f"run_{len(self.runs)}"


class FakeAgentDirectory(AgentDirectory):

    def __init__(self, agents: List[AgentInfo]):
        self.agents = agents

    async def list_agents(self):
        return list(self.agents)


@pytest.fixture
def persistence() -> FakePersistence:
    return FakePersistence()


@pytest.fixture
def validation() -> FakeValidation:
    return FakeValidation()


@pytest.fixture
def execution() -> FakeExecution:
    return FakeExecution()


@pytest.fixture
def agent_directory(agents) -> FakeAgentDirectory:
    return FakeAgentDirectory(agents)
