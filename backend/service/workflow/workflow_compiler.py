"""
Workflow Compiler — static LangGraph compile check of the backend form.

The orchestration engine that runs workflows lives elsewhere; this
module only asks LangGraph whether the collapsed topology would
compile.  Every node becomes a pass-through function and every
conditioned source gets a router, so LangGraph's own graph validation
(unknown targets, missing entry) runs against the
real node / edge layout.  The compiled graph is never invoked.
"""

from __future__ import annotations

from logging import getLogger
from typing import Any, Dict, List, Optional, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.graph.state import CompiledStateGraph

from service.workflow.workflow_model import WorkflowDefinition, WorkflowEdge

logger = getLogger(__name__)


class CompileCheckState(TypedDict, total=False):
    """Minimal state schema; keys must not collide with node ids."""
    run_goal: str
    node_outputs: Dict[str, Any]


def _passthrough(state: CompileCheckState) -> Dict[str, Any]:
    return {}


class WorkflowCompiler:
    """Compile a backend-form WorkflowDefinition → LangGraph graph.

    Steps:
        1. Register one pass-through node per workflow node.
        2. Wire START to the entry node.
        3. Wire edges: plain edges for unconditional sources (several
           targets run in parallel), a router over all targets for
           sources with conditioned edges (conditionals, loops).
        4. Wire nodes without outgoing edges to END.

    Usage::

        errors = WorkflowCompiler(backend_definition).check()
    """

    def __init__(self, workflow: WorkflowDefinition) -> None:
        self._workflow = workflow
        self._graph: Optional[CompiledStateGraph] = None

    def compile(self) -> CompiledStateGraph:
        """Build and compile the graph.

        Raises:
            ValueError: If LangGraph rejects the topology.
        """
        entry = self._workflow.get_entry_node()
        if entry is None:
            raise ValueError("Workflow has no entry node")

        reserved = sorted(
            n.id for n in self._workflow.nodes if n.id in CompileCheckState.__annotations__
        )
        if reserved:
            raise ValueError(f"Node ids collide with state keys: {', '.join(reserved)}")

        graph_builder = StateGraph(CompileCheckState)

        for node in self._workflow.nodes:
            graph_builder.add_node(node.id, _passthrough)

        graph_builder.add_edge(START, entry.id)

        # ── Wire edges, grouped by source ──
        edges_by_source: Dict[str, List[WorkflowEdge]] = {}
        for edge in self._workflow.edges:
            edges_by_source.setdefault(edge.from_node, []).append(edge)

        for source_id, edges in edges_by_source.items():
            targets = list(dict.fromkeys(e.to_node for e in edges))
            if any(e.condition for e in edges):
                graph_builder.add_conditional_edges(
                    source_id, self._make_router(source_id, targets), targets,
                )
            else:
                for target in targets:
                    graph_builder.add_edge(source_id, target)

        for node in self._workflow.nodes:
            if node.id not in edges_by_source:
                graph_builder.add_edge(node.id, END)

        self._graph = graph_builder.compile()
        logger.info(
            f"Workflow '{self._workflow.name or self._workflow.workflow_id}' compiled: "
            f"{len(self._workflow.nodes)} nodes, {len(self._workflow.edges)} edges"
        )
        return self._graph

    def check(self) -> List[str]:
        """Compile and report problems as messages instead of raising."""
        try:
            self.compile()
        except ValueError as e:
            logger.warning(f"Workflow failed LangGraph compile check: {e}")
            return [f"Graph does not compile: {e}"]
        return []

    @property
    def graph(self) -> Optional[CompiledStateGraph]:
        """The compiled graph (available after ``compile()``)."""
        return self._graph

    @staticmethod
    def _make_router(source_id: str, targets: List[str]):
        """Router placeholder; conditions are evaluated by the engine, not here."""
        default = targets[0]

        def _route(state: CompileCheckState) -> str:
            return default

        _route.__name__ = f"route_{source_id}"
        return _route
