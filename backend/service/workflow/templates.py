"""
Agent Connection Templates.

Factory functions that build ready-made ``WorkflowDefinition``
objects from a list of agents: a linear chain, conditional routing
from one agent, and a parallel fan-out / merge.  The templates pick
their agents by id / name keywords and fall back to the first agents
in the directory.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from service.workflow.exceptions import UserInputError
from service.workflow.graph_mutations import ConnectionConfig, normalize_agent_node_id
from service.workflow.workflow_model import (
    AgentInfo,
    AgentNode,
    ConditionalNode,
    FanoutNode,
    GraphLimits,
    MergeNode,
    WorkflowDefinition,
    WorkflowEdge,
)

_COLUMN_WIDTH = 250
_ROW_HEIGHT = 150


def _default_limits(max_parallel: int = 1) -> GraphLimits:
    return GraphLimits(max_steps=100, timeout_ms=300000, max_parallel=max_parallel)


def _agent_node(agent_id: str, x: float, y: float) -> AgentNode:
    node_id = normalize_agent_node_id(agent_id)
    return AgentNode(
        id=node_id,
        agent_id=agent_id,
        outputs={"result": node_id},
        params={"position": {"x": x, "y": y}},
    )


# ============================================================================
# Generators
# ============================================================================


@dataclass
class ConditionalRoute:
    condition: str
    target_agent_id: str
    label: Optional[str] = None


def generate_linear_workflow(
    agents: Sequence[AgentInfo],
    config: Optional[ConnectionConfig] = None,
) -> WorkflowDefinition:
    """Chain the agents in order: A → B → C.

    ``config.source_output_path`` becomes the first node's ``result``
    output, ``config.target_input_path`` the last node's ``goal`` input,
    and ``config.condition`` tags every edge.
    """
    if len(agents) < 2:
        raise UserInputError("At least 2 agents are required for a linear workflow")
    config = config or ConnectionConfig()

    nodes = [_agent_node(a.id, i * _COLUMN_WIDTH, 100) for i, a in enumerate(agents)]
    edges: List[WorkflowEdge] = []
    for i in range(len(nodes) - 1):
        source, target = nodes[i], nodes[i + 1]
        if config.source_output_path and i == 0:
            source.outputs = {"result": config.source_output_path}
        if config.target_input_path and i == len(nodes) - 2:
            target.inputs = {"goal": config.target_input_path}
        edges.append(
            WorkflowEdge(from_node=source.id, to_node=target.id, condition=config.condition or None)
        )

    names = " → ".join(a.name or a.id for a in agents)
    return WorkflowDefinition(
        name=f"Linear Workflow: {names}",
        description=f"Linear workflow connecting {len(agents)} agents",
        entry_node_id=nodes[0].id,
        nodes=nodes,
        edges=edges,
        limits=_default_limits(),
    )


def generate_conditional_workflow(
    source_agent: AgentInfo,
    routes: Sequence[ConditionalRoute],
) -> WorkflowDefinition:
    """Route from one agent through a conditional gate: A → [cond] → B | C.

    The gate carries the first route's condition; each edge out of it
    carries its own route's condition.
    """
    if len(routes) < 2:
        raise UserInputError("At least 2 conditional routes are required")

    source = _agent_node(source_agent.id, 100, 100)
    gate = ConditionalNode(
        id=f"route_{uuid.uuid4().hex[:8]}",
        condition=routes[0].condition or None,
        params={"position": {"x": 350, "y": 100}},
    )

    targets: List[AgentNode] = []
    edges = [WorkflowEdge(from_node=source.id, to_node=gate.id)]
    for index, route in enumerate(routes):
        target = _agent_node(route.target_agent_id, 600, 100 + index * _ROW_HEIGHT)
        targets.append(target)
        edges.append(
            WorkflowEdge(from_node=gate.id, to_node=target.id, condition=route.condition or None)
        )

    name = source_agent.name or source_agent.id
    return WorkflowDefinition(
        name=f"Conditional Workflow: {name}",
        description=f"Conditional routing from {name} to {len(routes)} targets",
        entry_node_id=source.id,
        nodes=[source, gate, *targets],
        edges=edges,
        limits=_default_limits(),
    )


def generate_parallel_workflow(agents: Sequence[AgentInfo]) -> WorkflowDefinition:
    """Fan out to every agent in parallel, then merge their results as text."""
    if len(agents) < 2:
        raise UserInputError("At least 2 agents are required for parallel processing")

    fanout = FanoutNode(
        id=f"fanout_{uuid.uuid4().hex[:8]}",
        params={"position": {"x": 0, "y": 100}},
    )
    merge = MergeNode(
        id=f"merge_{uuid.uuid4().hex[:8]}",
        params={
            "position": {"x": 2 * _COLUMN_WIDTH, "y": 100},
            "strategy": "concat_text",
            "separator": "\n\n",
        },
    )
    branches = [
        _agent_node(a.id, _COLUMN_WIDTH, 100 + i * _ROW_HEIGHT) for i, a in enumerate(agents)
    ]
    edges: List[WorkflowEdge] = []
    for node in branches:
        edges.append(WorkflowEdge(from_node=fanout.id, to_node=node.id))
        edges.append(WorkflowEdge(from_node=node.id, to_node=merge.id))

    return WorkflowDefinition(
        name=f"Parallel Workflow: {', '.join(a.name or a.id for a in agents)}",
        description=f"{len(agents)} agents run in parallel and their results are merged",
        entry_node_id=fanout.id,
        nodes=[fanout, *branches, merge],
        edges=edges,
        limits=_default_limits(max_parallel=len(agents)),
    )


# ============================================================================
# Agent Connection Templates
# ============================================================================


def _find_agent(agents: Sequence[AgentInfo], *keywords: str) -> Optional[AgentInfo]:
    for agent in agents:
        haystack = f"{agent.id} {agent.name}".lower()
        if any(k in haystack for k in keywords):
            return agent
    return None


def _triage_news_reviewer(agents: Sequence[AgentInfo]) -> WorkflowDefinition:
    triage = _find_agent(agents, "triage")
    news = _find_agent(agents, "news", "reporter")
    reviewer = _find_agent(agents, "review")
    selected = [a for a in (triage, news, reviewer) if a is not None]

    if len(selected) < 2:
        # Fallback: first three agents
        return generate_linear_workflow(list(agents)[:3])
    return generate_linear_workflow(
        selected,
        ConnectionConfig(source_output_path="triage", target_input_path="goal"),
    )


def _triage_conditional(agents: Sequence[AgentInfo]) -> WorkflowDefinition:
    triage = _find_agent(agents, "triage")
    if triage is None:
        raise UserInputError("Triage agent not found")
    news = _find_agent(agents, "news", "reporter")
    reviewer = _find_agent(agents, "review")

    routes: List[ConditionalRoute] = []
    if news is not None:
        routes.append(ConditionalRoute(
            condition='triage.preferred_agent == "news"',
            target_agent_id=news.id, label=news.name,
        ))
    if reviewer is not None:
        routes.append(ConditionalRoute(
            condition='triage.preferred_agent == "reviewer"',
            target_agent_id=reviewer.id, label=reviewer.name,
        ))

    used = {a.id for a in (triage, news, reviewer) if a is not None}
    others = [a for a in agents if a.id not in used]
    if others and len(routes) < 2:
        routes.append(ConditionalRoute(
            condition='triage.preferred_agent != "news" and triage.preferred_agent != "reviewer"',
            target_agent_id=others[0].id, label=others[0].name,
        ))

    if len(routes) < 2:
        raise UserInputError("At least 2 target agents are required for conditional routing")
    return generate_conditional_workflow(triage, routes)


@dataclass(frozen=True)
class AgentConnectionTemplate:
    id: str
    name: str
    description: str
    generate: Callable[[Sequence[AgentInfo]], WorkflowDefinition]


TRIAGE_TO_NEWS_TO_REVIEWER = AgentConnectionTemplate(
    id="triage_news_reviewer",
    name="Triage → News → Reviewer",
    description="Linear flow: Triage routes to News, then News goes to Reviewer",
    generate=_triage_news_reviewer,
)

TRIAGE_CONDITIONAL_ROUTING = AgentConnectionTemplate(
    id="triage_conditional",
    name="Triage Conditional Routing",
    description="Triage routes to different agents based on condition",
    generate=_triage_conditional,
)

PARALLEL_AGENT_PROCESSING = AgentConnectionTemplate(
    id="parallel_processing",
    name="Parallel Agent Processing",
    description="Multiple agents process in parallel then merge",
    generate=generate_parallel_workflow,
)

AGENT_CONNECTION_TEMPLATES = [
    TRIAGE_TO_NEWS_TO_REVIEWER,
    TRIAGE_CONDITIONAL_ROUTING,
    PARALLEL_AGENT_PROCESSING,
]

_TEMPLATES_BY_ID: Dict[str, AgentConnectionTemplate] = {t.id: t for t in AGENT_CONNECTION_TEMPLATES}


def get_template_by_id(template_id: str) -> Optional[AgentConnectionTemplate]:
    return _TEMPLATES_BY_ID.get(template_id)
