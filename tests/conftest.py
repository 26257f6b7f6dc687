"""Shared fixtures: a lead-qualification graph and handlers for it."""

import pytest

from bizflow.config import BizflowConfig
from bizflow.contracts import Connection, ErrorPolicy, Step
from bizflow.graph import Graph
from bizflow.handlers import HandlerRegistry
from bizflow.models import Workflow, WorkflowStatus
from bizflow.persistence import InMemoryWorkflowRepository, set_repository


def lead_steps(expression: str = "steps['A'].score >= 50"):
    """T (form submitted) -> A (score) -> C (score check) -> B1 (true) / B2 (false)."""
    return [
        Step(id="T", kind="trigger", title="Form Submission",
             configuration={"event": "form.submitted"}),
        Step(id="A", kind="action", title="Score Lead",
             configuration={"operation": "score"}),
        Step(id="C", kind="condition", title="Qualified?",
             configuration={"expression": expression}),
        Step(id="B1", kind="action", title="Notify Sales",
             configuration={"operation": "notify_sales"}),
        Step(id="B2", kind="action", title="Nurture",
             configuration={"operation": "nurture"}),
    ]


def lead_connections():
    return [
        Connection(source="T", target="A"),
        Connection(source="A", target="C"),
        Connection(source="C", target="B1", branch=True),
        Connection(source="C", target="B2", branch=False),
    ]


def build_workflow(status=WorkflowStatus.ACTIVE, error_policy=None, **kwargs) -> Workflow:
    graph = Graph()
    for step in lead_steps():
        graph = graph.add_step(step)
    for conn in lead_connections():
        graph = graph.add_connection(conn.source, conn.target, conn.branch)
    return Workflow(
        name="Lead Qualification",
        status=status,
        graph=graph,
        error_policy=error_policy or ErrorPolicy(backoff_base=0),
        **kwargs,
    )


class Calls:
    """Records which operations ran, in order."""

    def __init__(self):
        self.operations = []


@pytest.fixture
def config():
    return BizflowConfig()


@pytest.fixture
def calls():
    return Calls()


@pytest.fixture
def registry(calls):
    registry = HandlerRegistry()

    @registry.handler("score")
    async def score(ctx):
        calls.operations.append("score")
        return {"score": ctx.trigger.get("score", 0)}

    @registry.handler("notify_sales")
    async def notify_sales(ctx):
        calls.operations.append("notify_sales")
        return {"notified": True}

    @registry.handler("nurture")
    async def nurture(ctx):
        calls.operations.append("nurture")
        return {"nurtured": True}

    return registry


@pytest.fixture
def repo():
    repo = InMemoryWorkflowRepository()
    set_repository(repo)
    yield repo
    set_repository(None)


@pytest.fixture
def make_workflow():
    return build_workflow


@pytest.fixture
def lead_graph_parts():
    return lead_steps(), lead_connections()
