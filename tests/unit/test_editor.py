"""Workflow editor: validated, atomic, serialized edits."""

import asyncio

import pytest

from bizflow.contracts import ActionConfig, Connection, ErrorMode, ErrorPolicy, Step
from bizflow.editor import (
    AddConnection,
    AddStep,
    RemoveConnection,
    RemoveStep,
    RenameWorkflow,
    UpdateStep,
    WorkflowEditor,
)
from bizflow.errors import (
    ConditionError,
    CycleDetectedError,
    InvalidEndpointError,
    NotFoundError,
    NotRunnableError,
    ValidationError,
)
from bizflow.lifecycle import LifecycleController
from bizflow.models import WorkflowStatus
from bizflow.persistence import InMemoryWorkflowRepository


@pytest.fixture
def editor(repo):
    return WorkflowEditor(repo)


@pytest.mark.asyncio
async def test_create_workflow_is_draft(editor, repo, lead_graph_parts):
    steps, connections = lead_graph_parts
    wf = await editor.create_workflow("owner-1", "Leads", steps=steps, connections=connections)
    assert wf.status is WorkflowStatus.DRAFT
    stored = await repo.load(wf.id)
    assert stored == wf
    assert len(stored.graph.connections) == 4


@pytest.mark.asyncio
async def test_create_workflow_rejects_invalid_graph(editor, repo):
    with pytest.raises(InvalidEndpointError):
        await editor.create_workflow(
            steps=[Step(id="T", kind="trigger")],
            connections=[Connection(source="T", target="missing")],
        )
    assert await repo.list_workflows() == []


@pytest.mark.asyncio
async def test_apply_bumps_version(editor):
    wf = await editor.create_workflow(name="Edit me")
    updated = await editor.apply(
        wf.id,
        AddStep(step=Step(id="T", kind="trigger")),
        AddStep(step=Step(id="A", kind="action")),
        AddConnection(source="T", target="A"),
        RenameWorkflow(name="Edited"),
    )
    assert updated.version == wf.version + 1
    assert updated.name == "Edited"
    assert [c.key for c in updated.graph.connections] == [("T", "A")]


@pytest.mark.asyncio
async def test_failed_batch_leaves_workflow_untouched(editor, repo):
    wf = await editor.create_workflow(
        steps=[Step(id="A", kind="action"), Step(id="B", kind="action")]
    )
    wf = await editor.add_connection(wf.id, "A", "B")

    with pytest.raises(CycleDetectedError):
        await editor.apply(
            wf.id,
            RemoveStep(step_id="A"),
            AddStep(step=Step(id="C", kind="action")),
            AddConnection(source="B", target="C"),
            AddConnection(source="C", target="B"),
        )

    stored = await repo.load(wf.id)
    assert stored == wf
    assert stored.graph.get_step("A") is not None
    assert stored.graph.get_step("C") is None


@pytest.mark.asyncio
async def test_update_step_keeps_kind(editor):
    wf = await editor.create_workflow(steps=[Step(id="A", kind="action")])
    updated = await editor.apply(
        wf.id,
        UpdateStep(
            step_id="A",
            title="Send Email",
            configuration=ActionConfig(operation="send_email", timeout=5),
        ),
    )
    step = updated.graph.require_step("A")
    assert step.title == "Send Email"
    assert step.configuration.operation == "send_email"

    with pytest.raises(ValidationError):
        await editor.apply(
            wf.id,
            UpdateStep(step_id="A", configuration={"kind": "condition", "expression": "true"}),
        )


@pytest.mark.asyncio
async def test_condition_expression_checked_on_edit(editor):
    wf = await editor.create_workflow()
    with pytest.raises(ConditionError):
        await editor.add_step(
            wf.id, Step(kind="condition", configuration={"expression": "open('x')"})
        )


@pytest.mark.asyncio
async def test_missing_workflow(editor):
    with pytest.raises(NotFoundError):
        await editor.add_step("nope", Step(kind="action"))
    with pytest.raises(NotFoundError):
        await editor.delete_workflow("nope")


@pytest.mark.asyncio
async def test_remove_connection_is_idempotent(editor):
    wf = await editor.create_workflow(
        steps=[Step(id="T", kind="trigger"), Step(id="A", kind="action")]
    )
    wf = await editor.add_connection(wf.id, "T", "A")
    once = await editor.remove_connection(wf.id, "T", "A")
    twice = await editor.apply(wf.id, RemoveConnection(source="T", target="A"))
    assert once.graph.connections == twice.graph.connections == ()


@pytest.mark.asyncio
async def test_active_workflow_edit_must_stay_runnable(editor, repo, make_workflow):
    wf = make_workflow(status=WorkflowStatus.ACTIVE)
    await repo.save(wf)

    with pytest.raises(NotRunnableError) as exc_info:
        await editor.remove_connection(wf.id, "T", "A")
    assert exc_info.value.problems
    assert (await repo.load(wf.id)) == wf

    # Removing a whole branch keeps the rest runnable
    updated = await editor.remove_step(wf.id, "B2")
    assert updated.status is WorkflowStatus.ACTIVE
    assert updated.graph.get_step("B2") is None


@pytest.mark.asyncio
async def test_concurrent_edits_are_serialized(editor, repo):
    wf = await editor.create_workflow(steps=[Step(id="T", kind="trigger")])

    async def add(i):
        step_id = f"A{i}"
        await editor.apply(
            wf.id,
            AddStep(step=Step(id=step_id, kind="action")),
            AddConnection(source="T", target=step_id),
        )

    await asyncio.gather(*(add(i) for i in range(10)))

    stored = await repo.load(wf.id)
    assert len(stored.graph.steps) == 11
    assert len(stored.graph.connections) == 10
    assert stored.version == wf.version + 10


@pytest.mark.asyncio
async def test_delete_workflow(editor, repo):
    wf = await editor.create_workflow()
    await editor.delete_workflow(wf.id)
    with pytest.raises(NotFoundError):
        await repo.load(wf.id)


class SlowRepository(InMemoryWorkflowRepository):
    """Widens the load/save window so unserialized writers overwrite each other."""

    async def load(self, workflow_id):
        workflow = await super().load(workflow_id)
        await asyncio.sleep(0.05)
        return workflow


@pytest.mark.asyncio
async def test_separate_editor_and_controller_share_locks(make_workflow):
    repo = SlowRepository()
    wf = make_workflow(status=WorkflowStatus.DRAFT)
    await repo.save(wf)

    await asyncio.gather(
        WorkflowEditor(repo).add_step(wf.id, Step(id="X", kind="action")),
        LifecycleController(WorkflowEditor(repo)).set_error_policy(
            wf.id, ErrorPolicy(mode=ErrorMode.CONTINUE)
        ),
    )

    stored = await repo.load(wf.id)
    assert stored.graph.get_step("X") is not None
    assert stored.error_policy.mode is ErrorMode.CONTINUE
    assert stored.version == wf.version + 2
