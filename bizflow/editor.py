"""Validated, atomic edits of workflow graphs."""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict

from . import conditions
from .contracts import Connection, ConditionConfig, Step, StepConfiguration
from .errors import BizflowError, NotFoundError, NotRunnableError, ValidationError
from .graph import Graph
from .models import Workflow, WorkflowStatus
from .persistence import WorkflowRepository, get_repository

logger = logging.getLogger(__name__)


def _check_step(step: Step) -> None:
    if isinstance(step.configuration, ConditionConfig):
        conditions.validate(step.configuration.expression)


class AddStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    step: Step

    def apply(self, workflow: Workflow) -> Workflow:
        _check_step(self.step)
        return workflow.model_copy(update={"graph": workflow.graph.add_step(self.step)})


class UpdateStep(BaseModel):
    """Change a step's title, description or configuration; id and kind stay."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    configuration: Optional[StepConfiguration] = None

    def apply(self, workflow: Workflow) -> Workflow:
        current = workflow.graph.require_step(self.step_id)
        data = current.model_dump()
        if self.title is not None:
            data["title"] = self.title
        if self.description is not None:
            data["description"] = self.description
        if self.configuration is not None:
            if self.configuration.kind != current.kind.value:
                raise ValidationError(
                    f"Step {self.step_id} is a {current.kind.value} step; "
                    f"cannot apply {self.configuration.kind} configuration"
                )
            data["configuration"] = self.configuration.model_dump()
        updated = Step.model_validate(data)
        _check_step(updated)
        return workflow.model_copy(update={"graph": workflow.graph.replace_step(updated)})


class RemoveStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str

    def apply(self, workflow: Workflow) -> Workflow:
        return workflow.model_copy(update={"graph": workflow.graph.remove_step(self.step_id)})


class AddConnection(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    branch: Optional[bool] = None

    def apply(self, workflow: Workflow) -> Workflow:
        graph = workflow.graph.add_connection(self.source, self.target, self.branch)
        return workflow.model_copy(update={"graph": graph})


class RemoveConnection(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    target: str

    def apply(self, workflow: Workflow) -> Workflow:
        graph = workflow.graph.remove_connection(self.source, self.target)
        return workflow.model_copy(update={"graph": graph})


class RenameWorkflow(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    description: Optional[str] = None

    def apply(self, workflow: Workflow) -> Workflow:
        changes: Dict[str, Any] = {}
        if self.name is not None:
            changes["name"] = self.name
        if self.description is not None:
            changes["description"] = self.description
        return workflow.model_copy(update=changes)


Command = Union[AddStep, UpdateStep, RemoveStep, AddConnection, RemoveConnection, RenameWorkflow]


class WorkflowLocks:
    """One ``asyncio.Lock`` per workflow id, per event loop."""

    def __init__(self) -> None:
        self._locks: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()

    def _for_loop(self) -> Dict[str, asyncio.Lock]:
        loop = asyncio.get_running_loop()
        locks = self._locks.get(loop)
        if locks is None:
            locks = self._locks[loop] = defaultdict(asyncio.Lock)
        return locks

    @asynccontextmanager
    async def hold(self, workflow_id: str) -> AsyncIterator[None]:
        async with self._for_loop()[workflow_id]:
            yield

    def discard(self, workflow_id: str) -> None:
        locks = self._for_loop()
        lock = locks.get(workflow_id)
        if lock is not None and not lock.locked():
            del locks[workflow_id]


# Shared by every editor and lifecycle controller built without explicit locks
_default_locks = WorkflowLocks()


class WorkflowEditor:
    """Serialize and apply graph edits against stored workflows.

    Every call to ``apply`` works on a draft copy: either all commands succeed
    and the new workflow is saved, or the first failing command's error is
    raised and the stored workflow is left untouched.
    """

    def __init__(
        self,
        repository: WorkflowRepository | None = None,
        locks: WorkflowLocks | None = None,
    ) -> None:
        self.repository = repository or get_repository()
        self.locks = locks or _default_locks

    async def create_workflow(
        self,
        owner_id: Optional[str] = None,
        name: str = "Untitled Workflow",
        description: str = "",
        steps: Iterable[Step] = (),
        connections: Iterable[Connection] = (),
    ) -> Workflow:
        """Create and store a new ``draft`` workflow."""
        graph = Graph()
        for step in steps:
            _check_step(step)
            graph = graph.add_step(step)
        for conn in connections:
            graph = graph.add_connection(conn.source, conn.target, conn.branch)
        workflow = Workflow(owner_id=owner_id, name=name, description=description, graph=graph)
        await self.repository.save(workflow)
        logger.info(f"Workflow created: {workflow.name} ({workflow.id})")
        return workflow

    async def delete_workflow(self, workflow_id: str) -> None:
        async with self.locks.hold(workflow_id):
            if not await self.repository.delete(workflow_id):
                raise NotFoundError(f"Workflow {workflow_id} not found")
        self.locks.discard(workflow_id)
        logger.info(f"Workflow deleted: {workflow_id}")

    async def apply(self, workflow_id: str, *commands: Command) -> Workflow:
        """Apply ``commands`` atomically and return the saved workflow."""
        async with self.locks.hold(workflow_id):
            current = await self.repository.load(workflow_id)
            updated = self.preview(current, commands)
            if updated is current:
                return current
            updated = current.evolve(
                name=updated.name, description=updated.description, graph=updated.graph
            )
            await self.repository.save(updated)
        logger.info(
            f"Workflow {workflow_id} edited: {len(commands)} command(s), version {updated.version}"
        )
        return updated

    def preview(self, workflow: Workflow, commands: Sequence[Command]) -> Workflow:
        """Return ``workflow`` with ``commands`` applied, without storing it."""
        if not commands:
            return workflow
        draft = workflow
        try:
            for command in commands:
                draft = command.apply(draft)
            if workflow.status is WorkflowStatus.ACTIVE:
                problems = draft.graph.activation_problems()
                if problems:
                    raise NotRunnableError(
                        "Edit would leave the active workflow unrunnable", problems
                    )
        except BizflowError as exc:
            logger.info(
                f"Edit rejected for workflow {workflow.id}: {type(exc).__name__}: {exc}"
            )
            raise
        return draft

    # ------------------------------------------------------------------
    # Convenience wrappers around single commands
    async def add_step(self, workflow_id: str, step: Step) -> Workflow:
        return await self.apply(workflow_id, AddStep(step=step))

    async def remove_step(self, workflow_id: str, step_id: str) -> Workflow:
        return await self.apply(workflow_id, RemoveStep(step_id=step_id))

    async def add_connection(
        self, workflow_id: str, source: str, target: str, branch: Optional[bool] = None
    ) -> Workflow:
        return await self.apply(
            workflow_id, AddConnection(source=source, target=target, branch=branch)
        )

    async def remove_connection(self, workflow_id: str, source: str, target: str) -> Workflow:
        return await self.apply(workflow_id, RemoveConnection(source=source, target=target))


__all__ = [
    "AddStep",
    "UpdateStep",
    "RemoveStep",
    "AddConnection",
    "RemoveConnection",
    "RenameWorkflow",
    "Command",
    "WorkflowLocks",
    "WorkflowEditor",
]
