"""Workflow status transitions and run-policy configuration."""

from __future__ import annotations

import logging
from typing import List, Optional

from .contracts import ErrorPolicy, NotificationSettings, TriggerPolicy
from .editor import WorkflowEditor
from .errors import InvalidTransitionError, NotRunnableError
from .models import Workflow, WorkflowStatus

logger = logging.getLogger(__name__)


def check_runnable(workflow: Workflow) -> List[str]:
    """Return the reasons ``workflow`` could not be activated (empty if none)."""
    return workflow.graph.activation_problems()


class LifecycleController:
    """Govern ``draft``/``active``/``inactive`` transitions.

    ``draft -> active`` requires a runnable graph. ``active <-> inactive`` and
    ``* -> draft`` are unconditional. Transitions share the editor's
    per-workflow locks so they never interleave with graph edits.

    Moving a workflow back to draft does not touch runs already in flight:
    each run executes against the snapshot it was started with.
    """

    def __init__(self, editor: Optional[WorkflowEditor] = None) -> None:
        self._editor = editor or WorkflowEditor()

    @property
    def repository(self):
        return self._editor.repository

    async def activate(self, workflow_id: str) -> Workflow:
        async with self._editor.locks.hold(workflow_id):
            workflow = await self.repository.load(workflow_id)
            if workflow.status is WorkflowStatus.ACTIVE:
                return workflow
            if workflow.status is WorkflowStatus.DRAFT:
                problems = check_runnable(workflow)
                if problems:
                    logger.info(
                        f"Activation refused for workflow {workflow_id}: {'; '.join(problems)}"
                    )
                    raise NotRunnableError(
                        f"Workflow {workflow_id} cannot be activated", problems
                    )
            return await self._transition(workflow, WorkflowStatus.ACTIVE)

    async def deactivate(self, workflow_id: str) -> Workflow:
        async with self._editor.locks.hold(workflow_id):
            workflow = await self.repository.load(workflow_id)
            if workflow.status is WorkflowStatus.INACTIVE:
                return workflow
            if workflow.status is not WorkflowStatus.ACTIVE:
                raise InvalidTransitionError(
                    f"Workflow {workflow_id} is {workflow.status.value}; only active workflows can be deactivated"
                )
            return await self._transition(workflow, WorkflowStatus.INACTIVE)

    async def revert_to_draft(self, workflow_id: str) -> Workflow:
        async with self._editor.locks.hold(workflow_id):
            workflow = await self.repository.load(workflow_id)
            if workflow.status is WorkflowStatus.DRAFT:
                return workflow
            return await self._transition(workflow, WorkflowStatus.DRAFT)

    async def set_trigger_policy(self, workflow_id: str, policy: TriggerPolicy) -> Workflow:
        return await self._configure(workflow_id, trigger_policy=policy)

    async def set_error_policy(self, workflow_id: str, policy: ErrorPolicy) -> Workflow:
        return await self._configure(workflow_id, error_policy=policy)

    async def set_notifications(
        self, workflow_id: str, settings: NotificationSettings
    ) -> Workflow:
        return await self._configure(workflow_id, notifications=settings)

    async def _configure(self, workflow_id: str, **changes) -> Workflow:
        async with self._editor.locks.hold(workflow_id):
            workflow = await self.repository.load(workflow_id)
            updated = workflow.evolve(**changes)
            await self.repository.save(updated)
        logger.info(f"Workflow {workflow_id} configuration updated: {', '.join(changes)}")
        return updated

    async def _transition(self, workflow: Workflow, status: WorkflowStatus) -> Workflow:
        updated = workflow.evolve(status=status)
        await self.repository.save(updated)
        logger.info(
            f"Workflow {workflow.id} status {workflow.status.value} -> {status.value}"
        )
        return updated
