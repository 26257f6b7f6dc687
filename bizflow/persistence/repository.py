"""Repository abstraction for workflow and run persistence."""

from __future__ import annotations

from typing import Protocol

from ..models import Run, Workflow, WorkflowStatus


class WorkflowRepository(Protocol):
    """Protocol for workflow persistence backends."""

    async def load(self, workflow_id: str) -> Workflow:
        """Return the stored workflow or raise ``NotFoundError``."""

    async def save(self, workflow: Workflow) -> None:
        """Create or replace a workflow document."""

    async def delete(self, workflow_id: str) -> bool:
        """Delete a workflow and its run history. Return ``False`` if absent."""

    async def list_workflows(
        self, owner_id: str | None = None, status: WorkflowStatus | None = None
    ) -> list[Workflow]:
        """Return workflows, newest first, optionally filtered."""

    async def append_run(self, workflow_id: str, run: Run) -> None:
        """Record a finished run."""

    async def list_runs(self, workflow_id: str) -> list[Run]:
        """Return the run history of a workflow, newest first."""

    async def get_run(self, run_id: str) -> Run | None:
        """Retrieve a run record by id."""


def check_run_owner(workflow_id: str, run: Run) -> None:
    if run.workflow_id != workflow_id:
        raise ValueError(
            f"Run {run.id} belongs to workflow {run.workflow_id}, not {workflow_id}"
        )
