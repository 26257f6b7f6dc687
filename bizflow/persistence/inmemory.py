"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from typing import Dict, List

from ..errors import NotFoundError
from ..models import Run, Workflow, WorkflowStatus
from .repository import WorkflowRepository, check_run_owner


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflows and runs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._runs: Dict[str, List[Run]] = {}

    # ------------------------------------------------------------------
    async def load(self, workflow_id: str) -> Workflow:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return wf

    async def save(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow

    async def delete(self, workflow_id: str) -> bool:
        self._runs.pop(workflow_id, None)
        return self._workflows.pop(workflow_id, None) is not None

    async def list_workflows(
        self, owner_id: str | None = None, status: WorkflowStatus | None = None
    ) -> list[Workflow]:
        workflows = [
            wf
            for wf in self._workflows.values()
            if (owner_id is None or wf.owner_id == owner_id)
            and (status is None or wf.status == status)
        ]
        return sorted(workflows, key=lambda wf: wf.created_at, reverse=True)

    async def append_run(self, workflow_id: str, run: Run) -> None:
        check_run_owner(workflow_id, run)
        self._runs.setdefault(workflow_id, []).append(run)

    async def list_runs(self, workflow_id: str) -> list[Run]:
        return list(reversed(self._runs.get(workflow_id, [])))

    async def get_run(self, run_id: str) -> Run | None:
        for runs in self._runs.values():
            for run in runs:
                if run.id == run_id:
                    return run
        return None
