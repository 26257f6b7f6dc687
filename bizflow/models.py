"""Workflow aggregate and run records."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .contracts import ErrorPolicy, NotificationSettings, TriggerPolicy
from .graph import Graph


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class FailureCause(str, Enum):
    HANDLER_FAILURE = "handler_failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class Workflow(BaseModel):
    """A user's workflow: metadata, graph, status and run configuration."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: Optional[str] = None
    name: str = "Untitled Workflow"
    description: str = ""
    status: WorkflowStatus = WorkflowStatus.DRAFT
    graph: Graph = Field(default_factory=Graph)
    trigger_policy: TriggerPolicy = Field(default_factory=TriggerPolicy)
    error_policy: ErrorPolicy = Field(default_factory=ErrorPolicy)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def evolve(self, **changes: Any) -> "Workflow":
        """Return a copy with ``changes`` applied, the version bumped and timestamp touched."""
        changes.setdefault("version", self.version + 1)
        changes.setdefault("updated_at", utcnow())
        return self.model_copy(update=changes)

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the stored document shape with steps and connections at top level."""
        doc = self.model_dump(mode="json", exclude={"graph"})
        doc.update(self.graph.to_document())
        return doc

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "Workflow":
        data = dict(data)
        graph = Graph.model_validate(
            {
                "steps": data.pop("steps", []) or [],
                "connections": data.pop("connections", []) or [],
            }
        )
        # Documents saved by other producers may nest the graph.
        nested = data.pop("workflow_data", None)
        if nested:
            graph = Graph.model_validate(nested)
        return cls.model_validate({**data, "graph": graph})


class StepError(BaseModel):
    """Why a step failed."""

    model_config = ConfigDict(frozen=True)

    cause: FailureCause
    message: str = ""


class StepResult(BaseModel):
    """Outcome of one step within one run."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    step_id: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    attempts: int = 0
    output: Optional[Any] = None
    error: Optional[StepError] = None


class Run(BaseModel):
    """One execution of a workflow against a trigger event."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    workflow_version: int = 1
    trigger: Dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = RunStatus.IDLE
    step_results: Tuple[StepResult, ...] = Field(default_factory=tuple)
    error_policy: ErrorPolicy = Field(default_factory=ErrorPolicy)
    trigger_policy: TriggerPolicy = Field(default_factory=TriggerPolicy)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def duration(self) -> Optional[float]:
        """Wall-clock seconds between start and end, if both are known."""
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def result_for(self, step_id: str) -> Optional[StepResult]:
        for result in self.step_results:
            if result.step_id == step_id:
                return result
        return None

    def results_by_status(self, status: StepStatus) -> List[StepResult]:
        return [r for r in self.step_results if r.status is status]

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the camelCase run record shape."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Run":
        return cls.model_validate(data)
