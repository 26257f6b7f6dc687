"""Core contracts for bizflow workflow graphs."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_BACKOFF_BASE


def new_step_id() -> str:
    """Return a fresh, collision-free step identifier."""
    return f"step-{uuid.uuid4().hex[:12]}"


class StepKind(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"


class TriggerConfig(BaseModel):
    """Names the event source a trigger step listens to."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["trigger"] = "trigger"
    event: Optional[str] = None
    filters: Dict[str, Any] = Field(default_factory=dict)

    def matches(self, trigger_kind: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Return ``True`` if an event of ``trigger_kind`` satisfies this trigger.

        A trigger without an ``event`` only fires for events addressed to its
        workflow explicitly (``trigger_kind`` of ``"manual"``).
        """
        expected = self.event or "manual"
        if expected != trigger_kind:
            return False
        payload = payload or {}
        return all(payload.get(key) == value for key, value in self.filters.items())


class ActionConfig(BaseModel):
    """Names the handler operation an action step invokes."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["action"] = "action"
    operation: str = "noop"
    parameters: Dict[str, Any] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)


class ConditionConfig(BaseModel):
    """Holds the predicate expression of a condition step."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["condition"] = "condition"
    expression: str = ""


StepConfiguration = Annotated[
    Union[TriggerConfig, ActionConfig, ConditionConfig],
    Field(discriminator="kind"),
]


class Step(BaseModel):
    """A node in a workflow graph."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_step_id)
    kind: StepKind
    title: str = ""
    description: str = ""
    configuration: StepConfiguration

    @model_validator(mode="before")
    @classmethod
    def _default_configuration(cls, data: Any) -> Any:
        # Stored documents may carry an untyped ``{}`` configuration.
        if not isinstance(data, dict):
            return data
        kind = data.get("kind")
        if isinstance(kind, StepKind):
            kind = kind.value
        config = data.get("configuration")
        if config is None:
            config = {}
        if isinstance(config, dict) and "kind" not in config and kind is not None:
            data = {**data, "configuration": {**config, "kind": kind}}
        return data

    @model_validator(mode="after")
    def _check_configuration_kind(self) -> "Step":
        if self.configuration.kind != self.kind.value:
            raise ValueError(
                f"Step {self.id} is a {self.kind.value} step but carries "
                f"{self.configuration.kind} configuration"
            )
        return self

    @property
    def is_trigger(self) -> bool:
        return self.kind is StepKind.TRIGGER


class Connection(BaseModel):
    """Directed edge between two steps of the same workflow.

    ``branch`` only matters on connections leaving a condition step: the
    edge is followed when the predicate result equals it. ``None`` on such an
    edge counts as ``True``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    branch: Optional[bool] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.source, self.target)


class TriggerMode(str, Enum):
    MANUAL = "manual"
    CONTINUOUS = "continuous"
    SCHEDULED = "scheduled"


class ErrorMode(str, Enum):
    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"


class TriggerPolicy(BaseModel):
    """How runs of a workflow get started."""

    model_config = ConfigDict(frozen=True)

    mode: TriggerMode = TriggerMode.MANUAL
    schedule: Optional[str] = None

    @model_validator(mode="after")
    def _require_schedule(self) -> "TriggerPolicy":
        if self.mode is TriggerMode.SCHEDULED and not self.schedule:
            raise ValueError("scheduled trigger policy requires a schedule")
        return self


class ErrorPolicy(BaseModel):
    """What a run does after a step fails."""

    model_config = ConfigDict(frozen=True)

    mode: ErrorMode = ErrorMode.STOP
    max_attempts: int = Field(default=DEFAULT_RETRY_ATTEMPTS, ge=1)
    retry_fallback: ErrorMode = ErrorMode.STOP
    backoff_base: float = Field(default=DEFAULT_RETRY_BACKOFF_BASE, ge=0)

    @field_validator("retry_fallback")
    @classmethod
    def _fallback_is_terminal(cls, v: ErrorMode) -> ErrorMode:
        if v is ErrorMode.RETRY:
            raise ValueError("retry_fallback must be stop or continue")
        return v

    @property
    def attempts(self) -> int:
        """Total attempts allowed per step under this policy."""
        return self.max_attempts if self.mode is ErrorMode.RETRY else 1

    @property
    def after_exhaustion(self) -> ErrorMode:
        """The stop/continue decision applied once a step has finally failed."""
        if self.mode is ErrorMode.RETRY:
            return self.retry_fallback
        return self.mode


class NotificationSettings(BaseModel):
    """Per-workflow notification switches."""

    model_config = ConfigDict(frozen=True)

    on_completion: bool = False
    on_error: bool = False


class TriggerEvent(BaseModel):
    """An event delivered by an external source."""

    model_config = ConfigDict(populate_by_name=True)

    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    trigger_kind: str = Field(alias="triggerKind")
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str) -> "TriggerEvent":
        return cls.model_validate_json(data)
