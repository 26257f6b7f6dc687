"""Exception taxonomy for bizflow."""

from __future__ import annotations

from typing import List, Optional


class BizflowError(Exception):
    """Base class for all bizflow errors."""


class NotFoundError(BizflowError):
    """Unknown workflow, step, run or connection identifier."""


class ValidationError(BizflowError):
    """A graph edit would break a graph invariant."""


class InvalidEndpointError(ValidationError):
    """A connection references a step that does not exist."""


class SelfLoopError(ValidationError):
    """A connection would join a step to itself."""


class CycleDetectedError(ValidationError):
    """A connection would close a cycle in the step graph."""


class DuplicateStepError(ValidationError):
    """A step with the same identifier already exists."""


class NotRunnableError(BizflowError):
    """The workflow cannot be activated or run in its current state."""

    def __init__(self, message: str, problems: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.problems = list(problems or [])


class InvalidTransitionError(BizflowError):
    """A status transition that the workflow lifecycle does not allow."""


class HandlerNotFoundError(BizflowError):
    """No step handler is registered for an action operation."""


class ConditionError(ValidationError):
    """A condition predicate could not be parsed or evaluated."""


class PersistenceError(BizflowError):
    """The persistence gateway failed to record state.

    ``workflow_ids`` names the workflows whose runs were not recorded; it is
    empty when the failure happened before any run started.
    """

    def __init__(self, message: str, workflow_ids: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.workflow_ids = list(workflow_ids or [])


__all__ = [
    "BizflowError",
    "NotFoundError",
    "ValidationError",
    "InvalidEndpointError",
    "SelfLoopError",
    "CycleDetectedError",
    "DuplicateStepError",
    "NotRunnableError",
    "InvalidTransitionError",
    "HandlerNotFoundError",
    "ConditionError",
    "PersistenceError",
]
