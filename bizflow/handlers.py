"""Step-handler contracts and the default operation registry.

The engine never knows what an action does. The hosting application supplies
handlers (an agent runner, an integration caller...) keyed by the
``operation`` of an action step's configuration.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from .contracts import ActionConfig, Step
from .errors import HandlerNotFoundError

logger = logging.getLogger(__name__)


class StepContext(BaseModel):
    """Everything a handler may read while executing one step."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    workflow_id: str
    workflow_name: str = ""
    step: Step
    attempt: int = 1
    trigger: Dict[str, Any] = Field(default_factory=dict)
    steps: Dict[str, Any] = Field(default_factory=dict)

    @property
    def parameters(self) -> Dict[str, Any]:
        config = self.step.configuration
        return dict(config.parameters) if isinstance(config, ActionConfig) else {}

    def as_namespace(self) -> Dict[str, Any]:
        """Names visible to condition predicates."""
        return {
            "trigger": self.trigger,
            "payload": self.trigger,
            "steps": self.steps,
            "workflow": {"id": self.workflow_id, "name": self.workflow_name},
            "run_id": self.run_id,
        }


class StepHandler(Protocol):
    """Async capability executing one action step.

    Returns the step output; raising marks the step failed.
    """

    def __call__(self, context: StepContext) -> Awaitable[Any]: ...


class HandlerResolver(Protocol):
    """Resolves the handler for an action step."""

    def resolve(self, step: Step) -> StepHandler: ...


class HandlerRegistry:
    """Map action operations to handlers.

    Usage::

        registry = HandlerRegistry()

        @registry.handler("send_email")
        async def send_email(ctx: StepContext) -> dict:
            ...
    """

    def __init__(self, handlers: Optional[Mapping[str, StepHandler]] = None) -> None:
        self._handlers: Dict[str, StepHandler] = dict(handlers or {})

    def register(self, operation: str, handler: StepHandler) -> None:
        if operation in self._handlers:
            logger.warning(f"Replacing handler for operation {operation}")
        self._handlers[operation] = handler

    def handler(self, operation: str) -> Callable[[StepHandler], StepHandler]:
        """Decorator form of ``register``."""

        def decorator(func: StepHandler) -> StepHandler:
            self.register(operation, func)
            return func

        return decorator

    def unregister(self, operation: str) -> None:
        self._handlers.pop(operation, None)

    def operations(self) -> list[str]:
        return sorted(self._handlers)

    def resolve(self, step: Step) -> StepHandler:
        config = step.configuration
        if not isinstance(config, ActionConfig):
            raise HandlerNotFoundError(f"Step {step.id} is not an action step")
        handler = self._handlers.get(config.operation)
        if handler is None:
            raise HandlerNotFoundError(
                f"No handler registered for operation '{config.operation}' (step {step.id})"
            )
        return handler

    def __contains__(self, operation: str) -> bool:
        return operation in self._handlers


async def noop_handler(context: StepContext) -> Dict[str, Any]:
    """Return the step parameters unchanged."""
    return context.parameters


def default_registry() -> HandlerRegistry:
    """Registry with the ``noop`` operation preinstalled."""
    return HandlerRegistry({"noop": noop_handler})


__all__ = [
    "StepContext",
    "StepHandler",
    "HandlerResolver",
    "HandlerRegistry",
    "noop_handler",
    "default_registry",
]
