"""bizflow: workflow definition and execution for business automation."""

from .contracts import (
    ActionConfig,
    ConditionConfig,
    Connection,
    ErrorMode,
    ErrorPolicy,
    NotificationSettings,
    Step,
    StepKind,
    TriggerConfig,
    TriggerEvent,
    TriggerMode,
    TriggerPolicy,
)
from .dispatch import TriggerDispatcher
from .editor import WorkflowEditor
from .engine import ExecutionEngine, RunHandle
from .graph import Graph
from .handlers import HandlerRegistry, StepContext
from .lifecycle import LifecycleController
from .models import Run, RunStatus, StepResult, StepStatus, Workflow, WorkflowStatus
from .persistence import get_repository
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ActionConfig",
    "ConditionConfig",
    "Connection",
    "ErrorMode",
    "ErrorPolicy",
    "NotificationSettings",
    "Step",
    "StepKind",
    "TriggerConfig",
    "TriggerEvent",
    "TriggerMode",
    "TriggerPolicy",
    "Graph",
    "Workflow",
    "WorkflowStatus",
    "Run",
    "RunStatus",
    "StepResult",
    "StepStatus",
    "WorkflowEditor",
    "LifecycleController",
    "ExecutionEngine",
    "RunHandle",
    "HandlerRegistry",
    "StepContext",
    "TriggerDispatcher",
    "get_repository",
    "get_transport",
]
