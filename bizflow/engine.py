"""Execution engine for workflow runs."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Dict, List, Optional, Set

from pydantic import TypeAdapter
from pydantic_core import PydanticSerializationError

from . import conditions
from .config import BizflowConfig, load_config
from .contracts import (
    ActionConfig,
    ConditionConfig,
    ErrorMode,
    ErrorPolicy,
    Step,
    StepKind,
    TriggerConfig,
    TriggerEvent,
)
from .errors import NotRunnableError
from .graph import Graph
from .handlers import HandlerResolver, StepContext, StepHandler, default_registry
from .models import (
    FailureCause,
    Run,
    RunStatus,
    StepError,
    StepResult,
    StepStatus,
    Workflow,
    WorkflowStatus,
    utcnow,
)
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

_OUTPUT_ADAPTER = TypeAdapter(Any)


class _StepCancelled(Exception):
    """Raised internally when a run is cancelled while a step is in flight."""


async def _call_handler(handler: StepHandler, context: StepContext) -> Any:
    """Await ``handler``; plain callables run in a worker thread."""
    if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    ):
        return await handler(context)
    # A timed-out thread cannot be interrupted; its result is discarded.
    outcome = await asyncio.to_thread(handler, context)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


def _to_json_output(output: Any) -> Any:
    """Coerce a handler output to plain JSON data so the run record can be stored."""
    try:
        return _OUTPUT_ADAPTER.dump_python(output, mode="json")
    except PydanticSerializationError as exc:
        raise ValueError(f"Step output is not JSON-serializable: {exc}") from exc


def matching_triggers(workflow: Workflow, event: TriggerEvent) -> List[Step]:
    """Trigger steps of ``workflow`` that ``event`` satisfies."""
    matched = []
    for step in workflow.graph.triggers():
        config = step.configuration
        if isinstance(config, TriggerConfig) and config.matches(
            event.trigger_kind, event.payload
        ):
            matched.append(step)
    return matched


class _RunState:
    """Mutable bookkeeping for one in-flight run."""

    def __init__(self, run: Run, order: List[str]) -> None:
        self.run = run
        self.order = order
        self.results: Dict[str, StepResult] = {sid: StepResult(step_id=sid) for sid in order}
        self.outputs: Dict[str, Any] = {}
        self.branches: Dict[str, bool] = {}
        self.continued: Set[str] = set()

    def record(self, result: StepResult) -> None:
        self.results[result.step_id] = result

    def skip(self, step_id: str) -> None:
        self.results[step_id] = StepResult(step_id=step_id, status=StepStatus.SKIPPED)

    def snapshot(self, status: Optional[RunStatus] = None, ended: bool = False) -> Run:
        update: Dict[str, Any] = {
            "step_results": tuple(self.results[sid] for sid in self.order),
        }
        if status is not None:
            update["status"] = status
        if ended:
            update["ended_at"] = utcnow()
        self.run = self.run.model_copy(update=update)
        return self.run


class RunHandle:
    """A run executing in the background."""

    def __init__(self, state: _RunState, task: "asyncio.Task[Run]", cancel_event: asyncio.Event) -> None:
        self._state = state
        self._task = task
        self._cancel_event = cancel_event

    @property
    def run_id(self) -> str:
        return self._state.run.id

    @property
    def workflow_id(self) -> str:
        return self._state.run.workflow_id

    def status(self) -> RunStatus:
        return self._state.run.status

    def snapshot(self) -> Run:
        """Current view of the run, including pending step results."""
        if self._task.done() and not self._task.cancelled():
            return self._task.result()
        return self._state.run.model_copy(
            update={"step_results": tuple(self._state.results[s] for s in self._state.order)}
        )

    def cancel(self) -> None:
        """Request cancellation. The run finishes as ``failed``."""
        if not self._task.done():
            logger.info(f"Cancellation requested for run {self.run_id}")
            self._cancel_event.set()

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> Run:
        return await self._task


class ExecutionEngine:
    """Run workflow graphs through pluggable step handlers.

    Each run works on its own deep copy of the workflow taken at start, so
    edits and status changes made afterwards never reach it. Execution
    failures are recorded on the run and never raised to the caller.
    """

    def __init__(
        self,
        resolver: Optional[HandlerResolver] = None,
        config: Optional[BizflowConfig] = None,
        step_timeout: Optional[float] = None,
    ) -> None:
        config = config or load_config()
        self._resolver = resolver or default_registry()
        self._step_timeout = step_timeout or config.engine.step_timeout
        self._retry_jitter = config.engine.retry_jitter

    # ------------------------------------------------------------------
    # Public API
    async def start(self, workflow: Workflow, event: TriggerEvent) -> RunHandle:
        """Create a run for ``event`` and execute it in a background task.

        Raises:
            NotRunnableError: If the workflow is not active or no trigger
                step matches the event. No run is created in that case.
        """
        if workflow.status is not WorkflowStatus.ACTIVE:
            raise NotRunnableError(
                f"Workflow {workflow.id} is {workflow.status.value}; event dropped"
            )
        matched = matching_triggers(workflow, event)
        if not matched:
            raise NotRunnableError(
                f"No trigger of workflow {workflow.id} matches '{event.trigger_kind}'"
            )

        snapshot = workflow.model_copy(deep=True)
        snapshot = snapshot.model_copy(update={"graph": snapshot.graph.subgraph_reachable()})
        order = snapshot.graph.topological_order()
        run = Run(
            workflow_id=snapshot.id,
            workflow_version=snapshot.version,
            trigger=dict(event.payload),
            status=RunStatus.RUNNING,
            error_policy=snapshot.error_policy,
            trigger_policy=snapshot.trigger_policy,
            started_at=utcnow(),
        )
        state = _RunState(run, order)
        state.snapshot()
        cancel_event = asyncio.Event()
        task = asyncio.create_task(
            self._execute(snapshot, {s.id for s in matched}, state, cancel_event),
            name=f"bizflow-run-{run.id}",
        )
        logger.info(
            f"Run {run.id} started for workflow '{snapshot.name}' ({snapshot.id}) "
            f"on '{event.trigger_kind}': {len(order)} reachable step(s)"
        )
        return RunHandle(state, task, cancel_event)

    async def execute(self, workflow: Workflow, event: TriggerEvent) -> Run:
        """Run ``workflow`` for ``event`` to completion and return the run."""
        handle = await self.start(workflow, event)
        return await handle.wait()

    # ------------------------------------------------------------------
    # Run loop
    async def _execute(
        self,
        workflow: Workflow,
        matched: Set[str],
        state: _RunState,
        cancel_event: asyncio.Event,
    ) -> Run:
        graph = workflow.graph
        policy = state.run.error_policy
        aborted = False

        for step_id in state.order:
            step = graph.require_step(step_id)
            if aborted or cancel_event.is_set():
                aborted = True
                state.skip(step_id)
                continue

            if step.kind is StepKind.TRIGGER:
                if step_id in matched:
                    now = utcnow()
                    state.record(
                        StepResult(
                            step_id=step_id,
                            status=StepStatus.SUCCEEDED,
                            started_at=now,
                            ended_at=now,
                            output=dict(state.run.trigger),
                        )
                    )
                    state.outputs[step_id] = dict(state.run.trigger)
                else:
                    state.skip(step_id)
                continue

            if not self._is_live(graph, step_id, state):
                state.skip(step_id)
                continue

            state.record(
                StepResult(step_id=step_id, status=StepStatus.RUNNING, started_at=utcnow())
            )
            result = await self._run_step(workflow, step, state, policy, cancel_event)
            state.record(result)

            if result.status is StepStatus.SUCCEEDED:
                state.outputs[step_id] = result.output
                if step.kind is StepKind.CONDITION:
                    state.branches[step_id] = bool(result.output["result"])
                continue

            cause = result.error.cause if result.error else FailureCause.HANDLER_FAILURE
            if cause is FailureCause.CANCELLED:
                aborted = True
            elif policy.after_exhaustion is ErrorMode.STOP:
                logger.info(f"Run {state.run.id} stopping after failure of step {step_id}")
                aborted = True
            else:
                state.continued.add(step_id)

        status = RunStatus.FAILED if aborted else RunStatus.COMPLETED
        run = state.snapshot(status=status, ended=True)
        logger.info(
            f"Run {run.id} of workflow {run.workflow_id} {status.value} "
            f"in {run.duration:.3f}s"
        )
        return run

    def _is_live(self, graph: Graph, step_id: str, state: _RunState) -> bool:
        """A step runs when at least one inbound connection carries control."""
        for conn in graph.incoming(step_id):
            source = state.results.get(conn.source)
            if source is None:
                continue
            if conn.source in state.branches:
                wanted = True if conn.branch is None else conn.branch
                if source.status is StepStatus.SUCCEEDED and state.branches[conn.source] == wanted:
                    return True
                continue
            if source.status is StepStatus.SUCCEEDED:
                return True
            if source.status is StepStatus.FAILED and conn.source in state.continued:
                source_step = graph.get_step(conn.source)
                if source_step is not None and source_step.kind is not StepKind.CONDITION:
                    return True
        return False

    # ------------------------------------------------------------------
    # Step execution
    async def _run_step(
        self,
        workflow: Workflow,
        step: Step,
        state: _RunState,
        policy: ErrorPolicy,
        cancel_event: asyncio.Event,
    ) -> StepResult:
        started = state.results[step.id].started_at or utcnow()
        attempts = policy.attempts if step.kind is StepKind.ACTION else 1
        error: Optional[StepError] = None

        for attempt in range(1, attempts + 1):
            context = StepContext(
                run_id=state.run.id,
                workflow_id=workflow.id,
                workflow_name=workflow.name,
                step=step,
                attempt=attempt,
                trigger=dict(state.run.trigger),
                steps=dict(state.outputs),
            )
            try:
                output = await self._invoke(step, context, cancel_event)
            except _StepCancelled:
                return self._failed(step.id, started, attempt, FailureCause.CANCELLED, "Run cancelled")
            except asyncio.TimeoutError:
                error = StepError(
                    cause=FailureCause.TIMEOUT,
                    message=f"Step timed out after {self._timeout_for(step)}s",
                )
            except Exception as exc:
                error = StepError(
                    cause=FailureCause.HANDLER_FAILURE,
                    message=str(exc) or type(exc).__name__,
                )
            else:
                return StepResult(
                    step_id=step.id,
                    status=StepStatus.SUCCEEDED,
                    started_at=started,
                    ended_at=utcnow(),
                    attempts=attempt,
                    output=output,
                )

            logger.warning(
                f"Run {state.run.id} step {step.id} attempt {attempt}/{attempts} failed: "
                f"{error.cause.value}: {error.message}"
            )
            if attempt < attempts:
                delay = compute_backoff(attempt, base=policy.backoff_base, jitter=self._retry_jitter)
                if await self._wait_or_cancel(cancel_event, delay):
                    return self._failed(step.id, started, attempt, FailureCause.CANCELLED, "Run cancelled")

        return StepResult(
            step_id=step.id,
            status=StepStatus.FAILED,
            started_at=started,
            ended_at=utcnow(),
            attempts=attempts,
            error=error,
        )

    async def _invoke(
        self, step: Step, context: StepContext, cancel_event: asyncio.Event
    ) -> Any:
        config = step.configuration
        if isinstance(config, ConditionConfig):
            result = conditions.evaluate(config.expression, context.as_namespace())
            return {"result": result}

        handler = self._resolver.resolve(step)
        handler_task = asyncio.ensure_future(_call_handler(handler, context))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {handler_task, cancel_task},
                timeout=self._timeout_for(step),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            handler_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if handler_task in done:
            if handler_task.cancelled():
                raise RuntimeError("Handler was cancelled")
            return _to_json_output(handler_task.result())

        handler_task.cancel()
        await asyncio.gather(handler_task, return_exceptions=True)
        if cancel_event.is_set():
            raise _StepCancelled()
        raise asyncio.TimeoutError()

    def _timeout_for(self, step: Step) -> float:
        config = step.configuration
        if isinstance(config, ActionConfig) and config.timeout:
            return config.timeout
        return self._step_timeout

    @staticmethod
    async def _wait_or_cancel(cancel_event: asyncio.Event, delay: float) -> bool:
        """Sleep ``delay`` seconds; return ``True`` if cancelled meanwhile."""
        if cancel_event.is_set():
            return True
        if delay <= 0:
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    @staticmethod
    def _failed(
        step_id: str, started, attempts: int, cause: FailureCause, message: str
    ) -> StepResult:
        return StepResult(
            step_id=step_id,
            status=StepStatus.FAILED,
            started_at=started,
            ended_at=utcnow(),
            attempts=attempts,
            error=StepError(cause=cause, message=message),
        )
