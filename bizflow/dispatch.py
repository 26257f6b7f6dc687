"""Trigger ingestion: match events to workflows, run them, record the runs."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .config import BizflowConfig, load_config
from .contracts import TriggerEvent
from .engine import ExecutionEngine, RunHandle
from .errors import NotFoundError, NotRunnableError, PersistenceError
from .models import Run, RunStatus, Workflow, WorkflowStatus
from .persistence import WorkflowRepository, get_repository
from .transports import BaseTransport
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

Notifier = Callable[[Workflow, Run], Awaitable[None]]


class TriggerDispatcher:
    """Service responsible for turning trigger events into recorded runs."""

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        engine: Optional[ExecutionEngine] = None,
        config: Optional[BizflowConfig] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._config = config or load_config()
        self._repository = repository or get_repository(config=self._config)
        self._engine = engine or ExecutionEngine(config=self._config)
        self._notifier = notifier

    async def candidates(self, event: TriggerEvent) -> List[Workflow]:
        """Workflows an event may be delivered to.

        Raises:
            PersistenceError: If the repository cannot be read.
        """
        try:
            if event.workflow_id:
                return [await self._repository.load(event.workflow_id)]
            return await self._repository.list_workflows(status=WorkflowStatus.ACTIVE)
        except NotFoundError:
            logger.info(f"Dropping '{event.trigger_kind}' event for unknown workflow {event.workflow_id}")
            return []
        except PersistenceError:
            raise
        except Exception as exc:
            logger.error(f"Failed to load workflows for '{event.trigger_kind}' event: {exc}")
            raise PersistenceError(f"Could not load workflows: {exc}") from exc

    async def start(self, event: TriggerEvent) -> List[tuple[Workflow, RunHandle]]:
        """Start a run for every workflow matching ``event`` without waiting."""
        started: List[tuple[Workflow, RunHandle]] = []
        for workflow in await self.candidates(event):
            try:
                handle = await self._engine.start(workflow, event)
            except NotRunnableError as exc:
                if event.workflow_id:
                    logger.info(f"Dropping '{event.trigger_kind}' event: {exc}")
                continue
            started.append((workflow, handle))
        if not started:
            logger.info(f"No active workflow matched '{event.trigger_kind}'")
        return started

    async def dispatch(self, event: TriggerEvent) -> List[Run]:
        """Run every matching workflow to completion and record the runs.

        Every run is recorded independently; one failing append does not
        prevent the others from being stored.

        Raises:
            PersistenceError: If some runs cannot be recorded after the
                configured number of attempts. ``workflow_ids`` names the
                workflows whose runs were lost.
        """
        started = await self.start(event)
        runs = await asyncio.gather(*(handle.wait() for _, handle in started))
        outcomes = await asyncio.gather(
            *(self.record(run) for run in runs), return_exceptions=True
        )

        failed: List[str] = []
        for (workflow, _), run, outcome in zip(started, runs, outcomes):
            if isinstance(outcome, PersistenceError):
                failed.append(workflow.id)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            await self._notify(workflow, run)

        if failed:
            raise PersistenceError(
                f"Could not record runs for {len(failed)} of {len(runs)} workflow(s)",
                workflow_ids=failed,
            )
        return list(runs)

    async def record(self, run: Run) -> None:
        """Append ``run`` to its workflow's history, retrying on failure."""
        attempts = self._config.persistence.retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                await self._repository.append_run(run.workflow_id, run)
                return
            except Exception as exc:
                if attempt == attempts:
                    logger.error(
                        f"Failed to record run {run.id} for workflow {run.workflow_id} "
                        f"after {attempts} attempt(s): {exc}"
                    )
                    raise PersistenceError(f"Could not record run {run.id}: {exc}") from exc
                logger.warning(
                    f"Recording run {run.id} failed (attempt {attempt}/{attempts}): {exc}"
                )
                await schedule_retry(
                    attempt,
                    base=self._config.persistence.retry_backoff_base,
                    jitter=self._config.engine.retry_jitter,
                )

    async def listen(
        self,
        transport: BaseTransport,
        topic: Optional[str] = None,
        lifespan: Optional[float] = None,
    ) -> None:
        """Consume trigger events from ``transport`` and dispatch each one.

        An event whose runs were partly recorded is redelivered only to the
        workflows that lost theirs; any other persistence failure puts the
        whole event back on the queue.
        """
        topic = topic or self._config.transport.topic
        async for raw_message, event in transport.subscribe(topic, lifespan=lifespan):
            try:
                await self.dispatch(event)
            except PersistenceError as exc:
                if exc.workflow_ids:
                    await transport.redeliver(topic, raw_message, event, exc.workflow_ids)
                else:
                    await transport.nack(raw_message, requeue=True)
                raise
            await transport.ack(raw_message)

    async def _notify(self, workflow: Workflow, run: Run) -> None:
        if self._notifier is None:
            return
        settings = workflow.notifications
        wanted = (run.status is RunStatus.COMPLETED and settings.on_completion) or (
            run.status is RunStatus.FAILED and settings.on_error
        )
        if not wanted:
            return
        try:
            await self._notifier(workflow, run)
        except Exception:
            logger.exception(f"Notifier failed for run {run.id} of workflow {workflow.id}")
