"""Workflow execution tests."""

import asyncio
import time
from datetime import date

import pytest

from bizflow import ExecutionEngine
from bizflow.contracts import ErrorMode, ErrorPolicy, TriggerEvent
from bizflow.errors import NotRunnableError
from bizflow.handlers import default_registry
from bizflow.models import FailureCause, RunStatus, StepStatus, WorkflowStatus
from bizflow.utils.retry import compute_backoff


def _event(**payload):
    return TriggerEvent(trigger_kind="form.submitted", payload=payload)


def _statuses(run):
    return {r.step_id: r.status for r in run.step_results}


@pytest.mark.asyncio
async def test_true_branch(registry, config, calls, make_workflow):
    engine = ExecutionEngine(registry, config)
    run = await engine.execute(make_workflow(), _event(score=80))

    assert run.status is RunStatus.COMPLETED
    assert _statuses(run) == {
        "T": StepStatus.SUCCEEDED,
        "A": StepStatus.SUCCEEDED,
        "C": StepStatus.SUCCEEDED,
        "B1": StepStatus.SUCCEEDED,
        "B2": StepStatus.SKIPPED,
    }
    assert calls.operations == ["score", "notify_sales"]
    assert run.result_for("C").output == {"result": True}
    assert run.result_for("T").output == {"score": 80}
    assert run.ended_at >= run.started_at


@pytest.mark.asyncio
async def test_false_branch(registry, config, calls, make_workflow):
    engine = ExecutionEngine(registry, config)
    run = await engine.execute(make_workflow(), _event(score=10))

    assert run.status is RunStatus.COMPLETED
    assert _statuses(run)["B1"] is StepStatus.SKIPPED
    assert _statuses(run)["B2"] is StepStatus.SUCCEEDED
    assert "notify_sales" not in calls.operations


@pytest.mark.asyncio
async def test_stop_policy_skips_everything_after_failure(registry, config, make_workflow):
    @registry.handler("score")
    async def broken(ctx):
        raise RuntimeError("scoring service down")

    engine = ExecutionEngine(registry, config)
    run = await engine.execute(make_workflow(), _event(score=80))

    assert run.status is RunStatus.FAILED
    statuses = _statuses(run)
    assert statuses["A"] is StepStatus.FAILED
    assert run.result_for("A").error.cause is FailureCause.HANDLER_FAILURE
    assert run.result_for("A").error.message == "scoring service down"
    assert statuses["C"] is statuses["B1"] is statuses["B2"] is StepStatus.SKIPPED

    order = [r.step_id for r in run.step_results]
    failed_at = order.index("A")
    assert all(r.status is StepStatus.SKIPPED for r in run.step_results[failed_at + 1:])


@pytest.mark.asyncio
async def test_continue_policy_proceeds(registry, config, calls, make_workflow):
    @registry.handler("score")
    async def broken(ctx):
        raise RuntimeError("boom")

    workflow = make_workflow(error_policy=ErrorPolicy(mode=ErrorMode.CONTINUE, backoff_base=0))
    run = await ExecutionEngine(registry, config).execute(workflow, _event(score=80))

    # The condition sees no score from A and takes the false branch
    assert run.status is RunStatus.COMPLETED
    assert _statuses(run)["A"] is StepStatus.FAILED
    assert _statuses(run)["C"] is StepStatus.SUCCEEDED
    assert _statuses(run)["B2"] is StepStatus.SUCCEEDED
    assert calls.operations == ["nurture"]


@pytest.mark.asyncio
async def test_retry_policy_recovers(registry, config, make_workflow):
    attempts = []

    @registry.handler("score")
    async def flaky(ctx):
        attempts.append(ctx.attempt)
        if ctx.attempt < 3:
            raise RuntimeError("try again")
        return {"score": 99}

    workflow = make_workflow(
        error_policy=ErrorPolicy(mode=ErrorMode.RETRY, max_attempts=3, backoff_base=0)
    )
    run = await ExecutionEngine(registry, config).execute(workflow, _event())

    assert attempts == [1, 2, 3]
    assert run.status is RunStatus.COMPLETED
    assert run.result_for("A").attempts == 3
    assert _statuses(run)["B1"] is StepStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_retry_exhaustion_applies_fallback(registry, config, make_workflow):
    @registry.handler("score")
    async def broken(ctx):
        raise RuntimeError("still down")

    stop = make_workflow(
        error_policy=ErrorPolicy(mode=ErrorMode.RETRY, max_attempts=2, backoff_base=0)
    )
    run = await ExecutionEngine(registry, config).execute(stop, _event())
    assert run.status is RunStatus.FAILED
    assert run.result_for("A").attempts == 2

    proceed = make_workflow(
        error_policy=ErrorPolicy(
            mode=ErrorMode.RETRY,
            max_attempts=2,
            retry_fallback=ErrorMode.CONTINUE,
            backoff_base=0,
        )
    )
    run = await ExecutionEngine(registry, config).execute(proceed, _event())
    assert run.status is RunStatus.COMPLETED
    assert _statuses(run)["B2"] is StepStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_step_timeout(registry, config, make_workflow):
    @registry.handler("score")
    async def slow(ctx):
        await asyncio.sleep(5)

    engine = ExecutionEngine(registry, config, step_timeout=0.05)
    run = await engine.execute(make_workflow(), _event())

    assert run.status is RunStatus.FAILED
    assert run.result_for("A").error.cause is FailureCause.TIMEOUT


@pytest.mark.asyncio
async def test_cancel_running_step(registry, config, make_workflow):
    started = asyncio.Event()

    @registry.handler("score")
    async def slow(ctx):
        started.set()
        await asyncio.sleep(5)

    engine = ExecutionEngine(registry, config)
    handle = await engine.start(make_workflow(), _event())
    await asyncio.wait_for(started.wait(), timeout=1)
    assert handle.status() is RunStatus.RUNNING
    assert handle.snapshot().result_for("A").status is StepStatus.RUNNING

    handle.cancel()
    run = await asyncio.wait_for(handle.wait(), timeout=1)

    assert run.status is RunStatus.FAILED
    assert _statuses(run)["T"] is StepStatus.SUCCEEDED
    assert run.result_for("A").error.cause is FailureCause.CANCELLED
    assert all(_statuses(run)[s] is StepStatus.SKIPPED for s in ("C", "B1", "B2"))
    assert handle.done()


@pytest.mark.asyncio
async def test_cancel_during_retry_backoff(registry, config, make_workflow):
    failed_once = asyncio.Event()

    @registry.handler("score")
    async def broken(ctx):
        failed_once.set()
        raise RuntimeError("scoring service down")

    workflow = make_workflow(
        error_policy=ErrorPolicy(mode=ErrorMode.RETRY, max_attempts=3, backoff_base=10)
    )
    handle = await ExecutionEngine(registry, config).start(workflow, _event())
    await asyncio.wait_for(failed_once.wait(), timeout=1)
    await asyncio.sleep(0.05)

    handle.cancel()
    run = await asyncio.wait_for(handle.wait(), timeout=1)

    assert run.status is RunStatus.FAILED
    assert run.result_for("A").error.cause is FailureCause.CANCELLED
    assert run.result_for("A").attempts == 1


@pytest.mark.asyncio
async def test_handler_raising_cancelled_error_fails_step(registry, config, make_workflow):
    @registry.handler("score")
    async def interrupted(ctx):
        raise asyncio.CancelledError()

    handle = await ExecutionEngine(registry, config).start(make_workflow(), _event())
    run = await asyncio.wait_for(handle.wait(), timeout=1)

    assert run.status is RunStatus.FAILED
    assert run.result_for("A").error.cause is FailureCause.HANDLER_FAILURE
    assert _statuses(run)["C"] is StepStatus.SKIPPED


@pytest.mark.asyncio
async def test_results_limited_to_reachable_steps(registry, config, make_workflow):
    from bizflow.contracts import Step

    workflow = make_workflow()
    workflow = workflow.model_copy(
        update={"graph": workflow.graph.add_step(Step(id="X", kind="action"))}
    )
    run = await ExecutionEngine(registry, config).execute(workflow, _event(score=80))
    ids = {r.step_id for r in run.step_results}
    assert ids == set(workflow.graph.reachable_from_triggers())
    assert "X" not in ids


@pytest.mark.asyncio
async def test_draft_workflow_refused(registry, config, make_workflow):
    engine = ExecutionEngine(registry, config)
    with pytest.raises(NotRunnableError):
        await engine.execute(make_workflow(status=WorkflowStatus.DRAFT), _event())


@pytest.mark.asyncio
async def test_unmatched_event_refused(registry, config, make_workflow):
    engine = ExecutionEngine(registry, config)
    with pytest.raises(NotRunnableError):
        await engine.execute(make_workflow(), TriggerEvent(trigger_kind="email.received"))


@pytest.mark.asyncio
async def test_missing_handler_fails_step(config, make_workflow):
    run = await ExecutionEngine(default_registry(), config).execute(make_workflow(), _event())
    assert run.status is RunStatus.FAILED
    assert run.result_for("A").error.cause is FailureCause.HANDLER_FAILURE
    assert "score" in run.result_for("A").error.message


@pytest.mark.asyncio
async def test_run_uses_snapshot(registry, config, make_workflow):
    release = asyncio.Event()

    @registry.handler("score")
    async def gated(ctx):
        await release.wait()
        return {"score": 80}

    workflow = make_workflow()
    engine = ExecutionEngine(registry, config)
    handle = await engine.start(workflow, _event())

    # Later edits of the caller's copy do not reach the running run
    edited = workflow.model_copy(update={"graph": workflow.graph.remove_step("B1")})
    assert edited.graph.get_step("B1") is None
    release.set()
    run = await handle.wait()
    assert _statuses(run)["B1"] is StepStatus.SUCCEEDED
    assert run.workflow_version == workflow.version


@pytest.mark.asyncio
async def test_concurrent_runs_are_independent(registry, config, make_workflow):
    workflow = make_workflow()
    engine = ExecutionEngine(registry, config)
    high, low = await asyncio.gather(
        engine.execute(workflow, _event(score=90)),
        engine.execute(workflow, _event(score=5)),
    )
    assert high.id != low.id
    assert _statuses(high)["B1"] is StepStatus.SUCCEEDED
    assert _statuses(low)["B2"] is StepStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_sync_handler_supported(registry, config, make_workflow):
    registry.register("score", lambda ctx: {"score": 51})
    run = await ExecutionEngine(registry, config).execute(make_workflow(), _event())
    assert _statuses(run)["B1"] is StepStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_blocking_sync_handler_times_out(registry, config, make_workflow):
    def blocking(ctx):
        time.sleep(0.3)
        return {"score": 90}

    registry.register("score", blocking)
    engine = ExecutionEngine(registry, config, step_timeout=0.05)
    run = await asyncio.wait_for(engine.execute(make_workflow(), _event()), timeout=1)

    assert run.status is RunStatus.FAILED
    assert run.result_for("A").error.cause is FailureCause.TIMEOUT


@pytest.mark.asyncio
async def test_unserializable_output_fails_step(registry, config, make_workflow):
    @registry.handler("score")
    async def leaky(ctx):
        return {"score": 80, "client": object()}

    run = await ExecutionEngine(registry, config).execute(make_workflow(), _event())

    assert run.status is RunStatus.FAILED
    error = run.result_for("A").error
    assert error.cause is FailureCause.HANDLER_FAILURE
    assert "not JSON-serializable" in error.message


@pytest.mark.asyncio
async def test_outputs_are_stored_as_json_data(registry, config, make_workflow):
    @registry.handler("score")
    async def rich(ctx):
        return {"score": 80, "tags": ("hot", "b2b"), "seen": date(2026, 3, 1)}

    run = await ExecutionEngine(registry, config).execute(make_workflow(), _event())

    assert run.status is RunStatus.COMPLETED
    assert run.result_for("A").output == {
        "score": 80,
        "tags": ["hot", "b2b"],
        "seen": "2026-03-01",
    }


def test_compute_backoff_growth():
    first = compute_backoff(1, base=2, jitter=0)
    second = compute_backoff(2, base=2, jitter=0)
    assert second > first
    assert compute_backoff(3, base=0, jitter=1) == 0
