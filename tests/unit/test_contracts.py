"""Step, policy and record shapes."""

import pytest
from pydantic import ValidationError

from bizflow.contracts import (
    ActionConfig,
    Connection,
    ErrorMode,
    ErrorPolicy,
    Step,
    TriggerConfig,
    TriggerEvent,
    TriggerPolicy,
)
from bizflow.models import (
    FailureCause,
    Run,
    RunStatus,
    StepError,
    StepResult,
    StepStatus,
    Workflow,
)


def test_step_configuration_follows_kind():
    step = Step(kind="action", configuration={"operation": "send_email"})
    assert isinstance(step.configuration, ActionConfig)
    assert step.configuration.operation == "send_email"
    assert step.id.startswith("step-")


def test_step_without_configuration_gets_default():
    step = Step(kind="trigger")
    assert isinstance(step.configuration, TriggerConfig)
    assert step.is_trigger


def test_step_configuration_kind_mismatch():
    with pytest.raises(ValidationError):
        Step(kind="action", configuration={"kind": "condition", "expression": "true"})


def test_step_ids_are_unique():
    assert Step(kind="action").id != Step(kind="action").id


def test_trigger_matches_event_and_filters():
    config = TriggerConfig(event="form.submitted", filters={"form": "contact"})
    assert config.matches("form.submitted", {"form": "contact", "x": 1})
    assert not config.matches("form.submitted", {"form": "other"})
    assert not config.matches("email.received", {"form": "contact"})


def test_trigger_without_event_is_manual():
    assert TriggerConfig().matches("manual")
    assert not TriggerConfig().matches("form.submitted")


def test_connection_accepts_wire_names():
    conn = Connection.model_validate({"from": "a", "to": "b"})
    assert conn.key == ("a", "b")
    assert conn.branch is None


def test_error_policy_attempts():
    assert ErrorPolicy(mode=ErrorMode.STOP, max_attempts=5).attempts == 1
    retry = ErrorPolicy(mode=ErrorMode.RETRY, max_attempts=5, retry_fallback=ErrorMode.CONTINUE)
    assert retry.attempts == 5
    assert retry.after_exhaustion is ErrorMode.CONTINUE
    assert ErrorPolicy(mode=ErrorMode.CONTINUE).after_exhaustion is ErrorMode.CONTINUE


def test_error_policy_rejects_retry_fallback():
    with pytest.raises(ValidationError):
        ErrorPolicy(mode=ErrorMode.RETRY, retry_fallback=ErrorMode.RETRY)


def test_scheduled_trigger_policy_needs_schedule():
    with pytest.raises(ValidationError):
        TriggerPolicy(mode="scheduled")
    assert TriggerPolicy(mode="scheduled", schedule="0 9 * * *").schedule == "0 9 * * *"


def test_trigger_event_json():
    event = TriggerEvent(workflow_id="wf-1", trigger_kind="manual", payload={"a": 1})
    raw = event.to_json()
    assert '"workflowId"' in raw and '"triggerKind"' in raw
    assert TriggerEvent.from_json(raw) == event


def test_workflow_document_round_trip():
    wf = Workflow(name="Doc")
    wf = wf.model_copy(
        update={
            "graph": wf.graph.add_step(Step(id="T", kind="trigger"))
            .add_step(Step(id="A", kind="action"))
            .add_connection("T", "A")
        }
    )
    doc = wf.to_document()
    assert doc["connections"] == [{"from": "T", "to": "A"}]
    restored = Workflow.from_document(doc)
    assert restored.id == wf.id
    assert restored.graph == wf.graph


def test_workflow_document_accepts_nested_graph():
    restored = Workflow.from_document(
        {
            "name": "Nested",
            "workflow_data": {
                "steps": [{"id": "T", "kind": "trigger", "configuration": {}}],
                "connections": [],
            },
        }
    )
    assert [s.id for s in restored.graph.steps] == ["T"]


def test_evolve_bumps_version():
    wf = Workflow()
    evolved = wf.evolve(name="Renamed")
    assert evolved.version == wf.version + 1
    assert evolved.updated_at >= wf.updated_at
    assert wf.name == "Untitled Workflow"


def test_run_record_is_camel_case():
    run = Run(
        workflow_id="wf-1",
        status=RunStatus.FAILED,
        step_results=(
            StepResult(
                step_id="A",
                status=StepStatus.FAILED,
                error=StepError(cause=FailureCause.TIMEOUT, message="slow"),
            ),
        ),
    )
    record = run.to_record()
    assert record["workflowId"] == "wf-1"
    assert record["stepResults"][0]["stepId"] == "A"
    assert record["stepResults"][0]["error"]["cause"] == "timeout"
    assert Run.from_record(record) == run
    assert run.result_for("A").status is StepStatus.FAILED
    assert run.duration is None
