"""Build a lead-qualification workflow from templates and run it once."""

import asyncio

from bizflow import (
    ExecutionEngine,
    HandlerRegistry,
    LifecycleController,
    TriggerEvent,
    WorkflowEditor,
    get_repository,
)
from bizflow.config import load_config
from bizflow.templates import build_step

registry = HandlerRegistry()


@registry.handler("ai_analysis")
async def score_lead(ctx):
    # Stand-in for a model call; scores by company size
    employees = ctx.trigger.get("employees", 0)
    return {"score": min(100, employees // 10)}


@registry.handler("send_email")
async def send_email(ctx):
    print(f"📧 Sending '{ctx.parameters.get('template')}' to {ctx.trigger.get('email')}")
    return {"sent": True}


async def main():
    """Create, activate and execute a workflow."""
    config = load_config()
    repository = get_repository(config=config)
    editor = WorkflowEditor(repository)
    lifecycle = LifecycleController(editor)

    trigger = build_step("form_submission", title="Contact form")
    analyse = build_step("ai_analysis", title="Score lead")
    # Predicates see step outputs by step id
    qualified = build_step(
        "if_then",
        title="Qualified?",
        configuration={"expression": f"steps['{analyse.id}'].score >= 50"},
    )
    sales = build_step("send_email", configuration={"parameters": {"template": "sales-intro"}})
    nurture = build_step("send_email", configuration={"parameters": {"template": "newsletter"}})

    workflow = await editor.create_workflow(
        owner_id="demo",
        name="Lead Qualification",
        steps=[trigger, analyse, qualified, sales, nurture],
    )
    await editor.add_connection(workflow.id, trigger.id, analyse.id)
    await editor.add_connection(workflow.id, analyse.id, qualified.id)
    await editor.add_connection(workflow.id, qualified.id, sales.id, branch=True)
    await editor.add_connection(workflow.id, qualified.id, nurture.id, branch=False)

    workflow = await lifecycle.activate(workflow.id)
    print(f"✅ Workflow {workflow.name} is {workflow.status.value} (v{workflow.version})")

    engine = ExecutionEngine(registry, config)
    run = await engine.execute(
        workflow,
        TriggerEvent(
            trigger_kind="form.submitted",
            payload={"email": "ada@example.com", "employees": 800},
        ),
    )
    await repository.append_run(workflow.id, run)

    print(f"📋 Run {run.id}: {run.status.value} in {run.duration:.3f}s")
    for result in run.step_results:
        print(f"   {result.step_id}: {result.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
