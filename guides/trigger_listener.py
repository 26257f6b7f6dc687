"""Consume trigger events from the configured transport and run matching workflows.

Publish an event from another process with::

    transport = get_transport()
    await transport.publish("triggers", TriggerEvent(trigger_kind="email.received",
                                                     payload={"subject": "Invoice"}))
"""

import asyncio
import logging

from bizflow import (
    ExecutionEngine,
    HandlerRegistry,
    TriggerDispatcher,
    get_repository,
    get_transport,
)
from bizflow.config import load_config

registry = HandlerRegistry()


@registry.handler("send_email")
async def send_email(ctx):
    print(f"📧 {ctx.workflow_name}: replying to '{ctx.trigger.get('subject')}'")
    return {"sent": True}


async def notify(workflow, run):
    print(f"🔔 {workflow.name}: run {run.id} {run.status.value}")


async def main():
    """Listen for trigger events for one minute."""
    config = load_config()
    logging.basicConfig(level=config.log_level)

    transport = get_transport(config=config)
    await transport.connect()

    dispatcher = TriggerDispatcher(
        repository=get_repository(config=config),
        engine=ExecutionEngine(registry, config),
        config=config,
        notifier=notify,
    )
    print("👂 Waiting for trigger events...")
    try:
        await dispatcher.listen(transport, lifespan=60)
    finally:
        await transport.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
