"""Transport contract for delivering trigger events to the dispatcher."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Iterable, Optional, Tuple, TypeVar

from ..contracts import TriggerEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Carries ``TriggerEvent``s published on a topic to a consumer.

    Every delivered message is settled exactly once: ``ack`` when the event
    was fully handled, ``nack`` when it must be delivered again as is, or
    ``redeliver`` when only some of the workflows it reached still need it.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, event: TriggerEvent) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, TriggerEvent]]:
        """Yield ``(raw_message, event)`` pairs from ``topic``.

        ``lifespan`` bounds how long, in seconds, the subscription stays open;
        ``None`` keeps it open until the consumer stops iterating.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject ``raw_message``; with ``requeue`` it is delivered again first."""
        raise NotImplementedError

    async def redeliver(
        self,
        topic: str,
        raw_message: RawMessageT,
        event: TriggerEvent,
        workflow_ids: Iterable[str],
    ) -> None:
        """Settle ``raw_message`` and publish one copy of ``event`` per workflow.

        Each copy is addressed to its workflow, so workflows that already
        handled the event never see it again.
        """
        for workflow_id in workflow_ids:
            await self.publish(topic, event.model_copy(update={"workflow_id": workflow_id}))
        await self.ack(raw_message)
