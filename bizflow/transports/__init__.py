"""Trigger transports and the factory that picks one from configuration."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import BizflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

logger = logging.getLogger(__name__)


def get_transport(
    backend: Optional[str] = None, config: Optional[BizflowConfig] = None
) -> BaseTransport:
    """Return the transport trigger events are delivered on.

    ``backend`` takes precedence over the ``BIZFLOW_TRANSPORT`` environment
    variable, which takes precedence over ``transport.backend`` in config.
    """
    config = config or load_config()
    name = (backend or os.getenv("BIZFLOW_TRANSPORT") or config.transport.backend).lower()

    if name == "inmemory":
        transport: BaseTransport = InMemoryTransport()
    elif name == "redis":
        from .redis import RedisTransport

        transport = RedisTransport.from_config(config.transport.redis)
    else:
        raise ValueError(f"Unsupported transport backend: {name}")

    logger.debug(f"Trigger events on topic '{config.transport.topic}' use the {name} transport")
    return transport


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
