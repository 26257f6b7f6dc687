from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_PERSISTENCE_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF_BASE,
    DEFAULT_RETRY_JITTER,
    DEFAULT_STEP_TIMEOUT,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    queue_prefix: str = "bizflow"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = "triggers"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Execution engine defaults."""

    step_timeout: float = Field(default=DEFAULT_STEP_TIMEOUT, gt=0)
    retry_jitter: float = Field(default=DEFAULT_RETRY_JITTER, ge=0)


class PersistenceConfig(BaseModel):
    """Persistence gateway retry behaviour."""

    retry_attempts: int = Field(default=DEFAULT_PERSISTENCE_RETRY_ATTEMPTS, ge=1)
    retry_backoff_base: float = Field(default=DEFAULT_RETRY_BACKOFF_BASE, ge=0)


class BizflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    engine: EngineConfig = EngineConfig()
    persistence: PersistenceConfig = PersistenceConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> BizflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to BIZFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("BIZFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = BizflowConfig(**data)
    else:
        config = BizflowConfig()

    env_db_url = os.getenv("BIZFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_log_level = os.getenv("BIZFLOW_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level.upper()
    return config
