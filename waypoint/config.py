from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_EVENT_BACKLOG,
    DEFAULT_EVENT_BACKLOG_TTL,
    DEFAULT_KEEPALIVE_INTERVAL,
    DEFAULT_NODE_TIMEOUT,
    DEFAULT_PLATFORM_MODEL,
    MAX_CHECKPOINT_BYTES,
)


class RedisConfig(BaseModel):
    """Connection settings for the Redis event bus."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class EventsConfig(BaseModel):
    """Event streaming settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    keepalive_interval: float = Field(default=DEFAULT_KEEPALIVE_INTERVAL, gt=0)
    backlog_size: int = Field(default=DEFAULT_EVENT_BACKLOG, ge=0)
    backlog_ttl: float = Field(default=DEFAULT_EVENT_BACKLOG_TTL, gt=0)


class EngineConfig(BaseModel):
    """Run-loop defaults applied when a workflow does not override them."""

    default_node_timeout: float = Field(default=DEFAULT_NODE_TIMEOUT, gt=0)
    max_checkpoint_bytes: int = Field(default=MAX_CHECKPOINT_BYTES, gt=0)
    checkpoint_mode: Literal["every_node", "boundaries"] = "every_node"
    default_model_id: Optional[str] = None
    platform_model_id: str = DEFAULT_PLATFORM_MODEL


class WaypointConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    events: EventsConfig = EventsConfig()
    database_url: Optional[str] = None
    workflows_dir: Optional[str] = None
    tools_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> WaypointConfig:
    """Load configuration from a YAML file.

    Args:
        path: Optional path to config file. Falls back to the WAYPOINT_CONFIG
            env variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("WAYPOINT_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = WaypointConfig(**data)
    else:
        config = WaypointConfig()

    env_db_url = os.getenv("WAYPOINT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_events = os.getenv("WAYPOINT_EVENT_BACKEND")
    if env_events:
        config.events.backend = env_events.lower()  # type: ignore[assignment]
    return config
