"""Process configuration read from YAML with environment overrides."""

from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError


class RedisConfig(BaseModel):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Where monitors publish firing requests for the registry to consume."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Execution engine tuning.

    ``retry_*`` shape step retry backoff, ``persist_*`` the retries around
    store writes and ``concurrency_retries`` how often a transition is
    re-applied after a version conflict.
    """

    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_jitter: float = 0.1
    persist_retries: int = 3
    persist_retry_delay: float = 0.5
    concurrency_retries: int = 5
    sla_check_interval: float = 60.0
    default_step_timeout: Optional[float] = None


class TriggerSettings(BaseModel):
    schedule_tick_seconds: float = 30.0
    misfire_grace_seconds: float = 90.0
    default_poll_interval_seconds: float = 60.0
    topic_prefix: str = "waypoint.triggers"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = True


class WaypointConfig(BaseModel):
    organization_id: str = "default"
    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    triggers: TriggerSettings = TriggerSettings()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Optional[str] = None) -> WaypointConfig:
    """Load configuration from YAML.

    Args:
        path: Config file. Falls back to the WAYPOINT_CONFIG env variable,
            then 'config.yaml' in the current directory. A missing file
            gives the defaults.

    WAYPOINT_DATABASE_URL (or DATABASE_URL) replaces ``database_url`` and
    WAYPOINT_ORGANIZATION replaces ``organization_id``.
    """
    config_path = path or os.getenv("WAYPOINT_CONFIG", "config.yaml")
    data = {}
    if os.path.exists(config_path):
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Cannot parse {config_path}: {exc}") from exc
    try:
        config = WaypointConfig(**data)
    except (PydanticValidationError, TypeError) as exc:
        raise ConfigurationError(f"Invalid configuration in {config_path}: {exc}") from exc

    env_db_url = os.getenv("WAYPOINT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    organization = os.getenv("WAYPOINT_ORGANIZATION")
    if organization:
        config.organization_id = organization
    return config
