"""Firing-request transports."""

from __future__ import annotations

import os
from typing import Optional

from ..config import WaypointConfig, load_config
from ..errors import ConfigurationError
from .base import BaseTransport
from .inmemory import InMemoryTransport
from .redis import RedisTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[WaypointConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, ``WAYPOINT_TRANSPORT`` or config.

    Monitors and registries of one organization must share a backend: the
    in-memory transport only works when both live in the same process.
    """
    config = config or load_config()
    name = (backend or os.getenv("WAYPOINT_TRANSPORT") or config.transport.backend).lower()

    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        settings = config.transport.redis
        return RedisTransport(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            password=settings.password,
        )
    raise ConfigurationError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "InMemoryTransport", "RedisTransport", "get_transport"]
