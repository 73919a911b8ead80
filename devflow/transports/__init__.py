"""Signal transports and the configured-backend factory."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import DevflowConfig, TransportConfig, load_config
from .base import BaseTransport, signal_topic
from .inmemory import InMemoryTransport

logger = logging.getLogger(__name__)


def _redis_transport(settings: TransportConfig) -> BaseTransport:
    from .redis import RedisTransport

    redis_conf = settings.redis
    return RedisTransport(
        host=redis_conf.host,
        port=redis_conf.port,
        db=redis_conf.db,
        password=redis_conf.password,
        namespace=redis_conf.namespace,
    )


def _inmemory_transport(settings: TransportConfig) -> BaseTransport:
    return InMemoryTransport(poll_interval=settings.poll_interval)


_BUILDERS = {
    "inmemory": _inmemory_transport,
    "redis": _redis_transport,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[DevflowConfig] = None
) -> BaseTransport:
    """Build the signal transport named by ``backend``.

    Falls back to ``DEVFLOW_TRANSPORT`` and then to the configured backend.
    Run signals only reach other processes through a shared backend such as
    Redis; the in-memory transport is local to one process.
    """
    settings = (config or load_config()).transport
    name = (backend or os.getenv("DEVFLOW_TRANSPORT") or settings.backend).lower()
    try:
        builder = _BUILDERS[name]
    except KeyError:
        raise ValueError(f"Unsupported transport backend: {name}") from None
    logger.debug(f"Using {name} transport")
    return builder(settings)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport", "signal_topic"]
