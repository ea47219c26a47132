"""
Storage Module: Remote Key-Value Backends
=========================================

Provides:
- Protocol definition for pluggable backends (KVBackend, StoreFault)
- In-memory backend for mock mode and tests
- Production Redis backend
- Factory function for backend selection

Design Principles:
-----------------
1. **Backend Agnostic**: Same contract for in-memory and Redis
2. **Factory Pattern**: Runtime backend selection via configuration
3. **Lazy Loading**: Redis client loaded only when selected
4. **Result Values**: Backends report faults, the adapter raises

The adapter lives in ``profilemesh.storage.adapter`` and is imported from
there directly.

Example:
    >>> backend = create_backend()                          # mock mode
    >>> backend = create_backend(BackendType.REDIS, RedisConfig(host="redis.prod"))
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from profilemesh.core import constants as C
from profilemesh.storage.config import BackendType, RedisConfig
from profilemesh.storage.memory import InMemoryKVBackend
from profilemesh.storage.protocols import (
    FaultKind,
    KVBackend,
    StoreFault,
    VersionedValue,
)

if TYPE_CHECKING:
    from profilemesh.storage.redis_store import RedisKVBackend


def create_backend(
    backend: BackendType = BackendType.IN_MEMORY,
    redis_config: Optional[RedisConfig] = None,
    history_depth: int = C.VERSION_HISTORY,
) -> KVBackend:
    """
    Create a remote store backend.

    Args:
        backend: Backend selection.
        redis_config: Connection settings, required for REDIS.
        history_depth: Prior versions retained per key.

    Returns:
        InMemoryKVBackend or an unconnected RedisKVBackend.
    """
    if backend == BackendType.REDIS:
        if redis_config is None:
            raise ValueError("redis_config required for BackendType.REDIS")
        from profilemesh.storage.redis_store import RedisKVBackend
        return RedisKVBackend(redis_config, history_depth=history_depth)

    return InMemoryKVBackend(history_depth=history_depth)


__all__ = [
    "BackendType",
    "FaultKind",
    "InMemoryKVBackend",
    "KVBackend",
    "RedisConfig",
    "StoreFault",
    "VersionedValue",
    "create_backend",
]
