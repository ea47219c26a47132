"""
Backend Configuration

Backend selection and Redis connection settings. Frozen and validated at
construction, like the rest of ``profilemesh.core.config``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from enum import Enum, auto
from typing import Any, Dict, Optional

_TRUE = frozenset({"true", "1", "yes", "on"})
_FALSE = frozenset({"false", "0", "no", "off"})


class BackendType(Enum):
    """
    Remote store backend selection.

    IN_MEMORY is mock mode: same contract, no network, for offline tests.
    """
    IN_MEMORY = auto()
    REDIS = auto()


def _parse_env(name: str, raw: str, annotation: str) -> Any:
    if annotation == "int":
        return int(raw)
    if annotation == "bool":
        lowered = raw.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"{name} must be a boolean, got {raw!r}")
    return raw


@dataclass(frozen=True, slots=True)
class RedisConfig:
    """
    Redis/Valkey connection settings.

    Attributes:
        host: Server hostname or IP address
        port: Server port (1-65535)
        password: Optional AUTH password
        db: Logical database index (0-15)
        key_prefix: Namespace prepended to every record key
        max_connections: Connection pool size
        connect_timeout_ms: TCP connect timeout
        socket_timeout_ms: Per-command socket timeout
        ssl: Connect over TLS
    """
    host: str = "localhost"
    port: int = 6379
    password: Optional[str] = None
    db: int = 0
    key_prefix: str = "profilemesh:"
    max_connections: int = 50
    connect_timeout_ms: int = 2000
    socket_timeout_ms: int = 5000
    ssl: bool = False

    def __post_init__(self) -> None:
        if not 1 <= self.port <= 65535:
            raise ValueError(f"port must be in [1, 65535], got {self.port}")
        if not 0 <= self.db <= 15:
            raise ValueError(f"db must be in [0, 15], got {self.db}")
        for name in ("max_connections", "connect_timeout_ms", "socket_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)}")

    @classmethod
    def from_env(cls, prefix: str = "REDIS") -> RedisConfig:
        """
        Read ``<prefix>_<FIELD>`` for every field (REDIS_HOST, REDIS_PORT,
        REDIS_KEY_PREFIX, REDIS_SSL, ...). Unset or empty variables keep
        their defaults.

        Raises:
            ValueError: On unparseable values or failed validation
        """
        overrides: dict[str, Any] = {}
        for f in fields(cls):
            variable = f"{prefix}_{f.name.upper()}"
            raw = os.environ.get(variable)
            if raw:
                overrides[f.name] = _parse_env(variable, raw, str(f.type))
        return cls(**overrides)

    def get_connection_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``redis.asyncio.Redis``."""
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "db": self.db,
            "max_connections": self.max_connections,
            "socket_connect_timeout": self.connect_timeout_ms / 1000.0,
            "socket_timeout": self.socket_timeout_ms / 1000.0,
            "decode_responses": True,
            "ssl": self.ssl,
        }
        if self.password:
            kwargs["password"] = self.password
        return kwargs


__all__ = [
    "BackendType",
    "RedisConfig",
]
