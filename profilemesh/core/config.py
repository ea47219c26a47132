"""
Configuration Management for profilemesh

Provides validated configuration with sensible defaults and environment
variable overrides.

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Heartbeat interval must stay well below the staleness threshold
  (stale_after_s >= 3 × heartbeat_interval_s) so scheduling jitter cannot
  make a live holder look stale
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from profilemesh.core import constants as C
from profilemesh.core.types import Err, Ok, Result
from profilemesh.reliability.budget import BudgetConfig
from profilemesh.reliability.retry import RetryPolicy
from profilemesh.storage.config import BackendType, RedisConfig


@dataclass(frozen=True)
class SessionConfig:
    """Session lock and auto-save timing."""

    heartbeat_interval_s: float = C.HEARTBEAT_INTERVAL_S
    stale_after_s: float = C.STALE_AFTER_S
    auto_save_interval_s: float = C.AUTO_SAVE_INTERVAL_S
    reconcile_on_load: bool = False

    def __post_init__(self) -> None:
        if self.heartbeat_interval_s <= 0:
            raise ValueError("heartbeat_interval_s must be > 0")
        if self.auto_save_interval_s <= 0:
            raise ValueError("auto_save_interval_s must be > 0")
        ratio = C.MIN_STALE_TO_HEARTBEAT_RATIO
        if self.stale_after_s < ratio * self.heartbeat_interval_s:
            raise ValueError(
                f"stale_after_s ({self.stale_after_s}) must be >= {ratio:g} x "
                f"heartbeat_interval_s ({self.heartbeat_interval_s})"
            )

    @property
    def stale_after_ms(self) -> int:
        return int(self.stale_after_s * C.SECOND_MS)


@dataclass(frozen=True)
class LimitsConfig:
    """Record limits enforced before any request is sent."""

    max_key_length: int = C.MAX_KEY_LENGTH
    max_value_bytes: int = C.MAX_VALUE_BYTES
    version_history: int = C.VERSION_HISTORY

    def __post_init__(self) -> None:
        if self.max_key_length <= 0:
            raise ValueError("max_key_length must be > 0")
        if self.max_value_bytes <= 0:
            raise ValueError("max_value_bytes must be > 0")
        if self.version_history < 0:
            raise ValueError("version_history must be >= 0")


@dataclass(frozen=True)
class ShutdownConfig:
    """Process-exit draining."""

    drain_timeout_s: float = C.DRAIN_TIMEOUT_S

    def __post_init__(self) -> None:
        if self.drain_timeout_s <= 0:
            raise ValueError("drain_timeout_s must be > 0")


@dataclass(frozen=True)
class ProfileMeshConfig:
    """Root configuration."""

    backend: BackendType = BackendType.IN_MEMORY
    redis: Optional[RedisConfig] = None
    session: SessionConfig = field(default_factory=SessionConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    shutdown: ShutdownConfig = field(default_factory=ShutdownConfig)

    def __post_init__(self) -> None:
        if self.backend == BackendType.REDIS and self.redis is None:
            raise ValueError("redis config required when backend=REDIS")

    @classmethod
    def for_testing(cls) -> ProfileMeshConfig:
        """Mock mode with sub-second timings."""
        return cls(
            backend=BackendType.IN_MEMORY,
            session=SessionConfig(
                heartbeat_interval_s=0.05,
                stale_after_s=0.3,
                auto_save_interval_s=0.1,
            ),
            retry=RetryPolicy.fast(),
            budget=BudgetConfig(capacity=1000, refill_per_second=1000.0),
            shutdown=ShutdownConfig(drain_timeout_s=2.0),
        )

    @classmethod
    def from_env(cls) -> Result[ProfileMeshConfig, str]:
        """
        Load configuration from environment variables.

        Variables are prefixed with PROFILEMESH_, e.g.
        PROFILEMESH_BACKEND=redis, PROFILEMESH_HEARTBEAT_INTERVAL_S=30.
        Redis connection settings come from REDIS_* (see RedisConfig).
        """
        def _get(key: str, default: str) -> str:
            return os.getenv(f"PROFILEMESH_{key}", default)

        try:
            backend_name = _get("BACKEND", "in_memory").lower()
            backend_map = {
                "in_memory": BackendType.IN_MEMORY,
                "mock": BackendType.IN_MEMORY,
                "redis": BackendType.REDIS,
            }
            if backend_name not in backend_map:
                return Err(f"Configuration error: unknown backend {backend_name!r}")
            backend = backend_map[backend_name]

            session = SessionConfig(
                heartbeat_interval_s=float(_get("HEARTBEAT_INTERVAL_S", str(C.HEARTBEAT_INTERVAL_S))),
                stale_after_s=float(_get("STALE_AFTER_S", str(C.STALE_AFTER_S))),
                auto_save_interval_s=float(_get("AUTO_SAVE_INTERVAL_S", str(C.AUTO_SAVE_INTERVAL_S))),
                reconcile_on_load=_get("RECONCILE_ON_LOAD", "false").lower() in ("true", "1", "yes"),
            )
            retry = RetryPolicy(
                max_retries=int(_get("RETRY_MAX_ATTEMPTS", str(C.RETRY_MAX_ATTEMPTS))),
                base_delay_ms=int(_get("RETRY_BASE_MS", str(C.RETRY_BASE_MS))),
            )
            shutdown = ShutdownConfig(
                drain_timeout_s=float(_get("DRAIN_TIMEOUT_S", str(C.DRAIN_TIMEOUT_S))),
            )
            redis = RedisConfig.from_env() if backend == BackendType.REDIS else None

            return Ok(cls(
                backend=backend,
                redis=redis,
                session=session,
                retry=retry,
                shutdown=shutdown,
            ))
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")
