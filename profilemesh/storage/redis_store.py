"""
Redis Profile Record Store
==========================

Redis/Valkey implementation of the KVBackend contract.

Memory Model:
-------------
Each record is a Redis Hash with fields:
- 'd': JSON document
- 'v': version (integer, monotonic, starts at 1)
- 'u': updated_at (ISO timestamp)

Prior versions live in a sibling hash ``<key>:history`` mapping
version → JSON, trimmed to the configured depth inside the same Lua call.
Both keys share a hash tag so they map to one cluster slot.

Atomicity:
----------
Compare-and-set runs as a Lua script: the version check, history append
and write happen in one server-side step, without WATCH/MULTI.

Fault Classification:
---------------------
| redis-py exception                          | FaultKind |
|---------------------------------------------|-----------|
| AuthenticationError, AuthorizationError     | PERMANENT |
| NoPermissionError, DataError                | PERMANENT |
| ResponseError "version_mismatch"            | CONFLICT  |
| TryAgain, ReadOnly, ClusterDown, MasterDown | TRANSIENT |
| ResponseError with LOADING/BUSY prefix      | TRANSIENT |
| ConnectionError, TimeoutError, BusyLoading  | TRANSIENT |
| other ResponseError / RedisError            | PERMANENT |
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import exceptions as redis_errors

from profilemesh.core import constants as C
from profilemesh.core.types import Err, Ok, Result
from profilemesh.storage.config import RedisConfig
from profilemesh.storage.protocols import FaultKind, StoreFault, VersionedValue

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

CONFLICT_REPLY: str = "version_mismatch"

TRANSIENT_REPLY_PREFIXES: tuple[str, ...] = (
    "LOADING", "BUSY", "TRYAGAIN", "READONLY", "CLUSTERDOWN", "MASTERDOWN",
)

# Lua script for atomic CAS with bounded history
LUA_CAS_SCRIPT: str = """
local key = KEYS[1]
local history_key = KEYS[2]
local expected_version = tonumber(ARGV[1])
local new_value = ARGV[2]
local updated_at = ARGV[3]
local history_depth = tonumber(ARGV[4])

local current = redis.call('HMGET', key, 'd', 'v')
local curr_version = tonumber(current[2]) or 0
if curr_version ~= expected_version then
    return redis.error_reply('version_mismatch')
end

if curr_version > 0 and history_depth > 0 then
    redis.call('HSET', history_key, curr_version, current[1])
    local expired = curr_version - history_depth
    if expired > 0 then
        redis.call('HDEL', history_key, expired)
    end
end

local new_version = curr_version + 1
redis.call('HSET', key, 'd', new_value, 'v', new_version, 'u', updated_at)
return new_version
"""


# =============================================================================
# FAULT CLASSIFICATION
# =============================================================================

def classify_redis_error(error: BaseException, operation: str) -> StoreFault:
    """Map a redis-py exception onto the store fault taxonomy."""
    message = str(error)

    # AuthenticationError/AuthorizationError subclass ConnectionError
    if isinstance(error, (
        redis_errors.AuthenticationError,
        redis_errors.AuthorizationError,
        redis_errors.NoPermissionError,
        redis_errors.DataError,
    )):
        return StoreFault.permanent(message, operation)

    # redis-py strips the reply code from these, so match on class
    if isinstance(error, (
        redis_errors.TryAgainError,
        redis_errors.ReadOnlyError,
        redis_errors.ClusterDownError,
    )):
        return StoreFault.transient(message or type(error).__name__, operation)

    if isinstance(error, redis_errors.ResponseError):
        if CONFLICT_REPLY in message:
            return StoreFault.conflict(operation=operation)
        if message.upper().startswith(TRANSIENT_REPLY_PREFIXES):
            return StoreFault.transient(message, operation)
        return StoreFault.permanent(message, operation)

    if isinstance(error, (
        redis_errors.ConnectionError,
        redis_errors.TimeoutError,
        redis_errors.BusyLoadingError,
        asyncio.TimeoutError,
        OSError,
    )):
        return StoreFault.transient(message or type(error).__name__, operation)

    return StoreFault.permanent(message or type(error).__name__, operation)


# =============================================================================
# METRICS
# =============================================================================

@dataclass(slots=True)
class RedisMetrics:
    """Counters for Redis operations (atomic in single-threaded asyncio)."""
    read_count: int = 0
    write_count: int = 0
    delete_count: int = 0
    read_latency_sum_ns: int = 0
    write_latency_sum_ns: int = 0
    transient_errors: int = 0
    cas_conflicts: int = 0

    def get_avg_read_latency_ms(self) -> float:
        if self.read_count == 0:
            return 0.0
        return (self.read_latency_sum_ns / self.read_count) / 1_000_000

    def get_avg_write_latency_ms(self) -> float:
        if self.write_count == 0:
            return 0.0
        return (self.write_latency_sum_ns / self.write_count) / 1_000_000


# =============================================================================
# REDIS BACKEND
# =============================================================================

class RedisKVBackend:
    """
    Production Redis/Valkey backend.

    Example:
        >>> backend = RedisKVBackend(RedisConfig(host="redis.example.com"))
        >>> await backend.connect()
        >>> result = await backend.read("player_1")
        >>> await backend.close()
    """

    __slots__ = (
        "_config",
        "_client",
        "_cas_script",
        "_history_depth",
        "_metrics",
    )

    def __init__(
        self,
        config: RedisConfig,
        client: Optional[aioredis.Redis] = None,
        history_depth: int = C.VERSION_HISTORY,
    ) -> None:
        """
        Args:
            config: Redis connection configuration.
            client: Pre-built client (connection pooling shared with caller).
            history_depth: Prior versions kept per key.
        """
        self._config = config
        self._client = client
        self._cas_script: Any = None
        self._history_depth = history_depth
        self._metrics = RedisMetrics()
        if client is not None:
            self._cas_script = client.register_script(LUA_CAS_SCRIPT)

    # -------------------------------------------------------------------------
    # CONNECTION MANAGEMENT
    # -------------------------------------------------------------------------

    async def connect(self) -> Result[None, StoreFault]:
        """
        Create the client and verify it with PING.

        Safe to call more than once. Other operations connect on first use,
        so calling this is optional.
        """
        return await self.ping()

    async def close(self) -> None:
        """Close the connection pool. Safe to call multiple times."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _record_key(self, key: str) -> str:
        return f"{self._config.key_prefix}{{{key}}}"

    def _history_key(self, key: str) -> str:
        return f"{self._config.key_prefix}{{{key}}}:history"

    def _fail(self, error: BaseException, operation: str) -> Err[StoreFault]:
        fault = classify_redis_error(error, operation)
        if fault.is_retryable:
            self._metrics.transient_errors += 1
        logger.debug("Redis %s failed: %s", operation, fault)
        return Err(fault)

    def _require_client(self, operation: str) -> Optional[Err[StoreFault]]:
        """Create the client on first use; the pool connects lazily."""
        if self._client is None:
            try:
                self._client = aioredis.Redis(**self._config.get_connection_kwargs())
            except redis_errors.RedisError as e:
                return self._fail(e, operation)
            self._cas_script = self._client.register_script(LUA_CAS_SCRIPT)
        return None

    # -------------------------------------------------------------------------
    # KVBackend IMPLEMENTATION
    # -------------------------------------------------------------------------

    async def ping(self) -> Result[None, StoreFault]:
        missing = self._require_client("ping")
        if missing:
            return missing
        try:
            await self._client.ping()
            return Ok(None)
        except Exception as e:
            return self._fail(e, "ping")

    async def server_time_ms(self) -> Result[int, StoreFault]:
        """Server wall clock via TIME, in milliseconds."""
        missing = self._require_client("server_time")
        if missing:
            return missing
        try:
            seconds, micros = await self._client.time()
            return Ok(int(seconds) * 1000 + int(micros) // 1000)
        except Exception as e:
            return self._fail(e, "server_time")

    async def read(
        self,
        key: str,
        version: Optional[int] = None,
    ) -> Result[VersionedValue, StoreFault]:
        missing = self._require_client("read")
        if missing:
            return missing

        start_ns = time.perf_counter_ns()
        try:
            fields = await self._client.hgetall(self._record_key(key))
            if not fields:
                return Err(StoreFault.not_found(f"key not found: {key}", "read"))

            current_version = int(fields.get("v", "0"))
            if version is None or version == current_version:
                encoded = fields.get("d", "null")
                result_version = current_version
                updated_at = fields.get("u", "")
            else:
                encoded = await self._client.hget(self._history_key(key), str(version))
                if encoded is None:
                    return Err(StoreFault.not_found(f"version {version} not found: {key}", "read"))
                result_version = version
                updated_at = ""

            self._metrics.read_count += 1
            self._metrics.read_latency_sum_ns += time.perf_counter_ns() - start_ns
            return Ok(VersionedValue(json.loads(encoded), result_version, updated_at))

        except json.JSONDecodeError as e:
            return Err(StoreFault.permanent(f"corrupt record: {e}", "read"))
        except Exception as e:
            return self._fail(e, "read")

    async def compare_and_set(
        self,
        key: str,
        value: Any,
        expected_version: int,
    ) -> Result[int, StoreFault]:
        missing = self._require_client("compare_and_set")
        if missing:
            return missing

        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            return Err(StoreFault.permanent(f"value not serializable: {e}", "compare_and_set"))

        start_ns = time.perf_counter_ns()
        try:
            new_version = await self._cas_script(
                keys=[self._record_key(key), self._history_key(key)],
                args=[
                    expected_version,
                    encoded,
                    datetime.now(timezone.utc).isoformat(),
                    self._history_depth,
                ],
            )
            self._metrics.write_count += 1
            self._metrics.write_latency_sum_ns += time.perf_counter_ns() - start_ns
            return Ok(int(new_version))
        except Exception as e:
            fault = classify_redis_error(e, "compare_and_set")
            if fault.kind == FaultKind.CONFLICT:
                self._metrics.cas_conflicts += 1
                return Err(fault)
            return self._fail(e, "compare_and_set")

    async def delete(self, key: str) -> Result[bool, StoreFault]:
        missing = self._require_client("delete")
        if missing:
            return missing
        try:
            deleted = await self._client.delete(self._record_key(key), self._history_key(key))
            self._metrics.delete_count += 1
            return Ok(deleted > 0)
        except Exception as e:
            return self._fail(e, "delete")

    @property
    def metrics(self) -> RedisMetrics:
        return self._metrics
