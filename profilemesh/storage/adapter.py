"""
Remote Store Adapter: Transactional Updates over a KVBackend

The single place where backend faults become exceptions.

Operations:
- transactional_update(key, updater): read → updater → compare-and-set,
  re-running the updater on version conflicts
- get(key, version=None): read-only snapshot (None if absent)
- remove(key): delete record and history
- sync_clock() / now_ms(): server-clock estimate used for lock timestamps
- scoped(scope): view over one store's keyspace (``<scope>/<key>`` on the
  backend) sharing budget, retry policy and clock offset

Fault Handling:
| Fault      | Reaction                                                   |
|------------|------------------------------------------------------------|
| TRANSIENT  | backoff + retry (RetryPolicy), bounded by RequestBudget    |
| CONFLICT   | re-read and re-run updater, up to max_conflict_retries     |
| PERMANENT  | NonRetryableStoreError immediately                         |
| NOT_FOUND  | None snapshot (reads), empty draft (updates)               |

Limits (checked before any request is sent):
- Keys must be non-empty and at most max_key_length characters
- Encoded documents must not exceed max_value_bytes
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from profilemesh.core.config import LimitsConfig
from profilemesh.core.errors import (
    NonRetryableStoreError,
    StoreUnavailableError,
    TransientStoreError,
)
from profilemesh.core.types import Result, wall_clock_ms
from profilemesh.reliability.budget import RequestBudget
from profilemesh.reliability.retry import RetryPolicy, RetryStats, retry_with_backoff
from profilemesh.storage.protocols import FaultKind, KVBackend, StoreFault, VersionedValue


logger = logging.getLogger(__name__)


class _Abort:
    """Marker returned by an updater to cancel the write."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "ABORT"


ABORT: Any = _Abort()

Updater = Callable[[Optional[Any]], Any]


@dataclass(frozen=True, slots=True)
class UpdateResult:
    """
    Outcome of a transactional update.

    ``written`` is False when the updater aborted; ``value`` and ``version``
    then describe the record as it was read (None / 0 if absent).
    """
    value: Any
    version: int
    written: bool


class RemoteStoreAdapter:
    """
    Retrying, budgeted front end to a KVBackend.

    Usage:
        adapter = RemoteStoreAdapter(InMemoryKVBackend())
        result = await adapter.transactional_update(
            "player_1",
            lambda current: {**(current or {}), "coins": 10},
        )
    """

    __slots__ = (
        "_backend",
        "_retry",
        "_budget",
        "_limits",
        "_name",
        "_clock",
        "_clock_offset_ms",
        "_scope",
    )

    def __init__(
        self,
        backend: KVBackend,
        *,
        retry: Optional[RetryPolicy] = None,
        budget: Optional[RequestBudget] = None,
        limits: Optional[LimitsConfig] = None,
        name: str = "store",
        clock: Optional[Callable[[], int]] = None,
        scope: str = "",
    ) -> None:
        """
        Args:
            backend: Remote key-value service
            retry: Transient-fault retry policy
            budget: Request budget shared by all operations of this adapter
            limits: Key length and value size limits
            name: Name used in errors and logs
            clock: Local millisecond wall clock (injectable for tests)
            scope: Keyspace prefix applied to every backend key
        """
        self._backend = backend
        self._retry = retry or RetryPolicy.default()
        self._budget = budget if budget is not None else RequestBudget()
        self._limits = limits or LimitsConfig()
        self._name = name
        self._clock = clock or wall_clock_ms
        self._clock_offset_ms = 0
        self._scope = scope

    @property
    def backend(self) -> KVBackend:
        return self._backend

    @property
    def budget(self) -> RequestBudget:
        return self._budget

    @property
    def name(self) -> str:
        return self._name

    @property
    def clock_offset_ms(self) -> int:
        return self._clock_offset_ms

    @property
    def scope(self) -> str:
        return self._scope

    def scoped(self, scope: str) -> RemoteStoreAdapter:
        """Adapter for one keyspace, sharing backend, budget and clock offset."""
        view = RemoteStoreAdapter(
            self._backend,
            retry=self._retry,
            budget=self._budget,
            limits=self._limits,
            name=scope,
            clock=self._clock,
            scope=scope,
        )
        view._clock_offset_ms = self._clock_offset_ms
        return view

    def remote_key(self, key: str) -> str:
        """Backend key for ``key``."""
        return f"{self._scope}/{key}" if self._scope else key

    # -------------------------------------------------------------------------
    # VALIDATION
    # -------------------------------------------------------------------------

    def validate_key(self, key: str) -> None:
        """Raise NonRetryableStoreError for keys the store would reject."""
        if not isinstance(key, str) or not key:
            raise NonRetryableStoreError.malformed_key(str(key), "key must be a non-empty string")
        if len(key) > self._limits.max_key_length:
            raise NonRetryableStoreError.malformed_key(
                key, f"longer than {self._limits.max_key_length} characters",
            )

    def _check_size(self, key: str, value: Any) -> None:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise NonRetryableStoreError.rejected("update", key, f"value not serializable: {e}") from e
        size = len(encoded.encode("utf-8"))
        if size > self._limits.max_value_bytes:
            raise NonRetryableStoreError.value_too_large(key, size, self._limits.max_value_bytes)

    def _raise_fault(self, fault: StoreFault, operation: str, key: str) -> None:
        if fault.kind == FaultKind.TRANSIENT:
            raise TransientStoreError.retry_exhausted(operation, key, 1, str(fault))
        raise NonRetryableStoreError.rejected(operation, key, fault.message)

    async def _call(
        self,
        func: Callable[[], Any],
        operation: str,
        key: str,
        stats: Optional[RetryStats] = None,
    ) -> Result[Any, StoreFault]:
        return await retry_with_backoff(
            func,
            self._retry,
            budget=self._budget,
            operation=operation,
            key=key,
            stats=stats,
        )

    # -------------------------------------------------------------------------
    # CONNECTIVITY & CLOCK
    # -------------------------------------------------------------------------

    async def ping(self) -> None:
        """
        One connectivity round-trip, not retried.

        Raises:
            StoreUnavailableError: the backend did not answer
        """
        result = await self._backend.ping()
        if result.is_err():
            raise StoreUnavailableError.connectivity_failed(self._name, str(result.error))

    async def sync_clock(self) -> int:
        """
        Measure the offset between the backend clock and the local clock.

        One round-trip, not retried, so it doubles as a connectivity check.
        Returns the offset in milliseconds (server - local).

        Raises:
            StoreUnavailableError: the backend did not answer
        """
        before = self._clock()
        result = await self._backend.server_time_ms()
        after = self._clock()
        if result.is_err():
            raise StoreUnavailableError.connectivity_failed(self._name, str(result.error))

        self._clock_offset_ms = result.value - (before + after) // 2
        logger.debug("Store %s clock offset %dms", self._name, self._clock_offset_ms)
        return self._clock_offset_ms

    def now_ms(self) -> int:
        """Estimated server time in milliseconds."""
        return self._clock() + self._clock_offset_ms

    # -------------------------------------------------------------------------
    # OPERATIONS
    # -------------------------------------------------------------------------

    async def get(self, key: str, version: Optional[int] = None) -> Optional[VersionedValue]:
        """
        Read-only snapshot of ``key`` (or one of its retained versions).

        Returns None if the key or version does not exist.
        """
        self.validate_key(key)
        remote_key = self.remote_key(key)
        result = await self._call(lambda: self._backend.read(remote_key, version), "get", key)
        if result.is_ok():
            return result.value
        if result.error.kind == FaultKind.NOT_FOUND:
            return None
        self._raise_fault(result.error, "get", key)

    async def transactional_update(self, key: str, updater: Updater) -> UpdateResult:
        """
        Atomically transform the record at ``key``.

        ``updater`` receives a private copy of the current document (None if
        absent) and returns the new document or ``ABORT``. It may run more
        than once when another writer races this one, and exceptions it
        raises propagate without a write.

        Raises:
            NonRetryableStoreError: malformed key, oversize value, or
                permanent backend fault
            TransientStoreError: retries, conflict retries or budget exhausted
        """
        self.validate_key(key)
        remote_key = self.remote_key(key)
        stats = RetryStats()

        for conflict_attempt in range(self._retry.max_conflict_retries + 1):
            current = await self.get(key)
            expected_version = current.version if current else 0
            draft = current.value if current else None

            new_value = updater(draft)
            if new_value is ABORT:
                return UpdateResult(draft, expected_version, written=False)

            self._check_size(key, new_value)

            result = await self._call(
                lambda: self._backend.compare_and_set(remote_key, new_value, expected_version),
                "update",
                key,
                stats,
            )
            if result.is_ok():
                return UpdateResult(new_value, result.value, written=True)

            fault = result.error
            if fault.kind != FaultKind.CONFLICT:
                self._raise_fault(fault, "update", key)

            logger.debug(
                "Store %s update on %r conflicted (attempt %d), re-running updater",
                self._name, key, conflict_attempt + 1,
            )

        raise TransientStoreError.retry_exhausted(
            "update",
            key,
            stats.total_attempts,
            f"{self._retry.max_conflict_retries} conflict retries exhausted",
        )

    async def remove(self, key: str) -> bool:
        """Delete ``key`` and its history. Returns False if it did not exist."""
        self.validate_key(key)
        remote_key = self.remote_key(key)
        result = await self._call(lambda: self._backend.delete(remote_key), "remove", key)
        if result.is_err():
            self._raise_fault(result.error, "remove", key)
        return result.value

    async def close(self) -> None:
        await self._backend.close()
