"""
In-Memory Backend: Mock Mode for Offline Development and Tests

Implements the KVBackend contract against an in-process mapping:
- Compare-and-set on integer versions
- Bounded per-key version history
- Injectable clock (drives lock staleness in tests)
- Fault injection to exercise retry classification

Values are stored JSON-encoded, so every read returns a fresh copy and
non-serializable data fails here exactly as it would against Redis.

Thread Safety:
    All operations are protected by an asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import json
from collections import Counter, OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Optional

from profilemesh.core import constants as C
from profilemesh.core.types import Err, Ok, Result, wall_clock_ms
from profilemesh.storage.protocols import FaultKind, StoreFault, VersionedValue


# =============================================================================
# VERSIONED RECORD
# =============================================================================
@dataclass
class VersionedRecord:
    """
    Internal record with version tracking.

    ``history`` keeps (version, encoded value) pairs for prior versions,
    newest last.
    """
    encoded: str
    version: int = 1
    updated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    history: "OrderedDict[int, str]" = field(default_factory=OrderedDict)


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================
class InMemoryKVBackend:
    """
    Mock-mode remote store.

    Example:
        backend = InMemoryKVBackend()
        backend.inject_fault("compare_and_set", FaultKind.TRANSIENT, times=3)
        adapter = RemoteStoreAdapter(backend)
    """

    __slots__ = (
        "_data",
        "_lock",
        "_clock",
        "_latency_ms",
        "_history_depth",
        "_faults",
        "_calls",
        "_closed",
    )

    def __init__(
        self,
        clock: Optional[Callable[[], int]] = None,
        latency_ms: float = 0.0,
        history_depth: int = C.VERSION_HISTORY,
    ) -> None:
        """
        Args:
            clock: Millisecond wall clock used as the "server" time
            latency_ms: Simulated round-trip latency per call
            history_depth: Prior versions kept per key
        """
        self._data: Dict[str, VersionedRecord] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or wall_clock_ms
        self._latency_ms = latency_ms
        self._history_depth = history_depth
        self._faults: Dict[str, Deque[FaultKind]] = {}
        self._calls: Counter[str] = Counter()
        self._closed = False

    # -------------------------------------------------------------------------
    # TEST HOOKS
    # -------------------------------------------------------------------------

    def inject_fault(self, operation: str, kind: FaultKind, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` fail with ``kind``."""
        queue = self._faults.setdefault(operation, deque())
        queue.extend([kind] * times)

    def calls(self, operation: str) -> int:
        """Number of times ``operation`` was invoked (including faulted calls)."""
        return self._calls[operation]

    def raw_record(self, key: str) -> Optional[Any]:
        """Decoded current value, bypassing the async API."""
        record = self._data.get(key)
        return None if record is None else json.loads(record.encoded)

    @property
    def latency_ms(self) -> float:
        return self._latency_ms

    @latency_ms.setter
    def latency_ms(self, value: float) -> None:
        """Change simulated latency, e.g. to make a drain time out."""
        self._latency_ms = value

    def overwrite(self, key: str, value: Any) -> int:
        """Unconditional write, as an external writer would do. Returns the new version."""
        return self._store(key, json.dumps(value))

    # -------------------------------------------------------------------------
    # INTERNALS
    # -------------------------------------------------------------------------

    async def _enter(self, operation: str) -> Optional[StoreFault]:
        self._calls[operation] += 1
        if self._latency_ms:
            await asyncio.sleep(self._latency_ms / 1000)
        if self._closed:
            return StoreFault.permanent("backend closed", operation)
        queue = self._faults.get(operation)
        if queue:
            kind = queue.popleft()
            return StoreFault(kind, f"injected {kind.name.lower()} fault", operation)
        return None

    def _store(self, key: str, encoded: str) -> int:
        now = datetime.now(timezone.utc).isoformat()
        record = self._data.get(key)
        if record is None:
            self._data[key] = VersionedRecord(encoded=encoded, version=1, updated_at=now)
            return 1

        if self._history_depth > 0:
            record.history[record.version] = record.encoded
            while len(record.history) > self._history_depth:
                record.history.popitem(last=False)
        record.encoded = encoded
        record.version += 1
        record.updated_at = now
        return record.version

    # -------------------------------------------------------------------------
    # KVBackend IMPLEMENTATION
    # -------------------------------------------------------------------------

    async def ping(self) -> Result[None, StoreFault]:
        fault = await self._enter("ping")
        return Err(fault) if fault else Ok(None)

    async def server_time_ms(self) -> Result[int, StoreFault]:
        fault = await self._enter("server_time")
        return Err(fault) if fault else Ok(int(self._clock()))

    async def read(
        self,
        key: str,
        version: Optional[int] = None,
    ) -> Result[VersionedValue, StoreFault]:
        fault = await self._enter("read")
        if fault:
            return Err(fault)

        async with self._lock:
            record = self._data.get(key)
            if record is None:
                return Err(StoreFault.not_found(f"key not found: {key}", "read"))

            if version is None or version == record.version:
                return Ok(VersionedValue(json.loads(record.encoded), record.version, record.updated_at))

            encoded = record.history.get(version)
            if encoded is None:
                return Err(StoreFault.not_found(f"version {version} not found: {key}", "read"))
            return Ok(VersionedValue(json.loads(encoded), version))

    async def compare_and_set(
        self,
        key: str,
        value: Any,
        expected_version: int,
    ) -> Result[int, StoreFault]:
        fault = await self._enter("compare_and_set")
        if fault:
            return Err(fault)

        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            return Err(StoreFault.permanent(f"value not serializable: {e}", "compare_and_set"))

        async with self._lock:
            record = self._data.get(key)
            current_version = 0 if record is None else record.version
            if current_version != expected_version:
                return Err(StoreFault.conflict(operation="compare_and_set"))
            return Ok(self._store(key, encoded))

    async def delete(self, key: str) -> Result[bool, StoreFault]:
        fault = await self._enter("delete")
        if fault:
            return Err(fault)

        async with self._lock:
            return Ok(self._data.pop(key, None) is not None)

    async def close(self) -> None:
        self._closed = True

    # -------------------------------------------------------------------------
    # INTROSPECTION
    # -------------------------------------------------------------------------

    async def count(self) -> int:
        async with self._lock:
            return len(self._data)
