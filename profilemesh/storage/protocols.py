"""
Storage Protocols: Remote Key-Value Service Contract
=====================================================

Defines the interface every backend (Redis, in-memory mock) implements,
and the fault classification the core relies on.

Contract:
---------
1. **Versioned reads**: every record carries a monotonically increasing
   integer version; a bounded history of prior versions is readable.
2. **Compare-and-set**: a write succeeds only if the stored version still
   equals the version the caller read (0 means "key must not exist").
3. **Faults, not exceptions**: expected failures are returned as
   ``Err(StoreFault)``; each fault carries one of four kinds:

| Kind       | Meaning                                  | Core reaction           |
|------------|------------------------------------------|-------------------------|
| TRANSIENT  | network / throttling / service busy      | backoff and retry       |
| CONFLICT   | version changed since read               | re-read, re-run updater |
| PERMANENT  | permission / malformed input / quota     | surface immediately     |
| NOT_FOUND  | no such key or version                   | empty result on reads   |
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional, Protocol, runtime_checkable

from profilemesh.core.types import Result


# =============================================================================
# FAULTS
# =============================================================================
class FaultKind(Enum):
    """Error classes the adapter must distinguish."""
    TRANSIENT = auto()
    CONFLICT = auto()
    PERMANENT = auto()
    NOT_FOUND = auto()


@dataclass(frozen=True, slots=True)
class StoreFault:
    """A classified failure reported by a backend."""
    kind: FaultKind
    message: str
    operation: str = ""

    @classmethod
    def transient(cls, message: str, operation: str = "") -> StoreFault:
        return cls(FaultKind.TRANSIENT, message, operation)

    @classmethod
    def conflict(cls, message: str = "version_mismatch", operation: str = "") -> StoreFault:
        return cls(FaultKind.CONFLICT, message, operation)

    @classmethod
    def permanent(cls, message: str, operation: str = "") -> StoreFault:
        return cls(FaultKind.PERMANENT, message, operation)

    @classmethod
    def not_found(cls, message: str = "not_found", operation: str = "") -> StoreFault:
        return cls(FaultKind.NOT_FOUND, message, operation)

    @property
    def is_retryable(self) -> bool:
        return self.kind == FaultKind.TRANSIENT

    def __str__(self) -> str:
        prefix = f"{self.operation}: " if self.operation else ""
        return f"{prefix}{self.kind.name.lower()} ({self.message})"


# =============================================================================
# RECORDS
# =============================================================================
@dataclass(frozen=True, slots=True)
class VersionedValue:
    """
    A record snapshot as returned by a backend.

    ``value`` is the decoded JSON document; callers must treat it as
    read-only and copy before mutating.
    """
    value: Any
    version: int
    updated_at: str = ""


# =============================================================================
# BACKEND PROTOCOL
# =============================================================================
@runtime_checkable
class KVBackend(Protocol):
    """
    Remote key-value service used by the adapter.

    All methods are coroutines returning ``Result[..., StoreFault]``.
    """

    async def ping(self) -> Result[None, StoreFault]:
        """Single round-trip connectivity check."""
        ...

    async def server_time_ms(self) -> Result[int, StoreFault]:
        """Service-side wall clock in milliseconds since epoch."""
        ...

    async def read(
        self,
        key: str,
        version: Optional[int] = None,
    ) -> Result[VersionedValue, StoreFault]:
        """Current record, or a historical version if ``version`` is given."""
        ...

    async def compare_and_set(
        self,
        key: str,
        value: Any,
        expected_version: int,
    ) -> Result[int, StoreFault]:
        """Write ``value`` iff the stored version equals ``expected_version``."""
        ...

    async def delete(self, key: str) -> Result[bool, StoreFault]:
        """Remove a record and its history. Ok(False) if it did not exist."""
        ...

    async def close(self) -> None:
        ...
