"""
Core Type Definitions for profilemesh

Result values for fault reporting in the storage layer and the
millisecond wall clock that lock records are written in.

Design Principles:
- Backends never raise for expected faults (they return Err)
- The adapter is the single place where Err values become exceptions
- Timestamps are plain integers on the wire (milliseconds since epoch)
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar, Union

T = TypeVar("T")  # Success type
E = TypeVar("E")  # Fault type


# =============================================================================
# RESULT
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful backend call."""

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        return self.value

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Failed backend call carrying its fault."""

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """
        Raises:
            RuntimeError: Always; unwrapping a fault is a programming error
        """
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Union[Ok[T], Err[E]]


# =============================================================================
# TIME
# =============================================================================
def wall_clock_ms() -> int:
    """Local wall clock in milliseconds since epoch."""
    return time.time_ns() // 1_000_000


@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """Millisecond instant, used to stamp errors for log correlation."""

    millis: int

    @classmethod
    def now(cls) -> Timestamp:
        return cls(millis=wall_clock_ms())

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.millis

    def __repr__(self) -> str:
        return f"Timestamp({self.millis}ms)"
