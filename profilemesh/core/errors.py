"""
Error Hierarchy for profilemesh

Design Principles:
- Backends report expected faults as Result values (see storage.protocols)
- The adapter converts faults into the exceptions below
- Lock and session errors are domain-significant and always surfaced
- Every error carries a code, a correlation id and structured context

Each error type includes:
- Unique error code for programmatic handling
- Human-readable message for logging
- Optional cause for root cause analysis
- Timestamp for correlation with logs

Usage:
    try:
        profile = await store.load_profile("player_1")
    except SessionLockedError as e:
        retry_later(e.context["key"])
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from profilemesh.core.types import Timestamp


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Remote store errors
    - 2xxx: Session lock errors
    - 3xxx: Profile lifecycle errors
    - 9xxx: Internal errors
    """

    # Remote store errors (1xxx)
    STORE_TRANSIENT = 1001
    STORE_RETRY_EXHAUSTED = 1002
    STORE_BUDGET_EXHAUSTED = 1003
    STORE_NON_RETRYABLE = 1004
    STORE_MALFORMED_KEY = 1005
    STORE_VALUE_TOO_LARGE = 1006
    STORE_UNAVAILABLE = 1007
    STORE_CLOSING = 1008

    # Session lock errors (2xxx)
    SESSION_LOCKED = 2001
    SESSION_LOST = 2002

    # Profile lifecycle errors (3xxx)
    PROFILE_NOT_ACTIVE = 3001
    PROFILE_READ_ONLY = 3002
    PROFILE_LOAD_CANCELLED = 3003

    # Internal errors (9xxx)
    INTERNAL_INVALID_TRANSITION = 9001


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass(eq=False)
class ProfileMeshError(Exception):
    """
    Base class for all profilemesh errors.

    Provides:
    - Unique error ID for log correlation
    - Error code for programmatic handling
    - Timestamp of creation
    - Cause chain for root cause analysis
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[BaseException] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)
        if self.cause is not None:
            self.__cause__ = self.cause

    def to_dict(self) -> dict[str, Any]:
        """Serialize error to dictionary for structured logging."""
        return {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "timestamp_ms": self.timestamp.millis,
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# REMOTE STORE ERRORS
# =============================================================================
@dataclass(eq=False)
class TransientStoreError(ProfileMeshError):
    """
    Network or service-unavailable failure.

    Absorbed by the retry policy; only reaches callers once the attempt
    count or the request budget is exhausted.
    """

    @classmethod
    def retry_exhausted(
        cls,
        operation: str,
        key: str,
        attempts: int,
        last_error: str,
    ) -> TransientStoreError:
        return cls(
            code=ErrorCode.STORE_RETRY_EXHAUSTED,
            message=f"{operation} on '{key}' failed after {attempts} attempts: {last_error}",
            context={"operation": operation, "key": key, "attempts": attempts},
        )

    @classmethod
    def budget_exhausted(
        cls,
        operation: str,
        key: str,
        attempts: int,
    ) -> TransientStoreError:
        return cls(
            code=ErrorCode.STORE_BUDGET_EXHAUSTED,
            message=f"Request budget exhausted during {operation} on '{key}'",
            context={"operation": operation, "key": key, "attempts": attempts},
        )


@dataclass(eq=False)
class NonRetryableStoreError(ProfileMeshError):
    """Permission, quota or malformed-input failure. Never retried."""

    @classmethod
    def rejected(
        cls,
        operation: str,
        key: str,
        reason: str,
    ) -> NonRetryableStoreError:
        return cls(
            code=ErrorCode.STORE_NON_RETRYABLE,
            message=f"{operation} on '{key}' rejected by store: {reason}",
            context={"operation": operation, "key": key, "reason": reason},
        )

    @classmethod
    def malformed_key(cls, key: str, reason: str) -> NonRetryableStoreError:
        return cls(
            code=ErrorCode.STORE_MALFORMED_KEY,
            message=f"Malformed key {key!r}: {reason}",
            context={"key": key, "reason": reason},
        )

    @classmethod
    def value_too_large(
        cls,
        key: str,
        size_bytes: int,
        limit_bytes: int,
    ) -> NonRetryableStoreError:
        return cls(
            code=ErrorCode.STORE_VALUE_TOO_LARGE,
            message=f"Record '{key}' is {size_bytes}B, limit is {limit_bytes}B",
            context={"key": key, "size_bytes": size_bytes, "limit_bytes": limit_bytes},
        )


@dataclass(eq=False)
class StoreUnavailableError(ProfileMeshError):
    """Store cannot serve requests (connectivity check failed or closing)."""

    @classmethod
    def connectivity_failed(
        cls,
        store_name: str,
        reason: str,
        cause: Optional[BaseException] = None,
    ) -> StoreUnavailableError:
        return cls(
            code=ErrorCode.STORE_UNAVAILABLE,
            message=f"Store '{store_name}' failed connectivity check: {reason}",
            cause=cause,
            context={"store": store_name},
        )

    @classmethod
    def closing(cls, store_name: str) -> StoreUnavailableError:
        return cls(
            code=ErrorCode.STORE_CLOSING,
            message=f"Store '{store_name}' is shutting down",
            context={"store": store_name},
        )


# =============================================================================
# SESSION LOCK ERRORS
# =============================================================================
@dataclass(eq=False)
class SessionLockedError(ProfileMeshError):
    """
    Key is held by an active (non-stale) session.

    Not retried by the library; the caller decides whether to poll.
    """

    @classmethod
    def held_elsewhere(
        cls,
        key: str,
        holder: Optional[str],
        renewed_ms_ago: int,
    ) -> SessionLockedError:
        return cls(
            code=ErrorCode.SESSION_LOCKED,
            message=f"Profile '{key}' is locked by {holder or 'another session'} "
                    f"(renewed {renewed_ms_ago}ms ago)",
            context={"key": key, "holder": holder, "renewed_ms_ago": renewed_ms_ago},
        )

    @classmethod
    def loaded_locally(cls, key: str) -> SessionLockedError:
        return cls(
            code=ErrorCode.SESSION_LOCKED,
            message=f"Profile '{key}' is already loaded in this process",
            context={"key": key, "holder": "local"},
        )


@dataclass(eq=False)
class SessionLostError(ProfileMeshError):
    """
    Lock was taken over by another owner mid-session.

    Delivered through the session-ended notification, since it can occur
    with no caller operation pending.
    """

    @classmethod
    def taken_over(
        cls,
        key: str,
        expected_token: str,
        found_token: Optional[str],
    ) -> SessionLostError:
        return cls(
            code=ErrorCode.SESSION_LOST,
            message=f"Session lock on '{key}' was taken over",
            context={
                "key": key,
                "expected_token": expected_token,
                "found_token": found_token,
            },
        )


# =============================================================================
# PROFILE LIFECYCLE ERRORS
# =============================================================================
@dataclass(eq=False)
class ProfileNotActiveError(ProfileMeshError):
    """Operation attempted on an ended or read-only profile."""

    @classmethod
    def ended(cls, key: str, operation: str) -> ProfileNotActiveError:
        return cls(
            code=ErrorCode.PROFILE_NOT_ACTIVE,
            message=f"Cannot {operation} profile '{key}': session has ended",
            context={"key": key, "operation": operation},
        )

    @classmethod
    def read_only(cls, key: str, operation: str) -> ProfileNotActiveError:
        return cls(
            code=ErrorCode.PROFILE_READ_ONLY,
            message=f"Cannot {operation} profile '{key}': view profiles are read-only",
            context={"key": key, "operation": operation},
        )


@dataclass(eq=False)
class ProfileLoadCancelledError(ProfileMeshError):
    """Requester went away before the load settled; the session was ended."""

    @classmethod
    def requester_gone(cls, key: str) -> ProfileLoadCancelledError:
        return cls(
            code=ErrorCode.PROFILE_LOAD_CANCELLED,
            message=f"Load of '{key}' cancelled: requester is no longer valid",
            context={"key": key},
        )


# =============================================================================
# INTERNAL ERRORS
# =============================================================================
@dataclass(eq=False)
class InvalidTransitionError(ProfileMeshError):
    """Lifecycle state machine received a trigger invalid for its state."""

    @classmethod
    def no_transition(
        cls,
        key: str,
        state: str,
        trigger: str,
    ) -> InvalidTransitionError:
        return cls(
            code=ErrorCode.INTERNAL_INVALID_TRANSITION,
            message=f"No valid transition from {state} with trigger '{trigger}' for '{key}'",
            context={"key": key, "state": state, "trigger": trigger},
        )
