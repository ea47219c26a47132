"""
Core module: Type definitions, error hierarchy, and async primitives.

This module provides the foundational abstractions for profilemesh:
- Result/Either values for fault reporting in the storage layer
- Error hierarchy with codes and factory constructors
- Promise (composable deferred computations) and signals

Configuration lives in ``profilemesh.core.config``.
"""

from profilemesh.core.types import (
    Result,
    Ok,
    Err,
    Timestamp,
)
from profilemesh.core.errors import (
    ErrorCode,
    ProfileMeshError,
    TransientStoreError,
    NonRetryableStoreError,
    StoreUnavailableError,
    SessionLockedError,
    SessionLostError,
    ProfileNotActiveError,
    ProfileLoadCancelledError,
    InvalidTransitionError,
)
from profilemesh.core.promise import Promise, PromiseStatus, PromiseTimeoutError, Settlement
from profilemesh.core.signal import Connection, OneShotSignal, Signal

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Timestamp",
    "ErrorCode",
    "ProfileMeshError",
    "TransientStoreError",
    "NonRetryableStoreError",
    "StoreUnavailableError",
    "SessionLockedError",
    "SessionLostError",
    "ProfileNotActiveError",
    "ProfileLoadCancelledError",
    "InvalidTransitionError",
    "Promise",
    "PromiseStatus",
    "PromiseTimeoutError",
    "Settlement",
    "Connection",
    "OneShotSignal",
    "Signal",
]
