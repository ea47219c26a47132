"""
profilemesh: Session-Locked Profiles over a Remote Key-Value Store

Client-side persistence layer guaranteeing exclusive, single-owner access
to remote keyed records:
- Session locks stored inside each record, renewed by heartbeat
- Profile lifecycle (LOADING → ACTIVE ⇄ SAVING → ENDED)
- Promise-based composition of every network-bound operation
- Retry with backoff under a shared request budget
- Auto-save and bounded shutdown draining

Backends: Redis/Valkey in production, in-memory for mock mode.

License: MIT
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from profilemesh.core.types import Result, Ok, Err, Timestamp
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
from profilemesh.core.config import (
    ProfileMeshConfig,
    SessionConfig,
    LimitsConfig,
    ShutdownConfig,
)
from profilemesh.core.promise import Promise, PromiseStatus, PromiseTimeoutError, Settlement
from profilemesh.core.signal import Signal, OneShotSignal

# Storage exports
from profilemesh.storage import (
    BackendType,
    RedisConfig,
    InMemoryKVBackend,
    create_backend,
)
from profilemesh.storage.adapter import ABORT, RemoteStoreAdapter, UpdateResult

# Session exports
from profilemesh.session import LockState, SessionLock, SessionLockManager

# Profile exports
from profilemesh.profile import (
    DrainReport,
    EndReason,
    Profile,
    ProfileMetaData,
    ProfileState,
    ProfileStore,
    ProfileStoreManager,
    ProfileView,
    SessionEndInfo,
)

__all__ = [
    # Version
    "__version__",
    # Core
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
    "ProfileMeshConfig",
    "SessionConfig",
    "LimitsConfig",
    "ShutdownConfig",
    "Promise",
    "PromiseStatus",
    "PromiseTimeoutError",
    "Settlement",
    "Signal",
    "OneShotSignal",
    # Storage
    "BackendType",
    "RedisConfig",
    "InMemoryKVBackend",
    "create_backend",
    "ABORT",
    "RemoteStoreAdapter",
    "UpdateResult",
    # Session
    "LockState",
    "SessionLock",
    "SessionLockManager",
    # Profile
    "DrainReport",
    "EndReason",
    "Profile",
    "ProfileMetaData",
    "ProfileState",
    "ProfileStore",
    "ProfileStoreManager",
    "ProfileView",
    "SessionEndInfo",
]
