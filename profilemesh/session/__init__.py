"""
Session module: cross-process session locks with heartbeat renewal.
"""

from profilemesh.session.lock import (
    Acquisition,
    LockRecord,
    LockState,
    SessionLock,
    SessionLockManager,
    lock_record_of,
)

__all__ = [
    "Acquisition",
    "LockRecord",
    "LockState",
    "SessionLock",
    "SessionLockManager",
    "lock_record_of",
]
