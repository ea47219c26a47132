"""
Session Lock: Cross-Process Exclusive Ownership of a Record

The lock lives inside the record document itself
(``MetaData.ActiveSession``), so every ownership change rides on the same
compare-and-set as the data it protects.

Protocol:
    1. Acquire: read record; if no lock, or the lock is stale
       (now - renewed_at >= stale_after), write a fresh owner token and
       timestamp; otherwise reject with SessionLockedError
    2. Heartbeat: every interval, re-write renewed_at iff the stored owner
       token still matches ours; on mismatch the lock is LOST
    3. Owned writes (saves): abort without writing on owner mismatch
    4. Release: clear the lock iff the owner still matches (idempotent)

States:
    UNLOCKED → ACQUIRING → HELD → RELEASING → UNLOCKED
                             ↓         ↓
                            LOST ←─────┘      (absorbing)

Safety:
    - Liveness is decided only by recent renewal; there is no TTL on the
      backend side
    - Staleness is judged on the adapter's server-clock estimate
    - ``on_lost`` fires at most once per lock handle
"""

from __future__ import annotations

import asyncio
import os
import socket
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Optional
from uuid import uuid4

from profilemesh.core import constants as C
from profilemesh.core.config import SessionConfig
from profilemesh.core.errors import ProfileMeshError, SessionLockedError, SessionLostError
from profilemesh.core.signal import OneShotSignal
from profilemesh.observability.logging import StructuredLogger
from profilemesh.storage.adapter import ABORT, RemoteStoreAdapter, UpdateResult


# =============================================================================
# LOCK STATE
# =============================================================================
class LockState(Enum):
    """Per-key lock state as seen by this process."""
    UNLOCKED = auto()
    ACQUIRING = auto()
    HELD = auto()
    RELEASING = auto()
    LOST = auto()


# =============================================================================
# LOCK RECORD
# =============================================================================
@dataclass(frozen=True, slots=True)
class LockRecord:
    """The ``ActiveSession`` entry stored in a record's meta data."""
    owner: str
    holder: str
    renewed_at: int

    def is_stale(self, now_ms: int, stale_after_ms: int) -> bool:
        return now_ms - self.renewed_at >= stale_after_ms

    def to_dict(self) -> dict[str, Any]:
        return {"owner": self.owner, "holder": self.holder, "renewed_at": self.renewed_at}

    @classmethod
    def from_dict(cls, data: Any) -> Optional[LockRecord]:
        """Parse a stored entry; None when absent or unreadable."""
        if not isinstance(data, dict) or not data.get("owner"):
            return None
        try:
            renewed_at = int(data.get("renewed_at", 0))
        except (TypeError, ValueError):
            renewed_at = 0
        return cls(str(data["owner"]), str(data.get("holder", "")), renewed_at)


def lock_record_of(document: Optional[dict[str, Any]]) -> Optional[LockRecord]:
    """Lock entry of a record document, if any."""
    if not isinstance(document, dict):
        return None
    meta = document.get(C.FIELD_META)
    if not isinstance(meta, dict):
        return None
    return LockRecord.from_dict(meta.get(C.META_ACTIVE_SESSION))


def _meta_of(document: dict[str, Any]) -> dict[str, Any]:
    meta = document.get(C.FIELD_META)
    if not isinstance(meta, dict):
        meta = {}
        document[C.FIELD_META] = meta
    return meta


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


# =============================================================================
# LOCK HANDLE
# =============================================================================
class SessionLock:
    """
    Handle to a session lock owned (or formerly owned) by this process.

    ``on_lost`` fires with a SessionLostError if another owner takes the
    record over while this handle believes it holds it.
    """

    __slots__ = (
        "key",
        "token",
        "holder",
        "state",
        "acquired_at_ms",
        "renewed_at_ms",
        "on_lost",
        "_heartbeat_task",
    )

    def __init__(self, key: str, token: str, holder: str) -> None:
        self.key = key
        self.token = token
        self.holder = holder
        self.state = LockState.UNLOCKED
        self.acquired_at_ms = 0
        self.renewed_at_ms = 0
        self.on_lost: OneShotSignal[SessionLostError] = OneShotSignal(f"lock_lost:{key}")
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

    @property
    def is_held(self) -> bool:
        return self.state == LockState.HELD

    def __repr__(self) -> str:
        return f"<SessionLock {self.key!r} {self.state.name} token={self.token[:8]}>"


@dataclass(frozen=True, slots=True)
class Acquisition:
    """Result of a successful acquire: the handle and the locked document."""
    lock: SessionLock
    document: dict[str, Any]
    version: int
    took_over: bool


# =============================================================================
# SESSION LOCK MANAGER
# =============================================================================
class SessionLockManager:
    """
    Acquires, renews and releases session locks through the adapter.

    Usage:
        locks = SessionLockManager(adapter, SessionConfig())
        acquisition = await locks.acquire("player_1", initialize)
        ...
        await locks.update_owned(acquisition.lock, apply_changes)
        await locks.release(acquisition.lock)
    """

    __slots__ = ("_adapter", "_session", "_holder_id", "_held", "_log")

    def __init__(
        self,
        adapter: RemoteStoreAdapter,
        session: Optional[SessionConfig] = None,
        holder_id: Optional[str] = None,
    ) -> None:
        self._adapter = adapter
        self._session = session or SessionConfig()
        self._holder_id = holder_id or default_holder_id()
        self._held: dict[str, SessionLock] = {}
        self._log = StructuredLogger(__name__).with_extra(store=adapter.name)

    @property
    def holder_id(self) -> str:
        return self._holder_id

    @property
    def held_keys(self) -> list[str]:
        return list(self._held)

    # -------------------------------------------------------------------------
    # ACQUIRE
    # -------------------------------------------------------------------------

    async def acquire(
        self,
        key: str,
        initialize: Callable[[Optional[dict[str, Any]]], dict[str, Any]],
    ) -> Acquisition:
        """
        Take the session lock on ``key``.

        ``initialize`` receives the stored document (None for a new key) and
        returns the document to lock. Acquisition bumps SessionLoadCount and
        starts the heartbeat.

        Raises:
            SessionLockedError: an active session holds the key
            TransientStoreError / NonRetryableStoreError: store failures
        """
        lock = SessionLock(key, uuid4().hex, self._holder_id)
        lock.state = LockState.ACQUIRING
        stale_after_ms = self._session.stale_after_ms
        previous: list[Optional[LockRecord]] = [None]
        stamped = [0]

        def take(current: Optional[dict[str, Any]]) -> dict[str, Any]:
            now = self._adapter.now_ms()
            existing = lock_record_of(current)
            if existing is not None and not existing.is_stale(now, stale_after_ms):
                raise SessionLockedError.held_elsewhere(key, existing.holder, now - existing.renewed_at)

            document = initialize(current)
            meta = _meta_of(document)
            meta[C.META_ACTIVE_SESSION] = LockRecord(lock.token, self._holder_id, now).to_dict()
            meta[C.META_LOAD_COUNT] = int(meta.get(C.META_LOAD_COUNT) or 0) + 1
            meta.setdefault(C.META_CREATE_TIME, now)
            previous[0] = existing
            stamped[0] = now
            return document

        try:
            result = await self._adapter.transactional_update(key, take)
        except BaseException:
            lock.state = LockState.UNLOCKED
            raise

        lock.state = LockState.HELD
        lock.acquired_at_ms = lock.renewed_at_ms = stamped[0]
        self._held[key] = lock
        lock._heartbeat_task = asyncio.ensure_future(self._heartbeat_loop(lock))

        took_over = previous[0] is not None
        if took_over:
            self._log.warning(
                "Took over stale session lock",
                key=key,
                previous_holder=previous[0].holder,
                stale_for_ms=stamped[0] - previous[0].renewed_at,
            )
        self._log.info("Session lock acquired", key=key, version=result.version)
        return Acquisition(lock, result.value, result.version, took_over)

    # -------------------------------------------------------------------------
    # HEARTBEAT
    # -------------------------------------------------------------------------

    async def heartbeat(self, lock: SessionLock) -> bool:
        """
        Renew ``lock`` once.

        Returns False (and marks the lock LOST) if the stored owner no
        longer matches. A lock that is not HELD is left untouched.
        """
        if lock.state != LockState.HELD:
            return False

        found: list[Optional[str]] = [None]
        stamped = [0]

        def renew(current: Optional[dict[str, Any]]) -> Any:
            existing = lock_record_of(current)
            if existing is None or existing.owner != lock.token:
                found[0] = existing.owner if existing else None
                return ABORT
            now = self._adapter.now_ms()
            _meta_of(current)[C.META_ACTIVE_SESSION] = LockRecord(
                lock.token, self._holder_id, now,
            ).to_dict()
            stamped[0] = now
            return current

        result = await self._adapter.transactional_update(lock.key, renew)
        if not result.written:
            self._mark_lost(lock, found[0])
            return False

        lock.renewed_at_ms = stamped[0]
        return True

    async def _heartbeat_loop(self, lock: SessionLock) -> None:
        """Background renewal; transient failures wait for the next interval."""
        interval = self._session.heartbeat_interval_s
        while lock.state == LockState.HELD:
            await asyncio.sleep(interval)
            if lock.state != LockState.HELD:
                break
            try:
                await self.heartbeat(lock)
            except ProfileMeshError as e:
                self._log.warning(
                    "Heartbeat failed, retrying next interval",
                    key=lock.key,
                    error=str(e),
                )

    def _stop_heartbeat(self, lock: SessionLock) -> None:
        task, lock._heartbeat_task = lock._heartbeat_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _mark_lost(self, lock: SessionLock, found_token: Optional[str]) -> None:
        if lock.state not in (LockState.HELD, LockState.RELEASING):
            return
        lock.state = LockState.LOST
        self._stop_heartbeat(lock)
        self._held.pop(lock.key, None)
        error = SessionLostError.taken_over(lock.key, lock.token, found_token)
        self._log.warning("Session lock lost", key=lock.key, found_owner=found_token)
        lock.on_lost.fire(error)

    # -------------------------------------------------------------------------
    # OWNED WRITES
    # -------------------------------------------------------------------------

    async def update_owned(
        self,
        lock: SessionLock,
        mutate: Callable[[dict[str, Any]], dict[str, Any]],
        release: bool = False,
    ) -> UpdateResult:
        """
        Write through the lock: apply ``mutate`` iff we still own the record.

        With ``release=True`` the lock is cleared in the same write.

        Raises:
            SessionLostError: the owner token no longer matches; nothing
                was written and the lock is LOST
        """
        if lock.state == LockState.LOST:
            raise SessionLostError.taken_over(lock.key, lock.token, None)
        if lock.state != LockState.HELD:
            raise RuntimeError(f"Lock on {lock.key!r} is {lock.state.name}, not HELD")

        if release:
            lock.state = LockState.RELEASING
            self._stop_heartbeat(lock)

        found: list[Optional[str]] = [None]
        stamped = [0]

        def write(current: Optional[dict[str, Any]]) -> Any:
            existing = lock_record_of(current)
            if existing is None or existing.owner != lock.token:
                found[0] = existing.owner if existing else None
                return ABORT
            document = mutate(current)
            now = self._adapter.now_ms()
            _meta_of(document)[C.META_ACTIVE_SESSION] = (
                None if release else LockRecord(lock.token, self._holder_id, now).to_dict()
            )
            stamped[0] = now
            return document

        try:
            result = await self._adapter.transactional_update(lock.key, write)
        except BaseException:
            if release and lock.state == LockState.RELEASING:
                lock.state = LockState.UNLOCKED
                self._held.pop(lock.key, None)
            raise

        if not result.written:
            self._mark_lost(lock, found[0])
            raise SessionLostError.taken_over(lock.key, lock.token, found[0])

        if release:
            lock.state = LockState.UNLOCKED
            self._held.pop(lock.key, None)
            self._log.info("Session lock released", key=lock.key, version=result.version)
        else:
            lock.renewed_at_ms = stamped[0]
        return result

    def stop_heartbeats(self) -> list[str]:
        """
        Stop renewing every held lock without releasing it.

        Used when shutdown gives up on a session; the remote lock then goes
        stale and can be taken over. Returns the affected keys.
        """
        keys = []
        for lock in list(self._held.values()):
            self._stop_heartbeat(lock)
            keys.append(lock.key)
        return keys

    # -------------------------------------------------------------------------
    # RELEASE
    # -------------------------------------------------------------------------

    async def release(self, lock: SessionLock) -> bool:
        """
        Clear the lock iff we still own it.

        Idempotent: returns False if the lock was not HELD or the record was
        already owned by someone else.
        """
        if lock.state != LockState.HELD:
            return False

        def clear(document: dict[str, Any]) -> dict[str, Any]:
            return document

        try:
            await self.update_owned(lock, clear, release=True)
        except SessionLostError:
            return False
        return True
