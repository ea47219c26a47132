"""
Profile: Session-Scoped Cached Record with Lifecycle

A Profile is the local, mutable copy of one remote record, valid while
its session lock is held. Callers mutate ``data`` directly; ``save()``
writes it back through the lock, ``end_session()`` performs one final
save and releases the lock.

Lifecycle (see profile.state):
    LOADING → ACTIVE ⇄ SAVING → ENDED

Notifications:
    session_ended : fires exactly once with SessionEndInfo, including to
                    listeners connected after the fact
    after_save    : fires after every successful save

Ordering:
    Writes on one profile are serialized by an asyncio.Lock, so a save
    queued behind end_session observes ENDED and is rejected without
    touching the store.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from enum import Enum, auto
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping, Optional

from profilemesh.core import constants as C
from profilemesh.core.errors import (
    ProfileMeshError,
    ProfileNotActiveError,
    SessionLostError,
)
from profilemesh.core.promise import Promise
from profilemesh.core.signal import OneShotSignal, Signal
from profilemesh.observability.logging import StructuredLogger
from profilemesh.profile.reconcile import freeze, reconcile_table, thaw
from profilemesh.profile.state import LifecycleTrigger, ProfileLifecycle, ProfileState
from profilemesh.session.lock import LockRecord, SessionLock, SessionLockManager

if TYPE_CHECKING:
    from profilemesh.session.lock import Acquisition
    from profilemesh.storage.adapter import RemoteStoreAdapter


# =============================================================================
# RECORD DOCUMENT
# =============================================================================

def prepare_document(
    current: Optional[dict[str, Any]],
    template: Mapping[str, Any],
    reconcile: bool = False,
) -> dict[str, Any]:
    """
    Normalize a stored document (or create one from ``template``).

    Missing sections are filled so later code can rely on the shape:
    ``Data`` (dict), ``MetaData`` (dict with MetaTags), ``UserIds`` (list).
    """
    document = current if isinstance(current, dict) else {}
    if not isinstance(document.get(C.FIELD_DATA), dict):
        document[C.FIELD_DATA] = thaw(template)
    elif reconcile:
        reconcile_table(document[C.FIELD_DATA], template)

    meta = document.get(C.FIELD_META)
    if not isinstance(meta, dict):
        meta = document[C.FIELD_META] = {}
    if not isinstance(meta.get(C.META_TAGS), dict):
        meta[C.META_TAGS] = {}
    meta.setdefault(C.META_LOAD_COUNT, 0)
    meta.setdefault(C.META_ACTIVE_SESSION, None)
    meta.setdefault(C.META_LAST_SAVED, None)

    if not isinstance(document.get(C.FIELD_USER_IDS), list):
        document[C.FIELD_USER_IDS] = []
    return document


@dataclass(frozen=True)
class ProfileMetaData:
    """Read-only meta data of a record as of the last read or write."""
    profile_create_time: Optional[int] = None
    session_load_count: int = 0
    active_session: Optional[LockRecord] = None
    last_saved_at: Optional[int] = None
    meta_tags: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    version: int = 0

    @classmethod
    def from_document(cls, document: Mapping[str, Any], version: int) -> ProfileMetaData:
        meta = document.get(C.FIELD_META) or {}
        return cls(
            profile_create_time=meta.get(C.META_CREATE_TIME),
            session_load_count=int(meta.get(C.META_LOAD_COUNT) or 0),
            active_session=LockRecord.from_dict(meta.get(C.META_ACTIVE_SESSION)),
            last_saved_at=meta.get(C.META_LAST_SAVED),
            meta_tags=freeze(meta.get(C.META_TAGS) or {}),
            version=version,
        )


# =============================================================================
# SESSION END NOTIFICATION
# =============================================================================

class EndReason(Enum):
    ENDED = auto()           # end_session() completed normally
    LOST = auto()            # lock taken over by another owner
    LOAD_CANCELLED = auto()  # requester went away during load
    LOAD_FAILED = auto()     # lock not acquired (locked elsewhere, store error)
    SHUTDOWN = auto()        # ended by the shutdown drain


@dataclass(frozen=True, slots=True)
class SessionEndInfo:
    key: str
    reason: EndReason
    error: Optional[BaseException] = None


# =============================================================================
# PROFILE
# =============================================================================

class Profile:
    """
    Active session on one record.

    Created by ``ProfileStore.load_profile``; never constructed directly by
    callers.

    Usage:
        profile = await store.load_profile("player_1")
        profile.data["coins"] += 10
        await profile.save()
        profile.session_ended.connect(lambda info: print(info.reason))
        await profile.end_session()
    """

    __slots__ = (
        "key",
        "data",
        "user_ids",
        "session_ended",
        "after_save",
        "_store_name",
        "_template",
        "_locks",
        "_adapter",
        "_lifecycle",
        "_lock",
        "_meta",
        "_meta_tags",
        "_version",
        "_write_lock",
        "_end_promise",
        "_log",
    )

    def __init__(
        self,
        key: str,
        store_name: str,
        template: Mapping[str, Any],
        locks: SessionLockManager,
        adapter: RemoteStoreAdapter,
    ) -> None:
        self.key = key
        self.data: dict[str, Any] = {}
        self.user_ids: list[Any] = []
        self.session_ended: OneShotSignal[SessionEndInfo] = OneShotSignal(f"session_ended:{key}")
        self.after_save: Signal[Profile] = Signal(f"after_save:{key}")
        self._store_name = store_name
        self._template = template
        self._locks = locks
        self._adapter = adapter
        self._lifecycle = ProfileLifecycle(key)
        self._lock: Optional[SessionLock] = None
        self._meta: dict[str, Any] = {}
        self._meta_tags: dict[str, Any] = {}
        self._version = 0
        self._write_lock = asyncio.Lock()
        self._end_promise: Optional[Promise[None]] = None
        self._log = StructuredLogger(__name__).with_extra(store=store_name, key=key)

    # -------------------------------------------------------------------------
    # STATE
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ProfileState:
        return self._lifecycle.state

    @property
    def is_active(self) -> bool:
        return self._lifecycle.state.is_live

    @property
    def session_lock(self) -> Optional[SessionLock]:
        return self._lock

    @property
    def meta_data(self) -> ProfileMetaData:
        meta = {**self._meta, C.META_TAGS: self._meta_tags}
        return ProfileMetaData.from_document({C.FIELD_META: meta}, self._version)

    def __repr__(self) -> str:
        return f"<Profile {self._store_name}/{self.key} {self.state.name} v{self._version}>"

    # -------------------------------------------------------------------------
    # LOAD (driven by ProfileStore)
    # -------------------------------------------------------------------------

    def _attach(self, acquisition: Acquisition) -> None:
        document = acquisition.document
        self.data = document[C.FIELD_DATA]
        self.user_ids = document[C.FIELD_USER_IDS]
        self._meta = document[C.FIELD_META]
        self._meta_tags = self._meta[C.META_TAGS]
        self._version = acquisition.version
        self._lock = acquisition.lock
        self._lifecycle.fire(LifecycleTrigger.LOAD_SUCCEEDED)
        acquisition.lock.on_lost.connect(self._on_lock_lost)

    def _fail_load(self, reason: EndReason, error: BaseException) -> None:
        self._lifecycle.fire(LifecycleTrigger.LOAD_FAILED)
        self.session_ended.fire(SessionEndInfo(self.key, reason, error))

    # -------------------------------------------------------------------------
    # MUTATION HELPERS
    # -------------------------------------------------------------------------

    def _require_live(self, operation: str) -> None:
        if not self.is_active:
            raise ProfileNotActiveError.ended(self.key, operation)

    def reconcile(self) -> None:
        """Fill absent fields of ``data`` from the store template."""
        self._require_live("reconcile")
        reconcile_table(self.data, self._template)

    def add_user_id(self, user_id: Any) -> None:
        self._require_live("add_user_id")
        if user_id not in self.user_ids:
            self.user_ids.append(user_id)

    def remove_user_id(self, user_id: Any) -> None:
        self._require_live("remove_user_id")
        if user_id in self.user_ids:
            self.user_ids.remove(user_id)

    def set_meta_tag(self, name: str, value: Any) -> None:
        self._require_live("set_meta_tag")
        self._meta_tags[name] = value

    def get_meta_tag(self, name: str, default: Any = None) -> Any:
        return self._meta_tags.get(name, default)

    # -------------------------------------------------------------------------
    # SAVE
    # -------------------------------------------------------------------------

    def _apply(self, document: dict[str, Any]) -> dict[str, Any]:
        document = prepare_document(document, self._template)
        document[C.FIELD_DATA] = copy.deepcopy(self.data)
        document[C.FIELD_USER_IDS] = list(self.user_ids)
        meta = document[C.FIELD_META]
        meta[C.META_TAGS] = copy.deepcopy(self._meta_tags)
        meta[C.META_LAST_SAVED] = self._adapter.now_ms()
        return document

    def _record_write(self, document: dict[str, Any], version: int) -> None:
        meta = dict(document[C.FIELD_META])
        meta.pop(C.META_TAGS, None)
        self._meta.update(meta)
        self._version = version

    def save(self) -> Promise[None]:
        """
        Write ``data`` back to the store.

        Rejects with ProfileNotActiveError once the session has ended, and
        with SessionLostError if the lock turns out to be taken over (in
        which case nothing is written and the session ends).
        """
        if self.state == ProfileState.ENDED:
            return Promise.reject(ProfileNotActiveError.ended(self.key, "save"))
        return Promise.spawn(self._save())

    async def _save(self) -> None:
        async with self._write_lock:
            if not self.is_active:
                raise ProfileNotActiveError.ended(self.key, "save")

            self._lifecycle.fire(LifecycleTrigger.SAVE_STARTED)
            try:
                result = await self._locks.update_owned(self._lock, self._apply)
            except SessionLostError:
                self._log.warning("Save aborted: session lock lost")
                raise
            finally:
                if self.state == ProfileState.SAVING:
                    self._lifecycle.fire(LifecycleTrigger.SAVE_FINISHED)

            self._record_write(result.value, result.version)

        self.after_save.fire(self)

    # -------------------------------------------------------------------------
    # END SESSION
    # -------------------------------------------------------------------------

    def end_session(self, reason: EndReason = EndReason.ENDED) -> Promise[None]:
        """
        Final save, release the lock, fire ``session_ended``.

        Idempotent: every call returns the same (shared) promise. The
        promise rejects if the final save failed; the session still ends.
        Once started, the final write runs to completion even if the
        promise is cancelled.
        """
        if self._end_promise is None:
            if self.state == ProfileState.ENDED:
                self._end_promise = Promise.resolve(None).shared()
            else:
                self._end_promise = Promise.spawn(self._end_session(reason)).shared()
        return self._end_promise

    async def _end_session(self, reason: EndReason) -> None:
        async with self._write_lock:
            if self.state == ProfileState.ENDED:
                return

            self._lifecycle.fire(LifecycleTrigger.SAVE_STARTED)
            error: Optional[BaseException] = None
            writing = asyncio.ensure_future(
                self._locks.update_owned(self._lock, self._apply, release=True)
            )
            try:
                result = await asyncio.shield(writing)
                self._record_write(result.value, result.version)
            except SessionLostError as e:
                error = e
            except ProfileMeshError as e:
                self._log.error("Final save failed", error=str(e))
                error = e
            except asyncio.CancelledError as e:
                self._log.warning("End session cancelled; final write continues detached")
                writing.add_done_callback(self._detached_write_done)
                error = e
                raise
            finally:
                self._finish(reason, error)

            if error is not None:
                raise error
        self._log.info("Session ended", reason=reason.name, version=self._version)

    def _detached_write_done(self, writing: asyncio.Future) -> None:
        if writing.cancelled():
            self._log.error("Final write cancelled; lock left to go stale")
            return
        error = writing.exception()
        if error is not None:
            self._log.error("Final write failed after cancellation", error=str(error))
            return
        result = writing.result()
        self._record_write(result.value, result.version)
        self._log.info("Final write landed after cancellation", version=self._version)

    def _finish(self, reason: EndReason, error: Optional[BaseException]) -> None:
        if self.state != ProfileState.ENDED:
            self._lifecycle.fire(LifecycleTrigger.SESSION_ENDED)
        self.session_ended.fire(SessionEndInfo(self.key, reason, error))

    def _on_lock_lost(self, error: SessionLostError) -> None:
        if self.state == ProfileState.ENDED:
            return
        self._lifecycle.fire(LifecycleTrigger.SESSION_LOST)
        self.session_ended.fire(SessionEndInfo(self.key, EndReason.LOST, error))


# =============================================================================
# VIEW MODE
# =============================================================================

class ProfileView:
    """
    Lock-free, read-only snapshot of a record.

    ``data`` is deeply frozen (MappingProxyType / tuples). There is no
    session: save and end_session are rejected.
    """

    __slots__ = ("key", "data", "user_ids", "meta_data", "version", "_template")

    def __init__(
        self,
        key: str,
        document: Mapping[str, Any],
        version: int,
        template: Mapping[str, Any],
    ) -> None:
        self.key = key
        self.data: Mapping[str, Any] = freeze(document.get(C.FIELD_DATA) or {})
        self.user_ids: tuple[Any, ...] = freeze(document.get(C.FIELD_USER_IDS) or [])
        self.meta_data = ProfileMetaData.from_document(document, version)
        self.version = version
        self._template = template

    @property
    def is_active(self) -> bool:
        return False

    def get_meta_tag(self, name: str, default: Any = None) -> Any:
        return self.meta_data.meta_tags.get(name, default)

    def reconciled(self) -> ProfileView:
        """Copy with absent fields filled from the template."""
        data = reconcile_table(thaw(self.data), self._template)
        document = {
            C.FIELD_DATA: data,
            C.FIELD_USER_IDS: thaw(self.user_ids),
            C.FIELD_META: {
                C.META_CREATE_TIME: self.meta_data.profile_create_time,
                C.META_LOAD_COUNT: self.meta_data.session_load_count,
                C.META_ACTIVE_SESSION: (
                    self.meta_data.active_session.to_dict()
                    if self.meta_data.active_session else None
                ),
                C.META_LAST_SAVED: self.meta_data.last_saved_at,
                C.META_TAGS: thaw(self.meta_data.meta_tags),
            },
        }
        return ProfileView(self.key, document, self.version, self._template)

    def save(self) -> Promise[None]:
        return Promise.reject(ProfileNotActiveError.read_only(self.key, "save"))

    def end_session(self) -> Promise[None]:
        return Promise.reject(ProfileNotActiveError.read_only(self.key, "end_session"))

    def __repr__(self) -> str:
        return f"<ProfileView {self.key} v{self.version}>"
