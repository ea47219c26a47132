"""
Profile Store: Keyed Sessions over One Template

A ProfileStore owns every Profile of one named store in this process:

- load_profile(key): acquire the session lock and expose the record;
  concurrent loads of one key share a single pending Promise
- view_profile(key, version=None): lock-free, read-only snapshot
- remove_profile(key): delete a record (compliance wipe)

Registries:
    _loading : key â pending load Promise (removed once settled)
    _active  : key â Profile while its session is live

Both are mutated only here, so one key has at most one live Profile per
process.

``session_ended`` relays every profile's end notification, including
loads that failed before a Profile was handed out.
"""

from __future__ import annotations

import asyncio
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from profilemesh.core.config import SessionConfig
from profilemesh.core.errors import (
    ProfileLoadCancelledError,
    ProfileMeshError,
    SessionLockedError,
    StoreUnavailableError,
)
from profilemesh.core.promise import Promise
from profilemesh.core.signal import Signal
from profilemesh.observability.logging import StructuredLogger
from profilemesh.profile.autosave import AutoSaveScheduler
from profilemesh.profile.profile import (
    EndReason,
    Profile,
    ProfileView,
    SessionEndInfo,
    prepare_document,
)
from profilemesh.profile.reconcile import freeze
from profilemesh.session.lock import Acquisition, SessionLockManager
from profilemesh.storage.adapter import RemoteStoreAdapter


class ProfileStore:
    """
    Named collection of profiles sharing a template.

    Created by ``ProfileStoreManager.create``.

    Usage:
        store = await manager.create("players", {"coins": 0, "items": []})
        profile = await store.load_profile("player_1")
        view = await store.view_profile("player_2")
    """

    __slots__ = (
        "_name",
        "_template",
        "_adapter",
        "_locks",
        "_session",
        "_loading",
        "_active",
        "_shutdown_ends",
        "_closing",
        "_autosave",
        "_log",
        "session_ended",
    )

    def __init__(
        self,
        name: str,
        template: Mapping[str, Any],
        adapter: RemoteStoreAdapter,
        locks: SessionLockManager,
        session: Optional[SessionConfig] = None,
    ) -> None:
        self._name = name
        self._template: Mapping[str, Any] = freeze(template)
        self._adapter = adapter
        self._locks = locks
        self._session = session or SessionConfig()
        self._loading: dict[str, Promise[Profile]] = {}
        self._active: dict[str, Profile] = {}
        self._shutdown_ends: dict[str, Promise[None]] = {}
        self._closing = False
        self._autosave = AutoSaveScheduler(
            lambda: list(self._active.values()),
            self._session.auto_save_interval_s,
            name,
        )
        self._log = StructuredLogger(__name__).with_extra(store=name)
        self.session_ended: Signal[SessionEndInfo] = Signal(f"session_ended:{name}")

    @property
    def name(self) -> str:
        return self._name

    @property
    def template(self) -> Mapping[str, Any]:
        return self._template

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def active_profiles(self) -> list[Profile]:
        return list(self._active.values())

    @property
    def pending_loads(self) -> dict[str, Promise[Profile]]:
        """key → in-flight load."""
        return dict(self._loading)

    @property
    def locks(self) -> SessionLockManager:
        return self._locks

    @property
    def autosave(self) -> AutoSaveScheduler:
        return self._autosave

    def get_active(self, key: str) -> Optional[Profile]:
        return self._active.get(key)

    # -------------------------------------------------------------------------
    # LOAD
    # -------------------------------------------------------------------------

    def load_profile(
        self,
        key: str,
        *,
        is_valid: Optional[Callable[[], bool]] = None,
        reconcile: Optional[bool] = None,
    ) -> Promise[Profile]:
        """
        Start a session on ``key``.

        Args:
            key: Record key
            is_valid: Checked once the lock is acquired; if it returns False
                the session is ended immediately and the load rejects with
                ProfileLoadCancelledError
            reconcile: Fill absent fields from the template on load
                (defaults to ``SessionConfig.reconcile_on_load``)

        A load already in flight for ``key`` is returned as-is. A key whose
        session is live in this process rejects with SessionLockedError.
        """
        if self._closing:
            return Promise.reject(StoreUnavailableError.closing(self._name))
        try:
            self._adapter.validate_key(key)
        except ProfileMeshError as e:
            return Promise.reject(e)

        pending = self._loading.get(key)
        if pending is not None:
            return pending
        if key in self._active:
            return Promise.reject(SessionLockedError.loaded_locally(key))

        promise = Promise.spawn(self._load(key, is_valid, reconcile)).shared()
        self._loading[key] = promise
        promise.add_done_callback(lambda settled: self._loading_done(key, settled))
        return promise

    def _loading_done(self, key: str, settled: Promise[Profile]) -> None:
        if self._loading.get(key) is settled:
            del self._loading[key]

    async def _load(
        self,
        key: str,
        is_valid: Optional[Callable[[], bool]],
        reconcile: Optional[bool],
    ) -> Profile:
        profile = Profile(key, self._name, self._template, self._locks, self._adapter)
        profile.session_ended.connect(self.session_ended.fire)
        fill = self._session.reconcile_on_load if reconcile is None else reconcile

        acquiring = asyncio.ensure_future(self._locks.acquire(
            key, lambda current: prepare_document(current, self._template, fill),
        ))
        try:
            acquisition = await asyncio.shield(acquiring)
        except asyncio.CancelledError as e:
            profile._fail_load(EndReason.LOAD_CANCELLED, e)
            acquiring.add_done_callback(self._release_orphan)
            raise
        except Exception as e:
            profile._fail_load(EndReason.LOAD_FAILED, e)
            raise

        self._loading.pop(key, None)
        profile._attach(acquisition)
        self._active[key] = profile
        profile.session_ended.connect(self._forget)

        if self._closing:
            self._shutdown_ends[key] = profile.end_session(EndReason.SHUTDOWN)
            await self._shutdown_ends[key]
            raise StoreUnavailableError.closing(self._name)

        if is_valid is not None and not is_valid():
            self._log.info("Requester gone after load; ending session", key=key)
            await profile.end_session(EndReason.LOAD_CANCELLED)
            raise ProfileLoadCancelledError.requester_gone(key)

        return profile

    def _forget(self, info: SessionEndInfo) -> None:
        self._active.pop(info.key, None)

    def _release_orphan(self, acquiring: asyncio.Future) -> None:
        """Release a lock whose load was cancelled while acquiring."""
        if acquiring.cancelled() or acquiring.exception() is not None:
            return
        acquisition: Acquisition = acquiring.result()
        self._log.info("Releasing lock acquired after load was cancelled", key=acquisition.lock.key)
        Promise.spawn(self._locks.release(acquisition.lock)).catch(
            lambda error: self._log.warning(
                "Release after cancelled load failed",
                key=acquisition.lock.key,
                error=str(error),
            )
        )

    # -------------------------------------------------------------------------
    # VIEW & REMOVE
    # -------------------------------------------------------------------------

    def view_profile(self, key: str, version: Optional[int] = None) -> Promise[Optional[ProfileView]]:
        """Read-only snapshot of ``key`` (or a retained version); None if absent."""
        return Promise.spawn(self._view(key, version))

    async def _view(self, key: str, version: Optional[int]) -> Optional[ProfileView]:
        snapshot = await self._adapter.get(key, version)
        if snapshot is None:
            return None
        document = snapshot.value if isinstance(snapshot.value, dict) else {}
        return ProfileView(key, document, snapshot.version, self._template)

    def remove_profile(self, key: str) -> Promise[bool]:
        """
        Delete ``key`` and its history.

        Rejects with SessionLockedError while the key is loading or live in
        this process.
        """
        if key in self._active or key in self._loading:
            return Promise.reject(SessionLockedError.loaded_locally(key))
        return Promise.spawn(self._remove(key))

    async def _remove(self, key: str) -> bool:
        removed = await self._adapter.remove(key)
        self._log.info("Profile removed", key=key, existed=removed)
        return removed

    # -------------------------------------------------------------------------
    # AUTO-SAVE & SHUTDOWN
    # -------------------------------------------------------------------------

    def start(self) -> None:
        self._autosave.start()

    def begin_shutdown(self) -> None:
        """Reject new loads and stop auto-saving."""
        self._closing = True
        self._autosave.stop()

    def end_all(self) -> dict[str, Promise[None]]:
        """End every live session; returns key â end promise."""
        for key, profile in list(self._active.items()):
            if profile.is_active:
                self._shutdown_ends[key] = profile.end_session(EndReason.SHUTDOWN)
        return dict(self._shutdown_ends)
