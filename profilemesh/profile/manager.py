"""
Profile Store Manager: Explicit Registry and Shutdown Drain

Owns the shared machinery (backend, adapter, request budget, configuration)
and the named ProfileStores built on it. Each store gets its own keyspace
(``<store>/<key>``) and session lock manager. There is
no module-level singleton; callers construct one manager and pass it
around.

Shutdown:
    drain() stops new loads, waits for in-flight loads, ends every live
    session (final save + release), and gives up after
    ``shutdown.drain_timeout_s``. Loads and sessions still pending at that
    point are reported as abandoned; heartbeats stop and the locks go stale.

    install_signal_handlers() binds drain() to SIGTERM/SIGINT; ``async with``
    drains on exit.
"""

from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from profilemesh.core.config import ProfileMeshConfig
from profilemesh.core.errors import StoreUnavailableError
from profilemesh.core.promise import Promise, PromiseStatus, PromiseTimeoutError
from profilemesh.observability.logging import StructuredLogger
from profilemesh.profile.store import ProfileStore
from profilemesh.reliability.budget import RequestBudget
from profilemesh.session.lock import SessionLockManager, default_holder_id
from profilemesh.storage import KVBackend, create_backend
from profilemesh.storage.adapter import RemoteStoreAdapter

log = StructuredLogger(__name__)


@dataclass
class DrainReport:
    """
    Outcome of a shutdown drain. Entries are ``"<store>/<key>"``.

    ended: final save and release succeeded
    failed: final save failed (error kept)
    abandoned: still pending when the drain timeout elapsed
    """
    ended: list[str] = field(default_factory=list)
    failed: dict[str, BaseException] = field(default_factory=dict)
    abandoned: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.failed and not self.abandoned


class ProfileStoreManager:
    """
    Registry of profile stores sharing one remote backend.

    Usage:
        async with ProfileStoreManager(ProfileMeshConfig()) as manager:
            store = await manager.create("players", {"coins": 0})
            profile = await store.load_profile("player_1")
            ...
        # drained on exit
    """

    __slots__ = (
        "_config",
        "_backend",
        "_adapter",
        "_holder_id",
        "_stores",
        "_owns_backend",
        "_clock_synced",
        "_closing",
        "_drain_promise",
    )

    def __init__(
        self,
        config: Optional[ProfileMeshConfig] = None,
        *,
        backend: Optional[KVBackend] = None,
        holder_id: Optional[str] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        """
        Args:
            config: Root configuration (defaults to mock mode)
            backend: Explicit backend, overriding ``config.backend``;
                the caller keeps ownership and closes it
            holder_id: Process identity written into lock records
            clock: Local millisecond clock (tests)
        """
        self._config = config or ProfileMeshConfig()
        self._owns_backend = backend is None
        self._backend = backend or create_backend(
            self._config.backend,
            self._config.redis,
            self._config.limits.version_history,
        )
        self._adapter = RemoteStoreAdapter(
            self._backend,
            retry=self._config.retry,
            budget=RequestBudget(self._config.budget),
            limits=self._config.limits,
            name="profilemesh",
            clock=clock,
        )
        self._holder_id = holder_id or default_holder_id()
        self._stores: dict[str, ProfileStore] = {}
        self._clock_synced = False
        self._closing = False
        self._drain_promise: Optional[Promise[DrainReport]] = None

    @property
    def config(self) -> ProfileMeshConfig:
        return self._config

    @property
    def backend(self) -> KVBackend:
        return self._backend

    @property
    def adapter(self) -> RemoteStoreAdapter:
        return self._adapter

    @property
    def holder_id(self) -> str:
        return self._holder_id

    @property
    def stores(self) -> dict[str, ProfileStore]:
        return dict(self._stores)

    # -------------------------------------------------------------------------
    # STORES
    # -------------------------------------------------------------------------

    def create(self, name: str, template: Optional[Mapping[str, Any]] = None) -> Promise[ProfileStore]:
        """
        Create (or return the existing) store ``name``.

        Performs one connectivity round-trip first and rejects with
        StoreUnavailableError if the backend does not answer.
        """
        return Promise.spawn(self._create(name, template or {}))

    async def _create(self, name: str, template: Mapping[str, Any]) -> ProfileStore:
        if self._closing:
            raise StoreUnavailableError.closing(name)

        if self._clock_synced:
            await self._adapter.ping()
        else:
            await self._adapter.sync_clock()
            self._clock_synced = True

        existing = self._stores.get(name)
        if existing is not None:
            return existing

        adapter = self._adapter.scoped(name)
        locks = SessionLockManager(adapter, self._config.session, self._holder_id)
        store = ProfileStore(name, template, adapter, locks, self._config.session)
        store.start()
        self._stores[name] = store
        log.info("Profile store created", store=name)
        return store

    # -------------------------------------------------------------------------
    # SHUTDOWN
    # -------------------------------------------------------------------------

    def drain(self) -> Promise[DrainReport]:
        """End all sessions within the drain timeout. Idempotent."""
        if self._drain_promise is None:
            self._drain_promise = Promise.spawn(self._drain()).shared()
        return self._drain_promise

    async def _drain(self) -> DrainReport:
        self._closing = True
        timeout_s = self._config.shutdown.drain_timeout_s
        deadline = time.monotonic() + timeout_s
        stores = list(self._stores.values())
        log.info("Draining profile stores", stores=len(stores), timeout_s=timeout_s)

        for store in stores:
            store.begin_shutdown()

        loads = {
            f"{store.name}/{key}": load
            for store in stores
            for key, load in store.pending_loads.items()
        }
        if loads:
            await self._settle_within(Promise.all_settled(list(loads.values())), deadline)
        stuck_loads = [entry for entry, load in loads.items() if load.is_pending]

        ends: dict[str, Promise[None]] = {}
        for store in stores:
            for key, end in store.end_all().items():
                ends[f"{store.name}/{key}"] = end
        if ends:
            await self._settle_within(Promise.all_settled(list(ends.values())), deadline)

        report = DrainReport()
        report.abandoned.extend(entry for entry in stuck_loads if entry not in ends)
        for entry, end in ends.items():
            status = end.status
            if status == PromiseStatus.FULFILLED:
                report.ended.append(entry)
            elif status == PromiseStatus.PENDING:
                report.abandoned.append(entry)
            elif status == PromiseStatus.CANCELLED:
                report.failed[entry] = asyncio.CancelledError()
            else:
                report.failed[entry] = end.error()

        if report.abandoned:
            abandoned_keys = [
                f"{store.name}/{key}" for store in stores for key in store.locks.stop_heartbeats()
            ]
            log.error(
                "Drain timed out; abandoning sessions",
                abandoned=report.abandoned,
                stopped_heartbeats=abandoned_keys,
            )
        for entry, error in report.failed.items():
            log.error("Final save failed during drain", profile=entry, error=str(error))

        if self._owns_backend:
            await self._adapter.close()
        log.info(
            "Drain complete",
            ended=len(report.ended),
            failed=len(report.failed),
            abandoned=len(report.abandoned),
        )
        return report

    @staticmethod
    async def _settle_within(promise: Promise[Any], deadline: float) -> None:
        remaining = max(0.0, deadline - time.monotonic())
        try:
            await promise.timeout(remaining)
        except PromiseTimeoutError:
            log.debug("Drain deadline reached", remaining_s=remaining)

    def install_signal_handlers(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        signals: tuple[signal.Signals, ...] = (signal.SIGTERM, signal.SIGINT),
    ) -> None:
        """Run drain() when the process is asked to exit."""
        loop = loop or asyncio.get_running_loop()
        for sig in signals:
            try:
                loop.add_signal_handler(sig, self._on_exit_signal, sig)
            except NotImplementedError:
                log.warning("Signal handlers unsupported on this platform", signal=sig.name)
                return

    def _on_exit_signal(self, sig: signal.Signals) -> None:
        log.warning("Exit signal received, draining", signal=sig.name)
        self.drain().catch(
            lambda error: log.error("Drain after exit signal failed", error=str(error))
        )

    async def __aenter__(self) -> ProfileStoreManager:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.drain()
