"""
Integration Tests: Profiles and Profile Stores

Tests:
    - Load (template copy, de-duplication, local and remote lock conflicts)
    - Save and end_session ordering and notifications
    - Session loss through heartbeat and save
    - Template reconciliation
    - View mode, versions, removal and load cancellation
"""

import asyncio
import copy

import pytest

from profilemesh.core.config import ProfileMeshConfig, SessionConfig, ShutdownConfig
from profilemesh.core.promise import PromiseStatus
from profilemesh.core.errors import (
    ErrorCode,
    NonRetryableStoreError,
    ProfileLoadCancelledError,
    ProfileNotActiveError,
    SessionLockedError,
    SessionLostError,
    StoreUnavailableError,
)
from profilemesh.profile import (
    EndReason,
    ProfileState,
    ProfileStoreManager,
    reconcile_table,
)
from profilemesh.reliability import BudgetConfig, RetryPolicy
from profilemesh.storage import InMemoryKVBackend

TEMPLATE = {
    "coins": 0,
    "inventory": [],
    "settings": {"music": True, "language": "en"},
}


def _config(reconcile_on_load=False):
    return ProfileMeshConfig(
        session=SessionConfig(
            heartbeat_interval_s=5,
            stale_after_s=15,
            auto_save_interval_s=60,
            reconcile_on_load=reconcile_on_load,
        ),
        retry=RetryPolicy.fast(),
        budget=BudgetConfig(capacity=1000, refill_per_second=1000.0),
        shutdown=ShutdownConfig(drain_timeout_s=2.0),
    )


async def _store(backend=None, holder_id="server-a", config=None):
    backend = backend or InMemoryKVBackend()
    manager = ProfileStoreManager(config or _config(), backend=backend, holder_id=holder_id)
    store = await manager.create("players", TEMPLATE)
    return manager, store, backend


def _foreign_owner(backend, key):
    document = backend.raw_record(key)
    document["MetaData"]["ActiveSession"] = {"owner": "intruder", "holder": "elsewhere", "renewed_at": 0}
    backend.overwrite(key, document)


class TestLoad:
    """Tests for load_profile."""

    @pytest.mark.asyncio
    async def test_new_profile_copies_template(self):
        manager, store, backend = await _store()

        profile = await store.load_profile("player_1")
        profile.data["settings"]["music"] = False
        profile.data["inventory"].append("sword")
        other = await store.load_profile("player_2")

        assert profile.state == ProfileState.ACTIVE
        assert other.data == TEMPLATE
        assert store.template["settings"]["music"] is True
        assert backend.raw_record("players/player_1")["Data"] == TEMPLATE
        await manager.drain()

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_promise(self):
        manager, store, backend = await _store()

        first = store.load_profile("k")
        second = store.load_profile("k")

        assert first is second
        assert await first is await second
        assert backend.raw_record("players/k")["MetaData"]["SessionLoadCount"] == 1
        await manager.drain()

    @pytest.mark.asyncio
    async def test_cancelled_chain_leaves_shared_load_running(self):
        backend = InMemoryKVBackend(latency_ms=10)
        manager, store, _ = await _store(backend)

        first = store.load_profile("k")
        chained = store.load_profile("k").then(lambda profile: profile)
        chained.cancel()
        profile = await first

        assert chained.status == PromiseStatus.CANCELLED
        assert first.status == PromiseStatus.FULFILLED
        assert profile.is_active
        assert backend.raw_record("players/k")["MetaData"]["ActiveSession"] is not None
        await manager.drain()

    @pytest.mark.asyncio
    async def test_second_local_load_rejected(self):
        manager, store, _ = await _store()
        await store.load_profile("k")

        with pytest.raises(SessionLockedError) as exc_info:
            await store.load_profile("k")

        assert exc_info.value.context["holder"] == "local"
        await manager.drain()

    @pytest.mark.asyncio
    async def test_lock_held_by_other_process(self):
        backend = InMemoryKVBackend()
        manager_a, store_a, _ = await _store(backend, holder_id="server-a")
        manager_b, store_b, _ = await _store(backend, holder_id="server-b")
        profile = await store_a.load_profile("k")

        with pytest.raises(SessionLockedError) as exc_info:
            await store_b.load_profile("k")
        assert exc_info.value.context["holder"] == "server-a"

        await profile.end_session()
        taken = await store_b.load_profile("k")
        assert taken.meta_data.session_load_count == 2
        await manager_a.drain()
        await manager_b.drain()

    @pytest.mark.asyncio
    async def test_failed_load_notifies_store(self):
        backend = InMemoryKVBackend()
        manager_a, store_a, _ = await _store(backend, holder_id="server-a")
        manager_b, store_b, _ = await _store(backend, holder_id="server-b")
        await store_a.load_profile("k")
        ended = []
        store_b.session_ended.connect(ended.append)

        with pytest.raises(SessionLockedError) as exc_info:
            await store_b.load_profile("k")

        assert [(info.key, info.reason) for info in ended] == [("k", EndReason.LOAD_FAILED)]
        assert ended[0].error is exc_info.value
        await manager_a.drain()
        await manager_b.drain()

    @pytest.mark.asyncio
    async def test_invalid_key_rejected(self):
        manager, store, backend = await _store()

        with pytest.raises(NonRetryableStoreError):
            await store.load_profile("")
        with pytest.raises(NonRetryableStoreError) as exc_info:
            await store.load_profile("x" * 51)

        assert exc_info.value.code == ErrorCode.STORE_MALFORMED_KEY
        assert backend.calls("read") == 0
        await manager.drain()

    @pytest.mark.asyncio
    async def test_requester_gone_ends_session(self):
        manager, store, backend = await _store()

        with pytest.raises(ProfileLoadCancelledError):
            await store.load_profile("k", is_valid=lambda: False)

        assert backend.raw_record("players/k")["MetaData"]["ActiveSession"] is None
        assert store.get_active("k") is None
        profile = await store.load_profile("k")
        assert profile.is_active
        await manager.drain()

    @pytest.mark.asyncio
    async def test_cancelled_load_releases_lock(self):
        backend = InMemoryKVBackend(latency_ms=20)
        manager, store, _ = await _store(backend)

        pending = store.load_profile("k")
        await asyncio.sleep(0.005)
        pending.cancel()
        await asyncio.sleep(0.2)

        assert store.pending_loads == {}
        assert backend.raw_record("players/k")["MetaData"]["ActiveSession"] is None
        profile = await store.load_profile("k")
        assert profile.is_active
        await manager.drain()

    @pytest.mark.asyncio
    async def test_load_after_shutdown_rejected(self):
        manager, store, _ = await _store()
        await manager.drain()

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.load_profile("k")

        assert exc_info.value.code == ErrorCode.STORE_CLOSING


class TestSaveAndEnd:
    """Tests for save, end_session and notifications."""

    @pytest.mark.asyncio
    async def test_save_persists_and_notifies(self):
        manager, store, backend = await _store()
        profile = await store.load_profile("k")
        saved = []
        profile.after_save.connect(saved.append)

        profile.data["coins"] = 10
        await profile.save()

        record = backend.raw_record("players/k")
        assert record["Data"]["coins"] == 10
        assert record["MetaData"]["LastSavedAt"] is not None
        assert record["MetaData"]["ActiveSession"]["owner"] == profile.session_lock.token
        assert saved == [profile]
        assert profile.meta_data.version == 2
        await manager.drain()

    @pytest.mark.asyncio
    async def test_end_session_is_idempotent(self):
        manager, store, backend = await _store()
        profile = await store.load_profile("k")
        ended = []
        profile.session_ended.connect(ended.append)
        writes = backend.calls("compare_and_set")

        first = profile.end_session()
        second = profile.end_session()
        await first

        assert first is second
        assert backend.calls("compare_and_set") == writes + 1
        assert len(ended) == 1
        assert ended[0].reason == EndReason.ENDED
        assert profile.state == ProfileState.ENDED
        assert backend.raw_record("players/k")["MetaData"]["ActiveSession"] is None
        assert store.get_active("k") is None
        await manager.drain()

    @pytest.mark.asyncio
    async def test_cancelled_chain_does_not_abort_final_save(self):
        manager, store, backend = await _store()
        profile = await store.load_profile("k")
        ended = []
        profile.session_ended.connect(ended.append)
        profile.data["coins"] = 500
        backend.latency_ms = 20

        ending = profile.end_session()
        chained = ending.then(lambda _: "done")
        chained.cancel()
        await ending

        assert ending.status == PromiseStatus.FULFILLED
        assert backend.raw_record("players/k")["Data"]["coins"] == 500
        assert backend.raw_record("players/k")["MetaData"]["ActiveSession"] is None
        assert [(info.reason, info.error) for info in ended] == [(EndReason.ENDED, None)]
        backend.latency_ms = 0
        await manager.drain()

    @pytest.mark.asyncio
    async def test_cancelled_end_session_still_writes(self):
        manager, store, backend = await _store()
        profile = await store.load_profile("k")
        ended = []
        profile.session_ended.connect(ended.append)
        profile.data["coins"] = 7
        backend.latency_ms = 20

        ending = profile.end_session()
        await asyncio.sleep(0.005)
        ending.cancel()
        await asyncio.sleep(0.15)

        assert ending.status == PromiseStatus.CANCELLED
        assert profile.state == ProfileState.ENDED
        assert len(ended) == 1
        assert isinstance(ended[0].error, asyncio.CancelledError)
        assert backend.raw_record("players/k")["Data"]["coins"] == 7
        assert backend.raw_record("players/k")["MetaData"]["ActiveSession"] is None
        backend.latency_ms = 0
        await manager.drain()

    @pytest.mark.asyncio
    async def test_save_after_end_rejected(self):
        manager, store, backend = await _store()
        profile = await store.load_profile("k")
        await profile.end_session()
        version = (await store.view_profile("k")).version

        profile.data["coins"] = 99
        with pytest.raises(ProfileNotActiveError):
            await profile.save()

        assert (await store.view_profile("k")).version == version
        assert backend.raw_record("players/k")["Data"]["coins"] == 0
        await manager.drain()

    @pytest.mark.asyncio
    async def test_save_queued_behind_end_rejected(self):
        manager, store, backend = await _store()
        profile = await store.load_profile("k")
        writes = backend.calls("compare_and_set")

        ending = profile.end_session()
        saving = profile.save()

        await ending
        with pytest.raises(ProfileNotActiveError):
            await saving
        assert backend.calls("compare_and_set") == writes + 1
        await manager.drain()

    @pytest.mark.asyncio
    async def test_mutators_after_end(self):
        manager, store, _ = await _store()
        profile = await store.load_profile("k")
        await profile.end_session()

        with pytest.raises(ProfileNotActiveError):
            profile.add_user_id(1)
        with pytest.raises(ProfileNotActiveError):
            profile.set_meta_tag("a", 1)
        with pytest.raises(ProfileNotActiveError):
            profile.reconcile()
        await manager.drain()

    @pytest.mark.asyncio
    async def test_late_listener_notified(self):
        manager, store, _ = await _store()
        profile = await store.load_profile("k")
        await profile.end_session()

        ended = []
        profile.session_ended.connect(ended.append)

        assert [info.reason for info in ended] == [EndReason.ENDED]
        await manager.drain()

    @pytest.mark.asyncio
    async def test_user_ids_and_meta_tags(self):
        manager, store, backend = await _store()
        profile = await store.load_profile("k")

        profile.add_user_id(1001)
        profile.add_user_id(1001)
        profile.add_user_id(1002)
        profile.remove_user_id(1002)
        profile.set_meta_tag("region", "eu-west")
        await profile.save()

        record = backend.raw_record("players/k")
        assert record["UserIds"] == [1001]
        assert record["MetaData"]["MetaTags"] == {"region": "eu-west"}
        assert profile.get_meta_tag("region") == "eu-west"
        assert profile.meta_data.meta_tags["region"] == "eu-west"
        await manager.drain()

    @pytest.mark.asyncio
    async def test_meta_data_after_load(self):
        manager, store, _ = await _store()
        profile = await store.load_profile("k")

        meta = profile.meta_data

        assert meta.session_load_count == 1
        assert meta.profile_create_time is not None
        assert meta.active_session.owner == profile.session_lock.token
        assert meta.version == 1
        await manager.drain()


class TestSessionLoss:
    """Tests for takeover detection."""

    @pytest.mark.asyncio
    async def test_heartbeat_detects_takeover(self):
        manager, store, backend = await _store()
        profile = await store.load_profile("k")
        ended = []
        profile.session_ended.connect(ended.append)

        _foreign_owner(backend, "players/k")
        assert await store.locks.heartbeat(profile.session_lock) is False

        assert profile.state == ProfileState.ENDED
        assert len(ended) == 1
        assert ended[0].reason == EndReason.LOST
        assert isinstance(ended[0].error, SessionLostError)
        assert store.get_active("k") is None

        writes = backend.calls("compare_and_set")
        with pytest.raises(ProfileNotActiveError):
            await profile.save()
        assert backend.calls("compare_and_set") == writes
        await manager.drain()

    @pytest.mark.asyncio
    async def test_save_detects_takeover(self):
        manager, store, backend = await _store()
        profile = await store.load_profile("k")
        ended = []
        profile.session_ended.connect(ended.append)

        _foreign_owner(backend, "players/k")
        profile.data["coins"] = 50
        with pytest.raises(SessionLostError):
            await profile.save()

        assert profile.state == ProfileState.ENDED
        assert [info.reason for info in ended] == [EndReason.LOST]
        assert backend.raw_record("players/k")["Data"]["coins"] == 0
        await manager.drain()


class TestReconcile:
    """Tests for template reconciliation."""

    def test_fills_absent_fields(self):
        data = {"coins": 5}

        reconcile_table(data, TEMPLATE)

        assert data == {"coins": 5, "inventory": [], "settings": {"music": True, "language": "en"}}

    def test_never_overwrites_present_fields(self):
        data = {"coins": "not a number", "settings": {"music": False}}

        reconcile_table(data, TEMPLATE)

        assert data["coins"] == "not a number"
        assert data["settings"] == {"music": False, "language": "en"}

    def test_idempotent(self):
        data = {"settings": {}}
        reconcile_table(data, TEMPLATE)
        snapshot = copy.deepcopy(data)

        reconcile_table(data, TEMPLATE)

        assert data == snapshot

    def test_filled_values_are_copies(self):
        template = {"inventory": [], "settings": {"music": True}}
        data = {}

        reconcile_table(data, template)
        data["inventory"].append("sword")
        data["settings"]["music"] = False

        assert template == {"inventory": [], "settings": {"music": True}}

    @pytest.mark.asyncio
    async def test_reconcile_on_load(self):
        backend = InMemoryKVBackend()
        backend.overwrite("players/old", {"Data": {"coins": 5}})
        backend.overwrite("players/plain", {"Data": {"coins": 7}})
        manager, store, _ = await _store(backend)

        reconciled = await store.load_profile("old", reconcile=True)
        plain = await store.load_profile("plain")

        assert reconciled.data == {"coins": 5, "inventory": [], "settings": {"music": True, "language": "en"}}
        assert plain.data == {"coins": 7}
        plain.reconcile()
        assert plain.data["inventory"] == []
        await manager.drain()

    @pytest.mark.asyncio
    async def test_reconcile_on_load_from_config(self):
        backend = InMemoryKVBackend()
        backend.overwrite("players/old", {"Data": {"coins": 5}})
        manager, store, _ = await _store(backend, config=_config(reconcile_on_load=True))

        profile = await store.load_profile("old")

        assert profile.data["settings"] == {"music": True, "language": "en"}
        await manager.drain()


class TestViewAndRemove:
    """Tests for view_profile and remove_profile."""

    @pytest.mark.asyncio
    async def test_view_is_read_only(self):
        manager, store, _ = await _store()
        profile = await store.load_profile("k")
        profile.add_user_id(7)
        await profile.save()

        view = await store.view_profile("k")

        assert view.data["coins"] == 0
        assert view.user_ids == (7,)
        assert view.meta_data.active_session.owner == profile.session_lock.token
        with pytest.raises(TypeError):
            view.data["coins"] = 1
        with pytest.raises(ProfileNotActiveError) as exc_info:
            await view.save()
        assert exc_info.value.code == ErrorCode.PROFILE_READ_ONLY
        with pytest.raises(ProfileNotActiveError):
            await view.end_session()
        await manager.drain()

    @pytest.mark.asyncio
    async def test_view_missing_key(self):
        manager, store, _ = await _store()

        assert await store.view_profile("nobody") is None
        await manager.drain()

    @pytest.mark.asyncio
    async def test_view_older_version(self):
        manager, store, _ = await _store()
        profile = await store.load_profile("k")
        profile.data["coins"] = 1
        await profile.save()
        profile.data["coins"] = 2
        await profile.save()

        old = await store.view_profile("k", version=2)
        latest = await store.view_profile("k")

        assert old.data["coins"] == 1
        assert old.version == 2
        assert latest.data["coins"] == 2
        assert latest.version == 3
        await manager.drain()

    @pytest.mark.asyncio
    async def test_view_reconciled(self):
        backend = InMemoryKVBackend()
        backend.overwrite("players/old", {"Data": {"coins": 5}})
        manager, store, _ = await _store(backend)

        view = await store.view_profile("old")
        filled = view.reconciled()

        assert "inventory" not in view.data
        assert filled.data["inventory"] == ()
        assert filled.data["coins"] == 5
        await manager.drain()

    @pytest.mark.asyncio
    async def test_remove_profile(self):
        manager, store, backend = await _store()
        profile = await store.load_profile("k")

        with pytest.raises(SessionLockedError):
            await store.remove_profile("k")

        await profile.end_session()
        assert await store.remove_profile("k") is True
        assert backend.raw_record("players/k") is None
        assert await store.remove_profile("k") is False
        await manager.drain()
