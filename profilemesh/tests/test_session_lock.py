"""
Unit Tests: Session Locks

Tests:
    - Mutual exclusion between competing acquirers
    - Heartbeat renewal and loss detection
    - Stale takeover at the staleness boundary
    - Owned writes and idempotent release
"""

import asyncio

import pytest

from profilemesh.core.config import SessionConfig
from profilemesh.core.errors import SessionLockedError, SessionLostError, TransientStoreError
from profilemesh.reliability import BudgetConfig, RequestBudget, RetryPolicy
from profilemesh.session import LockState, SessionLockManager
from profilemesh.session.lock import lock_record_of
from profilemesh.storage import FaultKind, InMemoryKVBackend
from profilemesh.storage.adapter import RemoteStoreAdapter


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


SESSION = SessionConfig(heartbeat_interval_s=10, stale_after_s=30)
FAST_SESSION = SessionConfig(heartbeat_interval_s=0.02, stale_after_s=0.1)


def _setup(retry=None, latency_ms=0.0):
    clock = FakeClock()
    backend = InMemoryKVBackend(clock=clock, latency_ms=latency_ms)
    adapter = RemoteStoreAdapter(
        backend,
        retry=retry or RetryPolicy.fast(),
        budget=RequestBudget(BudgetConfig(capacity=500, refill_per_second=500.0)),
        clock=clock,
    )
    return clock, backend, adapter


def _initialize(current):
    return current if current is not None else {"Data": {}}


def _foreign_owner(backend, key, owner="intruder"):
    document = backend.raw_record(key)
    document["MetaData"]["ActiveSession"] = {"owner": owner, "holder": "elsewhere", "renewed_at": 0}
    backend.overwrite(key, document)


class TestAcquire:
    """Tests for lock acquisition."""

    @pytest.mark.asyncio
    async def test_acquire_writes_lock_record(self):
        clock, backend, adapter = _setup()
        locks = SessionLockManager(adapter, SESSION, holder_id="server-a")

        acquisition = await locks.acquire("player_1", _initialize)

        record = lock_record_of(backend.raw_record("player_1"))
        assert acquisition.lock.state == LockState.HELD
        assert record.owner == acquisition.lock.token
        assert record.holder == "server-a"
        assert record.renewed_at == clock.now
        assert acquisition.took_over is False
        assert locks.held_keys == ["player_1"]
        locks.stop_heartbeats()

    @pytest.mark.asyncio
    async def test_competing_acquires_one_wins(self):
        _, _, adapter = _setup(latency_ms=1)
        first = SessionLockManager(adapter, SESSION, holder_id="a")
        second = SessionLockManager(adapter, SESSION, holder_id="b")

        results = await asyncio.gather(
            first.acquire("contested", _initialize),
            second.acquire("contested", _initialize),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, BaseException)]
        losers = [r for r in results if isinstance(r, BaseException)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], SessionLockedError)
        first.stop_heartbeats()
        second.stop_heartbeats()

    @pytest.mark.asyncio
    async def test_load_count_increments(self):
        _, backend, adapter = _setup()
        locks = SessionLockManager(adapter, SESSION)

        first = await locks.acquire("k", _initialize)
        await locks.release(first.lock)
        await locks.acquire("k", _initialize)

        assert backend.raw_record("k")["MetaData"]["SessionLoadCount"] == 2
        locks.stop_heartbeats()

    @pytest.mark.asyncio
    async def test_fresh_lock_rejects(self):
        clock, _, adapter = _setup()
        owner = SessionLockManager(adapter, SESSION, holder_id="a")
        rival = SessionLockManager(adapter, SESSION, holder_id="b")
        await owner.acquire("k", _initialize)
        owner.stop_heartbeats()

        clock.advance(29_999)
        with pytest.raises(SessionLockedError) as exc_info:
            await rival.acquire("k", _initialize)

        assert exc_info.value.context["holder"] == "a"
        assert exc_info.value.context["renewed_ms_ago"] == 29_999

    @pytest.mark.asyncio
    async def test_stale_lock_taken_over(self):
        clock, _, adapter = _setup()
        owner = SessionLockManager(adapter, SESSION, holder_id="a")
        rival = SessionLockManager(adapter, SESSION, holder_id="b")
        original = await owner.acquire("k", _initialize)
        owner.stop_heartbeats()

        clock.advance(30_000)
        takeover = await rival.acquire("k", _initialize)

        assert takeover.took_over is True
        assert await owner.heartbeat(original.lock) is False
        assert original.lock.state == LockState.LOST
        rival.stop_heartbeats()


class TestHeartbeat:
    """Tests for renewal and loss detection."""

    @pytest.mark.asyncio
    async def test_heartbeat_renews(self):
        clock, backend, adapter = _setup()
        locks = SessionLockManager(adapter, SESSION)
        lock = (await locks.acquire("k", _initialize)).lock

        clock.advance(5_000)
        assert await locks.heartbeat(lock) is True

        assert lock.renewed_at_ms == clock.now
        assert lock_record_of(backend.raw_record("k")).renewed_at == clock.now
        locks.stop_heartbeats()

    @pytest.mark.asyncio
    async def test_owner_mismatch_marks_lost_once(self):
        _, backend, adapter = _setup()
        locks = SessionLockManager(adapter, SESSION)
        lock = (await locks.acquire("k", _initialize)).lock
        lost = []
        lock.on_lost.connect(lost.append)

        _foreign_owner(backend, "k")

        assert await locks.heartbeat(lock) is False
        assert await locks.heartbeat(lock) is False
        assert lock.state == LockState.LOST
        assert len(lost) == 1
        assert isinstance(lost[0], SessionLostError)
        assert lost[0].context["found_token"] == "intruder"
        assert locks.held_keys == []

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_lock(self):
        _, backend, adapter = _setup(retry=RetryPolicy.no_retry())
        locks = SessionLockManager(adapter, SESSION)
        lock = (await locks.acquire("k", _initialize)).lock

        backend.inject_fault("compare_and_set", FaultKind.TRANSIENT)
        with pytest.raises(TransientStoreError):
            await locks.heartbeat(lock)

        assert lock.state == LockState.HELD
        assert await locks.heartbeat(lock) is True
        locks.stop_heartbeats()

    @pytest.mark.asyncio
    async def test_background_heartbeat(self):
        clock, backend, adapter = _setup()
        locks = SessionLockManager(adapter, FAST_SESSION)
        lock = (await locks.acquire("k", _initialize)).lock
        writes = backend.calls("compare_and_set")

        clock.advance(500)
        await asyncio.sleep(0.07)

        assert backend.calls("compare_and_set") > writes
        assert lock.renewed_at_ms == clock.now
        await locks.release(lock)

    @pytest.mark.asyncio
    async def test_background_heartbeat_detects_takeover(self):
        _, backend, adapter = _setup()
        locks = SessionLockManager(adapter, FAST_SESSION)
        lock = (await locks.acquire("k", _initialize)).lock

        _foreign_owner(backend, "k")
        error = await asyncio.wait_for(lock.on_lost.wait(), timeout=1.0)

        assert isinstance(error, SessionLostError)
        assert lock.state == LockState.LOST


class TestOwnedWritesAndRelease:
    """Tests for update_owned and release."""

    @pytest.mark.asyncio
    async def test_update_owned_writes(self):
        _, backend, adapter = _setup()
        locks = SessionLockManager(adapter, SESSION)
        lock = (await locks.acquire("k", _initialize)).lock

        def mutate(document):
            document["Data"]["coins"] = 5
            return document

        result = await locks.update_owned(lock, mutate)

        assert result.written
        assert backend.raw_record("k")["Data"] == {"coins": 5}
        assert lock_record_of(backend.raw_record("k")).owner == lock.token
        locks.stop_heartbeats()

    @pytest.mark.asyncio
    async def test_update_owned_aborts_after_takeover(self):
        _, backend, adapter = _setup()
        locks = SessionLockManager(adapter, SESSION)
        lock = (await locks.acquire("k", _initialize)).lock
        _foreign_owner(backend, "k")
        writes = backend.calls("compare_and_set")
        mutated = []

        with pytest.raises(SessionLostError):
            await locks.update_owned(lock, lambda document: mutated.append(document) or document)

        assert backend.calls("compare_and_set") == writes
        assert mutated == []
        assert lock.state == LockState.LOST

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self):
        _, backend, adapter = _setup()
        locks = SessionLockManager(adapter, SESSION)
        lock = (await locks.acquire("k", _initialize)).lock

        assert await locks.release(lock) is True
        assert await locks.release(lock) is False

        assert lock.state == LockState.UNLOCKED
        assert backend.raw_record("k")["MetaData"]["ActiveSession"] is None

    @pytest.mark.asyncio
    async def test_release_after_takeover_returns_false(self):
        clock, backend, adapter = _setup()
        owner = SessionLockManager(adapter, SESSION, holder_id="a")
        rival = SessionLockManager(adapter, SESSION, holder_id="b")
        lock = (await owner.acquire("k", _initialize)).lock
        owner.stop_heartbeats()
        clock.advance(30_000)
        takeover = await rival.acquire("k", _initialize)

        assert await owner.release(lock) is False

        assert lock.state == LockState.LOST
        assert lock_record_of(backend.raw_record("k")).owner == takeover.lock.token
        rival.stop_heartbeats()
