"""
Unit Tests: Signals

Tests:
    - Multi-fire broadcast and disconnect
    - Listener failure isolation
    - One-shot delivery, late subscription and wait()
"""

import asyncio

import pytest

from profilemesh.core.signal import OneShotSignal, Signal


class TestSignal:
    """Tests for the multi-fire Signal."""

    def test_fire_reaches_every_listener(self):
        signal = Signal("test")
        first, second = [], []
        signal.connect(first.append)
        signal.connect(second.append)

        signal.fire(1)
        signal.fire(2)

        assert first == [1, 2]
        assert second == [1, 2]

    def test_disconnect(self):
        signal = Signal("test")
        seen = []
        connection = signal.connect(seen.append)

        signal.fire("a")
        connection.disconnect()
        signal.fire("b")

        assert seen == ["a"]
        assert not connection.connected
        assert signal.listener_count == 0

    def test_failing_listener_does_not_block_others(self):
        signal = Signal("test")
        seen = []

        def broken(_):
            raise RuntimeError("listener bug")

        signal.connect(broken)
        signal.connect(seen.append)
        signal.fire("payload")

        assert seen == ["payload"]

    @pytest.mark.asyncio
    async def test_coroutine_listener_is_scheduled(self):
        signal = Signal("test")
        seen = []

        async def listener(payload):
            seen.append(payload)

        signal.connect(listener)
        signal.fire("x")
        await asyncio.sleep(0)

        assert seen == ["x"]


class TestOneShotSignal:
    """Tests for the fire-once Signal."""

    def test_fires_once(self):
        signal = OneShotSignal("ended")
        seen = []
        signal.connect(seen.append)

        assert signal.fire("first") is True
        assert signal.fire("second") is False

        assert seen == ["first"]
        assert signal.payload == "first"
        assert signal.fired

    def test_late_subscriber_receives_payload(self):
        signal = OneShotSignal("ended")
        signal.fire("done")

        seen = []
        signal.connect(seen.append)

        assert seen == ["done"]

    @pytest.mark.asyncio
    async def test_wait_returns_payload(self):
        signal = OneShotSignal("ended")
        waiter = asyncio.ensure_future(signal.wait())
        await asyncio.sleep(0)

        signal.fire("payload")

        assert await waiter == "payload"
        assert await signal.wait() == "payload"
