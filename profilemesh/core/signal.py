"""
Signals: Multi-Listener Event Broadcast

- Signal: fires any number of times (e.g. "after save")
- OneShotSignal: fires at most once and remembers its payload; listeners
  connected after it fired are invoked immediately with that payload
  (late-subscription delivery)

Listener isolation:
    A listener that raises is logged and does not prevent the remaining
    listeners from running. Coroutine listeners are scheduled as tasks.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], Any]


class Connection:
    """Handle returned by ``Signal.connect``; call ``disconnect()`` to detach."""

    __slots__ = ("_signal", "_listener", "_connected")

    def __init__(self, signal: Signal[Any], listener: Listener[Any]) -> None:
        self._signal = signal
        self._listener = listener
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    def disconnect(self) -> None:
        if self._connected:
            self._connected = False
            self._signal._remove(self)


class Signal(Generic[T]):
    """Multi-fire broadcast to connected listeners."""

    __slots__ = ("_name", "_connections")

    def __init__(self, name: str = "signal") -> None:
        self._name = name
        self._connections: list[Connection] = []

    def connect(self, listener: Listener[T]) -> Connection:
        connection = Connection(self, listener)
        self._connections.append(connection)
        return connection

    def fire(self, payload: T) -> None:
        for connection in list(self._connections):
            if connection.connected:
                self._invoke(connection._listener, payload)

    @property
    def listener_count(self) -> int:
        return len(self._connections)

    def _remove(self, connection: Connection) -> None:
        try:
            self._connections.remove(connection)
        except ValueError:
            pass

    def _invoke(self, listener: Listener[T], payload: T) -> None:
        try:
            outcome = listener(payload)
        except Exception:
            logger.exception("Listener for %s raised", self._name)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            task.add_done_callback(self._log_task_failure)

    def _log_task_failure(self, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Async listener for %s raised", self._name,
                exc_info=(type(error), error, error.__traceback__),
            )


class OneShotSignal(Signal[T]):
    """
    Fires exactly once; later ``fire`` calls are ignored.

    Usage:
        ended = OneShotSignal[SessionEndInfo]("session_ended")
        ended.fire(info)
        ended.connect(cleanup)   # runs immediately with ``info``
        info = await ended.wait()
    """

    __slots__ = ("_fired", "_payload", "_waiters")

    def __init__(self, name: str = "signal") -> None:
        super().__init__(name)
        self._fired = False
        self._payload: Optional[T] = None
        self._waiters: list[asyncio.Future] = []

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def payload(self) -> Optional[T]:
        return self._payload

    def connect(self, listener: Listener[T]) -> Connection:
        connection = super().connect(listener)
        if self._fired:
            self._invoke(listener, self._payload)
        return connection

    def fire(self, payload: T) -> bool:
        """Fire with ``payload``. Returns False if already fired."""
        if self._fired:
            return False
        self._fired = True
        self._payload = payload
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(payload)
        super().fire(payload)
        return True

    async def wait(self) -> T:
        """Suspend until fired; returns the payload."""
        if self._fired:
            return self._payload
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        return await waiter
