"""
Promise: Composable Deferred Computations on asyncio

Every network-bound operation in profilemesh returns a Promise so callers
can either ``await`` it or compose it with handlers.

Guarantees:
    - Settles exactly once: fulfilled(value), rejected(error) or cancelled
    - ``then`` handlers may return plain values, coroutines or Promises;
      the dependent promise waits for the inner one (adoption)
    - A handler that raises rejects its dependent instead of escaping
    - Handlers are dispatched through the event loop (``call_soon``), so a
      handler attached to an already-settled promise still runs no earlier
      than the next scheduling point
    - ``cancel()`` prevents pending handlers from running and cancels
      dependents; a dependent whose consumers are all cancelled cancels
      its parent

Consumers:
    Each ``then``/``all``/``timeout`` dependent counts as a consumer of its
    source. Plain ``await`` does not, and cancelling an awaiting task never
    cancels the promise it awaits. Promises handed out to several callers
    are marked ``shared()`` and ignore consumer-driven cancellation.

Usage:
    profile = await store.load_profile("player_1")

    store.load_profile("player_1").then(
        lambda profile: profile.save(),
    ).catch(
        lambda error: logger.warning("load failed: %s", error),
    )
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum, auto
from typing import (
    Any,
    Awaitable,
    Callable,
    Generator,
    Generic,
    Iterable,
    Optional,
    TypeVar,
    Union,
)

T = TypeVar("T")
U = TypeVar("U")


class PromiseStatus(Enum):
    """Promise lifecycle states. All but PENDING are terminal."""
    PENDING = auto()
    FULFILLED = auto()
    REJECTED = auto()
    CANCELLED = auto()


class PromiseTimeoutError(TimeoutError):
    """Raised by ``Promise.timeout`` when the source did not settle in time."""


@dataclass(frozen=True, slots=True)
class Settlement:
    """Outcome of one input to ``Promise.all_settled``."""
    status: PromiseStatus
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == PromiseStatus.FULFILLED


def _raise(error: BaseException) -> Any:
    raise error


class Promise(Generic[T]):
    """
    Deferred value backed by an ``asyncio.Future``.

    Create with ``Promise.spawn(coro)``, ``Promise.resolve(value)`` or
    ``Promise.reject(error)``. Requires a running event loop.
    """

    __slots__ = ("_future", "_parents", "_consumers", "_adopted", "_shared")

    def __init__(
        self,
        future: asyncio.Future,
        parents: tuple[Promise[Any], ...] = (),
    ) -> None:
        self._future = future
        self._parents = parents
        self._consumers = 0
        self._adopted: Optional[Union[Promise[Any], asyncio.Future]] = None
        self._shared = False
        for parent in parents:
            parent._consumers += 1
        future.add_done_callback(self._on_own_done)

    # -------------------------------------------------------------------------
    # CONSTRUCTION
    # -------------------------------------------------------------------------

    @classmethod
    def spawn(cls, awaitable: Awaitable[T]) -> Promise[T]:
        """Schedule a coroutine (or wrap a future) as a Promise."""
        if isinstance(awaitable, Promise):
            return awaitable
        return cls(asyncio.ensure_future(awaitable))

    @classmethod
    def resolve(cls, value: Any = None) -> Promise[Any]:
        """Already-fulfilled promise. Awaitable values are adopted."""
        if inspect.isawaitable(value):
            return cls.spawn(value)
        future = asyncio.get_running_loop().create_future()
        future.set_result(value)
        return cls(future)

    @classmethod
    def reject(cls, error: BaseException) -> Promise[Any]:
        """Already-rejected promise."""
        future = asyncio.get_running_loop().create_future()
        future.set_exception(error)
        return cls(future)

    def _dependent(self, *parents: Promise[Any]) -> Promise[Any]:
        return Promise(self._future.get_loop().create_future(), parents)

    # -------------------------------------------------------------------------
    # STATE
    # -------------------------------------------------------------------------

    @property
    def status(self) -> PromiseStatus:
        future = self._future
        if not future.done():
            return PromiseStatus.PENDING
        if future.cancelled():
            return PromiseStatus.CANCELLED
        if future.exception() is not None:
            return PromiseStatus.REJECTED
        return PromiseStatus.FULFILLED

    @property
    def is_pending(self) -> bool:
        return not self._future.done()

    def result(self) -> T:
        """
        Value of a fulfilled promise.

        Raises the rejection error, ``asyncio.CancelledError``, or
        ``asyncio.InvalidStateError`` while still pending.
        """
        return self._future.result()

    def error(self) -> Optional[BaseException]:
        """Rejection error of a settled promise, None if fulfilled."""
        return self._future.exception()

    def add_done_callback(self, callback: Callable[[Promise[T]], Any]) -> None:
        """
        Bookkeeping hook run (via the loop) once settled, in any state.

        Unlike ``then`` it creates no dependent and does not count as a
        consumer.
        """
        self._future.add_done_callback(lambda _: callback(self))

    def __await__(self) -> Generator[Any, None, T]:
        return asyncio.shield(self._future).__await__()

    def __repr__(self) -> str:
        return f"<Promise {self.status.name}>"

    # -------------------------------------------------------------------------
    # CHAINING
    # -------------------------------------------------------------------------

    def then(
        self,
        on_fulfilled: Optional[Callable[[T], Any]] = None,
        on_rejected: Optional[Callable[[BaseException], Any]] = None,
    ) -> Promise[Any]:
        """
        Attach handlers, returning a dependent promise.

        The dependent settles with the handler's return value (adopting
        awaitables), or is rejected with whatever the handler raises.
        A missing handler passes the outcome through unchanged.
        """
        child = self._dependent(self)
        self._future.add_done_callback(
            lambda source: child._settle_through(source, on_fulfilled, on_rejected)
        )
        return child

    def catch(self, on_rejected: Callable[[BaseException], Any]) -> Promise[Any]:
        return self.then(None, on_rejected)

    def finally_(self, callback: Callable[[], Any]) -> Promise[T]:
        """
        Run ``callback`` once this promise fulfills or rejects.

        The original outcome passes through unless the callback raises.
        """
        def on_fulfilled(value: T) -> Any:
            outcome = callback()
            if inspect.isawaitable(outcome):
                return Promise.spawn(outcome).then(lambda _: value)
            return value

        def on_rejected(error: BaseException) -> Any:
            outcome = callback()
            if inspect.isawaitable(outcome):
                return Promise.spawn(outcome).then(lambda _: _raise(error))
            raise error

        return self.then(on_fulfilled, on_rejected)

    def timeout(
        self,
        seconds: float,
        error: Optional[BaseException] = None,
    ) -> Promise[T]:
        """
        Dependent that rejects with ``PromiseTimeoutError`` after ``seconds``.

        The source keeps running; only the dependent gives up.
        """
        child = self._dependent(self)
        loop = self._future.get_loop()

        def expire() -> None:
            if not child._future.done():
                child._future.set_exception(
                    error or PromiseTimeoutError(f"Promise timed out after {seconds}s")
                )

        handle = loop.call_later(seconds, expire)

        def on_source_done(source: asyncio.Future) -> None:
            handle.cancel()
            child._copy_from(source)

        self._future.add_done_callback(on_source_done)
        return child

    # -------------------------------------------------------------------------
    # AGGREGATION
    # -------------------------------------------------------------------------

    @classmethod
    def all(cls, promises: Iterable[Union[Promise[Any], Awaitable[Any]]]) -> Promise[list[Any]]:
        """
        Fulfill with all values in input order, or reject on the first
        rejection (fail fast). Remaining inputs keep running.
        """
        items = [cls.spawn(p) for p in promises]
        if not items:
            return cls.resolve([])

        out = items[0]._dependent(*items)
        values: list[Any] = [None] * len(items)
        remaining = [len(items)]

        def collect(index: int, source: asyncio.Future) -> None:
            if source.cancelled():
                if not out._future.done():
                    out._future.cancel()
                return
            error = source.exception()
            if out._future.done():
                return
            if error is not None:
                out._future.set_exception(error)
                return
            values[index] = source.result()
            remaining[0] -= 1
            if remaining[0] == 0:
                out._future.set_result(values)

        for index, item in enumerate(items):
            item._future.add_done_callback(
                lambda source, index=index: collect(index, source)
            )
        return out

    @classmethod
    def all_settled(
        cls,
        promises: Iterable[Union[Promise[Any], Awaitable[Any]]],
    ) -> Promise[list[Settlement]]:
        """Fulfill once every input has settled, with one Settlement each."""
        items = [cls.spawn(p) for p in promises]
        if not items:
            return cls.resolve([])

        out = items[0]._dependent(*items)
        settlements: list[Optional[Settlement]] = [None] * len(items)
        remaining = [len(items)]

        def collect(index: int, source: asyncio.Future) -> None:
            if source.cancelled():
                settlement = Settlement(PromiseStatus.CANCELLED)
            elif source.exception() is not None:
                settlement = Settlement(PromiseStatus.REJECTED, error=source.exception())
            else:
                settlement = Settlement(PromiseStatus.FULFILLED, value=source.result())
            settlements[index] = settlement
            remaining[0] -= 1
            if remaining[0] == 0 and not out._future.done():
                out._future.set_result(settlements)

        for index, item in enumerate(items):
            item._future.add_done_callback(
                lambda source, index=index: collect(index, source)
            )
        return out

    # -------------------------------------------------------------------------
    # CANCELLATION
    # -------------------------------------------------------------------------

    def cancel(self) -> bool:
        """
        Cancel a pending promise.

        Returns False if it had already settled.
        """
        return self._future.cancel()

    def shared(self) -> Promise[T]:
        """
        Mark this promise as handed to several callers.

        A shared promise is never cancelled because its consumers went
        away; cancelling a dependent only detaches that dependent. An
        explicit ``cancel()`` on the promise itself still applies.
        """
        self._shared = True
        return self

    @property
    def is_shared(self) -> bool:
        return self._shared

    def _on_own_done(self, future: asyncio.Future) -> None:
        if not future.cancelled():
            return
        adopted, self._adopted = self._adopted, None
        if isinstance(adopted, Promise):
            adopted._release_consumer()
        elif adopted is not None:
            adopted.cancel()
        for parent in self._parents:
            parent._release_consumer()

    def _release_consumer(self) -> None:
        self._consumers -= 1
        if self._consumers <= 0 and not self._shared and not self._future.done():
            self.cancel()

    # -------------------------------------------------------------------------
    # SETTLEMENT PLUMBING
    # -------------------------------------------------------------------------

    def _settle_through(
        self,
        source: asyncio.Future,
        on_fulfilled: Optional[Callable[[Any], Any]],
        on_rejected: Optional[Callable[[BaseException], Any]],
    ) -> None:
        if source.cancelled():
            self._future.cancel()
            return
        error = source.exception()
        if self._future.done():
            return

        if error is None:
            handler, argument = on_fulfilled, source.result()
        else:
            handler, argument = on_rejected, error

        if handler is None:
            self._copy_from(source)
            return

        try:
            outcome = handler(argument)
        except asyncio.CancelledError:
            self._future.cancel()
            return
        except Exception as exc:
            self._future.set_exception(exc)
            return
        self._adopt(outcome)

    def _adopt(self, outcome: Any) -> None:
        if isinstance(outcome, Promise):
            outcome._consumers += 1
            self._adopted = outcome
            outcome._future.add_done_callback(self._copy_from)
        elif inspect.isawaitable(outcome):
            inner = asyncio.ensure_future(outcome)
            self._adopted = inner
            inner.add_done_callback(self._copy_from)
        else:
            self._future.set_result(outcome)

    def _copy_from(self, source: asyncio.Future) -> None:
        if source.cancelled():
            if not self._future.done():
                self._future.cancel()
            return
        error = source.exception()
        if self._future.done():
            return
        self._adopted = None
        if error is not None:
            self._future.set_exception(error)
        else:
            self._future.set_result(source.result())
