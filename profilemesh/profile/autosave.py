"""
Auto-Save Scheduler

Every ``interval_s`` each ACTIVE profile of a store is saved once. Saves
are spread evenly across the interval instead of firing in a burst, so
the request budget sees a steady rate.

Profiles already SAVING are skipped for that round. Save failures are
logged, never raised; a lost lock ends the session through the profile's
own notification.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from profilemesh.observability.logging import StructuredLogger
from profilemesh.profile.state import ProfileState

if TYPE_CHECKING:
    from profilemesh.profile.profile import Profile


class AutoSaveScheduler:
    """
    Background periodic saver for one store.

    Usage:
        scheduler = AutoSaveScheduler(lambda: store.active_profiles, 60.0, "players")
        scheduler.start()
        ...
        scheduler.stop()
    """

    __slots__ = ("_profiles", "_interval_s", "_name", "_task", "_saves_started", "_log")

    def __init__(
        self,
        profiles: Callable[[], Iterable[Profile]],
        interval_s: float,
        name: str = "store",
    ) -> None:
        self._profiles = profiles
        self._interval_s = interval_s
        self._name = name
        self._task: Optional[asyncio.Task[None]] = None
        self._saves_started = 0
        self._log = StructuredLogger(__name__).with_extra(store=name)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def saves_started(self) -> int:
        return self._saves_started

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.ensure_future(self._run())

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def _run(self) -> None:
        while True:
            profiles = [p for p in self._profiles() if p.state == ProfileState.ACTIVE]
            if not profiles:
                await asyncio.sleep(self._interval_s)
                continue

            spacing = self._interval_s / len(profiles)
            for profile in profiles:
                await asyncio.sleep(spacing)
                if profile.state != ProfileState.ACTIVE:
                    continue
                self._saves_started += 1
                profile.save().catch(
                    lambda error, key=profile.key: self._log.warning(
                        "Auto-save failed", key=key, error=str(error),
                    )
                )
