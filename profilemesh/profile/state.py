"""
Profile Lifecycle State Machine

States:
    LOADING → Session lock being acquired, initial write in flight
    ACTIVE  → Lock held, data cached locally, mutations allowed
    SAVING  → A write (periodic save or final save) is in flight
    ENDED   → Terminal; lock released or lost, no further writes

Transitions:
    LOADING → ACTIVE : LOAD_SUCCEEDED
    LOADING → ENDED  : LOAD_FAILED    (lock held elsewhere, store error)
    ACTIVE  → SAVING : SAVE_STARTED
    SAVING  → ACTIVE : SAVE_FINISHED
    SAVING  → ENDED  : SESSION_ENDED  (final save done) / SESSION_LOST
    ACTIVE  → ENDED  : SESSION_ENDED / SESSION_LOST

Design:
    - Transition table is a frozenset of immutable edges
    - Any trigger not in the table is a programming error
      (InvalidTransitionError), never silently ignored
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto

from profilemesh.core.errors import InvalidTransitionError


class ProfileState(Enum):
    """Profile lifecycle states. ENDED is terminal."""
    LOADING = auto()
    ACTIVE = auto()
    SAVING = auto()
    ENDED = auto()

    @property
    def is_terminal(self) -> bool:
        return self == ProfileState.ENDED

    @property
    def is_live(self) -> bool:
        """Lock held and data writable."""
        return self in (ProfileState.ACTIVE, ProfileState.SAVING)


class LifecycleTrigger(Enum):
    LOAD_SUCCEEDED = auto()
    LOAD_FAILED = auto()
    SAVE_STARTED = auto()
    SAVE_FINISHED = auto()
    SESSION_ENDED = auto()
    SESSION_LOST = auto()


@dataclass(frozen=True, slots=True)
class ProfileTransition:
    from_state: ProfileState
    to_state: ProfileState
    trigger: LifecycleTrigger


VALID_TRANSITIONS: frozenset[ProfileTransition] = frozenset({
    ProfileTransition(ProfileState.LOADING, ProfileState.ACTIVE, LifecycleTrigger.LOAD_SUCCEEDED),
    ProfileTransition(ProfileState.LOADING, ProfileState.ENDED, LifecycleTrigger.LOAD_FAILED),

    ProfileTransition(ProfileState.ACTIVE, ProfileState.SAVING, LifecycleTrigger.SAVE_STARTED),
    ProfileTransition(ProfileState.ACTIVE, ProfileState.ENDED, LifecycleTrigger.SESSION_ENDED),
    ProfileTransition(ProfileState.ACTIVE, ProfileState.ENDED, LifecycleTrigger.SESSION_LOST),

    ProfileTransition(ProfileState.SAVING, ProfileState.ACTIVE, LifecycleTrigger.SAVE_FINISHED),
    ProfileTransition(ProfileState.SAVING, ProfileState.ENDED, LifecycleTrigger.SESSION_ENDED),
    ProfileTransition(ProfileState.SAVING, ProfileState.ENDED, LifecycleTrigger.SESSION_LOST),
})

_TRANSITION_INDEX: dict[tuple[ProfileState, LifecycleTrigger], ProfileState] = {
    (t.from_state, t.trigger): t.to_state for t in VALID_TRANSITIONS
}


class ProfileLifecycle:
    """
    Current lifecycle state of one profile.

    Usage:
        lifecycle = ProfileLifecycle("player_1")
        lifecycle.fire(LifecycleTrigger.LOAD_SUCCEEDED)   # → ACTIVE
    """

    __slots__ = ("_key", "_state")

    def __init__(self, key: str, state: ProfileState = ProfileState.LOADING) -> None:
        self._key = key
        self._state = state

    @property
    def state(self) -> ProfileState:
        return self._state

    def can_fire(self, trigger: LifecycleTrigger) -> bool:
        return (self._state, trigger) in _TRANSITION_INDEX

    def fire(self, trigger: LifecycleTrigger) -> ProfileState:
        """
        Apply ``trigger``.

        Raises:
            InvalidTransitionError: no edge for (state, trigger)
        """
        target = _TRANSITION_INDEX.get((self._state, trigger))
        if target is None:
            raise InvalidTransitionError.no_transition(self._key, self._state.name, trigger.name)
        self._state = target
        return target
