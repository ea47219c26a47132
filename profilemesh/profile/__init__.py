"""
Profile module: lifecycle controller, stores and the store manager.

Provides:
- Profile / ProfileView: live session and read-only snapshot of a record
- ProfileStore: keyed loads with in-flight de-duplication
- ProfileStoreManager: registry, auto-save and shutdown draining
"""

from profilemesh.profile.autosave import AutoSaveScheduler
from profilemesh.profile.manager import DrainReport, ProfileStoreManager
from profilemesh.profile.profile import (
    EndReason,
    Profile,
    ProfileMetaData,
    ProfileView,
    SessionEndInfo,
)
from profilemesh.profile.reconcile import freeze, reconcile_table, thaw
from profilemesh.profile.state import LifecycleTrigger, ProfileLifecycle, ProfileState
from profilemesh.profile.store import ProfileStore

__all__ = [
    "AutoSaveScheduler",
    "DrainReport",
    "EndReason",
    "LifecycleTrigger",
    "Profile",
    "ProfileLifecycle",
    "ProfileMetaData",
    "ProfileState",
    "ProfileStore",
    "ProfileStoreManager",
    "ProfileView",
    "SessionEndInfo",
    "freeze",
    "reconcile_table",
    "thaw",
]
