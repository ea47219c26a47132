#!/usr/bin/env python3
"""
profilemesh walkthrough

Runs a complete session against the in-memory backend (mock mode):
create a store, load a profile, mutate and save it, show that a second
process cannot take the lock, then drain.

Usage:
    python -m profilemesh

    # Against Redis
    PROFILEMESH_BACKEND=redis REDIS_HOST=localhost python -m profilemesh
"""

from __future__ import annotations

import asyncio
import sys

from profilemesh.core.config import ProfileMeshConfig
from profilemesh.core.errors import SessionLockedError
from profilemesh.observability.logging import LogLevel, setup_logging
from profilemesh.profile import ProfileStoreManager

TEMPLATE = {
    "coins": 0,
    "inventory": [],
    "settings": {"music": True, "language": "en"},
}


async def demo() -> None:
    print("\n" + "=" * 60)
    print("profilemesh - Session-Locked Profiles Demo")
    print("=" * 60 + "\n")

    config_result = ProfileMeshConfig.from_env()
    if config_result.is_err():
        print(f"Configuration error: {config_result.error}")
        sys.exit(1)
    config = config_result.unwrap()

    setup_logging(LogLevel.WARNING, json_output=False)
    print(f"✓ Configuration loaded (backend={config.backend.name})")

    async with ProfileStoreManager(config, holder_id="server-a") as server_a:
        server_a.install_signal_handlers()
        store = await server_a.create("players", TEMPLATE)
        print(f"✓ Store '{store.name}' created")

        profile = await store.load_profile("player_1", reconcile=True)
        print(f"✓ Loaded {profile.key}: {profile.data}")
        print(f"  Session load count: {profile.meta_data.session_load_count}")

        profile.data["coins"] += 100
        profile.data["inventory"].append("sword")
        profile.add_user_id(1001)
        profile.set_meta_tag("region", "eu-west")
        await profile.save()
        print(f"✓ Saved version {profile.meta_data.version}")

        # A second process sharing the backend sees the lock as held
        server_b = ProfileStoreManager(config, backend=server_a.backend, holder_id="server-b")
        other = await server_b.create("players", TEMPLATE)
        try:
            await other.load_profile("player_1")
        except SessionLockedError as e:
            print(f"✓ Second server rejected: {e.message}")

        view = await other.view_profile("player_1")
        print(f"✓ View from second server: coins={view.data['coins']} (read-only)")

        profile.session_ended.connect(
            lambda info: print(f"✓ Session ended: {info.reason.name}")
        )
        await profile.end_session()

        reloaded = await other.load_profile("player_1")
        print(f"✓ Second server loaded after release: coins={reloaded.data['coins']}")
        await reloaded.end_session()

    print("\n" + "=" * 60)
    print("Demo complete")
    print("=" * 60 + "\n")


def main() -> None:
    try:
        asyncio.run(demo())
    except KeyboardInterrupt:
        print("\nInterrupted")


if __name__ == "__main__":
    main()
