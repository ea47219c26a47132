"""
Request Budget: Token Bucket Shared by One Adapter

Bounds how many backend requests a process may issue, so retries on a
single stuck record cannot monopolize the store or stall shutdown.

- Each backend attempt consumes one token
- Tokens refill continuously at ``refill_per_second`` up to ``capacity``
- A caller waiting for a token gives up at its operation deadline
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

from profilemesh.core import constants as C


@dataclass(frozen=True)
class BudgetConfig:
    """Request budget configuration."""
    capacity: int = C.BUDGET_CAPACITY
    refill_per_second: float = C.BUDGET_REFILL_PER_SECOND

    def __post_init__(self) -> None:
        if self.capacity <= 0:
            raise ValueError(f"capacity must be > 0, got {self.capacity}")
        if self.refill_per_second <= 0:
            raise ValueError("refill_per_second must be > 0")


class RequestBudget:
    """
    Async token bucket.

    Usage:
        budget = RequestBudget(BudgetConfig(capacity=10, refill_per_second=2))
        if await budget.acquire(deadline=time.monotonic() + 5):
            await backend.read(key)
    """

    __slots__ = ("_config", "_tokens", "_updated_at", "_lock", "_consumed")

    def __init__(self, config: Optional[BudgetConfig] = None) -> None:
        self._config = config or BudgetConfig()
        self._tokens = float(self._config.capacity)
        self._updated_at = time.monotonic()
        self._lock = asyncio.Lock()
        self._consumed = 0

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._updated_at
        self._updated_at = now
        self._tokens = min(
            float(self._config.capacity),
            self._tokens + elapsed * self._config.refill_per_second,
        )

    async def acquire(self, deadline: float) -> bool:
        """
        Take one token, waiting for refill if needed.

        Returns False if no token becomes available before ``deadline``
        (a ``time.monotonic()`` value).
        """
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    self._consumed += 1
                    return True

                wait_s = (1.0 - self._tokens) / self._config.refill_per_second
                if time.monotonic() + wait_s > deadline:
                    return False
                await asyncio.sleep(wait_s)

    @property
    def available(self) -> float:
        """Tokens currently available (after refill)."""
        self._refill()
        return self._tokens

    @property
    def consumed(self) -> int:
        """Total tokens handed out since creation."""
        return self._consumed
