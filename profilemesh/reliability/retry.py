"""
Retry Policy: Exponential Backoff with Jitter

Implements the retry strategy for remote store calls:
- Exponential backoff: base × 2^n, capped
- Full jitter: random(0, backoff) to prevent thundering herd
- Bounded attempts, a global deadline, and a shared request budget

Only TRANSIENT faults are retried here. Conflicts are retried one level
up (the adapter re-runs the updater); permanent faults are returned
immediately.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from profilemesh.core import constants as C
from profilemesh.core.errors import TransientStoreError
from profilemesh.core.types import Err, Result
from profilemesh.reliability.budget import RequestBudget
from profilemesh.storage.protocols import StoreFault

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration."""

    max_retries: int = C.RETRY_MAX_ATTEMPTS
    base_delay_ms: int = C.RETRY_BASE_MS
    max_delay_ms: int = C.RETRY_MAX_DELAY_MS
    exponential_base: float = 2.0
    jitter: bool = True  # Full jitter
    max_conflict_retries: int = C.MAX_CONFLICT_RETRIES
    global_timeout_s: float = C.RETRY_GLOBAL_TIMEOUT_S

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.max_conflict_retries < 0:
            raise ValueError("max_conflict_retries must be >= 0")
        if self.base_delay_ms < 0 or self.max_delay_ms < self.base_delay_ms:
            raise ValueError("require 0 <= base_delay_ms <= max_delay_ms")
        if self.global_timeout_s <= 0:
            raise ValueError("global_timeout_s must be > 0")

    @classmethod
    def default(cls) -> RetryPolicy:
        return cls()

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Fail on the first transient fault."""
        return cls(max_retries=0)

    @classmethod
    def fast(cls) -> RetryPolicy:
        """Millisecond delays for tests and local mock mode."""
        return cls(base_delay_ms=1, max_delay_ms=5, global_timeout_s=5.0)


@dataclass
class RetryStats:
    """Retry attempt statistics."""
    total_attempts: int = 0
    failed_attempts: int = 0
    total_delay_ms: float = 0.0
    last_error: Optional[str] = None


def calculate_backoff(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    exponential_base: float,
    jitter: bool,
) -> float:
    """
    Calculate backoff delay with optional jitter.

    Full jitter: random(0, min(cap, base * 2^attempt))
    """
    delay = min(max_delay_ms, base_delay_ms * (exponential_base ** attempt))

    if jitter:
        delay = random.uniform(0, delay)

    return delay


async def retry_with_backoff(
    func: Callable[[], Awaitable[Result[T, StoreFault]]],
    policy: Optional[RetryPolicy] = None,
    *,
    budget: Optional[RequestBudget] = None,
    operation: str = "request",
    key: str = "",
    stats: Optional[RetryStats] = None,
) -> Result[T, StoreFault]:
    """
    Execute a backend call, retrying transient faults.

    Args:
        func: Zero-argument coroutine factory performing one attempt
        policy: Retry configuration (default if None)
        budget: Shared request budget; each attempt consumes one request
        operation: Operation name for errors and logs
        key: Record key for errors and logs
        stats: Optional accumulator for attempt counts

    Returns:
        Ok with the value, or Err with a non-transient fault

    Raises:
        TransientStoreError: attempts, deadline or budget exhausted
    """
    if policy is None:
        policy = RetryPolicy.default()
    if stats is None:
        stats = RetryStats()

    deadline = time.monotonic() + policy.global_timeout_s
    last_fault: Optional[StoreFault] = None

    for attempt in range(policy.max_retries + 1):
        if budget is not None and not await budget.acquire(deadline):
            raise TransientStoreError.budget_exhausted(
                operation, key, stats.total_attempts,
            )

        stats.total_attempts += 1
        result = await func()

        if result.is_ok():
            return result

        fault = result.error
        if not fault.is_retryable:
            return Err(fault)

        last_fault = fault
        stats.failed_attempts += 1
        stats.last_error = str(fault)
        logger.debug("%s on %r attempt %d failed: %s", operation, key, attempt + 1, fault)

        if attempt >= policy.max_retries:
            break

        delay = calculate_backoff(
            attempt=attempt,
            base_delay_ms=policy.base_delay_ms,
            max_delay_ms=policy.max_delay_ms,
            exponential_base=policy.exponential_base,
            jitter=policy.jitter,
        )
        if time.monotonic() + delay / 1000 >= deadline:
            break
        stats.total_delay_ms += delay
        await asyncio.sleep(delay / 1000)

    raise TransientStoreError.retry_exhausted(
        operation,
        key,
        stats.total_attempts,
        str(last_fault) if last_fault else "deadline exceeded",
    )
