"""
Unit Tests: Retry Policy and Request Budget

Tests:
    - Transient faults retried until success
    - Exhaustion by attempt count and by budget
    - Permanent faults returned without retry
    - Backoff arithmetic and policy validation
"""

import time

import pytest

from profilemesh.core.errors import ErrorCode, TransientStoreError
from profilemesh.core.types import Err, Ok
from profilemesh.reliability import BudgetConfig, RequestBudget, RetryPolicy, retry_with_backoff
from profilemesh.reliability.retry import RetryStats, calculate_backoff
from profilemesh.storage import FaultKind, StoreFault


def _scripted(outcomes):
    """Coroutine factory returning the given results in order."""
    calls = []

    async def attempt():
        calls.append(len(calls))
        return outcomes[min(len(calls) - 1, len(outcomes) - 1)]

    return attempt, calls


def _big_budget():
    return RequestBudget(BudgetConfig(capacity=100, refill_per_second=100.0))


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    @pytest.mark.asyncio
    async def test_transient_then_success(self):
        transient = Err(StoreFault.transient("timeout", "read"))
        attempt, calls = _scripted([transient, transient, transient, Ok("value")])
        budget = _big_budget()
        stats = RetryStats()

        result = await retry_with_backoff(attempt, RetryPolicy.fast(), budget=budget, stats=stats)

        assert result.is_ok()
        assert result.value == "value"
        assert len(calls) == 4
        assert budget.consumed == 4
        assert stats.failed_attempts == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        attempt, calls = _scripted([Err(StoreFault.transient("down"))])

        with pytest.raises(TransientStoreError) as exc_info:
            await retry_with_backoff(
                attempt, RetryPolicy.fast(), budget=_big_budget(), operation="read", key="k",
            )

        assert exc_info.value.code == ErrorCode.STORE_RETRY_EXHAUSTED
        assert len(calls) == RetryPolicy.fast().max_retries + 1

    @pytest.mark.asyncio
    async def test_permanent_fault_not_retried(self):
        attempt, calls = _scripted([Err(StoreFault.permanent("denied"))])

        result = await retry_with_backoff(attempt, RetryPolicy.fast(), budget=_big_budget())

        assert result.is_err()
        assert result.error.kind == FaultKind.PERMANENT
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_conflict_returned_to_caller(self):
        attempt, calls = _scripted([Err(StoreFault.conflict())])

        result = await retry_with_backoff(attempt, RetryPolicy.fast())

        assert result.error.kind == FaultKind.CONFLICT
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_budget_exhausted(self):
        budget = RequestBudget(BudgetConfig(capacity=2, refill_per_second=0.01))
        attempt, calls = _scripted([Err(StoreFault.transient("busy"))])

        with pytest.raises(TransientStoreError) as exc_info:
            await retry_with_backoff(attempt, RetryPolicy.fast(), budget=budget)

        assert exc_info.value.code == ErrorCode.STORE_BUDGET_EXHAUSTED
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_no_retry_policy(self):
        attempt, calls = _scripted([Err(StoreFault.transient("busy"))])

        with pytest.raises(TransientStoreError):
            await retry_with_backoff(attempt, RetryPolicy.no_retry())

        assert len(calls) == 1


class TestBackoff:
    """Tests for backoff arithmetic."""

    def test_exponential_without_jitter(self):
        delays = [calculate_backoff(n, 100, 5000, 2.0, jitter=False) for n in range(4)]

        assert delays == [100, 200, 400, 800]

    def test_capped(self):
        assert calculate_backoff(20, 100, 5000, 2.0, jitter=False) == 5000

    def test_jitter_within_bounds(self):
        for attempt in range(6):
            delay = calculate_backoff(attempt, 100, 5000, 2.0, jitter=True)
            assert 0 <= delay <= min(5000, 100 * 2 ** attempt)


class TestRetryPolicyValidation:
    """Tests for RetryPolicy invariants."""

    def test_defaults(self):
        policy = RetryPolicy()

        assert policy.max_retries == 5
        assert policy.max_conflict_retries == 10

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)

    def test_base_above_max_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(base_delay_ms=10_000, max_delay_ms=100)

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(global_timeout_s=0)


class TestRequestBudget:
    """Tests for the token bucket."""

    def test_config_validation(self):
        with pytest.raises(ValueError):
            BudgetConfig(capacity=0)
        with pytest.raises(ValueError):
            BudgetConfig(refill_per_second=0)

    @pytest.mark.asyncio
    async def test_consumes_up_to_capacity(self):
        budget = RequestBudget(BudgetConfig(capacity=3, refill_per_second=0.01))
        deadline = time.monotonic() + 0.05

        granted = [await budget.acquire(deadline) for _ in range(4)]

        assert granted == [True, True, True, False]
        assert budget.consumed == 3

    @pytest.mark.asyncio
    async def test_waits_for_refill(self):
        budget = RequestBudget(BudgetConfig(capacity=1, refill_per_second=50.0))
        deadline = time.monotonic() + 1.0

        assert await budget.acquire(deadline)
        started = time.monotonic()
        assert await budget.acquire(deadline)

        assert time.monotonic() - started >= 0.01
        assert budget.consumed == 2
