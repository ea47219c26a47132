"""
Reliability module: Retry with backoff and request budgeting.
"""

from profilemesh.reliability.budget import BudgetConfig, RequestBudget
from profilemesh.reliability.retry import RetryPolicy, RetryStats, retry_with_backoff

__all__ = [
    "BudgetConfig",
    "RequestBudget",
    "RetryPolicy",
    "RetryStats",
    "retry_with_backoff",
]
