"""
Observability module for profilemesh.

Provides:
- Structured JSON logging with context fields
"""

from profilemesh.observability.logging import (
    JsonFormatter,
    LogLevel,
    StructuredLogger,
    setup_logging,
)

__all__ = [
    "JsonFormatter",
    "LogLevel",
    "StructuredLogger",
    "setup_logging",
]
