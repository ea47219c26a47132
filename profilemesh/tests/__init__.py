"""
Tests Module: Unit and Integration Tests

Test Coverage:
    - Promise engine and signals
    - Retry policy and request budget
    - Remote store adapter (in-memory and Redis backends)
    - Session locks, profiles, stores and the manager drain
    - Configuration loading
"""
