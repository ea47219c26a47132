"""
System-Wide Constants for profilemesh

All magic numbers and configuration defaults centralized here.
"""

from typing import Final

# =============================================================================
# SIZE AND TIME UNITS
# =============================================================================
KB: Final[int] = 1024
MB: Final[int] = 1024 * KB

SECOND_MS: Final[int] = 1000
MINUTE_MS: Final[int] = 60 * SECOND_MS

# =============================================================================
# SESSION LOCK
# =============================================================================
HEARTBEAT_INTERVAL_S: Final[float] = 30.0
STALE_AFTER_S: Final[float] = 90.0
MIN_STALE_TO_HEARTBEAT_RATIO: Final[float] = 3.0
AUTO_SAVE_INTERVAL_S: Final[float] = 60.0

# =============================================================================
# RETRY & REQUEST BUDGET
# =============================================================================
RETRY_MAX_ATTEMPTS: Final[int] = 5
RETRY_BASE_MS: Final[int] = 100
RETRY_MAX_DELAY_MS: Final[int] = 5 * SECOND_MS
RETRY_GLOBAL_TIMEOUT_S: Final[float] = 30.0
MAX_CONFLICT_RETRIES: Final[int] = 10

BUDGET_CAPACITY: Final[int] = 60
BUDGET_REFILL_PER_SECOND: Final[float] = 10.0

# =============================================================================
# RECORD LIMITS
# =============================================================================
MAX_KEY_LENGTH: Final[int] = 50
MAX_VALUE_BYTES: Final[int] = 4 * MB
VERSION_HISTORY: Final[int] = 10

# =============================================================================
# SHUTDOWN
# =============================================================================
DRAIN_TIMEOUT_S: Final[float] = 25.0

# =============================================================================
# RECORD DOCUMENT FIELDS
# =============================================================================
FIELD_DATA: Final[str] = "Data"
FIELD_META: Final[str] = "MetaData"
FIELD_USER_IDS: Final[str] = "UserIds"
META_CREATE_TIME: Final[str] = "ProfileCreateTime"
META_LOAD_COUNT: Final[str] = "SessionLoadCount"
META_ACTIVE_SESSION: Final[str] = "ActiveSession"
META_LAST_SAVED: Final[str] = "LastSavedAt"
META_TAGS: Final[str] = "MetaTags"
