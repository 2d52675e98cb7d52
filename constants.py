"""
Constants Module
Centralized constants to replace magic numbers throughout the codebase.
"""

from typing import Final, Tuple

# =============================================================================
# LEDGER API CONSTANTS
# =============================================================================

DEFAULT_LEDGER_API_URL: Final[str] = "https://horizon.stellar.org"

# Timeouts (seconds)
DEFAULT_API_TIMEOUT: Final[float] = 30.0
DEFAULT_CONNECT_TIMEOUT: Final[float] = 10.0

# Pagination
DEFAULT_PAGE_SIZE: Final[int] = 200  # Horizon maximum
DEFAULT_MAX_RECORDS: Final[int] = 10_000  # Bounded history horizon

# Rate limit headers
HEADER_RATELIMIT_LIMIT: Final[str] = "X-Ratelimit-Limit"
HEADER_RATELIMIT_REMAINING: Final[str] = "X-Ratelimit-Remaining"
HEADER_RATELIMIT_RESET: Final[str] = "X-Ratelimit-Reset"
HEADER_RETRY_AFTER: Final[str] = "Retry-After"

# =============================================================================
# RATE LIMITING CONSTANTS
# =============================================================================

DEFAULT_RATE_LIMIT_CAPACITY: Final[int] = 10
DEFAULT_RATE_LIMIT_REFILL_RATE: Final[float] = 5.0  # Tokens per second
LOW_QUOTA_THRESHOLD: Final[int] = 5  # Remaining quota that triggers throttling
DEFAULT_QUOTA_RESET_SECONDS: Final[float] = 60.0  # Used when no reset header is sent

# =============================================================================
# RETRY CONSTANTS
# =============================================================================

DEFAULT_MAX_ATTEMPTS: Final[int] = 4
DEFAULT_BASE_BACKOFF: Final[float] = 0.5
DEFAULT_MAX_BACKOFF: Final[float] = 30.0
BACKOFF_EXPONENTIAL_BASE: Final[float] = 2.0
BACKOFF_JITTER_FRACTION: Final[float] = 0.25  # Up to 25% added on top

# =============================================================================
# CIRCUIT BREAKER CONSTANTS
# =============================================================================

CB_FAILURE_THRESHOLD: Final[int] = 5  # Consecutive retryable failures before opening
CB_TIMEOUT_DURATION: Final[float] = 30.0  # Seconds before half-open
CB_SUCCESS_THRESHOLD: Final[int] = 2  # Trial successes before closing
CB_HALF_OPEN_MAX_CALLS: Final[int] = 1  # Concurrent trial calls in half-open

# =============================================================================
# CACHE CONSTANTS
# =============================================================================

DEFAULT_CACHE_TTL: Final[float] = 300.0
DEFAULT_STALE_GRACE: Final[float] = 900.0  # Expired entries kept for stale reads
DEFAULT_SWEEP_INTERVAL: Final[float] = 60.0
CORRIDOR_CACHE_PREFIX: Final[str] = "corridor:"

# =============================================================================
# AGGREGATION CONSTANTS
# =============================================================================

# Upper bounds of the half-open latency buckets; a final unbounded bucket follows
LATENCY_BUCKET_BOUNDS_MS: Final[Tuple[float, ...]] = (100.0, 250.0, 500.0, 1000.0, 2000.0)
DEFAULT_RELATED_CORRIDOR_LIMIT: Final[int] = 5
NATIVE_ASSET_CODE: Final[str] = "XLM"  # Display label for the native asset
CURRENCY_NATIVE: Final[str] = "native"
CURRENCY_USD: Final[str] = "USD"

# =============================================================================
# LOGGING CONSTANTS
# =============================================================================

MAX_RESPONSE_BODY_LOG_LENGTH: Final[int] = 200  # Truncate response bodies
MAX_RESPONSE_BODY_KEEP_LENGTH: Final[int] = 500
PARSE_ERROR_LOG_SAMPLES: Final[int] = 3  # Dropped payloads logged at WARNING per page
