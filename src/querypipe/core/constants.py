"""Global constants for querypipe.

Centralizes the numeric defaults shared by the pipeline stages so they stay
discoverable and consistent between the runtime classes and the pydantic
configuration models.
"""

# =============================================================================
# Authentication
# =============================================================================

TOKEN_REFRESH_TIMEOUT_SECONDS = 10.0
"""Hard ceiling for a single token refresh before it is treated as failed."""

DEFAULT_LOGIN_PATH = "/login"
"""Redirect target when authentication cannot be recovered."""

REDIRECT_AFTER_LOGIN_KEY = "redirect_after_login"
"""Navigation-store key holding the location to restore after login."""

# =============================================================================
# Retry / Backoff
# =============================================================================

RETRYABLE_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
"""Transport statuses the retry checker treats as transient."""

RETRYABLE_PROTOCOL_CODES = frozenset({
    "INTERNAL_SERVER_ERROR",
    "SERVICE_UNAVAILABLE",
    "DATABASE_ERROR",
    "RATE_LIMITED",
    "TIMEOUT",
    "NETWORK_ERROR",
    "UPLOAD_FAILED",
    "PROCESSING_FAILED",
    "SUBSCRIPTION_ERROR",
    "SUBSCRIPTION_FAILED",
    "WEBSOCKET_ERROR",
    "CACHE_ERROR",
    "CACHE_MISS",
})
"""Protocol extension codes the retry checker treats as transient."""

# =============================================================================
# Batching
# =============================================================================

BATCH_MAX_SIZE = 10
"""Queue length that triggers an immediate flush."""

BATCH_TIMEOUT_SECONDS = 0.1
"""Window a queued request waits for companions before the queue flushes."""

BATCH_SIMILARITY_HASH_CHARS = 8
"""Query-hash prefix length used in intelligent-batching similarity keys."""

PRIORITY_MUTATION = 100
PRIORITY_SUBSCRIPTION = 90
PRIORITY_QUERY = 50

# =============================================================================
# Query Optimization
# =============================================================================

OPTIMIZER_MAX_DEPTH = 10
"""Selection sets nested deeper than this are truncated."""

OPTIMIZER_MAX_COMPLEXITY = 1000
"""Complexity score above which a query is reported as too expensive."""

OPTIMIZER_COST_PER_POINT = 10
"""Estimated cost units per complexity point."""

HEAVY_FIELD_THRESHOLD_SECONDS = 0.1
"""Average resolution time above which a tracked field is reported as heavy."""

# =============================================================================
# Cache
# =============================================================================

CACHE_SCHEMA_VERSION = 1
"""Version stamped into persisted cache snapshots."""

CACHE_MAX_AGE_SECONDS = 24 * 60 * 60
"""Persisted snapshots older than this are discarded on restore."""

CACHE_PERSISTENCE_KEY = "querypipe-cache"
"""Default key under which the cache snapshot is persisted."""

ROOT_QUERY = "ROOT_QUERY"
ROOT_MUTATION = "ROOT_MUTATION"
ROOT_SUBSCRIPTION = "ROOT_SUBSCRIPTION"
