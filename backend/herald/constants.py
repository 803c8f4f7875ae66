"""
Defaults shared by the configuration layer and the services.

settings overrides most of these at runtime; the rest are fixed limits.
"""

# =============================================================================
# QUEUE
# =============================================================================

# Default priority for enqueued jobs. Higher values are leased first.
DEFAULT_JOB_PRIORITY = 1

# Default number of retries after the first failed attempt
DEFAULT_MAX_RETRIES = 3

# Base retry delay (seconds). Doubled on every retry up to the multiplier cap.
DEFAULT_RETRY_DELAY_SECONDS = 300

# Backoff multiplier cap: the longest wait between attempts is base x 64
MAX_BACKOFF_MULTIPLIER = 64

# Queue processor tick and batch size
QUEUE_POLL_INTERVAL_SECONDS = 10
QUEUE_BATCH_SIZE = 10

# =============================================================================
# DISPATCH
# =============================================================================

# Deadline shared by every endpoint in one fan-out
DISPATCH_DEADLINE_SECONDS = 30

# Upper bound for concurrent deliveries within one fan-out
DISPATCH_MAX_WORKERS = 16

# Appended to bodies truncated to an endpoint's max_body_length
TRUNCATION_MARKER = " [...]"

# =============================================================================
# HTTP CLIENT POOLS
# =============================================================================

# Default pool - general purpose APIs
HTTP_DEFAULT_TIMEOUT_SECONDS = 30

# Cloud pool - large vendor APIs can be slow under load
HTTP_CLOUD_TIMEOUT_SECONDS = 60

# Webhook pool - webhooks should answer fast; 15s means something is wrong
HTTP_WEBHOOK_TIMEOUT_SECONDS = 15

# Connect timeout shared by all pools
HTTP_CONNECT_TIMEOUT_SECONDS = 10

# =============================================================================
# DATABASE
# =============================================================================

# SQLite busy timeout - wait for locks before failing
# 5 seconds handles concurrent queue leasing without long hangs
SQLITE_BUSY_TIMEOUT_MS = 5000

# =============================================================================
# SCHEDULER & MONITORING
# =============================================================================

# Ticker sleep when no cron jobs are registered
CRON_IDLE_SLEEP_SECONDS = 60

# Background task health check interval
TASK_MONITOR_CHECK_INTERVAL_SECONDS = 60

# Retention cleanup cadence (hourly)
RETENTION_CLEANUP_INTERVAL_SECONDS = 3600

# Number of error messages kept in a metrics report
METRICS_TOP_ERRORS_LIMIT = 10
