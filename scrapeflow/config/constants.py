SCHEMA_VERSION = "1.0.0"

# Validation status policy: VALID at or above the threshold, PARTIAL at or
# above 70% of it, INVALID below.
VALID_THRESHOLD = 80.0
PARTIAL_THRESHOLD = VALID_THRESHOLD * 7 / 10

RATE_LIMIT_REQUESTS_MIN = 1
RATE_LIMIT_REQUESTS_MAX = 100
RATE_LIMIT_PERIOD_MIN_MS = 1_000
RATE_LIMIT_PERIOD_MAX_MS = 60_000

RETRY_ATTEMPTS_MAX = 10
RETRY_DELAY_MAX_MS = 300_000
TIMEOUT_MIN_MS = 1_000
TIMEOUT_MAX_MS = 300_000
URL_MAX_LENGTH = 2048

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

SCHEDULE_ID_PREFIX = "schedule-"

DEFAULT_SCHEDULER_RETRY: dict[str, float] = {
    "max_attempts": 3,
    "initial_delay_ms": 1_000,
    "max_delay_ms": 30_000,
    "backoff_multiplier": 2,
}

QUEUE_NAMES: dict[str, str] = {
    "scrape_job": "process_scrape_job",
    "schedule_trigger": "handle_schedule_trigger",
}

RAW_OBJECT_NAME = "raw.json"
PROCESSED_OBJECT_NAME = "processed.json"
FRESHNESS_HORIZON_DAYS = 30
