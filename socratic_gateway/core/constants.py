"""Constants for the Socratic gateway."""

# Budget defaults
DEFAULT_COST_CEILING = 0.50
DEFAULT_MAX_CONTEXT_TOKENS = 8_000
DEFAULT_RESERVE_TOKENS = 100

# Output allowance clamp and the floor below which a context is "not optimal"
MIN_OUTPUT_TOKENS = 100
MAX_OUTPUT_TOKENS = 1_000
OPTIMAL_OUTPUT_FLOOR = 300

# Coarse character-per-token ratio used when token counting fails
CHARS_PER_TOKEN = 4

# Monitor retention
MAX_HISTORY_SIZE = 10_000
MAX_ALERTS = 50
ALERT_DEDUP_WINDOW_SECONDS = 5 * 60
PRUNE_INTERVAL_SECONDS = 60 * 60
HISTORY_RETENTION_DAYS = 7
DAILY_COST_RETENTION_DAYS = 30
ACKNOWLEDGED_ALERT_RETENTION_HOURS = 24

# Seconds between probes of providers flagged by a failure
DEFAULT_HEALTH_CHECK_INTERVAL = 60.0

# Name recorded for responses produced without an upstream call
RULE_ENGINE_PROVIDER = "rule-engine"
