"""Vigil constants: filesystem layout, timeouts, thresholds, and limits."""

from __future__ import annotations

from enum import IntEnum

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


class ExitCode(IntEnum):
    SUCCESS = 0
    ERROR = 1
    CONFIG_ERROR = 2
    STORAGE_ERROR = 3
    INTEGRITY_VIOLATION = 6
    POLICY_REJECTED = 8


# ---------------------------------------------------------------------------
# Filesystem layout
# ---------------------------------------------------------------------------

VIGIL_DIR_NAME = ".vigil"
CONFIG_FILENAME = "config.toml"
DB_FILENAME = "vigil.db"
FALLBACK_FILENAME = "audit_fallback.jsonl"
PID_FILENAME = "vigil.pid"
LOG_FILENAME = "vigil.log"

# ---------------------------------------------------------------------------
# Audit ledger
# ---------------------------------------------------------------------------

GENESIS_SEED = "VIGIL_AUDIT_LEDGER_GENESIS_BLOCK"
DEFAULT_CHAIN_ID = "main"
LEDGER_WRITE_TIMEOUT_SECONDS = 5.0
LEDGER_RETRY_ATTEMPTS = 3
LEDGER_RETRY_BASE_DELAY = 0.05  # seconds; doubled per attempt

# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

MAX_CONCURRENT_SESSIONS = 3
IDLE_TIMEOUT_MINUTES = 30
ABSOLUTE_TIMEOUT_HOURS = 24
WARNING_THRESHOLD_MINUTES = 5
SESSION_SWEEP_INTERVAL_SECONDS = 300
SESSION_SWEEP_BATCH_SIZE = 25

# ---------------------------------------------------------------------------
# Detection thresholds (count / window seconds)
# ---------------------------------------------------------------------------

BRUTE_FORCE_THRESHOLD = 5
BRUTE_FORCE_WINDOW_SECONDS = 5 * 60
ADMIN_ACTION_THRESHOLD = 5
ADMIN_ACTION_WINDOW_SECONDS = 30 * 60
EXPORT_THRESHOLD = 10
EXPORT_WINDOW_SECONDS = 60 * 60
SESSION_TIMEOUT_THRESHOLD = 10
SESSION_TIMEOUT_WINDOW_SECONDS = 10 * 60
RESTRICTED_ACCESS_THRESHOLD = 50
RESTRICTED_ACCESS_WINDOW_SECONDS = 60 * 60
TRAVEL_MAX_SPEED_KMH = 900.0
TRAVEL_CROSS_COUNTRY_MINUTES = 60
TRACKER_MAX_EVENTS_PER_KEY = 1000
TRACKER_SWEEP_INTERVAL_SECONDS = 300

# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

INCIDENT_REPEAT_THRESHOLD = 3
INCIDENT_REPEAT_WINDOW_HOURS = 24
NOTIFY_TIMEOUT_SECONDS = 5.0
OPEN_INCIDENTS_WARNING = 2
OPEN_INCIDENTS_CRITICAL = 5

# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

PASSWORD_MIN_LENGTH = 12
PASSWORD_HISTORY_COUNT = 12
PASSWORD_MAX_AGE_DAYS = 365
MAX_FAILED_ATTEMPTS = 5
LOCKOUT_MINUTES = 30
BREACH_API_URL = "https://api.pwnedpasswords.com"
BREACH_CHECK_TIMEOUT_SECONDS = 10.0

# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

METRICS_INTERVAL_SECONDS = 600
COMPLIANCE_INTERVAL_SECONDS = 3600
FALLBACK_REPLAY_INTERVAL_SECONDS = 60
