##### BATCH SIZING
INITIAL_BATCH_SIZE = 10
MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 20
BATCH_ADJUSTMENT_FACTOR = 0.75
BATCH_GROW_SUCCESS_RATE = 0.9
BATCH_SHRINK_SUCCESS_RATE = 0.7

##### RUN DEFAULTS
DEFAULT_CALLS_PER_MINUTE = 10
MIN_CALL_SPACING_SECONDS = 1.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_CONCURRENT_CALL_LIMIT = 20
DEFAULT_CALL_START_HOUR = 8
DEFAULT_CALL_END_HOUR = 20

##### LOOP SLEEPS (seconds)
OFFICE_HOURS_RECHECK_SECONDS = 15 * 60
NO_CAPACITY_SLEEP_SECONDS = 5
IN_FLIGHT_SLEEP_SECONDS = 5
PROVIDER_RECHECK_DELAY_SECONDS = 3
BACKOFF_BASE_SECONDS = 5
BACKOFF_MAX_MULTIPLIER = 5
CONSECUTIVE_ERROR_THRESHOLD = 3

##### WINDOWS (seconds)
IN_FLIGHT_RESET_SECONDS = 10
PROVIDER_RECHECK_WINDOW_SECONDS = 60
STUCK_CHECK_INTERVAL_SECONDS = 60
STUCK_ROW_THRESHOLD_SECONDS = 5 * 60
RUN_LOCK_TIMEOUT_SECONDS = 20 * 60

##### STATUSES
ACTIVE_CALL_STATUSES = ('pending', 'in-progress')
TERMINAL_CALL_STATUSES = ('completed', 'failed', 'voicemail', 'no-answer')
OPEN_ROW_STATUSES = ('pending', 'calling')
STARTABLE_RUN_STATUSES = ('ready', 'paused', 'scheduled', 'draft')
SCHEDULABLE_RUN_STATUSES = ('draft', 'ready', 'paused')

PAUSE_REASON_OFFICE_HOURS = 'outside_office_hours'
PAUSE_REASON_USER = 'user'
