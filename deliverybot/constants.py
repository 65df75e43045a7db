"""Constants used across deliverybot.

Values here are fixed behaviour, not configuration.
"""

# Invite policy (one buyer, one day)
INVITE_MAX_AGE_S = 86400
INVITE_MAX_USES = 1
INVITE_UNIQUE = True

# Expiry sweep
DEFAULT_REMINDER_DAYS = 3
DEFAULT_SWEEP_AT = "09:00"
DEFAULT_LICENSE_TABLE = "licenses"

# Provider calls
DEFAULT_PROVIDER_CALL_TIMEOUT_S = 10.0
PROVIDER_READY_TIMEOUT_S = 20.0
LICENSE_STORE_TIMEOUT_S = 10.0

# Discord error codes we branch on
DISCORD_CANNOT_DM_USER = 50007

# Embed colours
COLOR_SUCCESS = 0x5865F2  # Discord blurple
COLOR_WARNING = 0xFEE75C
COLOR_ERROR = 0xED4245

# HTTP surface
DEFAULT_API_HOST = "0.0.0.0"
DEFAULT_API_PORT = 3000
API_TIMEOUT_KEEP_ALIVE_S = 5
API_STOP_TIMEOUT_S = 5.0
API_START_TIMEOUT_S = 5.0

# Startup retry policy
STARTUP_MAX_RETRIES = 3
STARTUP_RETRY_DELAYS = [10, 20, 40]

DEFAULT_LOG_LEVEL = "INFO"
