MAX_USERNAME_LENGTH = 50
MAX_MESSAGE_LENGTH = 500
MESSAGE_PAGE_SIZE = 25

DEFAULT_ROOM_ID = "general"
DEFAULT_ROOM_NAME = "General"

# Identity placeholders when a socket opens without query parameters
GATEWAY_DEFAULT_USER_ID = "anon"
GATEWAY_DEFAULT_USERNAME = "anon"
LOCAL_DEFAULT_USER_ID = "dev-user"
LOCAL_DEFAULT_USERNAME = "Developer"
UNKNOWN_USER_ID = "unknown"
UNKNOWN_ROOM_ID = "unknown"

CONNECTION_TTL_SECONDS = 60 * 60 * 24

TRANSPORT_GATEWAY = "gateway"
TRANSPORT_LOCAL = "local"

MODE_PRODUCTION = "production"
MODE_DEVELOPMENT = "development"

EVENT_INSERT = "INSERT"

# Local push endpoint answers with these when the target socket is gone
STALE_STATUS_CODES = (404, 410)

# Change stream retention (approximate MAXLEN)
CHANGES_STREAM_MAXLEN = 10000
