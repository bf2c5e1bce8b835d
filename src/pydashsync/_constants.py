"""Internal constants shared across the library."""

USER_AGENT = "pydashsync"

# ------------------------------------------------------------------
# Reconnect backoff defaults
# ------------------------------------------------------------------

DEFAULT_RETRY_BASE_DELAY = 2.0
DEFAULT_RETRY_MAX_DELAY = 30.0
DEFAULT_RETRY_MAX_ATTEMPTS = 5

# ------------------------------------------------------------------
# Supabase realtime (Phoenix channels)
# ------------------------------------------------------------------

REALTIME_PATH = "/realtime/v1/websocket"
REALTIME_VSN = "1.0.0"
PHOENIX_TOPIC = "phoenix"

PHX_JOIN = "phx_join"
PHX_LEAVE = "phx_leave"
PHX_REPLY = "phx_reply"
PHX_ERROR = "phx_error"
PHX_CLOSE = "phx_close"
HEARTBEAT = "heartbeat"
POSTGRES_CHANGES = "postgres_changes"
SYSTEM = "system"

DEFAULT_JOIN_TIMEOUT = 10.0
DEFAULT_HEARTBEAT_INTERVAL = 25.0

# ------------------------------------------------------------------
# PostgREST
# ------------------------------------------------------------------

REST_PATH = "/rest/v1"
