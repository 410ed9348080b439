"""
Constants for WebChatBridge.
All hardcoded values should be defined here.
"""

# ============================================================
# APPLICATION CONFIGURATION
# ============================================================

# Set to True for detailed logging, False for minimal logging
DEBUG = True

# Port to run the server on
PORT = 8000

# Default config file path
CONFIG_FILE = "config.json"

# Durable stores (relative to user_data_dir)
ACCOUNTS_FILE = "accounts.json"
LOGIN_SESSIONS_FILE = "login_sessions.json"

# Browser profiles live under <user_data_dir>/<provider>/<account_id>
DEFAULT_USER_DATA_DIR = "./user-data"

# ============================================================
# RECONCILIATION TIMING
# ============================================================

# Poll interval for the reconciliation loop (seconds)
DEFAULT_POLL_INTERVAL_SECONDS = 0.1

# Hard wall-clock ceiling per exchange (seconds)
DEFAULT_EXCHANGE_TIMEOUT_SECONDS = 120

# Trailing polling after a completion marker (seconds)
DEFAULT_GRACE_WINDOW_SECONDS = 1.0

# No replay data for this long without a completion marker counts as completion (seconds)
DEFAULT_IDLE_TIMEOUT_SECONDS = 20

# Consecutive live-feed reads that must agree before settlement is accepted
SETTLEMENT_CONFIRMATIONS = 2

# Backoff before retrying a transient automation error in place (seconds)
DEFAULT_TRANSIENT_BACKOFF_SECONDS = 0.5

# ============================================================
# SESSION POOL
# ============================================================

DEFAULT_SESSION_ACQUIRE_ATTEMPTS = 3
DEFAULT_ENGINE_INIT_TIMEOUT_SECONDS = 60
DEFAULT_SESSION_LAUNCH_TIMEOUT_SECONDS = 90
SESSION_PROBE_TIMEOUT_SECONDS = 5.0
PAGE_NAVIGATION_TIMEOUT_MS = 30000

# Rate limiting
RATE_LIMIT_WINDOW_SECONDS = 60
DEFAULT_RATE_LIMIT_RPM = 60

# ============================================================
# AUTOMATION ERROR MARKERS
# ============================================================

# Errors worth retrying in place after a short backoff
TRANSIENT_ERROR_MARKERS = (
    "Execution context was destroyed",
    "Cannot find command",
    "Target closed",
    "Session closed",
    "navigation",
    "Timeout",
)

# The page (or its context) is gone for good
PAGE_CLOSED_ERROR_MARKERS = (
    "Target page, context or browser has been closed",
    "TargetClosedError",
    "Browser closed",
    "Context closed",
    "Page closed",
)

# The engine-level connection itself is gone; the runtime must be restarted
ENGINE_GONE_ERROR_MARKERS = (
    "Playwright connection closed",
    "Connection closed",
    "Browser has been closed",
)

# ============================================================
# BROWSER SETTINGS
# ============================================================

# Hides navigator.webdriver on every page of a session context
ANTI_WEBDRIVER_INIT_SCRIPT = "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"

# Window globals used by the replay-buffer interceptor
REPLAY_BUFFER_VAR = "__wcbReplayBuffer"
REPLAY_INTERCEPTOR_VAR = "__wcbReplayInterceptorSet"

# ============================================================
# OUTPUT FRAMING
# ============================================================

# Prefix marking a content chunk that supersedes everything streamed before it
REPLACE_MARKER = "__REPLACE__"

# Fenced-block language tag used to embed the conversation handle in content
CONVERSATION_ID_FENCE = "wcb-conversation-id"

# ============================================================
# MODELS
# ============================================================

# public model name -> (provider, want_reasoning)
MODEL_TABLE = {
    "deepseek-web-chat": ("deepseek", False),
    "deepseek-web-reasoner": ("deepseek", True),
    "gpt-web-chat": ("chatgpt", False),
    "gpt-web-reasoner": ("chatgpt", True),
}

MODEL_OWNERS = {
    "deepseek": "deepseek",
    "chatgpt": "openai",
}

# ============================================================
# BACKOFF SETTINGS
# ============================================================

def get_general_backoff_seconds(attempt: int) -> float:
    """Compute backoff seconds between session acquire attempts."""
    attempt = max(0, int(attempt))
    return min(0.5 * (2 ** attempt), 5.0)
