from pathlib import Path
import os

# Root directory mirrored at startup (the parent of the working directory by default)
DEFAULT_ROOT = Path(os.getenv("LIVETREE_ROOT", "..")).resolve()

# ============================================================================
# IGNORE SET
# ============================================================================

# Entry names that are never walked, watched or sent to clients.
# Matched against every path component, glob patterns (* and ?) allowed.
IGNORED_NAMES = [
    ".git",
    ".svn",
    ".hg",
    "node_modules",
    "__pycache__",
    ".venv",
]

# Extra names from the environment, comma separated
IGNORED_NAMES += [name.strip() for name in os.getenv("LIVETREE_IGNORE", "").split(",") if name.strip()]

# Optional per-root ignore file, one pattern per line
IGNORE_FILE_NAME = ".livetreeignore"

# ============================================================================
# CHANGE WATCHER
# ============================================================================

WATCH_DEBOUNCE_SECONDS = float(os.getenv("LIVETREE_DEBOUNCE", "0.1"))  # quiet period that closes a coalescing window
WATCH_MAX_COALESCE_SECONDS = float(os.getenv("LIVETREE_MAX_COALESCE", "1.0"))  # upper bound for one window during event storms
WATCH_LIVENESS_INTERVAL = 0.5  # seconds between observer health checks while idle
WATCH_MAX_RETRIES = int(os.getenv("LIVETREE_WATCH_RETRIES", "3"))  # automatic restarts after a watch error
WATCH_USE_POLLING = os.getenv("LIVETREE_POLLING", "false").lower() == "true"
WATCH_POLLING_INTERVAL = 1.0  # seconds, only used by the polling observer

# ============================================================================
# TREE BUILDER
# ============================================================================

MAX_TREE_DEPTH = int(os.getenv("LIVETREE_MAX_DEPTH", "64"))

# ============================================================================
# ROOT MANAGER / BROADCAST HUB
# ============================================================================

RECENT_ROOTS_CAPACITY = 10
CLIENT_QUEUE_SIZE = int(os.getenv("LIVETREE_CLIENT_QUEUE_SIZE", "100"))

# ============================================================================
# SERVER
# ============================================================================

HOST = os.getenv("LIVETREE_HOST", "0.0.0.0")
PORT = int(os.getenv("LIVETREE_PORT", "3001"))
LOG_LEVEL = os.getenv("LIVETREE_LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LIVETREE_LOG_FILE", "")  # empty disables the file handler
CORS_ALLOW_ORIGINS = [origin.strip() for origin in os.getenv("LIVETREE_CORS_ORIGINS", "*").split(",") if origin.strip()]
