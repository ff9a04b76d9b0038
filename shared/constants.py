"""
Shared constants used across the streaming subsystem.
"""

# Application
APP_VERSION = "1.0.0"

# Configuration paths
DEFAULT_CONFIG_DIR = "~/.config/cloudreel"
DEFAULT_CACHE_DIR = "~/.cache/cloudreel"
CONFIG_FILENAME = "config.json"
RCLONE_CONFIG_FILENAME = "rclone.conf"
LISTINGS_DB_FILENAME = "listings.db"

# Environment overrides (read after load_dotenv)
ENV_CONFIG_DIR = "CLOUDREEL_CONFIG_DIR"
ENV_CACHE_DIR = "CLOUDREEL_CACHE_DIR"
ENV_RCLONE_PATH = "CLOUDREEL_RCLONE"
ENV_HEADLESS = "HEADLESS"

# VFS cache bounds (handed to the serving process)
DEFAULT_CACHE_MAX_SIZE_MB = 1024
DEFAULT_CACHE_MAX_AGE_HOURS = 24

# Directory listing cache
DEFAULT_LISTING_TTL_SECONDS = 15 * 60

# Process supervision
DEFAULT_COMMAND_TIMEOUT_SECONDS = 30
DEFAULT_TERMINATE_GRACE_SECONDS = 5
PROCESS_OUTPUT_TAIL_LINES = 200

# Serving
LOOPBACK_HOST = "127.0.0.1"
DEFAULT_PROXY_PORT = 0  # 0 = pick a free port
DEFAULT_STARTUP_TIMEOUT_SECONDS = 10
DEFAULT_IDLE_TIMEOUT_MINUTES = 30
STARTUP_POLL_INTERVAL = 0.25  # seconds
RUNNING_POLL_INTERVAL = 2.0  # seconds
PROBE_TIMEOUT = 1.0  # seconds

# Authorization
DEFAULT_AUTH_TIMEOUT_SECONDS = 5 * 60
AUTH_RETENTION_SECONDS = 3600

# API server
DEFAULT_API_PORT = 5010

# Media formats shown by media_only listings
VIDEO_EXTENSIONS = [
    ".mkv", ".mp4", ".m4v", ".avi", ".mov", ".wmv",
    ".webm", ".ts", ".m2ts", ".mpg", ".mpeg", ".flv",
]
