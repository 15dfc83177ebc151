"""
Constants and configuration values for layerpatch.

This module contains all hardcoded names, timeouts, and other defaults used
throughout the application.
"""

# Configuration file
CONFIG_FILE_NAME = "layerpatch.yaml"
CONFIG_COMPONENTS_KEY = "components"
LEGACY_GAME_KEY = "game"
LEGACY_MODS_KEY = "mods"

# Component record keys (YAML)
KEY_NAME = "name"
KEY_PATCH_URL = "patch_url"
KEY_INSTALL_URL = "install_url"
KEY_VERSION_URL = "version_url"
KEY_VERSION = "version"
KEY_PASSWORD = "password"
LEGACY_KEY_INSTALL_URL = "url"
# Marker file the legacy layout checks before bootstrapping the game
LEGACY_INSTALL_MARKER = "version"

COMPONENT_KEYS = (
    KEY_NAME,
    KEY_PATCH_URL,
    KEY_INSTALL_URL,
    KEY_VERSION_URL,
    KEY_VERSION,
    KEY_PASSWORD,
)

# Top-level settings keys
KEY_INSTALL_MARKER = "install_marker"
KEY_LOG_LEVEL = "log_level"
KEY_REQUEST_TIMEOUT = "request_timeout"

# Reserved artifact names inside the destination root. These must never
# collide with installed content.
PATCH_ZIP_ARTIFACT = ".layerpatch-patch.zip"
PATCH_7Z_ARTIFACT = ".layerpatch-patch.7z"
VERSION_ARTIFACT = ".layerpatch-version.txt"
STAGING_ARTIFACT = ".layerpatch-staging"

RESERVED_ARTIFACTS = (
    PATCH_ZIP_ARTIFACT,
    PATCH_7Z_ARTIFACT,
    VERSION_ARTIFACT,
    STAGING_ARTIFACT,
)

# Archive formats
ZIP_EXTENSION = ".zip"
SEVEN_ZIP_EXTENSION = ".7z"

# Download configuration defaults
DEFAULT_CONNECT_RETRIES = 5
DEFAULT_BACKOFF_FACTOR = 0.3
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_CHUNK_SIZE = 8192
RETRY_STATUS_FORCELIST = (408, 429, 500, 502, 503, 504)

# Fingerprinting
FINGERPRINT_ALGORITHM = "sha1"
FINGERPRINT_CHUNK_SIZE = 64 * 1024

# Progress reporting: log a milestone every N percent when no bar is shown
PROGRESS_LOG_STEP_PERCENT = 10

# Google Drive share links
GDRIVE_HOSTS = ("drive.google.com", "docs.google.com")
GDRIVE_USERCONTENT_HOST = "drive.usercontent.google.com"
GDRIVE_DIRECT_URL = (
    "https://drive.usercontent.google.com/download?id={file_id}&export=download"
)
GDRIVE_FILE_ID_PATTERNS = (
    r"/file/d/([a-zA-Z0-9_-]+)",
    r"/d/([a-zA-Z0-9_-]+)",
    r"[?&]id=([a-zA-Z0-9_-]+)",
)

# Mega links are end-to-end encrypted and cannot be fetched over plain HTTP(S)
MEGA_HOSTS = ("mega.nz", "mega.co.nz", "mega.io")

# Logging configuration
LOGGER_NAME = "layerpatch"
LOG_FILE_NAME = "layerpatch.log"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
INFO_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DEBUG_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s: %(message)s"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_FILE_BACKUP_COUNT = 5

# Environment variable names
LOG_LEVEL_ENV_VAR = "LAYERPATCH_LOG_LEVEL"
DISABLE_FILE_LOGGING_ENV_VAR = "LAYERPATCH_DISABLE_FILE_LOGGING"

# Application directories (platformdirs)
APP_NAME = "layerpatch"

# Process exit codes
EXIT_OK = 0
EXIT_FAILURE = 1

# User-facing messages
MSG_NO_ROLLBACK = (
    "Components applied earlier in this run were not rolled back; "
    "the installation may be partially patched. Re-run layerpatch after "
    "fixing the problem."
)
