"""
StudyBuddy - Global Constants and Configuration Values

This module defines all constants used by the messaging core.
All magic numbers and configuration defaults are centralized here.
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "StudyBuddy"

# Channel Constants
DEFAULT_CHANNEL_HOST = "127.0.0.1"
DEFAULT_CHANNEL_PORT = 5100
CONNECTION_TIMEOUT = 10  # seconds
READ_TIMEOUT = 60.0  # seconds between reads before re-checking state
REQUEST_TIMEOUT = 10.0  # seconds a client waits for a reply event
READ_CHUNK_SIZE = 4096

# Frame Limits
MAX_FRAME_SIZE = 1024 * 1024  # 1 MB per newline-delimited JSON frame
MAX_PLAINTEXT_SIZE = 100 * 1024  # 100 KB

# History Paging
HISTORY_PAGE_SIZE = 200  # envelopes per history frame
MAX_HISTORY_PAGE_SIZE = 500
HISTORY_PAGE_BYTES = MAX_FRAME_SIZE // 2  # wire size budget for one history frame

# Cryptography Constants
RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
AES_KEY_SIZE = 32  # 256 bits
IV_SIZE = 12  # 96 bits for AES-GCM
SALT_SIZE = 16  # 128 bits
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1

# Key Store
PRIVATE_KEY_ENTRY = "privateKey"
DEFAULT_KEY_NAMESPACE = "studybuddy-e2ee"
PUBLISH_TIMEOUT = 10.0  # seconds
KEY_STORAGE_VERSION = "1.0"

# Placeholder shown for messages that cannot be decrypted
UNDECRYPTABLE_PLACEHOLDER = "[undecryptable message]"

# File Paths
DEFAULT_DATA_DIR = "~/.studybuddy"
CONVERSATIONS_DB_FILENAME = "conversations.db"
DIRECTORY_DB_FILENAME = "directory.db"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "channel.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5
