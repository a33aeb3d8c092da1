"""
Global constants for dupelink
"""

# Current database schema version
# Version history:
# - v1: files table with content/audio hashes, mtime and entry kind
CURRENT_DB_VERSION = 1

# Application version
APP_VERSION = "1.0.0"

# Default database location (relative to the working directory)
DEFAULT_DB_PATH = "./file_hashes.db"

# Entries written per scan transaction before it is committed
BATCH_SIZE = 1500

# Fingerprint sentinel values stored in place of a digest
NOT_CALCULATED = "Not calculated"
NOT_APPLICABLE = "N/A"
BAD_AUDIO = "Bad audio"
ZERO_BYTE_FILE = "0-byte-file"

SENTINELS = (NOT_CALCULATED, NOT_APPLICABLE, BAD_AUDIO, ZERO_BYTE_FILE)
