"""Project configuration settings.

Plain constants shared by the cipher, the storage backends and the CLI.
Path and level lookups are functions so environment overrides made after
import (tests, shells) are honoured.
"""

from pathlib import Path
import os

# Security / crypto
KEY_LENGTH = 32  # AES-256
IV_LENGTH = 16   # AES block size
BLOCK_SIZE_BITS = 128  # PKCS#7 padding block
KEY_ENV_VAR = "CONNVAULT_KEY"

# Store
DB_ENV_VAR = "CONNVAULT_DB"
BACKEND_ENV_VAR = "CONNVAULT_BACKEND"
DEFAULT_DB_PATH = Path("vault_data/profiles.db")
DEFAULT_BACKEND = "sqlite"
BACKEND_KINDS = ("sqlite", "records")
TABLE_NAME = "connection_profiles"

# Key-store document
RECORD_FORMAT = "connvault-records"
RECORD_FORMAT_VERSION = 1

# Logging
LOG_ENV_VAR = "CONNVAULT_LOG_LEVEL"
LOG_LEVEL = "WARNING"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Backups
BACKUP_SUFFIX = ".backup"


def db_path() -> Path:
	env_path = os.environ.get(DB_ENV_VAR)
	return Path(env_path) if env_path else DEFAULT_DB_PATH


def backend_kind() -> str:
	return os.environ.get(BACKEND_ENV_VAR) or DEFAULT_BACKEND


def log_level() -> str:
	return (os.environ.get(LOG_ENV_VAR) or LOG_LEVEL).upper()


__all__ = [
	'KEY_LENGTH','IV_LENGTH','BLOCK_SIZE_BITS','KEY_ENV_VAR',
	'DB_ENV_VAR','BACKEND_ENV_VAR','DEFAULT_DB_PATH','DEFAULT_BACKEND','BACKEND_KINDS','TABLE_NAME',
	'RECORD_FORMAT','RECORD_FORMAT_VERSION','LOG_ENV_VAR','LOG_LEVEL','LOG_FORMAT','BACKUP_SUFFIX',
	'db_path','backend_kind','log_level'
]
