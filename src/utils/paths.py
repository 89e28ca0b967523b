"""File path resolution using platformdirs.

The state database and log files live in the platform user data/log
directories unless overridden (DATABASE_URL, STORESYNC_DB_PATH,
logging.file):
  macOS: ~/Library/Application Support/storesync/
  Linux: ~/.local/share/storesync/
  Windows: %LOCALAPPDATA%/storesync/
"""

from pathlib import Path

import platformdirs

APP_NAME = "storesync"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB)."""
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_log_dir() -> Path:
    """Return the directory for application logs."""
    return Path(platformdirs.user_log_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "storesync.db"


def ensure_dirs_exist() -> None:
    """Create all required directories if they don't exist."""
    for d in [get_data_dir(), get_log_dir()]:
        d.mkdir(parents=True, exist_ok=True)
