"""
Global settings and constants for the mail engine.

This module provides configuration constants and helpers for the engine.
Values are module attributes so callers should read them as
``config.NAME`` at call time; ``load_env()`` applies environment overrides.
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


# Default port constants
DEFAULT_IMAP_PORT: int = 993
DEFAULT_SMTP_PORT: int = 587

# Storage locations
BASE_DIR: Path = Path.home() / ".mail_engine"
SQLITE_DB_PATH: Path = BASE_DIR / "mail_engine.db"
SECRET_KEY_PATH: Path = BASE_DIR / "secret.key"
LOG_DIR: Path = BASE_DIR / "logs"

# Optional inline Fernet key (takes precedence over SECRET_KEY_PATH)
SECRET_KEY: Optional[str] = None

# Network
NETWORK_TIMEOUT_SECONDS: float = 30.0
SQLITE_BUSY_TIMEOUT_SECONDS: float = 10.0

# Sync
SYNC_INTERVAL_SECONDS: int = 30
SYNC_CONNECT_RETRIES: int = 3
SYNC_RETRY_BACKOFF_SECONDS: float = 1.0
SYNC_WAIT_TIMEOUT_SECONDS: float = 300.0
SYNC_MAX_WORKERS: int = 4
FETCH_BATCH_SIZE: int = 50
PROGRESS_QUEUE_SIZE: int = 64

# Presentation
SNIPPET_LENGTH: int = 150
DEFAULT_PAGE_SIZE: int = 50
MAX_PAGE_SIZE: int = 100
SEARCH_LIMIT: int = 50

# Undo-send window bounds (seconds)
MAX_SEND_DELAY_SECONDS: int = 30


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_env() -> None:
    """
    Load environment variables and apply overrides.

    Recognised variables use the ``MAIL_ENGINE_`` prefix. This function
    should be called once at process startup, before any storage access.
    """
    global SQLITE_DB_PATH, SECRET_KEY_PATH, SECRET_KEY, LOG_DIR
    global SYNC_INTERVAL_SECONDS, SYNC_MAX_WORKERS, NETWORK_TIMEOUT_SECONDS

    # Pick up a .env file in the working directory, if any
    load_dotenv()

    db_path_env = os.environ.get("MAIL_ENGINE_DB_PATH")
    if db_path_env:
        SQLITE_DB_PATH = Path(db_path_env)

    key_path_env = os.environ.get("MAIL_ENGINE_SECRET_KEY_PATH")
    if key_path_env:
        SECRET_KEY_PATH = Path(key_path_env)

    SECRET_KEY = os.environ.get("MAIL_ENGINE_SECRET_KEY") or SECRET_KEY

    log_dir_env = os.environ.get("MAIL_ENGINE_LOG_DIR")
    if log_dir_env:
        LOG_DIR = Path(log_dir_env)

    SYNC_INTERVAL_SECONDS = _env_int("MAIL_ENGINE_SYNC_INTERVAL", SYNC_INTERVAL_SECONDS)
    SYNC_MAX_WORKERS = _env_int("MAIL_ENGINE_SYNC_WORKERS", SYNC_MAX_WORKERS)
    NETWORK_TIMEOUT_SECONDS = float(
        _env_int("MAIL_ENGINE_NETWORK_TIMEOUT", int(NETWORK_TIMEOUT_SECONDS))
    )

    # Ensure the database directory exists
    SQLITE_DB_PATH.parent.mkdir(parents=True, exist_ok=True)


def get_database_url() -> str:
    """
    Get the SQLite database URL for the configured database path.

    Returns:
        A SQLite database URL string in the format 'sqlite:///path/to/database.db'
    """
    # Convert Windows paths to forward slashes for SQLite URL
    db_path_str = str(SQLITE_DB_PATH).replace("\\", "/")
    return f"sqlite:///{db_path_str}"
