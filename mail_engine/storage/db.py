"""
SQLite database connection and schema management.

This module provides a simple, synchronous interface for SQLite database
operations: one short-lived connection per call, plus a ``transaction()``
context manager for multi-statement units of work. Units of work are kept
small and scoped to one account or folder so concurrent account syncs only
contend for the write lock briefly.
"""
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional, Sequence, Tuple

from mail_engine import config


logger = logging.getLogger(__name__)


def _ensure_db_directory() -> None:
    """Ensure the database directory exists."""
    config.SQLITE_DB_PATH.parent.mkdir(parents=True, exist_ok=True)


def get_connection() -> sqlite3.Connection:
    """
    Get a SQLite database connection.

    Returns:
        A sqlite3.Connection in autocommit mode with row_factory set to
        sqlite3.Row and foreign keys enforced.

    Note:
        The connection should be closed by the caller when done.
    """
    _ensure_db_directory()
    conn = sqlite3.connect(
        str(config.SQLITE_DB_PATH),
        timeout=config.SQLITE_BUSY_TIMEOUT_SECONDS,
        check_same_thread=False,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    # WAL lets readers proceed while one account sync holds the write lock
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """
    Run a block of statements atomically.

    The write lock is taken up front (``BEGIN IMMEDIATE``) so two writers
    never deadlock upgrading a read lock. The block commits on normal exit
    and rolls back on any exception, which is re-raised.

    Example:
        >>> with transaction() as conn:
        ...     conn.execute("UPDATE folders SET last_uid = ? WHERE id = ?", (10, 1))
    """
    conn = get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        email_address TEXT NOT NULL,
        imap_host TEXT NOT NULL DEFAULT '',
        imap_port INTEGER NOT NULL DEFAULT 993,
        imap_username TEXT NOT NULL DEFAULT '',
        imap_password TEXT,
        imap_use_tls INTEGER NOT NULL DEFAULT 1,
        smtp_host TEXT NOT NULL DEFAULT '',
        smtp_port INTEGER NOT NULL DEFAULT 587,
        smtp_username TEXT NOT NULL DEFAULT '',
        smtp_password TEXT,
        smtp_use_tls INTEGER NOT NULL DEFAULT 1,
        signature TEXT NOT NULL DEFAULT '',
        send_delay INTEGER NOT NULL DEFAULT 0,
        is_default INTEGER NOT NULL DEFAULT 0,
        last_sync_at TEXT,
        sync_error TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(user_id, email_address)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS folders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id INTEGER NOT NULL,
        parent_id INTEGER,
        name TEXT NOT NULL,
        remote_name TEXT NOT NULL,
        folder_type TEXT NOT NULL DEFAULT 'custom',
        delimiter TEXT NOT NULL DEFAULT '/',
        sort_order INTEGER NOT NULL DEFAULT 0,
        unread_count INTEGER NOT NULL DEFAULT 0,
        total_count INTEGER NOT NULL DEFAULT 0,
        uid_validity INTEGER,
        uid_next INTEGER,
        last_uid INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE,
        FOREIGN KEY (parent_id) REFERENCES folders(id) ON DELETE CASCADE,
        UNIQUE(account_id, remote_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS emails (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id INTEGER NOT NULL,
        folder_id INTEGER NOT NULL,
        uid INTEGER,
        message_id TEXT NOT NULL,
        thread_id TEXT NOT NULL DEFAULT '',
        in_reply_to TEXT NOT NULL DEFAULT '',
        references_header TEXT NOT NULL DEFAULT '',
        from_name TEXT NOT NULL DEFAULT '',
        from_address TEXT NOT NULL DEFAULT '',
        to_addresses TEXT NOT NULL DEFAULT '[]',
        cc_addresses TEXT NOT NULL DEFAULT '[]',
        bcc_addresses TEXT NOT NULL DEFAULT '[]',
        reply_to TEXT NOT NULL DEFAULT '[]',
        subject TEXT NOT NULL DEFAULT '',
        text_body TEXT NOT NULL DEFAULT '',
        html_body TEXT NOT NULL DEFAULT '',
        snippet TEXT NOT NULL DEFAULT '',
        is_read INTEGER NOT NULL DEFAULT 0,
        is_starred INTEGER NOT NULL DEFAULT 0,
        is_answered INTEGER NOT NULL DEFAULT 0,
        is_draft INTEGER NOT NULL DEFAULT 0,
        has_attachments INTEGER NOT NULL DEFAULT 0,
        date TEXT,
        received_at TEXT,
        processed INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE,
        FOREIGN KEY (folder_id) REFERENCES folders(id) ON DELETE CASCADE,
        UNIQUE(account_id, folder_id, uid),
        UNIQUE(account_id, message_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS attachments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email_id INTEGER NOT NULL,
        filename TEXT NOT NULL DEFAULT '',
        content_type TEXT NOT NULL DEFAULT '',
        size INTEGER NOT NULL DEFAULT 0,
        content_id TEXT NOT NULL DEFAULT '',
        is_inline INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (email_id) REFERENCES emails(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS labels (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        color TEXT NOT NULL DEFAULT '#808080',
        is_system INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE,
        UNIQUE(account_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_labels (
        email_id INTEGER NOT NULL,
        label_id INTEGER NOT NULL,
        PRIMARY KEY (email_id, label_id),
        FOREIGN KEY (email_id) REFERENCES emails(id) ON DELETE CASCADE,
        FOREIGN KEY (label_id) REFERENCES labels(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id INTEGER NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        priority INTEGER NOT NULL DEFAULT 0,
        match_type TEXT NOT NULL DEFAULT 'all',
        conditions TEXT NOT NULL DEFAULT '[]',
        actions TEXT NOT NULL DEFAULT '[]',
        stop_processing INTEGER NOT NULL DEFAULT 0,
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS drafts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id INTEGER NOT NULL,
        to_addresses TEXT NOT NULL DEFAULT '[]',
        cc_addresses TEXT NOT NULL DEFAULT '[]',
        bcc_addresses TEXT NOT NULL DEFAULT '[]',
        subject TEXT NOT NULL DEFAULT '',
        text_body TEXT NOT NULL DEFAULT '',
        html_body TEXT NOT NULL DEFAULT '',
        reply_to_id INTEGER,
        updated_at TEXT,
        FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_accounts_user ON accounts(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_folders_parent ON folders(account_id, parent_id, sort_order)",
    "CREATE INDEX IF NOT EXISTS idx_emails_folder_date ON emails(folder_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_emails_thread ON emails(account_id, thread_id)",
    "CREATE INDEX IF NOT EXISTS idx_emails_processed ON emails(account_id, processed)",
    "CREATE INDEX IF NOT EXISTS idx_emails_folder_read ON emails(folder_id, is_read)",
    "CREATE INDEX IF NOT EXISTS idx_emails_subject ON emails(subject)",
    "CREATE INDEX IF NOT EXISTS idx_emails_from ON emails(from_address)",
    "CREATE INDEX IF NOT EXISTS idx_attachments_email ON attachments(email_id)",
    "CREATE INDEX IF NOT EXISTS idx_rules_account ON rules(account_id, priority)",
    "CREATE INDEX IF NOT EXISTS idx_drafts_account ON drafts(account_id)",
)


def init_db() -> None:
    """
    Initialize the database schema.

    Creates all required tables and indexes if they don't exist. Safe to
    call on every startup.
    """
    conn = get_connection()
    try:
        for statement in SCHEMA:
            conn.execute(statement)
        logger.debug("Database schema ready at %s", config.SQLITE_DB_PATH)
    finally:
        conn.close()


def execute(query: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
    """
    Execute a single SQL statement and return the cursor.

    Args:
        query: SQL query string.
        params: Query parameters.

    Returns:
        The cursor object (useful for lastrowid and rowcount).
    """
    conn = get_connection()
    try:
        return conn.execute(query, tuple(params))
    finally:
        conn.close()


def fetchall(query: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
    """
    Execute a SELECT query and return all rows.

    Args:
        query: SQL SELECT query string.
        params: Query parameters.

    Returns:
        A list of sqlite3.Row instances.
    """
    conn = get_connection()
    try:
        return conn.execute(query, tuple(params)).fetchall()
    finally:
        conn.close()


def fetchone(query: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
    """
    Execute a SELECT query and return the first row, or None.
    """
    conn = get_connection()
    try:
        return conn.execute(query, tuple(params)).fetchone()
    finally:
        conn.close()


def execute_many(query: str, params_list: List[Tuple[Any, ...]]) -> None:
    """
    Execute a statement once per parameter tuple, atomically.

    Args:
        query: SQL query string.
        params_list: List of parameter tuples.
    """
    with transaction() as conn:
        conn.executemany(query, params_list)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for a TEXT column (ISO 8601)."""
    return value.isoformat() if value else None


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse a TEXT timestamp column; unparseable values become None."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable timestamp %r", value)
        return None
