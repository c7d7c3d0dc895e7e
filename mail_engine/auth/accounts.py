"""
Account management for the mail engine.

This module provides functions to create, list, retrieve, update and delete
mail accounts. Passwords are encrypted at rest; every lookup that is made
on behalf of a user checks ownership before returning or mutating anything.
"""
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from mail_engine import config
from mail_engine.models import EmailAccount
from mail_engine.storage import db
from mail_engine.storage.encryption import decrypt_optional, encrypt_optional
from mail_engine.utils.errors import (
    AccessDeniedError,
    AccountError,
    AccountNotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)


# Provider configuration mapping, used to fill hosts the caller left blank
_PROVIDER_CONFIGS = {
    "gmail.com": ("imap.gmail.com", "smtp.gmail.com"),
    "googlemail.com": ("imap.gmail.com", "smtp.gmail.com"),
    "outlook.com": ("outlook.office365.com", "smtp.office365.com"),
    "hotmail.com": ("outlook.office365.com", "smtp.office365.com"),
    "yahoo.com": ("imap.mail.yahoo.com", "smtp.mail.yahoo.com"),
}

_UPDATABLE_FIELDS = (
    "name", "email_address", "imap_host", "imap_port", "imap_username",
    "imap_password", "imap_use_tls", "smtp_host", "smtp_port",
    "smtp_username", "smtp_password", "smtp_use_tls", "signature",
    "send_delay", "is_default",
)


def _provider_hosts(email_address: str) -> Tuple[str, str]:
    domain = email_address.rpartition("@")[2].lower()
    return _PROVIDER_CONFIGS.get(domain, ("", ""))


def _row_to_email_account(row: sqlite3.Row) -> EmailAccount:
    """Convert a database row to an EmailAccount model, decrypting passwords."""
    return EmailAccount(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"] or "",
        email_address=(row["email_address"] or "").strip(),
        imap_host=row["imap_host"] or "",
        imap_port=row["imap_port"] or config.DEFAULT_IMAP_PORT,
        imap_username=row["imap_username"] or "",
        imap_password=decrypt_optional(row["imap_password"]),
        imap_use_tls=bool(row["imap_use_tls"]),
        smtp_host=row["smtp_host"] or "",
        smtp_port=row["smtp_port"] or config.DEFAULT_SMTP_PORT,
        smtp_username=row["smtp_username"] or "",
        smtp_password=decrypt_optional(row["smtp_password"]),
        smtp_use_tls=bool(row["smtp_use_tls"]),
        signature=row["signature"] or "",
        send_delay=row["send_delay"] or 0,
        is_default=bool(row["is_default"]),
        last_sync_at=db.parse_ts(row["last_sync_at"]),
        sync_error=row["sync_error"],
        created_at=db.parse_ts(row["created_at"]),
    )


def validate_send_delay(send_delay: Any) -> int:
    """
    Validate an undo-send window.

    Raises:
        ValidationError: If the value is not an integer in
            0..config.MAX_SEND_DELAY_SECONDS.
    """
    try:
        value = int(send_delay)
    except (TypeError, ValueError) as e:
        raise ValidationError("send_delay must be an integer number of seconds") from e
    if value < 0 or value > config.MAX_SEND_DELAY_SECONDS:
        raise ValidationError(
            f"send_delay must be between 0 and {config.MAX_SEND_DELAY_SECONDS} seconds"
        )
    return value


def create_account(account: EmailAccount) -> EmailAccount:
    """
    Create and persist a new account.

    Blank IMAP/SMTP hosts are filled in for well-known providers and blank
    usernames default to the email address.

    Args:
        account: The account to create; ``user_id`` must be set.

    Returns:
        The account with its ID populated.

    Raises:
        ValidationError: If required fields are missing or invalid.
        AccountError: If the account already exists for this user.
    """
    if not account.user_id:
        raise ValidationError("Account owner is required")
    if not account.email_address or "@" not in account.email_address:
        raise ValidationError("A valid email address is required")
    account.email_address = account.email_address.strip()
    account.send_delay = validate_send_delay(account.send_delay)

    imap_host, smtp_host = _provider_hosts(account.email_address)
    account.imap_host = account.imap_host or imap_host
    account.smtp_host = account.smtp_host or smtp_host
    account.imap_username = account.imap_username or account.email_address
    account.smtp_username = account.smtp_username or account.imap_username
    account.smtp_password = account.smtp_password or account.imap_password
    account.name = account.name or account.email_address

    try:
        with db.transaction() as conn:
            if account.is_default:
                conn.execute("UPDATE accounts SET is_default = 0 WHERE user_id = ?",
                             (account.user_id,))
            cursor = conn.execute(
                """
                INSERT INTO accounts (
                    user_id, name, email_address, imap_host, imap_port,
                    imap_username, imap_password, imap_use_tls, smtp_host,
                    smtp_port, smtp_username, smtp_password, smtp_use_tls,
                    signature, send_delay, is_default
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account.user_id, account.name, account.email_address,
                    account.imap_host, account.imap_port, account.imap_username,
                    encrypt_optional(account.imap_password),
                    1 if account.imap_use_tls else 0,
                    account.smtp_host, account.smtp_port, account.smtp_username,
                    encrypt_optional(account.smtp_password),
                    1 if account.smtp_use_tls else 0,
                    account.signature, account.send_delay,
                    1 if account.is_default else 0,
                ),
            )
    except sqlite3.IntegrityError as e:
        raise AccountError(f"Account {account.email_address} already exists") from e

    account.id = cursor.lastrowid
    logger.info("Created account %s for user %s", account.id, account.user_id)
    return account


def get_account(account_id: int) -> Optional[EmailAccount]:
    """
    Get an account by ID without an ownership check (engine-internal use).

    Returns:
        The EmailAccount if found, None otherwise.
    """
    row = db.fetchone("SELECT * FROM accounts WHERE id = ?", (account_id,))
    return _row_to_email_account(row) if row else None


def require_account(account_id: int) -> EmailAccount:
    """Like ``get_account`` but raises AccountNotFoundError when missing."""
    account = get_account(account_id)
    if account is None:
        raise AccountNotFoundError(f"Account with ID {account_id} not found")
    return account


def get_owned_account(user_id: int, account_id: int) -> EmailAccount:
    """
    Get an account on behalf of a user.

    Raises:
        AccountNotFoundError: If the account doesn't exist.
        AccessDeniedError: If the account belongs to another user.
    """
    account = require_account(account_id)
    if account.user_id != user_id:
        raise AccessDeniedError(f"Account {account_id} is not owned by user {user_id}")
    return account


def list_accounts(user_id: Optional[int] = None) -> List[EmailAccount]:
    """
    List accounts, optionally restricted to one user.

    Returns:
        EmailAccount objects ordered by creation.
    """
    if user_id is None:
        rows = db.fetchall("SELECT * FROM accounts ORDER BY id")
    else:
        rows = db.fetchall("SELECT * FROM accounts WHERE user_id = ? ORDER BY id", (user_id,))
    return [_row_to_email_account(row) for row in rows]


def update_account(user_id: int, account_id: int, changes: Dict[str, Any]) -> EmailAccount:
    """
    Apply a partial update to an owned account.

    Args:
        user_id: The caller.
        account_id: The account to update.
        changes: Field name to new value. Unknown fields are rejected.
            Empty password values leave the stored password unchanged.

    Returns:
        The updated account.
    """
    account = get_owned_account(user_id, account_id)
    unknown = set(changes) - set(_UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown account fields: {', '.join(sorted(unknown))}")

    for key, value in changes.items():
        if key in ("imap_password", "smtp_password") and not value:
            continue
        if key == "send_delay":
            value = validate_send_delay(value)
        setattr(account, key, value)

    with db.transaction() as conn:
        if account.is_default:
            conn.execute("UPDATE accounts SET is_default = 0 WHERE user_id = ? AND id != ?",
                         (user_id, account_id))
        conn.execute(
            """
            UPDATE accounts SET
                name = ?, email_address = ?, imap_host = ?, imap_port = ?,
                imap_username = ?, imap_password = ?, imap_use_tls = ?,
                smtp_host = ?, smtp_port = ?, smtp_username = ?,
                smtp_password = ?, smtp_use_tls = ?, signature = ?,
                send_delay = ?, is_default = ?
            WHERE id = ?
            """,
            (
                account.name, account.email_address, account.imap_host,
                account.imap_port, account.imap_username,
                encrypt_optional(account.imap_password),
                1 if account.imap_use_tls else 0,
                account.smtp_host, account.smtp_port, account.smtp_username,
                encrypt_optional(account.smtp_password),
                1 if account.smtp_use_tls else 0,
                account.signature, account.send_delay,
                1 if account.is_default else 0,
                account_id,
            ),
        )
    logger.info("Updated account %s (%s)", account_id, ", ".join(sorted(changes)))
    return account


def set_send_delay(user_id: int, account_id: int, send_delay: Any) -> EmailAccount:
    """Set the undo-send window for an owned account."""
    return update_account(user_id, account_id, {"send_delay": send_delay})


def delete_account(user_id: int, account_id: int) -> None:
    """
    Delete an owned account and everything it owns.

    Folders, messages, labels, rules and drafts are removed by cascade.
    """
    get_owned_account(user_id, account_id)
    db.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
    logger.info("Deleted account %s", account_id)


def record_sync_status(account_id: int, error: Optional[str]) -> None:
    """
    Record the outcome of a sync attempt.

    A None ``error`` clears ``sync_error`` and advances ``last_sync_at``;
    otherwise the error text is stored and the checkpoint is left alone.
    """
    if error is None:
        db.execute(
            "UPDATE accounts SET sync_error = NULL, last_sync_at = ? WHERE id = ?",
            (db.format_ts(datetime.now(timezone.utc)), account_id),
        )
    else:
        db.execute("UPDATE accounts SET sync_error = ? WHERE id = ?", (error, account_id))
