"""
Centralized error hierarchy for the mail engine.

This module provides a base exception class and specific error types
for different parts of the engine, along with a helper for converting
technical errors to user-facing messages.
"""
from typing import Union


class MailEngineError(Exception):
    """
    Base exception class for all mail engine errors.

    All engine-specific exceptions inherit from this class so callers can
    handle engine failures in one place.
    """
    pass


class ValidationError(MailEngineError):
    """Raised when caller-supplied input is invalid."""
    pass


class ResourceNotFoundError(MailEngineError):
    """Raised when a requested resource does not exist."""
    pass


class AccessDeniedError(MailEngineError):
    """Raised when a user operates on a resource they do not own."""
    pass


class AccountError(MailEngineError):
    """Raised when account management operations fail."""
    pass


class AccountNotFoundError(AccountError, ResourceNotFoundError):
    """Raised when an account does not exist."""
    pass


class AccountDisabledError(AccountError):
    """Raised when an account lacks the credentials required to connect."""
    pass


class FolderError(MailEngineError):
    """Raised when folder operations fail."""
    pass


class FolderNotFoundError(FolderError, ResourceNotFoundError):
    pass


class ImmutableFolderError(FolderError):
    """Raised when a system folder is renamed, moved or deleted."""
    pass


class FolderConflictError(FolderError):
    """Raised when a folder operation would break the tree (cycle, duplicate name)."""
    pass


class MessageNotFoundError(ResourceNotFoundError):
    pass


class LabelError(MailEngineError):
    """Raised when label operations fail."""
    pass


class LabelNotFoundError(LabelError, ResourceNotFoundError):
    pass


class ImmutableLabelError(LabelError):
    """Raised when a system label is deleted or renamed."""
    pass


class RuleNotFoundError(ResourceNotFoundError):
    pass


class DraftNotFoundError(ResourceNotFoundError):
    pass


class PendingSendNotFoundError(ResourceNotFoundError):
    """Raised when a queued send no longer exists (already fired or cancelled)."""
    pass


class ImapError(MailEngineError):
    """Raised when IMAP operations fail."""
    pass


class ImapConnectionError(ImapError):
    """Raised when connection to the IMAP server fails."""
    pass


class ImapAuthenticationError(ImapError):
    """Raised when IMAP authentication fails."""
    pass


class ImapOperationError(ImapError):
    """Raised when an IMAP command fails."""
    pass


class SmtpError(MailEngineError):
    """Raised when SMTP operations fail."""
    pass


class SmtpConnectionError(SmtpError):
    """Raised when connection to the SMTP server fails."""
    pass


class SmtpAuthenticationError(SmtpError):
    """Raised when SMTP authentication fails."""
    pass


class SmtpSendError(SmtpError):
    """Raised when sending a message fails."""
    pass


class SyncError(MailEngineError):
    """Raised when synchronization operations fail."""
    pass


class SyncInProgressError(SyncError):
    """Raised when waiting on an in-flight sync for the same account times out."""
    pass


class SyncTransportError(SyncError):
    """Raised when the remote session cannot be opened. Safe to retry."""
    pass


class DecryptionError(MailEngineError):
    """Raised when decryption operations fail."""
    pass


class MessageParseError(MailEngineError):
    """Raised when a raw message cannot be parsed."""
    pass


TRANSPORT_ERRORS = (ImapError, SmtpError, OSError)


def human_friendly_message(exc: Union[MailEngineError, Exception]) -> str:
    """
    Convert technical error exceptions to user-facing messages.

    Args:
        exc: The exception to convert.

    Returns:
        A message string suitable for display.
    """
    error_msg = str(exc).lower()

    if isinstance(exc, (ImapAuthenticationError, SmtpAuthenticationError)):
        return (
            "Could not sign in to your email account. Please check that "
            "your username and password are correct."
        )
    if isinstance(exc, (ImapConnectionError, SmtpConnectionError)) or "timeout" in error_msg:
        return (
            "Could not connect to the email server. Please check your "
            "internet connection and the server settings for this account."
        )
    if isinstance(exc, SmtpError):
        return (
            "Failed to send your email. Please check the recipient addresses "
            "and try again."
        )
    if isinstance(exc, ImapError):
        return (
            "An error occurred while accessing your email. Please try again."
        )
    if isinstance(exc, SyncInProgressError):
        return "A synchronization for this account is already running."
    if isinstance(exc, SyncError):
        return (
            "An error occurred while synchronizing your email. Some messages "
            "may not have been updated. Please try again."
        )
    if isinstance(exc, ImmutableFolderError):
        return "System folders cannot be renamed, moved or deleted."
    if isinstance(exc, ImmutableLabelError):
        return "System labels cannot be changed or deleted."
    if isinstance(exc, AccountDisabledError):
        return "This account has no incoming mail credentials configured."
    if isinstance(exc, ResourceNotFoundError):
        return "The requested item could not be found."
    if isinstance(exc, AccessDeniedError):
        return "You do not have access to this item."
    if isinstance(exc, DecryptionError):
        return (
            "Could not decrypt stored credentials. The encryption key may "
            "have been lost or changed; please re-enter the account password."
        )
    if isinstance(exc, (ValidationError, FolderError, LabelError)):
        return str(exc) or "The request was invalid."
    if isinstance(exc, MailEngineError):
        return "An unexpected error occurred. Please try again."

    return (
        "An unexpected error occurred. Please try again. If the problem "
        "persists, check the application logs."
    )
