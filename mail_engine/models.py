"""
Core domain models for the mail engine.

This module contains pure domain models (dataclasses) without any database
or network dependencies. Thread aggregates are derived from message rows and
are never stored.
"""
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import formataddr
from typing import List, Optional


FOLDER_INBOX = "inbox"
FOLDER_SENT = "sent"
FOLDER_DRAFTS = "drafts"
FOLDER_TRASH = "trash"
FOLDER_SPAM = "spam"
FOLDER_ARCHIVE = "archive"
FOLDER_CUSTOM = "custom"

FOLDER_TYPES = (
    FOLDER_INBOX, FOLDER_SENT, FOLDER_DRAFTS, FOLDER_TRASH,
    FOLDER_SPAM, FOLDER_ARCHIVE, FOLDER_CUSTOM,
)
SYSTEM_FOLDER_TYPES = frozenset(FOLDER_TYPES) - {FOLDER_CUSTOM}

MATCH_ANY = "any"
MATCH_ALL = "all"
MATCH_TYPES = (MATCH_ANY, MATCH_ALL)

CONDITION_FIELDS = ("from", "to", "cc", "subject", "body")
CONDITION_OPERATORS = ("contains", "equals", "startswith", "endswith", "regex")
ACTION_TYPES = ("label", "move", "star", "mark_read", "archive", "delete")

# PendingSend lifecycle
SEND_PENDING = "pending"
SEND_FIRED = "fired"
SEND_CANCELLED = "cancelled"

# Sync progress phases
PHASE_CONNECTING = "connecting"
PHASE_FOLDERS = "folders"
PHASE_SYNCING = "syncing"
PHASE_COMPLETE = "complete"
PHASE_ERROR = "error"
TERMINAL_PHASES = frozenset({PHASE_COMPLETE, PHASE_ERROR})


@dataclass(slots=True)
class EmailAccount:
    """Represents a mailbox owned by one user, with IMAP/SMTP settings."""
    id: Optional[int] = None
    user_id: int = 0
    name: str = ""
    email_address: str = ""
    imap_host: str = ""
    imap_port: int = 993
    imap_username: str = ""
    imap_password: str = field(default="", repr=False)
    imap_use_tls: bool = True
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = field(default="", repr=False)
    smtp_use_tls: bool = True
    signature: str = ""
    send_delay: int = 0  # seconds; 0 sends immediately
    is_default: bool = False
    last_sync_at: Optional[datetime] = None
    sync_error: Optional[str] = None
    created_at: Optional[datetime] = None

    def has_imap_credentials(self) -> bool:
        """True when the account carries enough settings to open a session."""
        return bool(self.imap_host and self.imap_username and self.imap_password)


@dataclass(slots=True)
class Folder:
    """Represents a mailbox folder, local or mirrored from the server."""
    id: Optional[int] = None
    account_id: int = 0
    parent_id: Optional[int] = None
    name: str = ""
    remote_name: str = ""  # Server path (e.g., "INBOX", "[Gmail]/Sent Mail")
    folder_type: str = FOLDER_CUSTOM
    delimiter: str = "/"
    sort_order: int = 0
    unread_count: int = 0
    total_count: int = 0
    uid_validity: Optional[int] = None
    uid_next: Optional[int] = None
    last_uid: int = 0
    children: List["Folder"] = field(default_factory=list, compare=False)

    @property
    def is_system(self) -> bool:
        return self.folder_type in SYSTEM_FOLDER_TYPES


@dataclass(slots=True)
class EmailAddress:
    name: str = ""
    address: str = ""

    def __str__(self) -> str:
        return formataddr((self.name, self.address)) if self.name else self.address


@dataclass(slots=True)
class Attachment:
    """Attachment metadata; payloads are not stored locally."""
    id: Optional[int] = None
    email_id: int = 0
    filename: str = ""
    content_type: str = ""
    size: int = 0
    content_id: str = ""
    is_inline: bool = False


@dataclass(slots=True)
class EmailMessage:
    """Represents a message stored in exactly one folder."""
    id: Optional[int] = None
    account_id: int = 0
    folder_id: int = 0
    uid: Optional[int] = None  # None once the server binding is detached
    message_id: str = ""
    thread_id: str = ""
    in_reply_to: str = ""
    references: str = ""
    from_name: str = ""
    from_address: str = ""
    to_addresses: List[EmailAddress] = field(default_factory=list)
    cc_addresses: List[EmailAddress] = field(default_factory=list)
    bcc_addresses: List[EmailAddress] = field(default_factory=list)
    reply_to: List[EmailAddress] = field(default_factory=list)
    subject: str = ""
    text_body: str = ""
    html_body: str = ""
    snippet: str = ""
    is_read: bool = False
    is_starred: bool = False
    is_answered: bool = False
    is_draft: bool = False
    has_attachments: bool = False
    date: Optional[datetime] = None
    received_at: Optional[datetime] = None
    processed: bool = False
    attachments: List[Attachment] = field(default_factory=list, compare=False)

    def participants(self) -> List[str]:
        """Addresses of the sender and every recipient, lower-cased, in order."""
        seen: List[str] = []
        for address in [self.from_address] + [a.address for a in
                                               self.to_addresses + self.cc_addresses]:
            address = (address or "").lower()
            if address and address not in seen:
                seen.append(address)
        return seen


@dataclass(slots=True)
class EmailThread:
    """Derived conversation aggregate, computed from current member rows."""
    thread_id: str = ""
    account_id: int = 0
    subject: str = ""
    snippet: str = ""
    latest_message_id: Optional[int] = None
    latest_date: Optional[datetime] = None
    message_count: int = 0
    unread_count: int = 0
    has_attachments: bool = False
    is_starred: bool = False
    participants: List[str] = field(default_factory=list)


@dataclass(slots=True)
class Label:
    id: Optional[int] = None
    account_id: int = 0
    name: str = ""
    color: str = "#808080"
    is_system: bool = False


@dataclass(slots=True)
class RuleCondition:
    field: str = "from"  # from, to, cc, subject, body
    operator: str = "contains"
    value: str = ""


@dataclass(slots=True)
class RuleAction:
    type: str = ""  # label, move, star, mark_read, archive, delete
    value: str = ""  # label id / folder id where relevant


@dataclass(slots=True)
class Rule:
    """User-defined condition/action filter, evaluated by ascending priority."""
    id: Optional[int] = None
    account_id: int = 0
    name: str = ""
    priority: int = 0
    match_type: str = MATCH_ALL
    conditions: List[RuleCondition] = field(default_factory=list)
    actions: List[RuleAction] = field(default_factory=list)
    stop_processing: bool = False
    enabled: bool = True
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class AppliedAction:
    rule_id: int
    action: RuleAction


@dataclass(slots=True)
class ComposeEmail:
    """An outbound message as composed by the user."""
    account_id: int = 0
    to: List[str] = field(default_factory=list)
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    subject: str = ""
    text_body: str = ""
    html_body: str = ""
    reply_to_id: Optional[int] = None  # local message being answered
    draft_id: Optional[int] = None  # draft to discard once sent
    in_reply_to: str = ""
    references: str = ""

    def all_recipients(self) -> List[str]:
        return list(self.to) + list(self.cc) + list(self.bcc)


@dataclass(slots=True)
class Draft:
    id: Optional[int] = None
    account_id: int = 0
    to: List[str] = field(default_factory=list)
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    subject: str = ""
    text_body: str = ""
    html_body: str = ""
    reply_to_id: Optional[int] = None
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class PendingSend:
    """Ephemeral undo-send entry; ``state`` moves out of pending exactly once."""
    send_id: str
    account_id: int
    compose: ComposeEmail
    fire_at: datetime
    state: str = SEND_PENDING


@dataclass(slots=True)
class RemoteFolder:
    """Folder metadata as reported by the server."""
    name: str = ""
    delimiter: str = "/"
    flags: List[str] = field(default_factory=list)
    uid_validity: Optional[int] = None
    uid_next: Optional[int] = None


@dataclass(slots=True)
class RemoteMessage:
    """A raw RFC 822 message with its server UID and flags."""
    uid: int = 0
    flags: List[str] = field(default_factory=list)
    raw: bytes = b""


@dataclass(slots=True)
class SyncProgress:
    phase: str = PHASE_CONNECTING
    folders_total: int = 0
    folders_done: int = 0
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


@dataclass(slots=True)
class FolderSyncResult:
    folder_id: int
    remote_name: str
    new_messages: int = 0
    moved_messages: int = 0
    full_fetch: bool = False
    error: Optional[str] = None


@dataclass(slots=True)
class SyncResult:
    """Outcome of one account sync; ``partial`` when any folder failed."""
    account_id: int
    folders: List[FolderSyncResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def new_messages(self) -> int:
        return sum(f.new_messages for f in self.folders)

    @property
    def failed_folders(self) -> List[FolderSyncResult]:
        return [f for f in self.folders if f.error]

    @property
    def partial(self) -> bool:
        return bool(self.failed_folders)


@dataclass(slots=True)
class Page:
    items: list = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 50

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size
