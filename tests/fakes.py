"""In-memory stand-ins for the remote mailbox and the outbound transport."""
import itertools
import threading
from email.message import EmailMessage as MimeMessage
from email.utils import format_datetime
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from mail_engine.auth import accounts
from mail_engine.models import (
    ComposeEmail,
    EmailAccount,
    EmailMessage,
    Folder,
    RemoteFolder,
    RemoteMessage,
)
from mail_engine.network.session import MailSession, MailTransport
from mail_engine.storage import cache_repo
from mail_engine.utils.errors import ImapConnectionError, ImapOperationError, SmtpSendError
from mail_engine.utils.mime import parse_raw_message

BASE_DATE = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_raw(message_id: Optional[str] = "a@example.com", subject: str = "Hello",
             sender: str = "Alice Example <alice@example.com>",
             to: str = "user@example.com", cc: Optional[str] = None,
             body: str = "Hi there", in_reply_to: Optional[str] = None,
             references: Optional[str] = None, minutes: int = 0,
             attachment: Optional[bytes] = None) -> bytes:
    """Build a raw RFC 822 message; ``minutes`` offsets the Date header."""
    msg = MimeMessage()
    if message_id:
        msg["Message-ID"] = f"<{message_id}>"
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    if cc:
        msg["Cc"] = cc
    msg["Date"] = format_datetime(BASE_DATE + timedelta(minutes=minutes))
    if in_reply_to:
        msg["In-Reply-To"] = f"<{in_reply_to}>"
    if references:
        msg["References"] = references
    msg.set_content(body)
    if attachment is not None:
        msg.add_attachment(attachment, maintype="application", subtype="pdf",
                           filename="report.pdf")
    return msg.as_bytes()


def make_account(user_id: int = 1, email_address: str = "user@example.com",
                 **fields) -> EmailAccount:
    """Create and persist an account with working fake credentials."""
    values = dict(
        user_id=user_id,
        email_address=email_address,
        imap_host="imap.example.com",
        imap_password="secret",
        smtp_host="smtp.example.com",
    )
    values.update(fields)
    return accounts.create_account(EmailAccount(**values))


def make_folder(account_id: int, name: str, folder_type: str = "custom",
                parent_id: Optional[int] = None, sort_order: int = 0,
                remote_name: Optional[str] = None) -> Folder:
    return cache_repo.insert_folder(Folder(
        account_id=account_id,
        name=name,
        remote_name=remote_name or name,
        folder_type=folder_type,
        parent_id=parent_id,
        sort_order=sort_order,
    ))


class _RemoteBox:
    def __init__(self, name: str, flags: List[str], uid_validity: int):
        self.name = name
        self.flags = flags
        self.uid_validity = uid_validity
        self.uid_next = 1
        self.messages: Dict[int, RemoteMessage] = {}


class FakeMailbox:
    """
    A scriptable server-side mailbox.

    ``connect_failures`` makes the next N connection attempts fail;
    ``failing_folders`` makes fetches of those folders fail.
    """

    def __init__(self):
        self.boxes: Dict[str, _RemoteBox] = {}
        self._validity = itertools.count(100)
        self.connect_failures = 0
        self.connect_calls = 0
        self.failing_folders = set()
        self.fetch_gate: Optional[threading.Event] = None
        self.fetch_started = threading.Event()
        self.add_folder("INBOX")

    def add_folder(self, name: str, flags: Optional[List[str]] = None) -> None:
        self.boxes[name] = _RemoteBox(name, flags or [], next(self._validity))

    def deliver(self, folder: str, raw: bytes, flags: Optional[List[str]] = None) -> int:
        box = self.boxes[folder]
        uid = box.uid_next
        box.uid_next += 1
        box.messages[uid] = RemoteMessage(uid=uid, flags=list(flags or []), raw=raw)
        return uid

    def move(self, source: str, uid: int, target: str) -> int:
        message = self.boxes[source].messages.pop(uid)
        return self.deliver(target, message.raw, message.flags)

    def expunge(self, folder: str, uid: int) -> None:
        del self.boxes[folder].messages[uid]

    def reset(self, folder: str) -> None:
        """Recreate a folder: new UIDVALIDITY and UIDs renumbered from 1."""
        box = self.boxes[folder]
        old = [box.messages[uid] for uid in sorted(box.messages)]
        box.uid_validity = next(self._validity)
        box.uid_next = 1
        box.messages = {}
        for message in old:
            self.deliver(folder, message.raw, message.flags)

    def session_factory(self, account: EmailAccount) -> "FakeSession":
        self.connect_calls += 1
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ImapConnectionError("Connection refused")
        return FakeSession(self)


class FakeSession(MailSession):
    def __init__(self, mailbox: FakeMailbox):
        self.mailbox = mailbox
        self.closed = False

    def list_folders(self) -> List[RemoteFolder]:
        return [
            RemoteFolder(name=box.name, delimiter="/", flags=list(box.flags),
                         uid_validity=box.uid_validity, uid_next=box.uid_next)
            for box in self.mailbox.boxes.values()
        ]

    def fetch_since(self, remote_name: str, last_uid: int) -> List[RemoteMessage]:
        self.mailbox.fetch_started.set()
        if self.mailbox.fetch_gate is not None:
            self.mailbox.fetch_gate.wait(5)
        if remote_name in self.mailbox.failing_folders:
            raise ImapOperationError(f"SELECT {remote_name} failed")
        box = self.mailbox.boxes[remote_name]
        return [box.messages[uid] for uid in sorted(box.messages) if uid > last_uid]

    def close(self) -> None:
        self.closed = True


class FakeTransport(MailTransport):
    """Records sends; set ``fail`` to make every send raise."""

    def __init__(self):
        self.sent: List[ComposeEmail] = []
        self.fail = False
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def send(self, account: EmailAccount, compose: ComposeEmail) -> str:
        if self.fail:
            raise SmtpSendError("Recipients refused")
        with self._lock:
            self.sent.append(compose)
            return f"sent-{next(self._counter)}@example.com"


def store_message(account_id: int, folder_id: int, uid: Optional[int] = None,
                  flags: Optional[List[str]] = None, **raw_fields) -> EmailMessage:
    """Parse ``make_raw(**raw_fields)`` and insert it as an already-processed row."""
    message = parse_raw_message(make_raw(**raw_fields), flags or [])
    message.account_id = account_id
    message.folder_id = folder_id
    message.uid = uid
    message.thread_id = message.message_id
    message.processed = True
    return cache_repo.insert_email(message)
