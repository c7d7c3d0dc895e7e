"""
IMAP implementation of ``MailSession``.

Connects with password authentication over implicit TLS (or plain IMAP when
the account disables TLS), lists folders with their UIDVALIDITY/UIDNEXT
status, and fetches full messages above a UID watermark. Every socket
operation is bounded by ``config.NETWORK_TIMEOUT_SECONDS``.
"""
import imaplib
import logging
import re
from typing import List, Optional

from mail_engine import config
from mail_engine.models import EmailAccount, RemoteFolder, RemoteMessage
from mail_engine.network.session import MailSession
from mail_engine.utils.errors import (
    ImapAuthenticationError,
    ImapConnectionError,
    ImapError,
    ImapOperationError,
)


logger = logging.getLogger(__name__)

_LIST_RE = re.compile(r'\((?P<flags>[^)]*)\)\s+(?P<delimiter>"[^"]*"|NIL)\s+(?P<name>.+)$')
_STATUS_RE = re.compile(r"(UIDVALIDITY|UIDNEXT)\s+(\d+)", re.IGNORECASE)
_UID_RE = re.compile(rb"UID\s+(\d+)")
_FLAGS_RE = re.compile(rb"FLAGS\s+\(([^)]*)\)")


class ImapSession(MailSession):
    """
    Password-authenticated IMAP session for one account.

    Use as a context manager; the connection is opened on entry (or lazily
    on first use) and logged out on exit.
    """

    def __init__(self, account: EmailAccount, timeout: Optional[float] = None):
        self.account = account
        self.timeout = config.NETWORK_TIMEOUT_SECONDS if timeout is None else timeout
        self.connection: Optional[imaplib.IMAP4] = None

    def _connect(self) -> None:
        """Establish the connection and log in."""
        if self.connection is not None:
            return

        host = self.account.imap_host
        port = self.account.imap_port or config.DEFAULT_IMAP_PORT
        logger.info("Connecting to IMAP server %s:%s for account %s", host, port, self.account.id)
        try:
            if self.account.imap_use_tls:
                connection = imaplib.IMAP4_SSL(host, port, timeout=self.timeout)
            else:
                connection = imaplib.IMAP4(host, port, timeout=self.timeout)
        except (OSError, imaplib.IMAP4.error) as e:
            raise ImapConnectionError(f"Failed to connect to IMAP server {host}:{port}: {e}") from e

        try:
            result, data = connection.login(self.account.imap_username, self.account.imap_password)
        except imaplib.IMAP4.error as e:
            self._safe_logout(connection)
            raise ImapAuthenticationError(f"IMAP authentication failed: {e}") from e
        except OSError as e:
            raise ImapConnectionError(f"IMAP connection lost during login: {e}") from e
        if result != "OK":
            self._safe_logout(connection)
            raise ImapAuthenticationError(f"IMAP authentication failed: {data!r}")

        self.connection = connection

    def __enter__(self) -> "ImapSession":
        self._connect()
        return self

    @staticmethod
    def _safe_logout(connection: imaplib.IMAP4) -> None:
        try:
            connection.logout()
        except (OSError, imaplib.IMAP4.error) as e:
            logger.debug("Ignoring error during IMAP logout: %s", e)

    def close(self) -> None:
        """Close the IMAP connection."""
        if self.connection is not None:
            self._safe_logout(self.connection)
            self.connection = None

    @staticmethod
    def _quote_folder_name(folder_path: str) -> str:
        """Quote a folder name for IMAP commands when it is not a plain atom."""
        if folder_path.startswith('"') and folder_path.endswith('"'):
            return folder_path
        if re.search(r'[\s\[\]"/\\(){%*]', folder_path):
            escaped = folder_path.replace("\\", "\\\\").replace('"', '\\"')
            return f'"{escaped}"'
        return folder_path

    def _command(self, name: str, *args):
        """Run an IMAP command, translating transport errors."""
        self._connect()
        try:
            result, data = getattr(self.connection, name)(*args)
        except imaplib.IMAP4.abort as e:
            self.connection = None
            raise ImapConnectionError(f"IMAP connection aborted during {name.upper()}: {e}") from e
        except OSError as e:
            self.connection = None
            raise ImapConnectionError(f"IMAP {name.upper()} failed: {e}") from e
        except imaplib.IMAP4.error as e:
            raise ImapOperationError(f"IMAP {name.upper()} failed: {e}") from e
        if result != "OK":
            raise ImapOperationError(f"IMAP {name.upper()} returned {result}: {data!r}")
        return data

    def list_folders(self) -> List[RemoteFolder]:
        """List selectable folders together with their UID status."""
        folders: List[RemoteFolder] = []
        for item in self._command("list"):
            folder = self._parse_list_item(item)
            if folder is None:
                continue
            if any(flag.lower() == "\\noselect" for flag in folder.flags):
                continue
            try:
                self._load_status(folder)
            except ImapOperationError as e:
                logger.warning("STATUS failed for %s: %s", folder.name, e)
            folders.append(folder)
        return folders

    @staticmethod
    def _parse_list_item(item) -> Optional[RemoteFolder]:
        """Parse one LIST response line: (flags) "delimiter" name."""
        if isinstance(item, tuple):
            # Literal folder name: (b'(\\HasNoChildren) "/" {5}', b'Inbox')
            line = item[0].decode("utf-8", errors="replace")
            line = re.sub(r"\{\d+\}$", "", line) + '"' + item[1].decode("utf-8", errors="replace") + '"'
        elif isinstance(item, bytes):
            line = item.decode("utf-8", errors="replace")
        else:
            return None

        match = _LIST_RE.match(line.strip())
        if not match:
            logger.debug("Skipping unparseable LIST line %r", line)
            return None
        delimiter = match.group("delimiter")
        delimiter = "" if delimiter == "NIL" else delimiter.strip('"')
        name = match.group("name").strip()
        if name.startswith('"') and name.endswith('"'):
            name = name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
        return RemoteFolder(
            name=name,
            delimiter=delimiter or "/",
            flags=match.group("flags").split(),
        )

    def _load_status(self, folder: RemoteFolder) -> None:
        data = self._command("status", self._quote_folder_name(folder.name), "(UIDVALIDITY UIDNEXT)")
        text = b" ".join(d for d in data if isinstance(d, bytes)).decode("utf-8", errors="replace")
        for key, value in _STATUS_RE.findall(text):
            if key.upper() == "UIDVALIDITY":
                folder.uid_validity = int(value)
            else:
                folder.uid_next = int(value)

    def fetch_since(self, remote_name: str, last_uid: int) -> List[RemoteMessage]:
        """Fetch full messages above ``last_uid`` in ascending UID order."""
        self._command("select", self._quote_folder_name(remote_name), True)
        data = self._command("uid", "SEARCH", f"UID {last_uid + 1}:*")
        uids = sorted(
            uid for uid in (int(token) for token in (data[0] or b"").split())
            if uid > last_uid  # "n:*" always matches the highest UID
        )
        if not uids:
            return []

        logger.debug("Fetching %d messages from %s above UID %d", len(uids), remote_name, last_uid)
        messages: List[RemoteMessage] = []
        batch_size = max(1, config.FETCH_BATCH_SIZE)
        for start in range(0, len(uids), batch_size):
            batch = uids[start:start + batch_size]
            data = self._command("uid", "FETCH", ",".join(str(u) for u in batch),
                                 "(UID FLAGS BODY.PEEK[])")
            messages.extend(self._parse_fetch_response(data))
        messages.sort(key=lambda m: m.uid)
        return messages

    @staticmethod
    def _parse_fetch_response(data) -> List[RemoteMessage]:
        messages = []
        for index, item in enumerate(data):
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            envelope, raw = item[0], item[1]
            uid_match = _UID_RE.search(envelope)
            if not uid_match or not isinstance(raw, bytes):
                continue
            flags_match = _FLAGS_RE.search(envelope)
            if flags_match is None and index + 1 < len(data) and isinstance(data[index + 1], bytes):
                # Some servers send FLAGS after the literal
                flags_match = _FLAGS_RE.search(data[index + 1])
            flags = flags_match.group(1).decode("ascii", errors="ignore").split() if flags_match else []
            messages.append(RemoteMessage(uid=int(uid_match.group(1)), flags=flags, raw=raw))
        return messages


def open_imap_session(account: EmailAccount) -> MailSession:
    """Default session factory used by the sync engine."""
    session = ImapSession(account)
    try:
        session._connect()
    except ImapError:
        session.close()
        raise
    return session
