"""
Interfaces for the remote mail capability.

The sync engine and the delayed send queue only talk to a mailbox through
these small interfaces, so tests can substitute in-memory doubles that
simulate mailbox resets, moves and transport failures.
"""
from abc import ABC, abstractmethod
from typing import Callable, List

from mail_engine.models import ComposeEmail, EmailAccount, RemoteFolder, RemoteMessage


class MailSession(ABC):
    """An open, authenticated connection to one account's mailbox."""

    @abstractmethod
    def list_folders(self) -> List[RemoteFolder]:
        """
        List selectable folders with their UIDVALIDITY/UIDNEXT pair.

        Raises:
            ImapError: If the server cannot be queried.
        """

    @abstractmethod
    def fetch_since(self, remote_name: str, last_uid: int) -> List[RemoteMessage]:
        """
        Fetch every message in ``remote_name`` whose UID is above ``last_uid``.

        Args:
            remote_name: Server path of the folder.
            last_uid: Watermark; 0 fetches the whole folder.

        Returns:
            Messages in ascending UID order.

        Raises:
            ImapError: If the folder cannot be selected or fetched.
        """

    def close(self) -> None:
        """Release the connection. Must be safe to call more than once."""

    def __enter__(self) -> "MailSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False


class MailTransport(ABC):
    """Outbound delivery for composed messages."""

    @abstractmethod
    def send(self, account: EmailAccount, compose: ComposeEmail) -> str:
        """
        Deliver a composed message.

        Returns:
            The Message-ID that was assigned (without angle brackets).

        Raises:
            SmtpError: If delivery fails.
        """


SessionFactory = Callable[[EmailAccount], MailSession]
