"""
Delayed send queue (undo send).

A queued message waits in memory for its grace window, then is handed to
the outbound transport. Firing and cancelling race on the same entry; the
winner is whichever moves ``state`` out of ``pending`` first, under the
queue lock, so a cancelled message is never sent and a due message is
never dropped silently.
"""
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from mail_engine.models import (
    SEND_CANCELLED,
    SEND_FIRED,
    SEND_PENDING,
    ComposeEmail,
    EmailAccount,
    PendingSend,
)
from mail_engine.network.session import MailTransport
from mail_engine.utils.errors import TRANSPORT_ERRORS, PendingSendNotFoundError


logger = logging.getLogger(__name__)

# Called with the account, the composed message and the error (None when
# the entry was abandoned at shutdown) for sends that did not go out.
UnsentCallback = Callable[[EmailAccount, ComposeEmail, Optional[Exception]], None]
# Called with the account, the composed message and the assigned Message-ID.
SentCallback = Callable[[EmailAccount, ComposeEmail, str], None]


class DelayedSendQueue:
    """In-memory undo-send queue with one timer per entry."""

    def __init__(self, transport: MailTransport, on_unsent: Optional[UnsentCallback] = None,
                 on_sent: Optional[SentCallback] = None):
        """
        Args:
            transport: Outbound delivery used when an entry fires.
            on_sent: Receives every message the transport accepted.
            on_unsent: Receives fired sends whose delivery failed, and
                entries still pending at shutdown.
        """
        self.transport = transport
        self.on_unsent = on_unsent
        self.on_sent = on_sent
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[PendingSend, EmailAccount, threading.Timer]] = {}

    def queue_send(self, account: EmailAccount, compose: ComposeEmail,
                   delay_seconds: float) -> Optional[str]:
        """
        Send a message after ``delay_seconds`` unless it is cancelled.

        A delay of zero or less sends synchronously and creates no entry.

        Returns:
            The send id to cancel with, or None when sent immediately.

        Raises:
            SmtpError: If an immediate send fails.
        """
        if delay_seconds <= 0:
            message_id = self.transport.send(account, compose)
            self._report_sent(account, compose, message_id)
            return None

        send_id = uuid.uuid4().hex
        entry = PendingSend(
            send_id=send_id,
            account_id=account.id,
            compose=compose,
            fire_at=datetime.now(timezone.utc) + timedelta(seconds=delay_seconds),
        )
        timer = threading.Timer(delay_seconds, self.fire, args=(send_id,))
        timer.daemon = True
        with self._lock:
            self._entries[send_id] = (entry, account, timer)
        timer.start()
        logger.info("Queued send %s for account %s in %ss", send_id, account.id, delay_seconds)
        return send_id

    def _take(self, send_id: str, new_state: str) -> Optional[Tuple[PendingSend, EmailAccount, threading.Timer]]:
        """Move a pending entry to ``new_state`` and remove it; None if another caller won."""
        with self._lock:
            item = self._entries.get(send_id)
            if item is None or item[0].state != SEND_PENDING:
                return None
            item[0].state = new_state
            del self._entries[send_id]
            return item

    def cancel_send(self, send_id: str) -> None:
        """
        Cancel a queued send before it fires.

        Raises:
            PendingSendNotFoundError: If the id is unknown, or the send has
                already fired or been cancelled.
        """
        item = self._take(send_id, SEND_CANCELLED)
        if item is None:
            raise PendingSendNotFoundError(f"Pending send {send_id} not found or already sent")
        item[2].cancel()
        logger.info("Cancelled send %s", send_id)

    def fire(self, send_id: str) -> bool:
        """
        Deliver a queued send now.

        Returns:
            True if this call won the entry and handed it to the transport,
            False if it was already cancelled or fired.
        """
        item = self._take(send_id, SEND_FIRED)
        if item is None:
            logger.debug("Send %s no longer pending", send_id)
            return False
        entry, account, timer = item
        timer.cancel()
        try:
            message_id = self.transport.send(account, entry.compose)
        except TRANSPORT_ERRORS as e:
            logger.error("Queued send %s for account %s failed: %s", send_id, account.id, e)
            self._report_unsent(account, entry.compose, e)
            return True
        except Exception as e:
            logger.exception("Queued send %s for account %s failed unexpectedly", send_id, account.id)
            self._report_unsent(account, entry.compose, e)
            return True
        logger.info("Sent queued message %s for account %s", send_id, account.id)
        self._report_sent(account, entry.compose, message_id)
        return True

    def _report_sent(self, account: EmailAccount, compose: ComposeEmail, message_id: str) -> None:
        if self.on_sent is None:
            return
        try:
            self.on_sent(account, compose, message_id)
        except Exception:
            logger.exception("Post-send update failed for account %s", account.id)

    def _report_unsent(self, account: EmailAccount, compose: ComposeEmail,
                       error: Optional[Exception]) -> None:
        if self.on_unsent is None:
            return
        try:
            self.on_unsent(account, compose, error)
        except Exception:
            logger.exception("Could not preserve unsent message for account %s", account.id)

    def pending(self, account_id: Optional[int] = None) -> List[PendingSend]:
        """Entries still waiting, soonest first."""
        with self._lock:
            entries = [item[0] for item in self._entries.values()
                       if account_id is None or item[0].account_id == account_id]
        return sorted(entries, key=lambda e: e.fire_at)

    def shutdown(self) -> int:
        """
        Stop every timer and hand still-pending entries to ``on_unsent``.

        Returns:
            The number of entries that were pending.
        """
        with self._lock:
            send_ids = list(self._entries)
        abandoned = []
        for send_id in send_ids:
            item = self._take(send_id, SEND_CANCELLED)
            if item is not None:
                item[2].cancel()
                abandoned.append(item)
        for entry, account, _ in abandoned:
            logger.warning("Send %s for account %s was still pending at shutdown",
                           entry.send_id, account.id)
            self._report_unsent(account, entry.compose, None)
        return len(abandoned)
