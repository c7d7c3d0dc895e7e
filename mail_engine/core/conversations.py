"""
Conversation threading.

Messages carry a flat ``thread_id``; there is no stored reply tree. A new
message joins the thread of the first message it references (References
oldest-first, then In-Reply-To) that is already stored locally, and
otherwise starts a thread keyed by its own Message-ID. Thread aggregates
are always computed from the current member rows.
"""
import logging
import sqlite3
from typing import Dict, List, Optional

from mail_engine.models import EmailMessage, EmailThread, Page
from mail_engine.storage import cache_repo, db
from mail_engine.utils.mime import parse_message_ids


logger = logging.getLogger(__name__)


def reference_chain(message: EmailMessage) -> List[str]:
    """
    Referenced message ids, oldest first, without duplicates or self-references.

    References lists the ancestry root-first; In-Reply-To names the direct
    parent and is appended when References did not already include it.
    """
    chain: List[str] = []
    for message_id in parse_message_ids(message.references) + parse_message_ids(message.in_reply_to):
        if message_id != message.message_id and message_id not in chain:
            chain.append(message_id)
    return chain


class ThreadReconstructor:
    """Assigns thread ids and serves conversation views for one engine."""

    def assign_thread(self, message: EmailMessage, conn: Optional[sqlite3.Connection] = None) -> str:
        """
        Resolve and persist the thread of a stored message.

        Args:
            message: A message with ``account_id`` and ``message_id`` set.
                When it has an ``id`` the row is updated.
            conn: Optional open transaction to run in.

        Returns:
            The thread id now set on the message.
        """
        chain = reference_chain(message)
        thread_id = cache_repo.find_thread_for_message_ids(message.account_id, chain, conn)
        if thread_id is None:
            # Unknown or missing ancestry starts a new conversation
            thread_id = message.message_id
        if message.id is not None and message.thread_id != thread_id:
            cache_repo.set_thread_id(message.id, thread_id, conn)
        message.thread_id = thread_id
        return thread_id

    def reindex(self, account_id: int) -> int:
        """
        Recompute every thread of an account from scratch.

        Messages are replayed in chronological order against an in-memory
        index of message id to thread id, so a message can only join a
        thread started by an earlier one. Running it twice gives the same
        grouping.

        Returns:
            The number of messages whose thread changed.
        """
        changed = 0
        with db.transaction() as conn:
            index: Dict[str, str] = {}
            for message in cache_repo.list_account_emails(account_id, conn):
                thread_id = None
                for message_id in reference_chain(message):
                    if message_id in index:
                        thread_id = index[message_id]
                        break
                if thread_id is None:
                    thread_id = message.message_id
                index.setdefault(message.message_id, thread_id)
                if message.thread_id != thread_id:
                    cache_repo.set_thread_id(message.id, thread_id, conn)
                    changed += 1
        logger.info("Reindexed threads for account %s: %d messages regrouped", account_id, changed)
        return changed

    def get_thread(self, account_id: int, thread_id: str) -> Optional[EmailThread]:
        return cache_repo.get_thread_aggregate(account_id, thread_id)

    def list_threads(self, folder_id: int, page: int, page_size: int) -> Page:
        """Paginated conversation aggregates for a folder, newest first."""
        offset = (page - 1) * page_size
        threads, total = cache_repo.list_folder_threads(folder_id, page_size, offset)
        return Page(items=threads, total=total, page=page, page_size=page_size)

    def conversation(self, account_id: int, thread_id: str) -> List[EmailMessage]:
        """All members of a thread with bodies, oldest first."""
        return cache_repo.list_thread_emails(account_id, thread_id)
