"""
Per-account serialization.

Work that touches one account's watermarks and message rows (sync, rule
re-runs) takes that account's lock; different accounts never contend.
"""
import threading
from typing import Dict


class AccountLocks:
    """Registry of one re-entrant lock per account id."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.RLock] = {}

    def get(self, account_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.RLock()
            return lock

    def discard(self, account_id: int) -> None:
        """Forget an account's lock (after the account is deleted)."""
        with self._guard:
            self._locks.pop(account_id, None)
