"""
Periodic sync scheduler.

Every tick submits a sync for each account that has mail server
credentials and is not already syncing. Runs share the engine's worker
pool, so manual triggers and scheduled ones coalesce per account.
"""
import logging
import threading
from concurrent.futures import Future
from typing import List, Optional

from mail_engine import config
from mail_engine.auth import accounts
from mail_engine.core.sync_manager import SyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs ``SyncEngine.trigger`` for all accounts on a fixed interval."""

    def __init__(self, engine: SyncEngine, interval: Optional[float] = None):
        self.engine = engine
        self.interval = interval if interval is not None else config.SYNC_INTERVAL_SECONDS
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> List[Future]:
        """
        Start one round of syncs.

        Returns:
            Futures of the syncs that were started.
        """
        started = []
        for account in accounts.list_accounts():
            if not account.has_imap_credentials():
                continue
            if self.engine.is_syncing(account.id):
                logger.debug("Account %s still syncing, skipping this tick", account.id)
                continue
            started.append(self.engine.trigger(account.id))
        return started

    def _loop(self) -> None:
        logger.info("Sync scheduler started, interval %ss", self.interval)
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduled sync tick failed")
            self._stop.wait(self.interval)
        logger.info("Sync scheduler stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_forever(self) -> None:
        """Run ticks in the calling thread until ``stop`` is called."""
        self._loop()
