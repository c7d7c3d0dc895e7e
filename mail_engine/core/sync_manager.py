"""
Synchronization engine.

This module orchestrates synchronization between remote mailboxes (through a
MailSession) and the local store. One run per account is in flight at a
time; a second trigger for the same account waits for and shares the
running result. Different accounts sync concurrently.

Each folder is fetched over the network first and then applied to the
store in a single short transaction: new rows are inserted unprocessed,
threaded and filtered in arrival order, marked processed, and only then is
the folder watermark advanced.
"""
import logging
import queue
import sqlite3
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from mail_engine import config
from mail_engine.auth import accounts
from mail_engine.core.account_locks import AccountLocks
from mail_engine.core.conversations import ThreadReconstructor
from mail_engine.core.folder_manager import FolderManager, ReconciledFolder
from mail_engine.core.rules import RuleEvaluator
from mail_engine.models import (
    PHASE_COMPLETE,
    PHASE_CONNECTING,
    PHASE_ERROR,
    PHASE_FOLDERS,
    PHASE_SYNCING,
    EmailAccount,
    Folder,
    FolderSyncResult,
    RemoteMessage,
    Rule,
    SyncProgress,
    SyncResult,
)
from mail_engine.network.imap_client import open_imap_session
from mail_engine.network.session import MailSession, SessionFactory
from mail_engine.storage import cache_repo, db
from mail_engine.utils.errors import (
    TRANSPORT_ERRORS,
    AccountDisabledError,
    ImapAuthenticationError,
    MailEngineError,
    MessageParseError,
    SyncInProgressError,
    SyncTransportError,
)
from mail_engine.utils.mime import flags_to_state, parse_raw_message


logger = logging.getLogger(__name__)

# Outcomes of applying one remote message
UPSERT_NEW = "new"
UPSERT_UPDATED = "updated"
UPSERT_MOVED = "moved"
UPSERT_KEPT_LOCAL = "kept_local"
UPSERT_SKIPPED = "skipped"


class ProgressChannel:
    """
    Bounded sink for sync progress records.

    ``emit`` never blocks: when the queue is full the oldest record is
    dropped. Nothing is accepted after a terminal record, so a consumer
    iterating the channel always ends on exactly one success or failure.
    """

    def __init__(self, maxsize: Optional[int] = None):
        self._queue: "queue.Queue[SyncProgress]" = queue.Queue(maxsize or config.PROGRESS_QUEUE_SIZE)
        self._lock = threading.Lock()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, progress: SyncProgress) -> None:
        with self._lock:
            if self._closed:
                return
            while True:
                try:
                    self._queue.put_nowait(progress)
                    break
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                        self.dropped += 1
                    except queue.Empty:
                        pass
            if progress.is_terminal:
                self._closed = True

    def get(self, timeout: Optional[float] = None) -> SyncProgress:
        """
        Take the next record.

        Raises:
            queue.Empty: If nothing arrives within ``timeout``.
        """
        return self._queue.get(timeout=timeout)

    def __iter__(self) -> Iterator[SyncProgress]:
        while True:
            progress = self.get()
            yield progress
            if progress.is_terminal:
                return


class _InFlight:
    """Shared state of one running sync, for coalesced callers."""

    def __init__(self):
        self.done = threading.Event()
        self.result: Optional[SyncResult] = None
        self.error: Optional[Exception] = None


class SyncEngine:
    """
    Pulls new messages for accounts and drives threading and rules.

    Thread-safe. ``sync`` runs in the calling thread; ``trigger`` and
    ``stream`` run it on the engine's worker pool.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        threads: Optional[ThreadReconstructor] = None,
        rules: Optional[RuleEvaluator] = None,
        locks: Optional[AccountLocks] = None,
        max_workers: Optional[int] = None,
    ):
        """
        Initialize the sync engine.

        Args:
            session_factory: Opens a MailSession for an account. Defaults
                to a real IMAP session.
            threads: Thread reconstructor used for new messages.
            rules: Rule evaluator used for new messages.
            locks: Per-account lock registry shared with other account work.
            max_workers: Size of the background worker pool.
        """
        self.session_factory = session_factory or open_imap_session
        self.locks = locks or AccountLocks()
        self.threads = threads or ThreadReconstructor()
        self.rules = rules or RuleEvaluator(self.locks)
        self._guard = threading.Lock()
        self._in_flight: Dict[int, _InFlight] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or config.SYNC_MAX_WORKERS,
            thread_name_prefix="mail-sync",
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def is_syncing(self, account_id: int) -> bool:
        with self._guard:
            return account_id in self._in_flight

    def sync(self, account_id: int, channel: Optional[ProgressChannel] = None) -> SyncResult:
        """
        Synchronize one account.

        If a run for the account is already in flight, wait for it and
        return its result instead of starting a second one.

        Args:
            account_id: The account to sync.
            channel: Optional progress sink.

        Returns:
            The result of the run; ``partial`` is set when folders failed.

        Raises:
            AccountNotFoundError: If the account does not exist.
            AccountDisabledError: If the account has no IMAP credentials.
            SyncTransportError: If the mailbox could not be reached.
            SyncInProgressError: If an in-flight run did not finish within
                ``SYNC_WAIT_TIMEOUT_SECONDS``.
        """
        with self._guard:
            run = self._in_flight.get(account_id)
            owner = run is None
            if owner:
                run = self._in_flight[account_id] = _InFlight()

        if not owner:
            logger.info("Sync for account %s already running, waiting for it", account_id)
            if not run.done.wait(config.SYNC_WAIT_TIMEOUT_SECONDS):
                error = SyncInProgressError(f"Sync for account {account_id} is still running")
                self._emit_failure(channel, error)
                raise error
            if run.error is not None:
                self._emit_failure(channel, run.error)
                raise run.error
            self._emit_complete(channel, run.result)
            return run.result

        try:
            run.result = self._run(account_id, channel)
            return run.result
        except Exception as e:
            run.error = e
            self._emit_failure(channel, e)
            raise
        finally:
            with self._guard:
                self._in_flight.pop(account_id, None)
            run.done.set()

    def sync_with_progress(self, account_id: int, channel: ProgressChannel) -> SyncResult:
        """Synchronize while emitting progress records to ``channel``."""
        return self.sync(account_id, channel)

    def trigger(self, account_id: int) -> "Future[SyncResult]":
        """Fire-and-forget sync on the worker pool."""
        future = self._executor.submit(self.sync, account_id)
        future.add_done_callback(lambda f: self._log_background_failure(account_id, f))
        return future

    def stream(self, account_id: int) -> Iterator[SyncProgress]:
        """
        Run a sync in the background and yield its progress.

        The iterator ends with one terminal record (complete or error).
        """
        channel = ProgressChannel()
        future = self._executor.submit(self.sync_with_progress, account_id, channel)

        def finished(f: "Future[SyncResult]") -> None:
            self._log_background_failure(account_id, f)
            if not channel.closed:
                error = None if f.cancelled() else f.exception()
                self._emit_failure(channel, error or RuntimeError("sync ended without a result"))

        future.add_done_callback(finished)
        return iter(channel)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    @staticmethod
    def _log_background_failure(account_id: int, future: "Future[SyncResult]") -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Background sync for account %s failed: %s", account_id, error)

    # ------------------------------------------------------------------
    # Progress helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _emit(channel: Optional[ProgressChannel], phase: str, total: int = 0,
              done: int = 0, message: str = "") -> None:
        if channel is not None:
            channel.emit(SyncProgress(phase=phase, folders_total=total,
                                      folders_done=done, message=message))

    def _emit_complete(self, channel: Optional[ProgressChannel], result: SyncResult) -> None:
        total = len(result.folders)
        if result.partial:
            failed = ", ".join(f.remote_name for f in result.failed_folders)
            text = f"Synced with errors in: {failed}"
        else:
            text = f"{result.new_messages} new messages"
        self._emit(channel, PHASE_COMPLETE, total, total, text)

    def _emit_failure(self, channel: Optional[ProgressChannel], error: Exception) -> None:
        self._emit(channel, PHASE_ERROR, message=str(error))

    # ------------------------------------------------------------------
    # Account run
    # ------------------------------------------------------------------

    def _run(self, account_id: int, channel: Optional[ProgressChannel]) -> SyncResult:
        account = accounts.require_account(account_id)
        if not account.has_imap_credentials():
            raise AccountDisabledError(f"Account {account_id} has no mail server credentials")

        result = SyncResult(account_id=account_id, started_at=datetime.now(timezone.utc))
        with self.locks.get(account_id):
            self._emit(channel, PHASE_CONNECTING, message=f"Connecting to {account.imap_host}")
            session = self._open_session(account)
            with session:
                try:
                    remote_folders = session.list_folders()
                except TRANSPORT_ERRORS as e:
                    raise self._transport_failure(account_id, e) from e

                reconciled = FolderManager(account_id).reconcile_remote(remote_folders)
                total = len(reconciled)
                self._emit(channel, PHASE_FOLDERS, total, 0, f"{total} folders")

                for index, item in enumerate(reconciled):
                    self._emit(channel, PHASE_SYNCING, total, index, item.folder.name)
                    result.folders.append(self._sync_folder(account_id, session, item))

        result.finished_at = datetime.now(timezone.utc)
        if result.partial:
            failed = ", ".join(f.remote_name for f in result.failed_folders)
            accounts.record_sync_status(account_id, f"Failed to sync folders: {failed}")
            logger.warning("Sync for account %s finished with failed folders: %s", account_id, failed)
        else:
            accounts.record_sync_status(account_id, None)
            logger.info("Sync for account %s finished: %d new messages",
                        account_id, result.new_messages)
        self._emit_complete(channel, result)
        return result

    def _open_session(self, account: EmailAccount) -> MailSession:
        """
        Open a mail session, retrying transient failures with backoff.

        Authentication failures are not retried.

        Raises:
            SyncTransportError: If every attempt failed.
        """
        attempts = max(1, config.SYNC_CONNECT_RETRIES)
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                return self.session_factory(account)
            except ImapAuthenticationError as e:
                raise self._transport_failure(account.id, e) from e
            except TRANSPORT_ERRORS as e:
                last_error = e
                logger.warning("Connecting account %s failed (attempt %d/%d): %s",
                               account.id, attempt, attempts, e)
                if attempt < attempts:
                    time.sleep(config.SYNC_RETRY_BACKOFF_SECONDS * attempt)
        raise self._transport_failure(account.id, last_error) from last_error

    @staticmethod
    def _transport_failure(account_id: int, error: Exception) -> SyncTransportError:
        logger.error("Sync for account %s failed: %s", account_id, error)
        accounts.record_sync_status(account_id, str(error) or error.__class__.__name__)
        return SyncTransportError(f"Could not sync account {account_id}: {error}")

    # ------------------------------------------------------------------
    # Folder run
    # ------------------------------------------------------------------

    def _sync_folder(self, account_id: int, session: MailSession,
                     item: ReconciledFolder) -> FolderSyncResult:
        folder = item.folder
        outcome = FolderSyncResult(folder_id=folder.id, remote_name=folder.remote_name,
                                   full_fetch=item.full_fetch)
        since = 0 if item.full_fetch else folder.last_uid
        if item.full_fetch:
            logger.info("Full fetch of %s for account %s", folder.remote_name, account_id)

        try:
            fetched = session.fetch_since(folder.remote_name, since)
        except TRANSPORT_ERRORS as e:
            logger.error("Fetching %s for account %s failed: %s", folder.remote_name, account_id, e)
            outcome.error = str(e) or e.__class__.__name__
            return outcome

        try:
            with db.transaction() as conn:
                detached = cache_repo.detach_folder_uids(folder.id, conn) if item.full_fetch else []
                rules = cache_repo.list_rules(account_id, enabled_only=True, conn=conn)

                highest = since
                for remote_message in sorted(fetched, key=lambda m: m.uid):
                    if remote_message.uid <= since:
                        continue
                    highest = max(highest, remote_message.uid)
                    state = self._upsert(account_id, folder, remote_message, conn)
                    if state == UPSERT_NEW:
                        outcome.new_messages += 1
                    elif state == UPSERT_MOVED:
                        outcome.moved_messages += 1

                self._process_pending(account_id, folder.id, rules, conn)

                if detached:
                    pruned = cache_repo.delete_unbound_emails(detached, conn)
                    if pruned:
                        logger.info("Pruned %d stale messages from %s", pruned, folder.remote_name)

                cache_repo.update_folder_watermark(folder.id, highest, item.remote.uid_validity,
                                                   item.remote.uid_next, conn)
                cache_repo.refresh_folder_counts(
                    [f.id for f in cache_repo.list_folders(account_id, conn)], conn)
        except sqlite3.Error as e:
            logger.exception("Storing %s for account %s failed", folder.remote_name, account_id)
            outcome.error = str(e)
            outcome.new_messages = outcome.moved_messages = 0
        return outcome

    @staticmethod
    def _upsert(account_id: int, folder: Folder, remote: RemoteMessage,
                conn: sqlite3.Connection) -> str:
        """
        Apply one fetched message to the store.

        A message already stored under the same Message-ID is never
        inserted again. If it is bound to another server folder, the
        server moved it and the row follows. If it has no server binding,
        the user moved it locally and the row stays where the user put it.
        """
        try:
            message = parse_raw_message(remote.raw, remote.flags)
        except MessageParseError as e:
            logger.warning("Skipping UID %s in %s: %s", remote.uid, folder.remote_name, e)
            return UPSERT_SKIPPED

        existing = cache_repo.get_email_by_message_id(account_id, message.message_id, conn)
        if existing is None:
            message.account_id = account_id
            message.folder_id = folder.id
            message.uid = remote.uid
            message.processed = False
            try:
                cache_repo.insert_email(message, conn)
            except sqlite3.IntegrityError as e:
                logger.warning("Duplicate UID %s in %s ignored: %s", remote.uid, folder.remote_name, e)
                return UPSERT_SKIPPED
            return UPSERT_NEW

        if existing.folder_id != folder.id and existing.uid is None:
            return UPSERT_KEPT_LOCAL

        is_read, is_starred, is_answered, is_draft = flags_to_state(remote.flags)
        try:
            cache_repo.bind_remote(existing.id, folder.id, remote.uid, conn)
        except sqlite3.IntegrityError as e:
            logger.warning("UID %s in %s already bound, keeping message %s unchanged: %s",
                           remote.uid, folder.remote_name, existing.id, e)
            return UPSERT_SKIPPED
        # Keep local read/star state when the server has not caught up
        cache_repo.set_remote_flags(
            existing.id,
            is_read or existing.is_read,
            is_starred or existing.is_starred,
            is_answered or existing.is_answered,
            is_draft,
            conn,
        )
        if existing.folder_id != folder.id:
            logger.debug("Message %s moved on server to %s", existing.id, folder.remote_name)
            return UPSERT_MOVED
        return UPSERT_UPDATED

    def _process_pending(self, account_id: int, folder_id: int, rules: List[Rule],
                         conn: sqlite3.Connection) -> None:
        """Thread and filter every unprocessed message of a folder, oldest first."""
        for message in cache_repo.list_unprocessed_emails(account_id, folder_id, conn):
            try:
                self.threads.assign_thread(message, conn)
                self.rules.apply_rules(account_id, message, conn, rules=rules)
            except MailEngineError as e:
                logger.warning("Processing message %s failed, will retry next sync: %s",
                               message.id, e)
                continue
            cache_repo.mark_processed(message.id, conn)
