"""
Resource-oriented operations over the mail engine.

``MailService`` is the single entry point the rest of the system (and the
command line) uses. Every operation takes the calling ``user_id`` and
checks ownership before any side effect: a resource owned by another user
raises AccessDeniedError. Batch operations are the exception; they skip
identifiers the caller does not own and report only the owned count.
"""
import html
import logging
import sqlite3
from concurrent.futures import Future
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from mail_engine import config
from mail_engine.auth import accounts
from mail_engine.core import search
from mail_engine.core.account_locks import AccountLocks
from mail_engine.core.conversations import ThreadReconstructor
from mail_engine.core.folder_manager import FolderManager
from mail_engine.core.rules import RuleEvaluator
from mail_engine.core.send_queue import DelayedSendQueue
from mail_engine.core.sync_manager import SyncEngine
from mail_engine.models import (
    ACTION_TYPES,
    CONDITION_FIELDS,
    CONDITION_OPERATORS,
    MATCH_TYPES,
    ComposeEmail,
    Draft,
    EmailAccount,
    EmailMessage,
    EmailThread,
    Folder,
    Label,
    Page,
    PendingSend,
    Rule,
    SyncProgress,
    SyncResult,
)
from mail_engine.network.session import MailTransport, SessionFactory
from mail_engine.network.smtp_client import SmtpTransport
from mail_engine.storage import cache_repo, db
from mail_engine.utils.errors import (
    AccessDeniedError,
    DraftNotFoundError,
    FolderNotFoundError,
    ImmutableLabelError,
    LabelError,
    LabelNotFoundError,
    MessageNotFoundError,
    PendingSendNotFoundError,
    RuleNotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_RULE_FIELDS = ("name", "priority", "match_type", "conditions", "actions",
                "stop_processing", "enabled")


def _page_bounds(page: int, page_size: Optional[int]) -> Tuple[int, int]:
    page = max(1, int(page or 1))
    size = int(page_size or config.DEFAULT_PAGE_SIZE)
    return page, max(1, min(size, config.MAX_PAGE_SIZE))


class MailService:
    """
    Facade over accounts, folders, messages, threads, labels, rules, drafts
    and sending.

    The service owns one sync engine, one rule evaluator and one delayed
    send queue; they share a per-account lock registry so syncs and rule
    re-runs for the same account never overlap.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        transport: Optional[MailTransport] = None,
        locks: Optional[AccountLocks] = None,
    ):
        self.locks = locks or AccountLocks()
        self.threads = ThreadReconstructor()
        self.rules = RuleEvaluator(self.locks)
        self.sync_engine = SyncEngine(session_factory, self.threads, self.rules, self.locks)
        self.transport = transport or SmtpTransport()
        self.send_queue = DelayedSendQueue(self.transport, on_unsent=self._save_unsent,
                                           on_sent=self._after_send)

    def close(self) -> None:
        """Stop background work; pending sends are kept as drafts."""
        self.send_queue.shutdown()
        self.sync_engine.shutdown()

    # ------------------------------------------------------------------
    # Ownership helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _account(user_id: int, account_id: int) -> EmailAccount:
        return accounts.get_owned_account(user_id, account_id)

    def _folder(self, user_id: int, folder_id: int) -> Folder:
        folder = cache_repo.get_folder(folder_id)
        if folder is None:
            raise FolderNotFoundError(f"Folder {folder_id} not found")
        self._account(user_id, folder.account_id)
        return folder

    def _message(self, user_id: int, email_id: int) -> EmailMessage:
        message = cache_repo.get_email(email_id)
        if message is None:
            raise MessageNotFoundError(f"Message {email_id} not found")
        self._account(user_id, message.account_id)
        return message

    def _label(self, user_id: int, label_id: int) -> Label:
        label = cache_repo.get_label(label_id)
        if label is None:
            raise LabelNotFoundError(f"Label {label_id} not found")
        self._account(user_id, label.account_id)
        return label

    def _rule(self, user_id: int, rule_id: int) -> Rule:
        rule = cache_repo.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Rule {rule_id} not found")
        self._account(user_id, rule.account_id)
        return rule

    def _draft(self, user_id: int, draft_id: int) -> Draft:
        draft = cache_repo.get_draft(draft_id)
        if draft is None:
            raise DraftNotFoundError(f"Draft {draft_id} not found")
        self._account(user_id, draft.account_id)
        return draft

    # ==================================================================
    # Accounts
    # ==================================================================

    def create_account(self, user_id: int, account: EmailAccount) -> EmailAccount:
        account.user_id = user_id
        return accounts.create_account(account)

    def get_account(self, user_id: int, account_id: int) -> EmailAccount:
        return self._account(user_id, account_id)

    def list_accounts(self, user_id: int) -> List[EmailAccount]:
        return accounts.list_accounts(user_id)

    def update_account(self, user_id: int, account_id: int, changes: Dict[str, Any]) -> EmailAccount:
        return accounts.update_account(user_id, account_id, changes)

    def update_send_delay(self, user_id: int, account_id: int, send_delay: Any) -> EmailAccount:
        return accounts.set_send_delay(user_id, account_id, send_delay)

    def delete_account(self, user_id: int, account_id: int) -> None:
        """Delete an account; its queued sends are cancelled first."""
        self._account(user_id, account_id)
        for entry in self.send_queue.pending(account_id):
            try:
                self.send_queue.cancel_send(entry.send_id)
            except PendingSendNotFoundError:
                pass
        accounts.delete_account(user_id, account_id)
        self.locks.discard(account_id)

    def sync_account(self, user_id: int, account_id: int) -> SyncResult:
        """Synchronize in the calling thread."""
        self._account(user_id, account_id)
        return self.sync_engine.sync(account_id)

    def trigger_sync(self, user_id: int, account_id: int) -> "Future[SyncResult]":
        """Start a sync in the background and return immediately."""
        self._account(user_id, account_id)
        return self.sync_engine.trigger(account_id)

    def stream_sync(self, user_id: int, account_id: int) -> Iterator[SyncProgress]:
        """
        Start a sync in the background and yield its progress records.

        The last record is always terminal (``complete`` or ``error``).
        """
        self._account(user_id, account_id)
        return self.sync_engine.stream(account_id)

    # ==================================================================
    # Folders
    # ==================================================================

    def list_folders(self, user_id: int, account_id: int) -> List[Folder]:
        self._account(user_id, account_id)
        return FolderManager(account_id).list_flat()

    def folder_tree(self, user_id: int, account_id: int) -> List[Folder]:
        self._account(user_id, account_id)
        return FolderManager(account_id).tree()

    def create_folder(self, user_id: int, account_id: int, name: str,
                      parent_id: Optional[int] = None) -> Folder:
        self._account(user_id, account_id)
        return FolderManager(account_id).create(name, parent_id)

    def rename_folder(self, user_id: int, folder_id: int, name: str) -> Folder:
        folder = self._folder(user_id, folder_id)
        return FolderManager(folder.account_id).rename(folder_id, name)

    def delete_folder(self, user_id: int, folder_id: int) -> int:
        """Delete a custom folder, its subfolders and their messages."""
        folder = self._folder(user_id, folder_id)
        return FolderManager(folder.account_id).delete(folder_id)

    def move_folder(self, user_id: int, folder_id: int, new_parent_id: Optional[int],
                    target_id: Optional[int] = None, position: Optional[str] = None) -> Folder:
        folder = self._folder(user_id, folder_id)
        return FolderManager(folder.account_id).move(folder_id, new_parent_id, target_id, position)

    def reorder_folder(self, user_id: int, folder_id: int, target_id: int, position: str) -> Folder:
        folder = self._folder(user_id, folder_id)
        return FolderManager(folder.account_id).reorder_relative(folder_id, target_id, position)

    def mark_folder_read(self, user_id: int, folder_id: int) -> int:
        folder = self._folder(user_id, folder_id)
        return FolderManager(folder.account_id).mark_all_read(folder_id)

    # ==================================================================
    # Messages
    # ==================================================================

    def list_messages(self, user_id: int, folder_id: int, page: int = 1,
                      page_size: Optional[int] = None) -> Page:
        self._folder(user_id, folder_id)
        page, size = _page_bounds(page, page_size)
        items, total = cache_repo.list_emails(folder_id, size, (page - 1) * size)
        return Page(items=items, total=total, page=page, page_size=size)

    def list_starred(self, user_id: int, account_id: int, page: int = 1,
                     page_size: Optional[int] = None) -> Page:
        self._account(user_id, account_id)
        page, size = _page_bounds(page, page_size)
        items, total = cache_repo.list_starred_emails(account_id, size, (page - 1) * size)
        return Page(items=items, total=total, page=page, page_size=size)

    def virtual_counts(self, user_id: int, account_id: int) -> Dict[str, int]:
        """Counts for the starred and drafts listings."""
        self._account(user_id, account_id)
        starred, drafts = cache_repo.count_flagged(account_id)
        return {"starred": starred, "drafts": drafts}

    def get_message(self, user_id: int, email_id: int) -> EmailMessage:
        """
        Fetch one message with its attachment metadata.

        Opening a message marks it read.
        """
        message = self._message(user_id, email_id)
        if not message.is_read:
            with db.transaction() as conn:
                cache_repo.set_email_flags(email_id, conn, is_read=True)
                cache_repo.refresh_folder_counts([message.folder_id], conn)
            message.is_read = True
        message.attachments = cache_repo.list_attachments(email_id)
        return message

    def mark_read(self, user_id: int, email_id: int, is_read: bool = True) -> None:
        message = self._message(user_id, email_id)
        with db.transaction() as conn:
            cache_repo.set_email_flags(email_id, conn, is_read=is_read)
            cache_repo.refresh_folder_counts([message.folder_id], conn)

    def mark_starred(self, user_id: int, email_id: int, is_starred: bool = True) -> None:
        self._message(user_id, email_id)
        cache_repo.set_email_flags(email_id, is_starred=is_starred)

    def move_message(self, user_id: int, email_id: int, folder_id: int) -> None:
        message = self._message(user_id, email_id)
        folder = self._folder(user_id, folder_id)
        if folder.account_id != message.account_id:
            raise ValidationError("Messages can only be moved within their account")
        if message.folder_id == folder_id:
            return
        with db.transaction() as conn:
            cache_repo.move_email(email_id, folder_id, conn)
            cache_repo.refresh_folder_counts([message.folder_id, folder_id], conn)

    def delete_message(self, user_id: int, email_id: int) -> None:
        message = self._message(user_id, email_id)
        with db.transaction() as conn:
            cache_repo.delete_email(email_id, conn)
            cache_repo.refresh_folder_counts([message.folder_id], conn)

    def search(self, user_id: int, account_id: int, query: str,
               folder_id: Optional[int] = None, limit: Optional[int] = None) -> List[EmailMessage]:
        self._account(user_id, account_id)
        if folder_id is not None:
            self._folder(user_id, folder_id)
        return search.search_emails(account_id, query, folder_id, limit)

    # ------------------------------------------------------------------
    # Batch variants
    # ------------------------------------------------------------------

    def _owned_messages(self, user_id: int, email_ids: Sequence[int],
                        conn: sqlite3.Connection) -> List[EmailMessage]:
        owned = cache_repo.filter_owned_email_ids(user_id, list(dict.fromkeys(email_ids)))
        skipped = len(set(email_ids)) - len(owned)
        if skipped:
            logger.info("Batch for user %s skipped %d message(s) not owned", user_id, skipped)
        return cache_repo.get_emails(owned, conn)

    def batch_mark_read(self, user_id: int, email_ids: Sequence[int], is_read: bool = True) -> int:
        with db.transaction() as conn:
            messages = self._owned_messages(user_id, email_ids, conn)
            for message in messages:
                cache_repo.set_email_flags(message.id, conn, is_read=is_read)
            cache_repo.refresh_folder_counts([m.folder_id for m in messages], conn)
        return len(messages)

    def batch_star(self, user_id: int, email_ids: Sequence[int], is_starred: bool = True) -> int:
        with db.transaction() as conn:
            messages = self._owned_messages(user_id, email_ids, conn)
            for message in messages:
                cache_repo.set_email_flags(message.id, conn, is_starred=is_starred)
        return len(messages)

    def batch_move(self, user_id: int, email_ids: Sequence[int], folder_id: int) -> int:
        """Move owned messages of the target folder's account; others are skipped."""
        folder = self._folder(user_id, folder_id)
        with db.transaction() as conn:
            messages = [m for m in self._owned_messages(user_id, email_ids, conn)
                        if m.account_id == folder.account_id]
            touched = {folder_id}
            for message in messages:
                if message.folder_id != folder_id:
                    cache_repo.move_email(message.id, folder_id, conn)
                    touched.add(message.folder_id)
            cache_repo.refresh_folder_counts(touched, conn)
        return len(messages)

    def batch_delete(self, user_id: int, email_ids: Sequence[int]) -> int:
        with db.transaction() as conn:
            messages = self._owned_messages(user_id, email_ids, conn)
            for message in messages:
                cache_repo.delete_email(message.id, conn)
            cache_repo.refresh_folder_counts([m.folder_id for m in messages], conn)
        return len(messages)

    def batch_assign_label(self, user_id: int, email_ids: Sequence[int], label_id: int) -> int:
        label = self._label(user_id, label_id)
        with db.transaction() as conn:
            messages = [m for m in self._owned_messages(user_id, email_ids, conn)
                        if m.account_id == label.account_id]
            for message in messages:
                cache_repo.assign_label(message.id, label_id, conn)
        return len(messages)

    # ==================================================================
    # Threads
    # ==================================================================

    def list_threads(self, user_id: int, folder_id: int, page: int = 1,
                     page_size: Optional[int] = None) -> Page:
        self._folder(user_id, folder_id)
        page, size = _page_bounds(page, page_size)
        return self.threads.list_threads(folder_id, page, size)

    def get_thread(self, user_id: int, account_id: int, thread_id: str) -> EmailThread:
        self._account(user_id, account_id)
        thread = self.threads.get_thread(account_id, thread_id)
        if thread is None:
            raise MessageNotFoundError(f"Thread {thread_id} not found")
        return thread

    def list_thread_messages(self, user_id: int, account_id: int, thread_id: str,
                             page: int = 1, page_size: Optional[int] = None) -> Page:
        """Paginated members of a thread, oldest first."""
        thread = self.get_thread(user_id, account_id, thread_id)
        page, size = _page_bounds(page, page_size)
        items = cache_repo.list_thread_emails(account_id, thread_id, size, (page - 1) * size)
        return Page(items=items, total=thread.message_count, page=page, page_size=size)

    def get_conversation(self, user_id: int, account_id: int, thread_id: str) -> List[EmailMessage]:
        """Every member of a thread with bodies and attachments, oldest first."""
        self._account(user_id, account_id)
        messages = self.threads.conversation(account_id, thread_id)
        if not messages:
            raise MessageNotFoundError(f"Thread {thread_id} not found")
        for message in messages:
            message.attachments = cache_repo.list_attachments(message.id)
        return messages

    def reindex_threads(self, user_id: int, account_id: int) -> int:
        self._account(user_id, account_id)
        with self.locks.get(account_id):
            return self.threads.reindex(account_id)

    # ==================================================================
    # Labels
    # ==================================================================

    @staticmethod
    def _clean_label_name(name: str) -> str:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Label name cannot be empty")
        return name

    def create_label(self, user_id: int, account_id: int, name: str,
                     color: str = "#808080") -> Label:
        self._account(user_id, account_id)
        label = Label(account_id=account_id, name=self._clean_label_name(name), color=color)
        try:
            return cache_repo.insert_label(label)
        except sqlite3.IntegrityError as e:
            raise LabelError(f"Label '{label.name}' already exists") from e

    def list_labels(self, user_id: int, account_id: int) -> List[Label]:
        self._account(user_id, account_id)
        return cache_repo.list_labels(account_id)

    def update_label(self, user_id: int, label_id: int, name: Optional[str] = None,
                     color: Optional[str] = None) -> Label:
        label = self._label(user_id, label_id)
        if label.is_system:
            raise ImmutableLabelError(f"System label '{label.name}' cannot be changed")
        if name is not None:
            label.name = self._clean_label_name(name)
        if color is not None:
            label.color = color
        try:
            cache_repo.update_label(label)
        except sqlite3.IntegrityError as e:
            raise LabelError(f"Label '{label.name}' already exists") from e
        return label

    def delete_label(self, user_id: int, label_id: int) -> None:
        label = self._label(user_id, label_id)
        if label.is_system:
            raise ImmutableLabelError(f"System label '{label.name}' cannot be deleted")
        cache_repo.delete_label(label_id)

    def assign_label(self, user_id: int, email_id: int, label_id: int) -> bool:
        message = self._message(user_id, email_id)
        label = self._label(user_id, label_id)
        if label.account_id != message.account_id:
            raise ValidationError("Label and message belong to different accounts")
        return cache_repo.assign_label(email_id, label_id)

    def unassign_label(self, user_id: int, email_id: int, label_id: int) -> bool:
        self._message(user_id, email_id)
        self._label(user_id, label_id)
        return cache_repo.unassign_label(email_id, label_id)

    def message_labels(self, user_id: int, email_id: int) -> List[Label]:
        self._message(user_id, email_id)
        return cache_repo.list_email_labels(email_id)

    def list_messages_by_label(self, user_id: int, label_id: int, page: int = 1,
                               page_size: Optional[int] = None) -> Page:
        self._label(user_id, label_id)
        page, size = _page_bounds(page, page_size)
        items, total = cache_repo.list_emails_by_label(label_id, size, (page - 1) * size)
        return Page(items=items, total=total, page=page, page_size=size)

    # ==================================================================
    # Rules
    # ==================================================================

    @staticmethod
    def _validate_rule(rule: Rule) -> None:
        """
        Check a rule's structure and that its targets belong to its account.

        Regex patterns are not compiled here; an invalid pattern simply never
        matches.
        """
        if not (rule.name or "").strip():
            raise ValidationError("Rule name cannot be empty")
        if rule.match_type not in MATCH_TYPES:
            raise ValidationError(f"Unknown match type {rule.match_type!r}")
        for condition in rule.conditions:
            if condition.field not in CONDITION_FIELDS:
                raise ValidationError(f"Unknown condition field {condition.field!r}")
            if condition.operator not in CONDITION_OPERATORS:
                raise ValidationError(f"Unknown condition operator {condition.operator!r}")
        if not rule.actions:
            raise ValidationError("A rule needs at least one action")
        for action in rule.actions:
            if action.type not in ACTION_TYPES:
                raise ValidationError(f"Unknown action type {action.type!r}")
            if action.type not in ("label", "move"):
                continue
            try:
                target_id = int(action.value)
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Action {action.type} needs a target id") from e
            target = cache_repo.get_label(target_id) if action.type == "label" \
                else cache_repo.get_folder(target_id)
            if target is None or target.account_id != rule.account_id:
                raise ValidationError(f"Action {action.type} target {target_id} not found")

    def create_rule(self, user_id: int, account_id: int, rule: Rule) -> Rule:
        """Create a rule; without an explicit priority it runs after existing rules."""
        self._account(user_id, account_id)
        rule.account_id = account_id
        self._validate_rule(rule)
        if rule.priority is None or rule.priority <= 0:
            rule.priority = cache_repo.next_rule_priority(account_id)
        return cache_repo.insert_rule(rule)

    def get_rule(self, user_id: int, rule_id: int) -> Rule:
        return self._rule(user_id, rule_id)

    def list_rules(self, user_id: int, account_id: int) -> List[Rule]:
        self._account(user_id, account_id)
        return cache_repo.list_rules(account_id)

    def update_rule(self, user_id: int, rule_id: int, changes: Dict[str, Any]) -> Rule:
        rule = self._rule(user_id, rule_id)
        unknown = set(changes) - set(_RULE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown rule fields: {', '.join(sorted(unknown))}")
        for key, value in changes.items():
            setattr(rule, key, value)
        self._validate_rule(rule)
        cache_repo.update_rule(rule)
        return rule

    def delete_rule(self, user_id: int, rule_id: int) -> None:
        self._rule(user_id, rule_id)
        cache_repo.delete_rule(rule_id)

    def reorder_rules(self, user_id: int, account_id: int, rule_ids: Sequence[int]) -> List[Rule]:
        """
        Persist a new evaluation order.

        Args:
            rule_ids: Every rule id of the account, highest priority first.

        Raises:
            ValidationError: If ``rule_ids`` is not exactly the account's rules.
        """
        self._account(user_id, account_id)
        existing = {rule.id for rule in cache_repo.list_rules(account_id)}
        if len(rule_ids) != len(existing) or set(rule_ids) != existing:
            raise ValidationError("Reorder must list every rule of the account exactly once")
        cache_repo.set_rule_priorities(list(rule_ids))
        return cache_repo.list_rules(account_id)

    def run_rule(self, user_id: int, rule_id: int) -> int:
        """Apply a rule to every existing message of its account."""
        self._rule(user_id, rule_id)
        return self.rules.run_now(rule_id)

    # ==================================================================
    # Drafts
    # ==================================================================

    def save_draft(self, user_id: int, draft: Draft) -> Draft:
        self._account(user_id, draft.account_id)
        if draft.id is not None:
            existing = self._draft(user_id, draft.id)
            if existing.account_id != draft.account_id:
                raise AccessDeniedError(f"Draft {draft.id} belongs to another account")
        return cache_repo.save_draft(draft)

    def get_draft(self, user_id: int, draft_id: int) -> Draft:
        return self._draft(user_id, draft_id)

    def list_drafts(self, user_id: int, account_id: int) -> List[Draft]:
        self._account(user_id, account_id)
        return cache_repo.list_drafts(account_id)

    def delete_draft(self, user_id: int, draft_id: int) -> None:
        self._draft(user_id, draft_id)
        cache_repo.delete_draft(draft_id)

    # ==================================================================
    # Compose and send
    # ==================================================================

    def _prepare(self, user_id: int, compose: ComposeEmail) -> Tuple[EmailAccount, ComposeEmail]:
        """
        Validate a composed message and produce the copy that will be sent.

        The account signature is appended, and replying to a stored message
        fills In-Reply-To and References from it.
        """
        account = self._account(user_id, compose.account_id)
        recipients = [r.strip() for r in compose.all_recipients() if r and r.strip()]
        if not recipients:
            raise ValidationError("At least one recipient is required")
        for recipient in recipients:
            if "@" not in recipient:
                raise ValidationError(f"Invalid recipient address: {recipient}")
        if compose.draft_id is not None:
            self._draft(user_id, compose.draft_id)

        prepared = replace(compose, to=list(compose.to), cc=list(compose.cc), bcc=list(compose.bcc))
        if account.signature:
            prepared.text_body = f"{prepared.text_body}\n\n-- \n{account.signature}"
            if prepared.html_body:
                signature_html = html.escape(account.signature).replace("\n", "<br>")
                prepared.html_body = f"{prepared.html_body}<br><br>-- <br>{signature_html}"

        if compose.reply_to_id is not None:
            original = self._message(user_id, compose.reply_to_id)
            if original.account_id != account.id:
                raise ValidationError("Cannot reply from a different account")
            prepared.in_reply_to = f"<{original.message_id}>"
            prepared.references = " ".join(
                part for part in (original.references, f"<{original.message_id}>") if part)
        return account, prepared

    def _after_send(self, account: EmailAccount, compose: ComposeEmail, message_id: str) -> None:
        if compose.reply_to_id is not None:
            original = cache_repo.get_email(compose.reply_to_id)
            if original is not None:
                cache_repo.set_email_flags(original.id, is_answered=True)
        if compose.draft_id is not None:
            cache_repo.delete_draft(compose.draft_id)
        logger.debug("Post-send bookkeeping done for %s", message_id)

    def _save_unsent(self, account: EmailAccount, compose: ComposeEmail,
                     error: Optional[Exception]) -> None:
        """Keep a message that could not be delivered as a draft."""
        draft = cache_repo.save_draft(Draft(
            id=compose.draft_id if compose.draft_id and cache_repo.get_draft(compose.draft_id) else None,
            account_id=account.id,
            to=list(compose.to),
            cc=list(compose.cc),
            bcc=list(compose.bcc),
            subject=compose.subject,
            text_body=compose.text_body,
            html_body=compose.html_body,
            reply_to_id=compose.reply_to_id,
        ))
        logger.warning("Unsent message for account %s kept as draft %s (%s)",
                       account.id, draft.id, error or "shutdown")

    def send_message(self, user_id: int, compose: ComposeEmail) -> str:
        """
        Send immediately, ignoring the account's undo window.

        Returns:
            The Message-ID of the sent message.
        """
        account, prepared = self._prepare(user_id, compose)
        message_id = self.transport.send(account, prepared)
        self._after_send(account, prepared, message_id)
        return message_id

    def queue_send(self, user_id: int, compose: ComposeEmail,
                   delay_seconds: Optional[int] = None) -> Optional[str]:
        """
        Send after the undo window.

        Args:
            compose: The message to send.
            delay_seconds: Window length; defaults to the account's
                ``send_delay``. Zero sends immediately.

        Returns:
            The send id for ``cancel_send``, or None if it was sent now.
        """
        account, prepared = self._prepare(user_id, compose)
        delay = account.send_delay if delay_seconds is None \
            else accounts.validate_send_delay(delay_seconds)
        return self.send_queue.queue_send(account, prepared, delay)

    def cancel_send(self, user_id: int, send_id: str) -> None:
        """
        Cancel a queued send.

        Raises:
            PendingSendNotFoundError: If it already fired, was cancelled, or
                never existed.
        """
        entry = next((e for e in self.send_queue.pending() if e.send_id == send_id), None)
        if entry is None:
            raise PendingSendNotFoundError(f"Pending send {send_id} not found or already sent")
        self._account(user_id, entry.account_id)
        self.send_queue.cancel_send(send_id)

    def pending_sends(self, user_id: int, account_id: int) -> List[PendingSend]:
        self._account(user_id, account_id)
        return self.send_queue.pending(account_id)
