"""
Rule evaluation.

Rules are evaluated in ascending priority (ties by creation order). A rule
with no conditions never matches. Conditions compare case-insensitively
for every operator, including ``regex``. For address fields a condition
matches when any single address or display name in the field matches, so
``equals`` on ``from`` can target either ``alice@example.com`` or ``Alice``.
Invalid patterns and failing actions are logged and skipped; they never
abort evaluation of the remaining actions or rules.
"""
import logging
import re
import sqlite3
from functools import lru_cache
from typing import List, Optional

from mail_engine.core.account_locks import AccountLocks
from mail_engine.models import (
    FOLDER_ARCHIVE,
    MATCH_ALL,
    MATCH_ANY,
    AppliedAction,
    EmailAddress,
    EmailMessage,
    Rule,
    RuleAction,
    RuleCondition,
)
from mail_engine.storage import cache_repo, db
from mail_engine.utils.errors import RuleNotFoundError
from mail_engine.utils.mime import html_to_text


logger = logging.getLogger(__name__)

MAX_PATTERN_LENGTH = 512


class RuleActionError(Exception):
    """Raised internally when one action cannot be applied."""


class MessageDeleted(Exception):
    """Raised internally after a delete action; later actions and rules are skipped."""


@lru_cache(maxsize=256)
def _compile(pattern: str) -> Optional["re.Pattern[str]"]:
    if len(pattern) > MAX_PATTERN_LENGTH:
        logger.warning("Rule regex longer than %d characters ignored", MAX_PATTERN_LENGTH)
        return None
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        logger.warning("Invalid rule regex %r: %s", pattern, e)
        return None


def _field_candidates(message: EmailMessage, field_name: str) -> List[str]:
    """Values a condition on ``field_name`` is tested against."""
    if field_name == "from":
        addresses = [EmailAddress(name=message.from_name, address=message.from_address)]
    elif field_name == "to":
        addresses = message.to_addresses
    elif field_name == "cc":
        addresses = message.cc_addresses
    else:
        addresses = None
    if addresses is not None:
        values: List[str] = []
        for address in addresses:
            values.extend(v for v in (address.address, address.name) if v)
            if address.name and address.address:
                values.append(f"{address.name} <{address.address}>")
        return values
    if field_name == "subject":
        return [message.subject or ""]
    if field_name == "body":
        return [message.text_body or html_to_text(message.html_body or "")]
    return []


def _value_matches(operator: str, candidate: str, value: str) -> bool:
    if operator == "regex":
        compiled = _compile(value)
        return bool(compiled and compiled.search(candidate))
    candidate_lower = candidate.lower()
    value_lower = value.lower()
    if operator == "contains":
        return value_lower in candidate_lower
    if operator == "equals":
        return candidate_lower == value_lower
    if operator == "startswith":
        return candidate_lower.startswith(value_lower)
    if operator == "endswith":
        return candidate_lower.endswith(value_lower)
    logger.warning("Unknown rule operator %r", operator)
    return False


def condition_matches(condition: RuleCondition, message: EmailMessage) -> bool:
    candidates = _field_candidates(message, condition.field)
    return any(_value_matches(condition.operator, c, condition.value) for c in candidates)


def rule_matches(rule: Rule, message: EmailMessage) -> bool:
    """
    Evaluate a rule's conditions against a message.

    ``any`` is a logical OR and ``all`` a logical AND; zero conditions
    never match.
    """
    if not rule.conditions:
        return False
    if rule.match_type == MATCH_ANY:
        return any(condition_matches(c, message) for c in rule.conditions)
    if rule.match_type == MATCH_ALL:
        return all(condition_matches(c, message) for c in rule.conditions)
    logger.warning("Rule %s has unknown match type %r", rule.id, rule.match_type)
    return False


class RuleEvaluator:
    """
    Applies an account's rules to messages.

    ``apply_rules`` is called by the sync engine while it already holds the
    account lock; ``run_now`` takes the lock itself.
    """

    def __init__(self, locks: Optional[AccountLocks] = None):
        self.locks = locks or AccountLocks()

    def apply_rules(self, account_id: int, message: EmailMessage,
                    conn: Optional[sqlite3.Connection] = None,
                    rules: Optional[List[Rule]] = None) -> List[AppliedAction]:
        """
        Apply every enabled rule to one message, in priority order.

        Args:
            account_id: The account whose rules apply.
            message: A stored message; it is updated in place as actions run.
            conn: Optional open transaction for the action writes.
            rules: Pre-loaded enabled rules, to avoid reloading per message.

        Returns:
            The actions that were applied, in order.
        """
        if rules is None:
            rules = cache_repo.list_rules(account_id, enabled_only=True, conn=conn)
        applied: List[AppliedAction] = []
        for rule in rules:
            if not rule.enabled or not rule_matches(rule, message):
                continue
            try:
                applied.extend(self._apply_actions(rule, message, conn))
            except MessageDeleted:
                applied.append(AppliedAction(rule_id=rule.id, action=RuleAction(type="delete")))
                break
            if rule.stop_processing:
                break
        return applied

    def _apply_actions(self, rule: Rule, message: EmailMessage,
                       conn: Optional[sqlite3.Connection]) -> List[AppliedAction]:
        applied = []
        for action in rule.actions:
            try:
                self._apply_action(message, action, conn)
            except RuleActionError as e:
                logger.warning("Rule %s action %s skipped for message %s: %s",
                               rule.id, action.type, message.id, e)
                continue
            applied.append(AppliedAction(rule_id=rule.id, action=action))
        return applied

    def _apply_action(self, message: EmailMessage, action: RuleAction,
                      conn: Optional[sqlite3.Connection]) -> None:
        """
        Apply one action to a message.

        Raises:
            RuleActionError: If the action's target is missing or invalid.
            MessageDeleted: After a delete action.
        """
        if action.type == "star":
            cache_repo.set_email_flags(message.id, conn, is_starred=True)
            message.is_starred = True
        elif action.type == "mark_read":
            cache_repo.set_email_flags(message.id, conn, is_read=True)
            message.is_read = True
        elif action.type == "label":
            label = cache_repo.get_label(self._int_value(action), conn)
            if label is None or label.account_id != message.account_id:
                raise RuleActionError(f"label {action.value!r} not found")
            cache_repo.assign_label(message.id, label.id, conn)
        elif action.type == "move":
            folder = cache_repo.get_folder(self._int_value(action), conn)
            if folder is None or folder.account_id != message.account_id:
                raise RuleActionError(f"folder {action.value!r} not found")
            self._move(message, folder.id, conn)
        elif action.type == "archive":
            folder = cache_repo.get_folder_by_type(message.account_id, FOLDER_ARCHIVE, conn)
            if folder is None:
                raise RuleActionError("account has no archive folder")
            self._move(message, folder.id, conn)
        elif action.type == "delete":
            cache_repo.delete_email(message.id, conn)
            raise MessageDeleted()
        else:
            raise RuleActionError(f"unknown action type {action.type!r}")

    @staticmethod
    def _int_value(action: RuleAction) -> int:
        try:
            return int(action.value)
        except (TypeError, ValueError) as e:
            raise RuleActionError(f"invalid target {action.value!r}") from e

    @staticmethod
    def _move(message: EmailMessage, folder_id: int, conn: Optional[sqlite3.Connection]) -> None:
        if message.folder_id == folder_id:
            return
        cache_repo.move_email(message.id, folder_id, conn)
        message.folder_id = folder_id
        message.uid = None

    def run_now(self, rule_id: int) -> int:
        """
        Apply one rule retroactively to every message of its account.

        Disabled rules run too, since this is an explicit request. The
        rule's ``stop_processing`` flag has no effect here.

        Returns:
            The number of messages the rule matched.

        Raises:
            RuleNotFoundError: If the rule does not exist.
        """
        rule = cache_repo.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Rule {rule_id} not found")

        affected = 0
        with self.locks.get(rule.account_id):
            with db.transaction() as conn:
                messages = cache_repo.list_account_emails(rule.account_id, conn)
                touched_folders = set()
                for message in messages:
                    if not rule_matches(rule, message):
                        continue
                    affected += 1
                    touched_folders.add(message.folder_id)
                    try:
                        self._apply_actions(rule, message, conn)
                    except MessageDeleted:
                        pass
                    touched_folders.add(message.folder_id)
                cache_repo.refresh_folder_counts(touched_folders, conn)
        logger.info("Rule %s run on demand matched %d messages", rule_id, affected)
        return affected
