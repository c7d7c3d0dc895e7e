"""
Search and filtering for stored emails.

This module turns a Gmail-style query into SQL conditions over the local
store. Supported operators:

    from:VALUE        sender address or display name contains VALUE
    to:VALUE          any To/Cc recipient contains VALUE
    subject:VALUE     subject contains VALUE
    label:NAME        message carries the label NAME
    before:YYYY-MM-DD message date earlier than the day
    after:YYYY-MM-DD  message date on or after the following day
    has:attachment    message has attachments
    is:starred | is:unread | is:read

Values may be quoted ("project x"). Remaining words are matched against
subject, sender and body with LIKE; every word must match somewhere.
All matching is case-insensitive.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

from mail_engine import config
from mail_engine.models import EmailMessage
from mail_engine.storage import cache_repo, db


logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r'(?:(?P<op>[a-zA-Z]+):)?(?:"(?P<quoted>[^"]*)"?|(?P<word>\S+))')

_FLAG_OPERATORS = {
    ("has", "attachment"): "e.has_attachments = 1",
    ("is", "starred"): "e.is_starred = 1",
    ("is", "unread"): "e.is_read = 0",
    ("is", "read"): "e.is_read = 1",
}


@dataclass(slots=True)
class ParsedQuery:
    """A search query split into SQL conditions and free-text words."""
    conditions: List[str] = field(default_factory=list)
    params: List[Any] = field(default_factory=list)
    words: List[str] = field(default_factory=list)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _like(value: str) -> str:
    return f"%{_escape_like(value.lower())}%"


def _parse_day(value: str) -> Optional[datetime]:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        logger.debug("Ignoring invalid search date %r", value)
        return None


def parse_query(query: str) -> ParsedQuery:
    """
    Parse a query string.

    Unknown operators and unparseable dates are treated as free text
    and ignored respectively, never as errors.
    """
    parsed = ParsedQuery()
    for match in _TOKEN_RE.finditer(query or ""):
        op = (match.group("op") or "").lower()
        value = match.group("quoted")
        if value is None:
            value = match.group("word") or ""
        value = value.strip()

        flag = _FLAG_OPERATORS.get((op, value.lower()))
        if flag:
            parsed.conditions.append(flag)
        elif op == "from" and value:
            parsed.conditions.append(
                "(LOWER(e.from_address) LIKE ? ESCAPE '\\' OR LOWER(e.from_name) LIKE ? ESCAPE '\\')")
            parsed.params.extend([_like(value), _like(value)])
        elif op == "to" and value:
            parsed.conditions.append(
                "(LOWER(e.to_addresses) LIKE ? ESCAPE '\\' OR LOWER(e.cc_addresses) LIKE ? ESCAPE '\\')")
            parsed.params.extend([_like(value), _like(value)])
        elif op == "subject" and value:
            parsed.conditions.append("LOWER(e.subject) LIKE ? ESCAPE '\\'")
            parsed.params.append(_like(value))
        elif op == "label" and value:
            parsed.conditions.append(
                """EXISTS (SELECT 1 FROM email_labels el JOIN labels l ON l.id = el.label_id
                           WHERE el.email_id = e.id AND LOWER(l.name) = ?)""")
            parsed.params.append(value.lower())
        elif op in ("before", "after"):
            day = _parse_day(value)
            if day is None:
                continue
            if op == "before":
                parsed.conditions.append("e.date < ?")
                parsed.params.append(db.format_ts(day))
            else:
                parsed.conditions.append("e.date >= ?")
                parsed.params.append(db.format_ts(day + timedelta(days=1)))
        elif op:
            parsed.words.append(match.group(0).strip('"'))
        elif value:
            parsed.words.append(value)
    return parsed


def _build_where(account_id: int, parsed: ParsedQuery,
                 folder_id: Optional[int]) -> Tuple[str, List[Any]]:
    conditions = ["e.account_id = ?"] + parsed.conditions
    params: List[Any] = [account_id] + parsed.params
    if folder_id is not None:
        conditions.append("e.folder_id = ?")
        params.append(folder_id)
    for word in parsed.words:
        conditions.append(
            """(LOWER(e.subject) LIKE ? ESCAPE '\\' OR LOWER(e.from_name) LIKE ? ESCAPE '\\'
                OR LOWER(e.from_address) LIKE ? ESCAPE '\\' OR LOWER(e.text_body) LIKE ? ESCAPE '\\')""")
        params.extend([_like(word)] * 4)
    return " AND ".join(conditions), params


def search_emails(account_id: int, query: str = "", folder_id: Optional[int] = None,
                  limit: Optional[int] = None) -> List[EmailMessage]:
    """
    Search an account's messages.

    Args:
        account_id: The account to search.
        query: Free text and operators; empty returns the newest messages.
        folder_id: Optional folder to restrict the search to.
        limit: Maximum number of results (default ``SEARCH_LIMIT``).

    Returns:
        Matching messages, newest first.

    Example:
        >>> search_emails(1, 'from:alice has:attachment "quarterly report"')
    """
    parsed = parse_query(query)
    where, params = _build_where(account_id, parsed, folder_id)
    return cache_repo.search_emails(where, params, limit or config.SEARCH_LIMIT)
