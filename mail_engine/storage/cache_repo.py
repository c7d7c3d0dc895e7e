"""
Repository layer for SQLite persistence.

This module converts between database rows and domain models for folders,
messages, attachments, labels, rules and drafts. Functions that take an
optional ``conn`` run inside the caller's transaction when one is given,
and otherwise use a short-lived connection of their own.
"""
import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from mail_engine.models import (
    Attachment,
    Draft,
    EmailAddress,
    EmailMessage,
    EmailThread,
    Folder,
    Label,
    Rule,
    RuleAction,
    RuleCondition,
)
from mail_engine.storage import db


logger = logging.getLogger(__name__)


def _exec(conn: Optional[sqlite3.Connection], query: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
    if conn is None:
        return db.execute(query, params)
    return conn.execute(query, tuple(params))


def _one(conn: Optional[sqlite3.Connection], query: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
    if conn is None:
        return db.fetchone(query, params)
    return conn.execute(query, tuple(params)).fetchone()


def _all(conn: Optional[sqlite3.Connection], query: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
    if conn is None:
        return db.fetchall(query, params)
    return conn.execute(query, tuple(params)).fetchall()


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dump_addresses(addresses: Iterable[EmailAddress]) -> str:
    return json.dumps([{"name": a.name, "address": a.address} for a in addresses])


def _load_addresses(raw: Optional[str]) -> List[EmailAddress]:
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed address list %r", raw)
        return []
    return [EmailAddress(name=i.get("name", ""), address=i.get("address", "")) for i in items]


# ============================================================================
# Folders
# ============================================================================

def _row_to_folder(row: sqlite3.Row) -> Folder:
    return Folder(
        id=row["id"],
        account_id=row["account_id"],
        parent_id=row["parent_id"],
        name=row["name"],
        remote_name=row["remote_name"],
        folder_type=row["folder_type"],
        delimiter=row["delimiter"],
        sort_order=row["sort_order"],
        unread_count=row["unread_count"],
        total_count=row["total_count"],
        uid_validity=row["uid_validity"],
        uid_next=row["uid_next"],
        last_uid=row["last_uid"],
    )


def insert_folder(folder: Folder, conn: Optional[sqlite3.Connection] = None) -> Folder:
    """
    Insert a new folder row.

    Returns:
        The folder with its ID populated.
    """
    cursor = _exec(
        conn,
        """
        INSERT INTO folders (
            account_id, parent_id, name, remote_name, folder_type, delimiter,
            sort_order, uid_validity, uid_next, last_uid
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            folder.account_id, folder.parent_id, folder.name, folder.remote_name,
            folder.folder_type, folder.delimiter, folder.sort_order,
            folder.uid_validity, folder.uid_next, folder.last_uid,
        ),
    )
    folder.id = cursor.lastrowid
    return folder


def get_folder(folder_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Folder]:
    row = _one(conn, "SELECT * FROM folders WHERE id = ?", (folder_id,))
    return _row_to_folder(row) if row else None


def get_folder_by_remote_name(account_id: int, remote_name: str,
                              conn: Optional[sqlite3.Connection] = None) -> Optional[Folder]:
    row = _one(conn, "SELECT * FROM folders WHERE account_id = ? AND remote_name = ?",
               (account_id, remote_name))
    return _row_to_folder(row) if row else None


def get_folder_by_type(account_id: int, folder_type: str,
                       conn: Optional[sqlite3.Connection] = None) -> Optional[Folder]:
    """Return the first folder of the given kind for an account."""
    row = _one(
        conn,
        "SELECT * FROM folders WHERE account_id = ? AND folder_type = ? ORDER BY id LIMIT 1",
        (account_id, folder_type),
    )
    return _row_to_folder(row) if row else None


def list_folders(account_id: int, conn: Optional[sqlite3.Connection] = None) -> List[Folder]:
    """
    List all folders for an account, in sibling order.

    Returns:
        Folders ordered by parent then sort key, so each sibling set is
        contiguous and already in display order.
    """
    rows = _all(
        conn,
        """
        SELECT * FROM folders WHERE account_id = ?
        ORDER BY COALESCE(parent_id, 0), sort_order, id
        """,
        (account_id,),
    )
    return [_row_to_folder(row) for row in rows]


def list_siblings(account_id: int, parent_id: Optional[int],
                  conn: Optional[sqlite3.Connection] = None) -> List[Folder]:
    rows = _all(
        conn,
        "SELECT * FROM folders WHERE account_id = ? AND parent_id IS ? ORDER BY sort_order, id",
        (account_id, parent_id),
    )
    return [_row_to_folder(row) for row in rows]


def set_sort_orders(folder_ids: Sequence[int], conn: sqlite3.Connection) -> None:
    """Assign contiguous sort keys 0..n-1 in the given order."""
    conn.executemany(
        "UPDATE folders SET sort_order = ? WHERE id = ?",
        [(index, folder_id) for index, folder_id in enumerate(folder_ids)],
    )


def update_folder_location(folder_id: int, parent_id: Optional[int], name: str,
                           remote_name: str, conn: sqlite3.Connection) -> None:
    conn.execute(
        "UPDATE folders SET parent_id = ?, name = ?, remote_name = ? WHERE id = ?",
        (parent_id, name, remote_name, folder_id),
    )


def update_folder_remote_meta(folder_id: int, name: str, delimiter: str,
                              conn: Optional[sqlite3.Connection] = None) -> None:
    _exec(conn, "UPDATE folders SET name = ?, delimiter = ? WHERE id = ?",
          (name, delimiter, folder_id))


def update_folder_watermark(folder_id: int, last_uid: int, uid_validity: Optional[int],
                            uid_next: Optional[int], conn: Optional[sqlite3.Connection] = None) -> None:
    """Advance the sync watermark for a folder."""
    _exec(
        conn,
        "UPDATE folders SET last_uid = ?, uid_validity = ?, uid_next = ? WHERE id = ?",
        (last_uid, uid_validity, uid_next, folder_id),
    )


def refresh_folder_counts(folder_ids: Iterable[int], conn: Optional[sqlite3.Connection] = None) -> None:
    """Recompute unread/total counters from the message rows."""
    for folder_id in set(i for i in folder_ids if i):
        _exec(
            conn,
            """
            UPDATE folders SET
                total_count = (SELECT COUNT(*) FROM emails WHERE folder_id = ?),
                unread_count = (SELECT COUNT(*) FROM emails WHERE folder_id = ? AND is_read = 0)
            WHERE id = ?
            """,
            (folder_id, folder_id, folder_id),
        )


def delete_folders(folder_ids: Sequence[int], conn: sqlite3.Connection) -> int:
    """Delete folders and their messages; returns the number of messages removed."""
    if not folder_ids:
        return 0
    marks = _placeholders(folder_ids)
    removed = conn.execute(f"DELETE FROM emails WHERE folder_id IN ({marks})",
                           tuple(folder_ids)).rowcount
    conn.execute(f"DELETE FROM folders WHERE id IN ({marks})", tuple(folder_ids))
    return removed


# ============================================================================
# Emails
# ============================================================================

def _row_to_email(row: sqlite3.Row) -> EmailMessage:
    return EmailMessage(
        id=row["id"],
        account_id=row["account_id"],
        folder_id=row["folder_id"],
        uid=row["uid"],
        message_id=row["message_id"],
        thread_id=row["thread_id"],
        in_reply_to=row["in_reply_to"],
        references=row["references_header"],
        from_name=row["from_name"],
        from_address=row["from_address"],
        to_addresses=_load_addresses(row["to_addresses"]),
        cc_addresses=_load_addresses(row["cc_addresses"]),
        bcc_addresses=_load_addresses(row["bcc_addresses"]),
        reply_to=_load_addresses(row["reply_to"]),
        subject=row["subject"],
        text_body=row["text_body"],
        html_body=row["html_body"],
        snippet=row["snippet"],
        is_read=bool(row["is_read"]),
        is_starred=bool(row["is_starred"]),
        is_answered=bool(row["is_answered"]),
        is_draft=bool(row["is_draft"]),
        has_attachments=bool(row["has_attachments"]),
        date=db.parse_ts(row["date"]),
        received_at=db.parse_ts(row["received_at"]),
        processed=bool(row["processed"]),
    )


def insert_email(message: EmailMessage, conn: Optional[sqlite3.Connection] = None) -> EmailMessage:
    """
    Insert a message row together with its attachment metadata.

    Returns:
        The message with its ID populated.

    Raises:
        sqlite3.IntegrityError: If (account, message_id) or
            (account, folder, uid) already exists.
    """
    cursor = _exec(
        conn,
        """
        INSERT INTO emails (
            account_id, folder_id, uid, message_id, thread_id, in_reply_to,
            references_header, from_name, from_address, to_addresses,
            cc_addresses, bcc_addresses, reply_to, subject, text_body,
            html_body, snippet, is_read, is_starred, is_answered, is_draft,
            has_attachments, date, received_at, processed
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            message.account_id, message.folder_id, message.uid, message.message_id,
            message.thread_id, message.in_reply_to, message.references,
            message.from_name, message.from_address,
            _dump_addresses(message.to_addresses), _dump_addresses(message.cc_addresses),
            _dump_addresses(message.bcc_addresses), _dump_addresses(message.reply_to),
            message.subject, message.text_body, message.html_body, message.snippet,
            int(message.is_read), int(message.is_starred), int(message.is_answered),
            int(message.is_draft), int(message.has_attachments),
            db.format_ts(message.date), db.format_ts(message.received_at) or _now(),
            int(message.processed),
        ),
    )
    message.id = cursor.lastrowid
    for attachment in message.attachments:
        attachment.email_id = message.id
        insert_attachment(attachment, conn)
    return message


def get_email(email_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[EmailMessage]:
    row = _one(conn, "SELECT * FROM emails WHERE id = ?", (email_id,))
    return _row_to_email(row) if row else None


def get_emails(email_ids: Sequence[int], conn: Optional[sqlite3.Connection] = None) -> List[EmailMessage]:
    if not email_ids:
        return []
    rows = _all(conn, f"SELECT * FROM emails WHERE id IN ({_placeholders(email_ids)}) ORDER BY id",
                tuple(email_ids))
    return [_row_to_email(row) for row in rows]


def get_email_by_message_id(account_id: int, message_id: str,
                            conn: Optional[sqlite3.Connection] = None) -> Optional[EmailMessage]:
    row = _one(conn, "SELECT * FROM emails WHERE account_id = ? AND message_id = ?",
               (account_id, message_id))
    return _row_to_email(row) if row else None


def find_thread_for_message_ids(account_id: int, message_ids: Sequence[str],
                                conn: Optional[sqlite3.Connection] = None) -> Optional[str]:
    """
    Return the thread of the first id in ``message_ids`` that is stored locally.

    Order of ``message_ids`` is significant; unknown ids are skipped.
    """
    if not message_ids:
        return None
    rows = _all(
        conn,
        f"""
        SELECT message_id, thread_id FROM emails
        WHERE account_id = ? AND message_id IN ({_placeholders(message_ids)})
        """,
        (account_id, *message_ids),
    )
    known = {row["message_id"]: row["thread_id"] for row in rows if row["thread_id"]}
    for message_id in message_ids:
        if message_id in known:
            return known[message_id]
    return None


def list_emails(folder_id: int, limit: int, offset: int) -> Tuple[List[EmailMessage], int]:
    """
    Page through a folder, newest first.

    Returns:
        (messages, total messages in the folder)
    """
    rows = db.fetchall(
        "SELECT * FROM emails WHERE folder_id = ? ORDER BY date DESC, id DESC LIMIT ? OFFSET ?",
        (folder_id, limit, offset),
    )
    total = db.fetchone("SELECT COUNT(*) AS n FROM emails WHERE folder_id = ?", (folder_id,))["n"]
    return [_row_to_email(row) for row in rows], total


def list_account_emails(account_id: int, conn: Optional[sqlite3.Connection] = None) -> List[EmailMessage]:
    """All messages of an account in chronological order."""
    rows = _all(
        conn,
        "SELECT * FROM emails WHERE account_id = ? ORDER BY COALESCE(date, received_at), id",
        (account_id,),
    )
    return [_row_to_email(row) for row in rows]


def list_thread_emails(account_id: int, thread_id: str, limit: Optional[int] = None,
                       offset: int = 0) -> List[EmailMessage]:
    """Members of a thread, oldest first."""
    query = """
        SELECT * FROM emails WHERE account_id = ? AND thread_id = ?
        ORDER BY COALESCE(date, received_at), id
    """
    params: List[Any] = [account_id, thread_id]
    if limit is not None:
        query += " LIMIT ? OFFSET ?"
        params += [limit, offset]
    return [_row_to_email(row) for row in db.fetchall(query, params)]


def list_unprocessed_emails(account_id: int, folder_id: Optional[int] = None,
                            conn: Optional[sqlite3.Connection] = None) -> List[EmailMessage]:
    """Messages stored but not yet threaded and filtered, in arrival order."""
    query = "SELECT * FROM emails WHERE account_id = ? AND processed = 0"
    params: List[Any] = [account_id]
    if folder_id is not None:
        query += " AND folder_id = ?"
        params.append(folder_id)
    query += " ORDER BY id"
    return [_row_to_email(row) for row in _all(conn, query, params)]


def set_email_flags(email_id: int, conn: Optional[sqlite3.Connection] = None, *,
                    is_read: Optional[bool] = None, is_starred: Optional[bool] = None,
                    is_answered: Optional[bool] = None) -> None:
    """Update any subset of the boolean flags on a message."""
    updates = []
    params: List[Any] = []
    for column, value in (("is_read", is_read), ("is_starred", is_starred),
                          ("is_answered", is_answered)):
        if value is not None:
            updates.append(f"{column} = ?")
            params.append(int(value))
    if not updates:
        return
    params.append(email_id)
    _exec(conn, f"UPDATE emails SET {', '.join(updates)} WHERE id = ?", params)


def set_remote_flags(email_id: int, is_read: bool, is_starred: bool, is_answered: bool,
                     is_draft: bool, conn: Optional[sqlite3.Connection] = None) -> None:
    _exec(
        conn,
        "UPDATE emails SET is_read = ?, is_starred = ?, is_answered = ?, is_draft = ? WHERE id = ?",
        (int(is_read), int(is_starred), int(is_answered), int(is_draft), email_id),
    )


def move_email(email_id: int, folder_id: int, conn: Optional[sqlite3.Connection] = None) -> None:
    """
    Move a message locally.

    The server UID is detached because it is only meaningful in the source
    folder; sync leaves detached rows where the user put them.
    """
    _exec(conn, "UPDATE emails SET folder_id = ?, uid = NULL WHERE id = ?", (folder_id, email_id))


def bind_remote(email_id: int, folder_id: int, uid: int,
                conn: Optional[sqlite3.Connection] = None) -> None:
    """Attach a message to a server folder/UID (server-side move or rebind)."""
    _exec(conn, "UPDATE emails SET folder_id = ?, uid = ? WHERE id = ?", (folder_id, uid, email_id))


def detach_folder_uids(folder_id: int, conn: sqlite3.Connection) -> List[int]:
    """
    Clear the UIDs of every bound message in a folder.

    Returns:
        IDs of the rows that were detached.
    """
    ids = [row["id"] for row in conn.execute(
        "SELECT id FROM emails WHERE folder_id = ? AND uid IS NOT NULL", (folder_id,))]
    conn.execute("UPDATE emails SET uid = NULL WHERE folder_id = ? AND uid IS NOT NULL", (folder_id,))
    return ids


def delete_unbound_emails(email_ids: Sequence[int], conn: sqlite3.Connection) -> int:
    """Delete those of ``email_ids`` that are still detached."""
    if not email_ids:
        return 0
    return conn.execute(
        f"DELETE FROM emails WHERE uid IS NULL AND id IN ({_placeholders(email_ids)})",
        tuple(email_ids),
    ).rowcount


def set_thread_id(email_id: int, thread_id: str, conn: Optional[sqlite3.Connection] = None) -> None:
    _exec(conn, "UPDATE emails SET thread_id = ? WHERE id = ?", (thread_id, email_id))


def mark_processed(email_id: int, conn: Optional[sqlite3.Connection] = None) -> None:
    _exec(conn, "UPDATE emails SET processed = 1 WHERE id = ?", (email_id,))


def delete_email(email_id: int, conn: Optional[sqlite3.Connection] = None) -> None:
    _exec(conn, "DELETE FROM emails WHERE id = ?", (email_id,))


def mark_folder_read(folder_id: int) -> int:
    """Mark every message in a folder read; returns how many changed."""
    with db.transaction() as conn:
        count = conn.execute(
            "UPDATE emails SET is_read = 1 WHERE folder_id = ? AND is_read = 0", (folder_id,)
        ).rowcount
        refresh_folder_counts([folder_id], conn)
    return count


def filter_owned_email_ids(user_id: int, email_ids: Sequence[int]) -> List[int]:
    """Return the subset of ``email_ids`` that exist and belong to ``user_id``."""
    if not email_ids:
        return []
    rows = db.fetchall(
        f"""
        SELECT e.id FROM emails e JOIN accounts a ON a.id = e.account_id
        WHERE a.user_id = ? AND e.id IN ({_placeholders(email_ids)})
        """,
        (user_id, *email_ids),
    )
    return [row["id"] for row in rows]


def count_flagged(account_id: int) -> Tuple[int, int]:
    """Return (starred, drafts) counts for an account's virtual listings."""
    row = db.fetchone(
        """
        SELECT
            (SELECT COUNT(*) FROM emails WHERE account_id = ? AND is_starred = 1) AS starred,
            (SELECT COUNT(*) FROM drafts WHERE account_id = ?) AS drafts
        """,
        (account_id, account_id),
    )
    return row["starred"], row["drafts"]


def list_starred_emails(account_id: int, limit: int, offset: int) -> Tuple[List[EmailMessage], int]:
    rows = db.fetchall(
        """
        SELECT * FROM emails WHERE account_id = ? AND is_starred = 1
        ORDER BY date DESC, id DESC LIMIT ? OFFSET ?
        """,
        (account_id, limit, offset),
    )
    total, _ = count_flagged(account_id)
    return [_row_to_email(row) for row in rows], total


def search_emails(where: str, params: Sequence[Any], limit: int) -> List[EmailMessage]:
    """Run a search built by the search module; ``where`` uses alias ``e``."""
    rows = db.fetchall(
        f"SELECT e.* FROM emails e WHERE {where} ORDER BY e.date DESC, e.id DESC LIMIT ?",
        (*params, limit),
    )
    return [_row_to_email(row) for row in rows]


# ============================================================================
# Attachments
# ============================================================================

def insert_attachment(attachment: Attachment, conn: Optional[sqlite3.Connection] = None) -> Attachment:
    cursor = _exec(
        conn,
        """
        INSERT INTO attachments (email_id, filename, content_type, size, content_id, is_inline)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            attachment.email_id, attachment.filename, attachment.content_type,
            attachment.size, attachment.content_id, int(attachment.is_inline),
        ),
    )
    attachment.id = cursor.lastrowid
    return attachment


def list_attachments(email_id: int) -> List[Attachment]:
    rows = db.fetchall("SELECT * FROM attachments WHERE email_id = ? ORDER BY id", (email_id,))
    return [
        Attachment(
            id=row["id"],
            email_id=row["email_id"],
            filename=row["filename"],
            content_type=row["content_type"],
            size=row["size"],
            content_id=row["content_id"],
            is_inline=bool(row["is_inline"]),
        )
        for row in rows
    ]


# ============================================================================
# Labels
# ============================================================================

def _row_to_label(row: sqlite3.Row) -> Label:
    return Label(
        id=row["id"],
        account_id=row["account_id"],
        name=row["name"],
        color=row["color"],
        is_system=bool(row["is_system"]),
    )


def insert_label(label: Label) -> Label:
    cursor = db.execute(
        "INSERT INTO labels (account_id, name, color, is_system) VALUES (?, ?, ?, ?)",
        (label.account_id, label.name, label.color, int(label.is_system)),
    )
    label.id = cursor.lastrowid
    return label


def get_label(label_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Label]:
    row = _one(conn, "SELECT * FROM labels WHERE id = ?", (label_id,))
    return _row_to_label(row) if row else None


def list_labels(account_id: int) -> List[Label]:
    rows = db.fetchall(
        "SELECT * FROM labels WHERE account_id = ? ORDER BY is_system DESC, name",
        (account_id,),
    )
    return [_row_to_label(row) for row in rows]


def update_label(label: Label) -> None:
    db.execute("UPDATE labels SET name = ?, color = ? WHERE id = ?",
               (label.name, label.color, label.id))


def delete_label(label_id: int) -> None:
    db.execute("DELETE FROM labels WHERE id = ?", (label_id,))


def assign_label(email_id: int, label_id: int, conn: Optional[sqlite3.Connection] = None) -> bool:
    """Attach a label; returns False when it was already attached."""
    cursor = _exec(conn, "INSERT OR IGNORE INTO email_labels (email_id, label_id) VALUES (?, ?)",
                   (email_id, label_id))
    return cursor.rowcount > 0


def unassign_label(email_id: int, label_id: int) -> bool:
    cursor = db.execute("DELETE FROM email_labels WHERE email_id = ? AND label_id = ?",
                        (email_id, label_id))
    return cursor.rowcount > 0


def list_email_labels(email_id: int) -> List[Label]:
    rows = db.fetchall(
        """
        SELECT l.* FROM labels l JOIN email_labels el ON el.label_id = l.id
        WHERE el.email_id = ? ORDER BY l.name
        """,
        (email_id,),
    )
    return [_row_to_label(row) for row in rows]


def list_emails_by_label(label_id: int, limit: int, offset: int) -> Tuple[List[EmailMessage], int]:
    rows = db.fetchall(
        """
        SELECT e.* FROM emails e JOIN email_labels el ON el.email_id = e.id
        WHERE el.label_id = ? ORDER BY e.date DESC, e.id DESC LIMIT ? OFFSET ?
        """,
        (label_id, limit, offset),
    )
    total = db.fetchone("SELECT COUNT(*) AS n FROM email_labels WHERE label_id = ?",
                        (label_id,))["n"]
    return [_row_to_email(row) for row in rows], total


# ============================================================================
# Rules
# ============================================================================

def _row_to_rule(row: sqlite3.Row) -> Rule:
    conditions = [RuleCondition(**c) for c in json.loads(row["conditions"] or "[]")]
    actions = [RuleAction(**a) for a in json.loads(row["actions"] or "[]")]
    return Rule(
        id=row["id"],
        account_id=row["account_id"],
        name=row["name"],
        priority=row["priority"],
        match_type=row["match_type"],
        conditions=conditions,
        actions=actions,
        stop_processing=bool(row["stop_processing"]),
        enabled=bool(row["enabled"]),
        created_at=db.parse_ts(row["created_at"]),
    )


def _rule_json(rule: Rule) -> Tuple[str, str]:
    conditions = json.dumps([
        {"field": c.field, "operator": c.operator, "value": c.value} for c in rule.conditions
    ])
    actions = json.dumps([{"type": a.type, "value": a.value} for a in rule.actions])
    return conditions, actions


def insert_rule(rule: Rule) -> Rule:
    conditions, actions = _rule_json(rule)
    cursor = db.execute(
        """
        INSERT INTO rules (account_id, name, priority, match_type, conditions,
                           actions, stop_processing, enabled)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            rule.account_id, rule.name, rule.priority, rule.match_type,
            conditions, actions, int(rule.stop_processing), int(rule.enabled),
        ),
    )
    rule.id = cursor.lastrowid
    return rule


def update_rule(rule: Rule) -> None:
    conditions, actions = _rule_json(rule)
    db.execute(
        """
        UPDATE rules SET name = ?, priority = ?, match_type = ?, conditions = ?,
                         actions = ?, stop_processing = ?, enabled = ?
        WHERE id = ?
        """,
        (
            rule.name, rule.priority, rule.match_type, conditions, actions,
            int(rule.stop_processing), int(rule.enabled), rule.id,
        ),
    )


def get_rule(rule_id: int) -> Optional[Rule]:
    row = db.fetchone("SELECT * FROM rules WHERE id = ?", (rule_id,))
    return _row_to_rule(row) if row else None


def list_rules(account_id: int, enabled_only: bool = False,
               conn: Optional[sqlite3.Connection] = None) -> List[Rule]:
    """Rules in evaluation order: ascending priority, then creation."""
    query = "SELECT * FROM rules WHERE account_id = ?"
    if enabled_only:
        query += " AND enabled = 1"
    query += " ORDER BY priority, id"
    return [_row_to_rule(row) for row in _all(conn, query, (account_id,))]


def next_rule_priority(account_id: int) -> int:
    row = db.fetchone("SELECT MAX(priority) AS p FROM rules WHERE account_id = ?", (account_id,))
    return 0 if row["p"] is None else row["p"] + 1


def set_rule_priorities(rule_ids: Sequence[int]) -> None:
    db.execute_many("UPDATE rules SET priority = ? WHERE id = ?",
                    [(index, rule_id) for index, rule_id in enumerate(rule_ids)])


def delete_rule(rule_id: int) -> None:
    db.execute("DELETE FROM rules WHERE id = ?", (rule_id,))


# ============================================================================
# Drafts
# ============================================================================

def _row_to_draft(row: sqlite3.Row) -> Draft:
    return Draft(
        id=row["id"],
        account_id=row["account_id"],
        to=json.loads(row["to_addresses"] or "[]"),
        cc=json.loads(row["cc_addresses"] or "[]"),
        bcc=json.loads(row["bcc_addresses"] or "[]"),
        subject=row["subject"],
        text_body=row["text_body"],
        html_body=row["html_body"],
        reply_to_id=row["reply_to_id"],
        updated_at=db.parse_ts(row["updated_at"]),
    )


def save_draft(draft: Draft) -> Draft:
    """Insert a new draft or overwrite an existing one."""
    params = (
        json.dumps(draft.to), json.dumps(draft.cc), json.dumps(draft.bcc),
        draft.subject, draft.text_body, draft.html_body, draft.reply_to_id, _now(),
    )
    if draft.id is None:
        cursor = db.execute(
            """
            INSERT INTO drafts (to_addresses, cc_addresses, bcc_addresses, subject,
                                text_body, html_body, reply_to_id, updated_at, account_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (*params, draft.account_id),
        )
        draft.id = cursor.lastrowid
    else:
        db.execute(
            """
            UPDATE drafts SET to_addresses = ?, cc_addresses = ?, bcc_addresses = ?,
                              subject = ?, text_body = ?, html_body = ?,
                              reply_to_id = ?, updated_at = ?
            WHERE id = ?
            """,
            (*params, draft.id),
        )
    return draft


def get_draft(draft_id: int) -> Optional[Draft]:
    row = db.fetchone("SELECT * FROM drafts WHERE id = ?", (draft_id,))
    return _row_to_draft(row) if row else None


def list_drafts(account_id: int) -> List[Draft]:
    rows = db.fetchall("SELECT * FROM drafts WHERE account_id = ? ORDER BY updated_at DESC, id DESC",
                       (account_id,))
    return [_row_to_draft(row) for row in rows]


def delete_draft(draft_id: int) -> None:
    db.execute("DELETE FROM drafts WHERE id = ?", (draft_id,))


# ============================================================================
# Thread aggregates
# ============================================================================

_THREAD_AGGREGATE_SQL = """
    WITH members AS (
        SELECT * FROM emails WHERE {scope} AND thread_id != ''
    ),
    agg AS (
        SELECT thread_id,
               account_id,
               COUNT(*) AS message_count,
               SUM(CASE WHEN is_read = 0 THEN 1 ELSE 0 END) AS unread_count,
               MAX(has_attachments) AS has_attachments,
               MAX(is_starred) AS is_starred,
               GROUP_CONCAT(DISTINCT LOWER(from_address)) AS participants,
               MAX(COALESCE(date, received_at)) AS latest_date
        FROM members GROUP BY thread_id
    ),
    latest AS (
        SELECT id, thread_id, subject, snippet,
               ROW_NUMBER() OVER (
                   PARTITION BY thread_id
                   ORDER BY COALESCE(date, received_at) DESC, id DESC
               ) AS rn
        FROM members
    )
    SELECT agg.*, latest.id AS latest_id, latest.subject AS subject, latest.snippet AS snippet
    FROM agg JOIN latest ON latest.thread_id = agg.thread_id AND latest.rn = 1
    ORDER BY agg.latest_date DESC, latest.id DESC
"""


def _row_to_thread(row: sqlite3.Row) -> EmailThread:
    return EmailThread(
        thread_id=row["thread_id"],
        account_id=row["account_id"],
        subject=row["subject"],
        snippet=row["snippet"],
        latest_message_id=row["latest_id"],
        latest_date=db.parse_ts(row["latest_date"]),
        message_count=row["message_count"],
        unread_count=row["unread_count"] or 0,
        has_attachments=bool(row["has_attachments"]),
        is_starred=bool(row["is_starred"]),
        participants=[p for p in (row["participants"] or "").split(",") if p],
    )


def list_folder_threads(folder_id: int, limit: int, offset: int) -> Tuple[List[EmailThread], int]:
    """
    Aggregate the conversations that have messages in a folder.

    Aggregates cover the thread's members within that folder, newest
    thread first.
    """
    query = _THREAD_AGGREGATE_SQL.format(scope="folder_id = ?") + " LIMIT ? OFFSET ?"
    rows = db.fetchall(query, (folder_id, limit, offset))
    total = db.fetchone(
        "SELECT COUNT(DISTINCT thread_id) AS n FROM emails WHERE folder_id = ? AND thread_id != ''",
        (folder_id,),
    )["n"]
    return [_row_to_thread(row) for row in rows], total


def get_thread_aggregate(account_id: int, thread_id: str) -> Optional[EmailThread]:
    """Aggregate one conversation across every folder of the account."""
    query = _THREAD_AGGREGATE_SQL.format(scope="account_id = ? AND thread_id = ?")
    row = db.fetchone(query, (account_id, thread_id))
    return _row_to_thread(row) if row else None
