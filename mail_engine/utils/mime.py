"""
RFC 822 message parsing helpers.

Turns raw message bytes (as fetched over IMAP) into ``EmailMessage`` models:
decoded headers, parsed address lists, plain/HTML bodies, a snippet and
attachment metadata. Malformed input degrades field by field instead of
failing the whole message; only bytes that are not a message at all raise
``MessageParseError``.
"""
import email
import hashlib
import html
import logging
import re
from datetime import datetime, timezone
from email.header import decode_header
from email.message import Message
from email.utils import getaddresses, parsedate_to_datetime
from typing import Iterable, List, Optional, Tuple

from mail_engine import config
from mail_engine.models import Attachment, EmailAddress, EmailMessage
from mail_engine.utils.errors import MessageParseError


logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_MESSAGE_ID_RE = re.compile(r"<([^<>\s]+)>")
_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_TAG_RE = re.compile(r"<\s*(br|/p|/div|/li|/tr|/h[1-6])\b[^>]*>", re.IGNORECASE)

FLAG_SEEN = "\\Seen"
FLAG_FLAGGED = "\\Flagged"
FLAG_ANSWERED = "\\Answered"
FLAG_DRAFT = "\\Draft"


def decode_header_value(value: Optional[str]) -> str:
    """Decode an RFC 2047 encoded header into text."""
    if not value:
        return ""
    try:
        decoded = ""
        for part, encoding in decode_header(str(value)):
            if isinstance(part, bytes):
                try:
                    decoded += part.decode(encoding or "utf-8", errors="replace")
                except LookupError:
                    decoded += part.decode("utf-8", errors="replace")
            else:
                decoded += part
        return decoded.strip()
    except (ValueError, TypeError):
        logger.warning("Could not decode header %r", value)
        return str(value).strip()


def parse_addresses(*values: Optional[str]) -> List[EmailAddress]:
    """
    Parse one or more address headers into EmailAddress entries.

    Entries without an ``@`` in the address part are dropped.
    """
    decoded = [decode_header_value(v) for v in values if v]
    result = []
    for name, address in getaddresses(decoded):
        address = address.strip()
        if "@" not in address:
            continue
        result.append(EmailAddress(name=name.strip(), address=address))
    return result


def parse_message_ids(value: Optional[str]) -> List[str]:
    """
    Extract message identifiers from a References/In-Reply-To header.

    Angle brackets are stripped and order is preserved (oldest first for
    References). Bare tokens are accepted when a header has no brackets.
    """
    if not value:
        return []
    found = _MESSAGE_ID_RE.findall(value)
    if not found:
        found = [token.strip("<>") for token in value.split() if "@" in token]
    ids: List[str] = []
    for message_id in found:
        if message_id and message_id not in ids:
            ids.append(message_id)
    return ids


def normalize_message_id(value: Optional[str]) -> str:
    ids = parse_message_ids(value)
    return ids[0] if ids else (value or "").strip().strip("<>")


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a Date header; returns an aware datetime or None."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(str(value))
    except (TypeError, ValueError, IndexError):
        logger.warning("Unparseable Date header %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    # Stored as UTC so TEXT ordering matches chronological ordering
    return parsed.astimezone(timezone.utc)


def html_to_text(markup: str) -> str:
    """Very small HTML-to-text reduction used for snippets and search."""
    text = _SCRIPT_STYLE_RE.sub(" ", markup)
    text = _BLOCK_TAG_RE.sub("\n", text)
    text = _TAG_RE.sub(" ", text)
    return html.unescape(text)


def make_snippet(text: str, max_len: Optional[int] = None) -> str:
    """Collapse whitespace and truncate to ``max_len`` characters plus '...'."""
    limit = config.SNIPPET_LENGTH if max_len is None else max_len
    text = _WHITESPACE_RE.sub(" ", text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _decode_part(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _extract_parts(msg: Message) -> Tuple[str, str, List[Attachment]]:
    text_body = ""
    html_body = ""
    attachments: List[Attachment] = []

    for part in msg.walk():
        if part.is_multipart():
            continue
        content_type = part.get_content_type()
        disposition = (part.get_content_disposition() or "").lower()
        filename = decode_header_value(part.get_filename())

        if disposition == "attachment" or (filename and content_type not in ("text/plain", "text/html")):
            payload = part.get_payload(decode=True) or b""
            attachments.append(Attachment(
                filename=filename or "noname",
                content_type=content_type,
                size=len(payload),
                content_id=(part.get("Content-ID") or "").strip().strip("<>"),
                is_inline=disposition == "inline",
            ))
            continue

        if content_type == "text/plain" and not text_body:
            text_body = _decode_part(part)
        elif content_type == "text/html" and not html_body:
            html_body = _decode_part(part)

    return text_body, html_body, attachments


def synthetic_message_id(raw: bytes) -> str:
    """Deterministic identifier for messages without a Message-ID header."""
    return f"{hashlib.sha1(raw).hexdigest()}@mail-engine.invalid"


def flags_to_state(flags: Iterable[str]) -> Tuple[bool, bool, bool, bool]:
    """Map IMAP system flags to (read, starred, answered, draft)."""
    normalized = {f.lower() for f in flags}
    return (
        FLAG_SEEN.lower() in normalized,
        FLAG_FLAGGED.lower() in normalized,
        FLAG_ANSWERED.lower() in normalized,
        FLAG_DRAFT.lower() in normalized,
    )


def parse_raw_message(raw: bytes, flags: Iterable[str] = ()) -> EmailMessage:
    """
    Parse a raw RFC 822 message.

    Args:
        raw: The full message bytes.
        flags: IMAP flags reported for the message.

    Returns:
        An EmailMessage with header, body, snippet and attachment fields
        populated. Account, folder, UID and thread are left to the caller.

    Raises:
        MessageParseError: If ``raw`` is empty or not bytes.
    """
    if not raw or not isinstance(raw, (bytes, bytearray)):
        raise MessageParseError("Empty or non-bytes message payload")

    msg = email.message_from_bytes(bytes(raw))

    message_id = normalize_message_id(msg.get("Message-ID"))
    if not message_id:
        message_id = synthetic_message_id(bytes(raw))
        logger.debug("Message without Message-ID, using %s", message_id)

    senders = parse_addresses(msg.get("From"))
    sender = senders[0] if senders else EmailAddress()
    if not senders and msg.get("From"):
        logger.warning("Unparseable From header on %s: %r", message_id, msg.get("From"))

    text_body, html_body, attachments = _extract_parts(msg)
    snippet_source = text_body or html_to_text(html_body)
    is_read, is_starred, is_answered, is_draft = flags_to_state(flags)

    return EmailMessage(
        message_id=message_id,
        in_reply_to=" ".join(f"<{i}>" for i in parse_message_ids(msg.get("In-Reply-To"))),
        references=" ".join(f"<{i}>" for i in parse_message_ids(msg.get("References"))),
        from_name=sender.name,
        from_address=sender.address,
        to_addresses=parse_addresses(*msg.get_all("To", [])),
        cc_addresses=parse_addresses(*msg.get_all("Cc", [])),
        bcc_addresses=parse_addresses(*msg.get_all("Bcc", [])),
        reply_to=parse_addresses(*msg.get_all("Reply-To", [])),
        subject=decode_header_value(msg.get("Subject")),
        text_body=text_body,
        html_body=html_body,
        snippet=make_snippet(snippet_source),
        is_read=is_read,
        is_starred=is_starred,
        is_answered=is_answered,
        is_draft=is_draft,
        has_attachments=bool(attachments),
        date=parse_date(msg.get("Date")),
        received_at=datetime.now(timezone.utc),
        attachments=attachments,
    )
