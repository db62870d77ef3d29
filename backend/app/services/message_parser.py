"""
MIME parsing for fetched mailbox messages.

Turns raw RFC 822 bytes into a Message. Every header and body field is parsed
independently: a field that fails raises FieldParseError internally, the error
is logged, and the field keeps its zero value. Nothing in here aborts a batch.

Public API:
  parse_message(raw, seq) -> Message
"""

import logging
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import formataddr, getaddresses, parsedate_to_datetime
from typing import Optional

from app.models.mail import Attachment, Message, ZERO_TIME
from app.services.errors import FieldParseError

logger = logging.getLogger(__name__)

# Header name → Message attribute
ADDRESS_FIELDS = {
    "From": "from_addrs",
    "Sender": "sender",
    "Cc": "cc",
    "Bcc": "bcc",
    "Reply-To": "reply_to",
}


def _raw_header(mime: EmailMessage, name: str) -> Optional[str]:
    try:
        value = mime.get(name)
    except Exception as e:
        raise FieldParseError(f"invalid {name} header: {e}")
    return None if value is None else str(value)


def _parse_date(value: Optional[str]) -> datetime:
    if not value:
        raise FieldParseError("missing Date header")
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError) as e:
        raise FieldParseError(f"invalid Date header {value!r}: {e}")
    if dt is None:
        raise FieldParseError(f"invalid Date header {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_addresses(field: str, value: Optional[str]) -> list[str]:
    if value is None:
        return []
    try:
        pairs = getaddresses([value])
    except Exception as e:
        raise FieldParseError(f"invalid {field} header: {e}")
    return [formataddr((name, addr)) for name, addr in pairs if addr]


def _part_text(part: EmailMessage) -> str:
    try:
        return part.get_content()
    except (LookupError, UnicodeError) as e:
        # Unknown or lying charset: fall back to a lossy decode of the payload
        logger.warning(f"failed to decode {part.get_content_type()} part: {e}")
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _absorb(seq: int, field: str, exc: FieldParseError) -> None:
    logger.warning(f"message {seq}: failed to parse {field} field: {exc.message}")


def parse_message(raw: bytes, seq: int = 0) -> Message:
    """
    Parse a raw message into a Message.

    Args:
        raw: Full RFC 822 bytes as returned by the mailbox fetch.
        seq: Mailbox sequence number, kept for ordering ties.

    Returns:
        Message with every field that could be parsed filled in. An entirely
        unreadable message yields an empty Message with only seq set.
    """
    msg = Message(seq=seq)

    try:
        mime = BytesParser(policy=policy.default).parsebytes(raw)
    except Exception as e:
        logger.warning(f"message {seq}: failed to create mail reader: {e}")
        return msg

    try:
        msg.id = (_raw_header(mime, "Message-ID") or "").strip().strip("<>")
    except FieldParseError as e:
        _absorb(seq, "Message-ID", e)

    try:
        msg.date = _parse_date(_raw_header(mime, "Date"))
    except FieldParseError as e:
        _absorb(seq, "Date", e)
        msg.date = ZERO_TIME

    try:
        msg.subject = (_raw_header(mime, "Subject") or "").strip()
    except FieldParseError as e:
        _absorb(seq, "Subject", e)

    for field, attr in ADDRESS_FIELDS.items():
        try:
            setattr(msg, attr, _parse_addresses(field, _raw_header(mime, field)))
        except FieldParseError as e:
            _absorb(seq, field, e)

    attachments: list[Attachment] = []
    try:
        for part in mime.walk():
            if part.is_multipart():
                continue
            disposition = part.get_content_disposition()
            ctype = part.get_content_type()
            if disposition == "attachment":
                attachments.append(
                    Attachment(
                        name=part.get_filename() or "attachment",
                        content_type=ctype,
                        content=part.get_payload(decode=True) or b"",
                    )
                )
            elif ctype == "text/plain":
                msg.body_text = _part_text(part).strip()
            elif ctype == "text/html":
                msg.body_html = _part_text(part).strip()
    except Exception as e:
        _absorb(seq, "body", FieldParseError(f"failed to read message part: {e}"))
    msg.attachments = attachments

    return msg
