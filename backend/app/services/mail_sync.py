"""
Incremental mailbox reads: batch fetch, watermark scan, bootstrap window.

Public API:
  fetch_sorted(source, from_seq, to_seq) -> list[Message]
  fetch_after(source, watermark, batch_size) -> list[Message]
  fetch_recent(source, window) -> list[Message]

`source` is anything with a `message_count` attribute and a
`fetch(from_seq, to_seq) -> list[RawMessage]` method (a MailboxSession in
production). All three return messages newest first.
"""

import logging
from datetime import datetime
from typing import Optional

from app.models.mail import Message
from app.services.message_parser import parse_message

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_BOOTSTRAP_WINDOW = 25


def _newest_first_key(msg: Message) -> tuple[datetime, int]:
    # Stored timestamp only; sequence number breaks ties deterministically
    return (msg.date, msg.seq)


def sort_newest_first(messages: list[Message]) -> list[Message]:
    """Return messages sorted strictly descending by date."""
    return sorted(messages, key=_newest_first_key, reverse=True)


def fetch_sorted(source, from_seq: int, to_seq: int) -> list[Message]:
    """
    Fetch and parse the closed range [from_seq, to_seq], newest first.

    A transport error or incomplete batch raised by the source propagates
    unchanged: no partial batch is ever returned.
    """
    logger.info(f"Fetching messages [{from_seq}, {to_seq}]")
    raw_messages = source.fetch(from_seq, to_seq)
    return sort_newest_first([parse_message(r.raw, seq=r.seq) for r in raw_messages])


def fetch_after(
    source,
    watermark: Optional[datetime],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[Message]:
    """
    Collect every message strictly newer than watermark.

    Walks backward from the newest sequence number one batch at a time. The
    first message (newest first within a batch) dated at or before the
    watermark ends the scan; it and everything older are excluded. A
    watermark of None walks the whole mailbox.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be positive")

    collected: list[Message] = []
    to_seq = source.message_count

    while to_seq >= 1:
        from_seq = max(1, to_seq - batch_size + 1)

        for msg in fetch_sorted(source, from_seq, to_seq):
            if watermark is not None and msg.date <= watermark:
                logger.info(
                    f"Reached watermark {watermark.isoformat()} at message {msg.seq}; "
                    f"{len(collected)} new messages"
                )
                return sort_newest_first(collected)
            collected.append(msg)

        to_seq = from_seq - 1

    logger.info(f"Scanned the whole mailbox; {len(collected)} new messages")
    return sort_newest_first(collected)


def fetch_recent(source, window: int = DEFAULT_BOOTSTRAP_WINDOW) -> list[Message]:
    """Fetch the `window` most recent messages (all of them if fewer)."""
    if window < 1:
        raise ValueError("window must be positive")

    to_seq = source.message_count
    if to_seq < 1:
        logger.info("Mailbox is empty; nothing to fetch")
        return []
    return fetch_sorted(source, max(1, to_seq - window + 1), to_seq)
