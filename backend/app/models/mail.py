"""
Mail models produced by a mailbox fetch and consumed by the ledger merge.

Both models are transient: they live for a single synchronization request.
Attachment.content is owned by the message until the upload succeeds; after
that only Attachment.url is needed.
"""

from datetime import datetime, timezone

from pydantic import BaseModel

# Zero value for an unparseable or missing Date header
ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)


class Attachment(BaseModel):
    """A single attachment, decoded to raw bytes."""

    name: str
    content_type: str = "application/octet-stream"
    content: bytes = b""
    url: str = ""           # signed link, empty until the upload succeeds


class Message(BaseModel):
    """A parsed mailbox message."""

    id: str = ""
    seq: int = 0            # sequence number the message was fetched at
    date: datetime = ZERO_TIME
    subject: str = ""
    body_text: str = ""
    body_html: str = ""

    from_addrs: list[str] = []
    sender: list[str] = []
    cc: list[str] = []
    bcc: list[str] = []
    reply_to: list[str] = []

    attachments: list[Attachment] = []


def join_addresses(addresses: list[str]) -> str:
    """Render an address list as a single comma separated string."""
    return ", ".join(addresses)
