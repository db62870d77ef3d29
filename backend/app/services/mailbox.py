"""
IMAP mailbox session.

One MailboxSession is owned by one synchronization request: connect,
authenticate, select INBOX, fetch batches by sequence number, log out.

The IMAP client comes from a factory so tests can inject a fake client.
"""

import imaplib
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from app.services.errors import AuthError, MailboxConnectionError, TransferError

logger = logging.getLogger(__name__)

DEFAULT_IMAP_PORT = 993
INBOX = "INBOX"

# Full body without setting \Seen
FETCH_QUERY = "(BODY.PEEK[])"

ImapFactory = Callable[[str, int], imaplib.IMAP4]

_SEQ_PREFIX = re.compile(rb"^\s*(\d+)\s")


def _default_imap_factory(host: str, port: int) -> imaplib.IMAP4:
    return imaplib.IMAP4_SSL(host=host, port=port)


def split_address(address: str) -> tuple[str, int]:
    """
    Split "host[:port]" into (host, port); the port defaults to 993.

    Raises:
        MailboxConnectionError: If the address is empty or the port is not a number.
    """
    address = address.strip()
    host, sep, port_s = address.rpartition(":")
    if not sep:
        host, port_s = address, ""
    if not host:
        raise MailboxConnectionError(f"invalid imap address {address!r}")
    if not port_s:
        return host, DEFAULT_IMAP_PORT
    try:
        return host, int(port_s)
    except ValueError:
        raise MailboxConnectionError(f"invalid imap port in address {address!r}")


@dataclass
class RawMessage:
    """One fetch result: the sequence number and the full RFC 822 bytes."""
    seq: int
    raw: bytes


class MailboxSession:
    """Authenticated IMAP session over a single INBOX."""

    def __init__(
        self,
        address: str,
        user: str,
        secret: str,
        imap_factory: Optional[ImapFactory] = None,
    ):
        self.address = address
        self.user = user
        self._secret = secret
        self._imap_factory = imap_factory or _default_imap_factory
        self._client: Optional[imaplib.IMAP4] = None
        self.message_count = 0

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        host, port = split_address(self.address)
        logger.info(f"Connecting to {host}:{port}")
        try:
            self._client = self._imap_factory(host, port)
        except (OSError, imaplib.IMAP4.error) as e:
            raise MailboxConnectionError(f"unable to connect to {self.address}. err: {e}")
        logger.info(f"Connected to {host}:{port}")

    def authenticate(self) -> None:
        client = self._require_client()
        try:
            typ, _ = client.login(self.user, self._secret)
        except (OSError, imaplib.IMAP4.error) as e:
            raise AuthError(f"unable to login to {self.user}. err: {e}")
        if typ != "OK":
            raise AuthError(f"unable to login to {self.user}. server replied {typ}")
        logger.info(f"Logged in as {self.user}")

    def select_inbox(self) -> int:
        """Select INBOX read-only and return the total number of messages."""
        client = self._require_client()
        try:
            typ, data = client.select(INBOX, readonly=True)
        except (OSError, imaplib.IMAP4.error) as e:
            raise MailboxConnectionError(f"unable to read {INBOX}. err: {e}")
        if typ != "OK" or not data:
            raise MailboxConnectionError(f"unable to read {INBOX}. server replied {typ}")
        try:
            self.message_count = int(data[0])
        except (TypeError, ValueError):
            raise MailboxConnectionError(f"unable to read {INBOX} message count: {data[0]!r}")
        logger.info(f"{INBOX} holds {self.message_count} messages")
        return self.message_count

    def login(self) -> int:
        """Connect, authenticate and select INBOX; return the message count."""
        self.connect()
        self.authenticate()
        return self.select_inbox()

    def logout(self) -> None:
        """Close the session. Never raises: a failed logout is only logged."""
        if self._client is None:
            return
        try:
            self._client.logout()
        except Exception as e:
            logger.warning(f"imap logout for {self.user} failed: {e}")
        finally:
            self._client = None
        logger.info(f"Logged out {self.user}")

    def _require_client(self) -> imaplib.IMAP4:
        if self._client is None:
            raise MailboxConnectionError("imap session is not connected")
        return self._client

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def fetch(self, from_seq: int, to_seq: int) -> list[RawMessage]:
        """
        Fetch the full body of every message in [from_seq, to_seq].

        Results may come back in any order. The batch is only usable when
        exactly to_seq - from_seq + 1 results arrive.

        Raises:
            ValueError: If the range is not 1 <= from_seq <= to_seq.
            TransferError: On any transport failure or an incomplete batch.
        """
        if from_seq < 1 or from_seq > to_seq:
            raise ValueError(f"invalid fetch range [{from_seq}, {to_seq}]")

        client = self._require_client()
        expected = to_seq - from_seq + 1
        try:
            typ, data = client.fetch(f"{from_seq}:{to_seq}", FETCH_QUERY)
        except (OSError, imaplib.IMAP4.error) as e:
            raise TransferError(f"fetch [{from_seq}, {to_seq}] failed: {e}")
        if typ != "OK":
            raise TransferError(f"fetch [{from_seq}, {to_seq}] failed: server replied {typ}")

        results: list[RawMessage] = []
        for item in data or []:
            # Literal responses are (b"<seq> (BODY[] {n}", raw); b")" closes each one
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            match = _SEQ_PREFIX.match(item[0] or b"")
            if not match or not isinstance(item[1], bytes):
                raise TransferError(f"unexpected fetch response line {item[0]!r}")
            results.append(RawMessage(seq=int(match.group(1)), raw=item[1]))

        if len(results) != expected:
            raise TransferError(
                f"fetch [{from_seq}, {to_seq}] returned {len(results)} of {expected} messages"
            )
        return results
