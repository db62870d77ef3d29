"""
Mailbox → ledger synchronization.

LedgerSyncService.sync() runs one request end to end:

  1. log in to the mailbox (connect, authenticate, select INBOX)
  2. take the owner's ledger lock
  3. download {owner}/data.xlsx
       not found → bootstrap: newest 25 messages into a new ledger
       found     → incremental: messages newer than the ledger's first row
  4. upload attachments, write the ledger back, return a signed link
  5. release the lock and log out, whatever happened

The ledger has no partial-update primitive, so every write is a full
read-modify-write. OwnerLocks serializes those per owner within a process.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from app.config import Settings
from app.models.mail import Message
from app.models.sync import SyncRequest
from app.services import ledger
from app.services.attachments import materialize_attachments
from app.services.errors import NotFoundError
from app.services.mail_sync import fetch_after, fetch_recent
from app.services.mailbox import MailboxSession
from app.services.storage import XLSX_CONTENT_TYPE, ObjectStore, ledger_key as owner_ledger_key

logger = logging.getLogger(__name__)

SessionFactory = Callable[[SyncRequest], MailboxSession]


def _default_session_factory(request: SyncRequest) -> MailboxSession:
    return MailboxSession(request.address, request.user, request.secret)


class OwnerLocks:
    """One lock per ledger owner; different owners never block each other."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, owner: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(owner)
            if lock is None:
                lock = self._locks[owner] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, owner: str) -> Iterator[None]:
        lock = self._lock_for(owner)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()


class LedgerSyncService:
    """Wires mailbox, codec and object store together for one owner per call."""

    def __init__(
        self,
        store: ObjectStore,
        settings: Settings,
        session_factory: Optional[SessionFactory] = None,
        locks: Optional[OwnerLocks] = None,
    ):
        self.store = store
        self.settings = settings
        self._session_factory = session_factory or _default_session_factory
        self._locks = locks or OwnerLocks()

    def ledger_key(self, owner: str) -> str:
        return owner_ledger_key(owner, self.settings.ledger_filename)

    def sync(self, request: SyncRequest) -> str:
        """
        Synchronize the request's INBOX into its ledger.

        Returns:
            Signed URL of the ledger.

        Raises:
            MailLedgerError: Any fatal error (connection, auth, transfer,
                encode, storage). No ledger is written in that case.
        """
        session = self._session_factory(request)
        try:
            session.login()
            with self._locks.hold(request.user):
                return self._sync_locked(session, request.user)
        finally:
            session.logout()

    def _sync_locked(self, session: MailboxSession, owner: str) -> str:
        key = self.ledger_key(owner)
        try:
            existing = self.store.download(key)
        except NotFoundError:
            logger.info(f"No ledger at {key}; bootstrapping")
            return self._bootstrap(session, owner)
        return self._incremental(session, owner, existing)

    def _bootstrap(self, session: MailboxSession, owner: str) -> str:
        messages = fetch_recent(session, self.settings.bootstrap_window)
        self._materialize(messages, owner)
        data = ledger.new_ledger(messages)
        url = self.store.upload(self.ledger_key(owner), data, XLSX_CONTENT_TYPE)
        logger.info(f"Created ledger for {owner} with {len(messages)} messages")
        return url

    def _incremental(self, session: MailboxSession, owner: str, existing: bytes) -> str:
        watermark = ledger.read_watermark(existing)
        messages = fetch_after(session, watermark, self.settings.fetch_batch_size)
        if not messages:
            logger.info(f"No new messages for {owner}")
            return self.store.get_signed_url(self.ledger_key(owner))

        self._materialize(messages, owner)
        data = ledger.prepend_rows(existing, messages)
        url = self.store.upload(self.ledger_key(owner), data, XLSX_CONTENT_TYPE)
        logger.info(f"Added {len(messages)} messages to the ledger for {owner}")
        return url

    def _materialize(self, messages: list[Message], owner: str) -> None:
        materialize_attachments(
            messages,
            owner,
            self.store,
            max_workers=self.settings.upload_workers,
        )
