"""
End-to-end tests for LedgerSyncService: bootstrap, incremental merge,
no-op syncs, attachment failures, error propagation and session teardown.

The mailbox and the object store are in-memory fakes; the ledger codec and
the scan logic are the real ones.
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from email.utils import format_datetime

import pytest

from app.config import Settings
from app.models.sync import SyncRequest
from app.services.errors import AuthError, NotFoundError, StorageError, TransferError
from app.services.ledger import ATTACHMENT_SHEET, HEADERS, decode_rows, new_ledger, parse_ledger_date
from app.services.ledger_sync import LedgerSyncService, OwnerLocks
from app.services.mail_sync import fetch_recent
from app.services.mailbox import RawMessage

BASE = datetime(2025, 1, 10, 8, 0, 0, tzinfo=timezone.utc)
OWNER = "owner@example.com"
LEDGER_KEY = f"{OWNER}/data.xlsx"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

def _raw_message(seq, attachments=()):
    msg = EmailMessage()
    msg["From"] = f"Sender {seq} <s{seq}@example.com>"
    msg["To"] = OWNER
    msg["Subject"] = f"Message {seq}"
    msg["Date"] = format_datetime(BASE + timedelta(hours=seq))
    msg["Message-ID"] = f"<msg-{seq}@example.com>"
    msg.set_content(f"body {seq}")
    for name in attachments:
        msg.add_attachment(f"content of {name}".encode(), maintype="text", subtype="plain", filename=name)
    return msg.as_bytes()


class FakeSession:
    """MailboxSession stand-in; message i is dated BASE + i hours."""

    def __init__(self, count, attachments=None, login_error=None):
        self.count = count
        self.attachments = attachments or {}
        self.login_error = login_error
        self.message_count = 0
        self.fetched = []
        self.logged_out = False
        self.fail_on = None

    def login(self):
        if self.login_error:
            raise self.login_error
        self.message_count = self.count
        return self.count

    def fetch(self, from_seq, to_seq):
        self.fetched.append((from_seq, to_seq))
        if self.fail_on == (from_seq, to_seq):
            raise TransferError("fetch failed: connection reset")
        return [
            RawMessage(seq=s, raw=_raw_message(s, self.attachments.get(s, ())))
            for s in range(from_seq, to_seq + 1)
        ]

    def logout(self):
        self.logged_out = True


class MemoryStore:
    """ObjectStore stand-in backed by a dict."""

    def __init__(self, fail_keys=()):
        self.objects = {}
        self.fail_keys = set(fail_keys)
        self.uploads = []

    def download(self, key):
        if key not in self.objects:
            raise NotFoundError(f"object {key} not found")
        return self.objects[key]

    def upload(self, key, data, content_type="application/octet-stream"):
        self.uploads.append(key)
        if key in self.fail_keys:
            raise StorageError(f"Failed to upload {key} to storage: boom")
        self.objects[key] = data
        return self.get_signed_url(key)

    def get_signed_url(self, key, expiry_seconds=None):
        return f"https://storage.example/{key}?token=signed"


def _settings(**overrides):
    return Settings(supabase_url="https://test.supabase.co", supabase_service_key="key", **overrides)


def _request():
    return SyncRequest(address="imap.example.com:993", user=OWNER, secret="pw")


def _service(session, store, **settings):
    return LedgerSyncService(store, _settings(**settings), session_factory=lambda req: session)


def _seed_ledger(store, newest_seq):
    """Store a ledger holding messages 1..newest_seq, built the real way."""
    seed = FakeSession(newest_seq)
    seed.login()
    store.objects[LEDGER_KEY] = new_ledger(fetch_recent(seed, window=newest_seq))


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

class TestBootstrap:

    def test_thirty_messages_seed_twenty_five_rows(self):
        session, store = FakeSession(30), MemoryStore()

        url = _service(session, store).sync(_request())

        assert url == f"https://storage.example/{LEDGER_KEY}?token=signed"
        assert session.fetched == [(6, 30)]
        rows = decode_rows(store.objects[LEDGER_KEY])
        assert len(rows) == 26
        assert rows[0] == HEADERS
        assert rows[1][0] == "msg-30@example.com"
        assert rows[-1][0] == "msg-6@example.com"

    def test_small_mailbox_seeds_everything(self):
        session, store = FakeSession(3), MemoryStore()

        _service(session, store).sync(_request())

        assert session.fetched == [(1, 3)]
        assert len(decode_rows(store.objects[LEDGER_KEY])) == 4

    def test_empty_mailbox_seeds_header_only_ledger(self):
        session, store = FakeSession(0), MemoryStore()

        _service(session, store).sync(_request())

        assert session.fetched == []
        assert decode_rows(store.objects[LEDGER_KEY]) == [HEADERS]

    def test_window_is_configurable(self):
        session, store = FakeSession(30), MemoryStore()

        _service(session, store, bootstrap_window=5).sync(_request())

        assert session.fetched == [(26, 30)]

    def test_attachments_uploaded_before_ledger(self):
        session = FakeSession(2, attachments={2: ["a.txt", "b.txt"]})
        store = MemoryStore()

        _service(session, store).sync(_request())

        assert store.uploads[-1] == LEDGER_KEY
        assert set(store.uploads[:-1]) == {
            f"{OWNER}/msg-2@example.com/a.txt",
            f"{OWNER}/msg-2@example.com/b.txt",
        }


# ---------------------------------------------------------------------------
# Incremental
# ---------------------------------------------------------------------------

class TestIncremental:

    def test_three_new_messages_out_of_forty(self):
        store = MemoryStore()
        _seed_ledger(store, newest_seq=37)
        before = decode_rows(store.objects[LEDGER_KEY])
        session = FakeSession(40)

        _service(session, store).sync(_request())

        assert session.fetched == [(31, 40)]
        rows = decode_rows(store.objects[LEDGER_KEY])
        assert len(rows) == len(before) + 3
        assert [r[0] for r in rows[1:4]] == [
            "msg-40@example.com", "msg-39@example.com", "msg-38@example.com",
        ]
        assert rows[4:] == before[1:]
        dates = [parse_ledger_date(r[1]) for r in rows[1:]]
        assert dates == sorted(dates, reverse=True)

    def test_scan_crosses_batches_when_needed(self):
        store = MemoryStore()
        _seed_ledger(store, newest_seq=15)
        session = FakeSession(40)

        _service(session, store).sync(_request())

        assert session.fetched == [(31, 40), (21, 30), (11, 20)]
        rows = decode_rows(store.objects[LEDGER_KEY])
        assert rows[1][0] == "msg-40@example.com"
        assert rows[25][0] == "msg-16@example.com"
        assert rows[26][0] == "msg-15@example.com"

    def test_no_new_messages_returns_existing_link_without_write(self):
        store = MemoryStore()
        _seed_ledger(store, newest_seq=12)
        original = store.objects[LEDGER_KEY]
        session = FakeSession(12)

        url = _service(session, store).sync(_request())

        assert url == f"https://storage.example/{LEDGER_KEY}?token=signed"
        assert store.uploads == []
        assert store.objects[LEDGER_KEY] is original

    def test_header_only_ledger_takes_whole_mailbox(self):
        store = MemoryStore()
        store.objects[LEDGER_KEY] = new_ledger([])
        session = FakeSession(12)

        _service(session, store).sync(_request())

        assert session.fetched == [(3, 12), (1, 2)]
        assert len(decode_rows(store.objects[LEDGER_KEY])) == 13

    def test_failed_attachment_upload_still_writes_ledger(self):
        import io
        import openpyxl

        store = MemoryStore(fail_keys={f"{OWNER}/msg-12@example.com/bad.txt"})
        _seed_ledger(store, newest_seq=10)
        session = FakeSession(12, attachments={12: ["good.txt", "bad.txt"], 11: ["other.txt"]})

        _service(session, store).sync(_request())

        assert f"{OWNER}/msg-12@example.com/good.txt" in store.objects
        assert f"{OWNER}/msg-11@example.com/other.txt" in store.objects
        ws = openpyxl.load_workbook(io.BytesIO(store.objects[LEDGER_KEY]))[ATTACHMENT_SHEET]
        cells = {ws.cell(row=r, column=2).value: ws.cell(row=r, column=2) for r in range(2, 5)}
        assert cells["good.txt"].hyperlink is not None
        assert cells["other.txt"].hyperlink is not None
        assert cells["bad.txt"].hyperlink is None


# ---------------------------------------------------------------------------
# Failures and teardown
# ---------------------------------------------------------------------------

class TestFailures:

    def test_transfer_error_aborts_without_write(self):
        store = MemoryStore()
        _seed_ledger(store, newest_seq=5)
        original = store.objects[LEDGER_KEY]
        session = FakeSession(30)
        session.fail_on = (11, 20)

        with pytest.raises(TransferError):
            _service(session, store).sync(_request())

        assert store.objects[LEDGER_KEY] is original
        assert session.logged_out is True

    def test_auth_error_propagates_and_logs_out(self):
        session = FakeSession(5, login_error=AuthError("unable to login to owner"))
        store = MemoryStore()

        with pytest.raises(AuthError):
            _service(session, store).sync(_request())

        assert session.logged_out is True
        assert store.uploads == []

    def test_ledger_upload_failure_raises_storage_error(self):
        store = MemoryStore(fail_keys={LEDGER_KEY})
        session = FakeSession(3)

        with pytest.raises(StorageError):
            _service(session, store).sync(_request())

        assert session.logged_out is True

    def test_ledger_key_uses_configured_filename(self):
        service = _service(FakeSession(0), MemoryStore(), ledger_filename="inbox.xlsx")
        assert service.ledger_key(OWNER) == f"{OWNER}/inbox.xlsx"

    def test_owner_with_slash_cannot_escape_its_prefix(self):
        session, store = FakeSession(1), MemoryStore()
        request = SyncRequest(address="imap.example.com:993", user="a/b@example.com", secret="pw")

        _service(session, store).sync(request)

        assert "a_b@example.com/data.xlsx" in store.objects
        assert not any(key.startswith("a/") for key in store.objects)


# ---------------------------------------------------------------------------
# Owner locks
# ---------------------------------------------------------------------------

class TestOwnerLocks:

    def test_same_owner_is_serialized(self):
        locks = OwnerLocks()
        active = []
        peak = []

        def work():
            with locks.hold("a@x"):
                active.append(1)
                peak.append(len(active))
                time.sleep(0.01)
                active.pop()

        threads = [threading.Thread(target=work) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert max(peak) == 1

    def test_different_owners_do_not_block(self):
        locks = OwnerLocks()
        with locks.hold("a@x"):
            acquired = threading.Event()

            def other():
                with locks.hold("b@x"):
                    acquired.set()

            t = threading.Thread(target=other)
            t.start()
            assert acquired.wait(timeout=1)
            t.join()

    def test_lock_released_after_error(self):
        locks = OwnerLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("a@x"):
                raise RuntimeError("boom")

        with locks.hold("a@x"):
            pass
