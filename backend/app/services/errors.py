"""
Error taxonomy for mailbox → ledger synchronization.

Fatal errors (abort the request, no ledger link is produced):
  MailboxConnectionError, AuthError, TransferError, EncodeError, StorageError

Absorbed errors (logged where they happen, the output record degrades):
  NotFoundError    — ledger absent, selects the bootstrap path
  FieldParseError  — one header/body field left at its zero value
  UploadError      — one attachment left without a link
"""


class MailLedgerError(Exception):
    """Base class for every synchronization error."""

    error_code = "mail_ledger_error"

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class MailboxConnectionError(MailLedgerError):
    """Raised when the IMAP server cannot be reached or the INBOX selected."""
    error_code = "connection_failed"


class AuthError(MailLedgerError):
    """Raised when the IMAP server rejects the credentials."""
    error_code = "auth_failed"


class TransferError(MailLedgerError):
    """Raised when a batch fetch fails or returns an incomplete batch."""
    error_code = "transfer_failed"


class NotFoundError(MailLedgerError):
    """Raised when an object is absent from the store."""
    error_code = "not_found"


class FieldParseError(MailLedgerError):
    """Raised when one message field cannot be parsed."""
    error_code = "field_parse_failed"


class UploadError(MailLedgerError):
    """Raised when a single attachment upload fails."""
    error_code = "upload_failed"


class EncodeError(MailLedgerError):
    """Raised when the ledger workbook cannot be read or written."""
    error_code = "encode_failed"


class StorageError(MailLedgerError):
    """Raised when the object store fails for a reason other than not-found."""
    error_code = "storage_failed"


# Errors caused by what the caller sent (bad address, bad credentials)
CLIENT_ERRORS = (MailboxConnectionError, AuthError)
