"""
Ledger workbook codec.

The ledger is an .xlsx workbook with two sheets:

  Sheet1       Id | Date | From | Subject | Cc | Bcc | ReplyTo | Attachments
               one row per message, newest message always in row 2
  Attachments  MessageId | Name | ContentType
               one row per attachment, same newest-first order; Name is a
               hyperlink to the uploaded object when the upload succeeded

Attachment links live on their own sheet so a message with many attachments
never spills into neighbouring columns.

Public API:
  new_ledger(messages) -> bytes
  decode_rows(data, sheet) -> list[list[str]]
  read_watermark(data) -> datetime
  prepend_rows(data, messages) -> bytes
"""

import io
import logging
from datetime import datetime, timezone
from typing import Optional

import openpyxl
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE, Cell
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from app.models.mail import Message, ZERO_TIME, join_addresses
from app.services.errors import EncodeError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------

LEDGER_SHEET = "Sheet1"
ATTACHMENT_SHEET = "Attachments"

HEADERS = ["Id", "Date", "From", "Subject", "Cc", "Bcc", "ReplyTo", "Attachments"]
ATTACHMENT_HEADERS = ["MessageId", "Name", "ContentType"]

# The newest message's date sits in the first data row
WATERMARK_CELL = "B2"
FIRST_DATA_ROW = 2

DATE_FORMAT = "%Y-%m-%d %H:%M:%S %z"

_COLUMN_WIDTHS: dict[str, int] = {
    "Id": 60,
    "Date": 30,
    "From": 50,
    "Subject": 80,
    "MessageId": 60,
    "Name": 40,
    "ContentType": 30,
}
_DEFAULT_COLUMN_WIDTH = 40

_HEADER_FONT = Font(bold=True, color="000080")
_LINK_FONT = Font(color="1265BE", underline="single")
_CENTER = Alignment(horizontal="center")
_WRAP = Alignment(horizontal="center", wrap_text=True)


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def format_ledger_date(dt: datetime) -> str:
    """Render a date as YYYY-MM-DD HH:MM:SS +0000 (always UTC)."""
    dt = dt.astimezone(timezone.utc)
    # strftime does not zero-pad years below 1000 on every platform
    return f"{dt.year:04d}-" + dt.strftime("%m-%d %H:%M:%S %z")


def parse_ledger_date(value: str) -> datetime:
    """Inverse of format_ledger_date; raises ValueError on any other shape."""
    return datetime.strptime(value.strip(), DATE_FORMAT).astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Row encoding
# ---------------------------------------------------------------------------

def _text(value: str) -> Optional[str]:
    # Control characters decoded from RFC 2047 headers are rejected by openpyxl
    return ILLEGAL_CHARACTERS_RE.sub("", value or "") or None


def _put(ws: Worksheet, row: int, column: int, value: Optional[str]) -> Cell:
    """Write value as a plain string; a leading "=" never becomes a formula."""
    cell = ws.cell(row=row, column=column, value=value)
    if value is not None:
        cell.data_type = "s"
    return cell


def _message_row(msg: Message) -> list[Optional[str]]:
    return [
        _text(msg.id),
        format_ledger_date(msg.date),
        _text(join_addresses(msg.from_addrs)),
        _text(msg.subject),
        _text(join_addresses(msg.cc)),
        _text(join_addresses(msg.bcc)),
        _text(join_addresses(msg.reply_to)),
        _text(", ".join(att.name for att in msg.attachments)),
    ]


def _write_headers(ws: Worksheet, headers: list[str]) -> None:
    for col_idx, header in enumerate(headers, start=1):
        cell = ws.cell(row=1, column=col_idx, value=header)
        cell.font = _HEADER_FONT
        cell.alignment = _CENTER
        width = _COLUMN_WIDTHS.get(header, _DEFAULT_COLUMN_WIDTH)
        ws.column_dimensions[get_column_letter(col_idx)].width = width
    ws.freeze_panes = ws.cell(row=2, column=1)


def _write_message_rows(ws: Worksheet, messages: list[Message]) -> None:
    for offset, msg in enumerate(messages):
        row = FIRST_DATA_ROW + offset
        for col_idx, value in enumerate(_message_row(msg), start=1):
            _put(ws, row, col_idx, value).alignment = _WRAP


def _write_attachment_rows(ws: Worksheet, messages: list[Message]) -> None:
    row = FIRST_DATA_ROW
    for msg in messages:
        for att in msg.attachments:
            _put(ws, row, 1, _text(msg.id))
            name_cell = _put(ws, row, 2, _text(att.name))
            if att.url:
                name_cell.hyperlink = att.url
                name_cell.font = _LINK_FONT
            _put(ws, row, 3, _text(att.content_type))
            row += 1


def _reanchor_hyperlinks(ws: Worksheet) -> None:
    # insert_rows moves cells but leaves each hyperlink's ref at its old coordinate
    for row in ws.iter_rows():
        for cell in row:
            if cell.hyperlink is not None:
                cell.hyperlink.ref = cell.coordinate


# ---------------------------------------------------------------------------
# Workbook I/O
# ---------------------------------------------------------------------------

def _open(data: bytes) -> Workbook:
    try:
        return openpyxl.load_workbook(io.BytesIO(data))
    except Exception as e:
        logger.error(f"[ledger] err reading workbook: {e}")
        raise EncodeError(f"unable to read ledger file. err: {e}")


def _ledger_sheet(wb: Workbook) -> Worksheet:
    if LEDGER_SHEET not in wb.sheetnames:
        raise EncodeError(f"ledger file has no {LEDGER_SHEET} sheet")
    return wb[LEDGER_SHEET]


def _attachment_sheet(wb: Workbook) -> Worksheet:
    if ATTACHMENT_SHEET in wb.sheetnames:
        return wb[ATTACHMENT_SHEET]
    ws = wb.create_sheet(ATTACHMENT_SHEET)
    _write_headers(ws, ATTACHMENT_HEADERS)
    return ws


def _save(wb: Workbook) -> bytes:
    try:
        buf = io.BytesIO()
        wb.save(buf)
    except Exception as e:
        logger.error(f"[ledger] err writing workbook: {e}")
        raise EncodeError(f"unable to write ledger file. err: {e}")
    buf.seek(0)
    return buf.read()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def new_ledger(messages: list[Message]) -> bytes:
    """
    Build a new ledger from messages (already sorted newest first).

    Raises:
        EncodeError: If the rows cannot be encoded or the workbook cannot be
            serialized.
    """
    wb = openpyxl.Workbook()
    try:
        ws = wb.active
        ws.title = LEDGER_SHEET
        _write_headers(ws, HEADERS)
        _write_message_rows(ws, messages)

        att_ws = _attachment_sheet(wb)
        _write_attachment_rows(att_ws, messages)
    except Exception as e:
        logger.error(f"[new_ledger] err encoding rows: {e}")
        raise EncodeError(f"unable to encode ledger rows. err: {e}")

    return _save(wb)


def decode_rows(data: bytes, sheet: str = LEDGER_SHEET) -> list[list[str]]:
    """Return every row of sheet as strings, empty cells as ""."""
    wb = _open(data)
    if sheet not in wb.sheetnames:
        raise EncodeError(f"ledger file has no {sheet} sheet")
    return [
        ["" if value is None else str(value) for value in row]
        for row in wb[sheet].iter_rows(values_only=True)
    ]


def read_watermark(data: bytes) -> datetime:
    """
    Return the date of the newest message recorded in the ledger.

    An empty ledger or an unparseable Date cell yields ZERO_TIME, which makes
    the next scan treat the whole mailbox as new.

    Raises:
        EncodeError: If the bytes are not a readable ledger workbook.
    """
    ws = _ledger_sheet(_open(data))
    value = ws[WATERMARK_CELL].value

    if value is None or value == "":
        logger.info("[read_watermark] ledger has no data rows")
        return ZERO_TIME
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)
    try:
        return parse_ledger_date(str(value))
    except ValueError as e:
        logger.warning(f"[read_watermark] err parsing {WATERMARK_CELL} value {value!r}: {e}")
        return ZERO_TIME


def prepend_rows(data: bytes, messages: list[Message]) -> bytes:
    """
    Insert messages (newest first) directly below the header of an existing
    ledger, keeping every prior row intact below them.

    Raises:
        EncodeError: If the ledger cannot be read or written.
    """
    wb = _open(data)
    ws = _ledger_sheet(wb)

    try:
        if messages:
            ws.insert_rows(FIRST_DATA_ROW, amount=len(messages))
            _write_message_rows(ws, messages)
            _reanchor_hyperlinks(ws)

        att_ws = _attachment_sheet(wb)
        att_count = sum(len(msg.attachments) for msg in messages)
        if att_count:
            att_ws.insert_rows(FIRST_DATA_ROW, amount=att_count)
            _write_attachment_rows(att_ws, messages)
            _reanchor_hyperlinks(att_ws)
    except Exception as e:
        logger.error(f"[prepend_rows] err encoding rows: {e}")
        raise EncodeError(f"unable to encode ledger rows. err: {e}")

    return _save(wb)
