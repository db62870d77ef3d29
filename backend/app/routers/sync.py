"""
Mailbox sync router.

Endpoints:
  POST /   — synchronize the caller's INBOX into their ledger and return a
             signed link to it

Status codes (mirrored in the body's "status" field):
  201  ledger created or updated (or already current)
  400  malformed body, unreachable IMAP server, rejected credentials
  500  fetch, ledger encode or storage failure
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from app.models.sync import SyncRequest, SyncResponse
from app.services.errors import CLIENT_ERRORS, MailLedgerError
from app.services.ledger_sync import LedgerSyncService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_sync_service(request: Request) -> LedgerSyncService:
    """Return the service built at startup; 503 when startup did not run."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Sync service not configured")
    return service


def sync_response(status: int, message: str, ledger_url: str | None = None) -> JSONResponse:
    body = SyncResponse(status=status, message=message, ledger_url=ledger_url)
    return JSONResponse(status_code=status, content=body.model_dump(by_alias=True))


@router.post(
    "/",
    response_model=SyncResponse,
    status_code=201,
    responses={
        201: {
            "description": "Ledger synchronized",
            "content": {
                "application/json": {
                    "example": {
                        "status": 201,
                        "message": "Success",
                        "ledgerUrl": "https://xyz.supabase.co/storage/v1/object/sign/mail-ledger/user@example.com/data.xlsx?token=abc",
                    }
                }
            },
        },
        400: {"description": "Malformed request body, or mailbox login failed"},
        500: {"description": "Fetch, ledger or storage failure"},
    },
)
def sync_mailbox(
    body: SyncRequest,
    service: LedgerSyncService = Depends(get_sync_service),
):
    """
    Synchronize the INBOX at body.address into the owner's ledger.

    First call for an owner seeds the ledger with the 25 most recent
    messages; later calls prepend only messages newer than the ledger's
    newest row. Attachments are uploaded next to the ledger and linked from
    its Attachments sheet.
    """
    try:
        url = service.sync(body)
    except CLIENT_ERRORS as e:
        logger.warning(f"Sync for {body.user} rejected: {e.message}")
        return sync_response(400, e.message)
    except MailLedgerError as e:
        logger.error(f"Sync for {body.user} failed ({e.error_code}): {e.message}")
        return sync_response(500, e.message)
    except Exception as e:
        logger.exception(f"Unexpected error syncing {body.user}: {e}")
        return sync_response(500, "Internal server error")

    return sync_response(201, "Success", url)
