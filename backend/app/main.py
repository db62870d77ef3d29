"""
Mail Ledger Backend API
FastAPI application that synchronizes IMAP mailboxes into xlsx ledgers.
"""

import logging
import os

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError

from app.config import create_storage_client, load_settings
from app.routers import sync
from app.services.ledger_sync import LedgerSyncService
from app.services.storage import ObjectStore

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Mail Ledger API",
    description="Incremental IMAP mailbox to spreadsheet ledger synchronization",
    version="0.1.0",
)

# Include routers
app.include_router(sync.router, prefix="/api/sync", tags=["sync"])


@app.exception_handler(RequestValidationError)
async def malformed_body_handler(request: Request, exc: RequestValidationError):
    """Every invalid body gets the same structured 400 the sync endpoint uses."""
    logger.info(f"Rejected malformed request to {request.url.path}: {exc.errors()}")
    return sync.sync_response(400, "Malformed request body")


@app.on_event("startup")
async def build_services() -> None:
    """
    Build settings, the storage client and the sync service once per process
    and attach them to app.state, where route dependencies pick them up.
    """
    settings = load_settings()
    client = create_storage_client(settings)
    store = ObjectStore(client, settings.ledger_bucket, settings.link_expiry_seconds)
    app.state.sync_service = LedgerSyncService(store, settings)

    host_port = os.getenv("HOST_PORT", "8000")
    logger.info(
        "Mail Ledger API running at http://localhost:%s (bucket: %s)",
        host_port,
        settings.ledger_bucket,
    )


@app.get("/")
async def root():
    return {"message": "Mail Ledger API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/storage")
def health_storage(request: Request):
    """
    Test Supabase Storage access.

    Lists storage buckets and verifies the ledger bucket exists.
    Returns 503 if storage is unreachable or the bucket is missing.
    """
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail="Storage client unavailable: sync service is not configured",
        )

    bucket = service.store.bucket
    try:
        exists = service.store.bucket_exists()
    except Exception as exc:
        logger.error(f"Storage health check failed: {exc}")
        raise HTTPException(
            status_code=503,
            detail=f"Storage check failed: {str(exc)}",
        )

    if not exists:
        raise HTTPException(
            status_code=503,
            detail=f"Storage bucket '{bucket}' not found",
        )

    return {"status": "ok", "storage": "reachable", "bucket": bucket}
