"""
Supabase Storage service for ledgers and attachments.
Handles download, upsert upload, and signed URL generation.

Storage layout inside the bucket:
  {owner}/data.xlsx                      — the owner's ledger
  {owner}/{message_id}/{attachment}      — one object per attachment
"""

import logging
import os
import re
from urllib.parse import urlparse, urlunparse

from app.services.errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# Signed links stay valid for one week
DEFAULT_EXPIRY_SECONDS = 168 * 3600

_NOT_FOUND_MARKERS = ("not_found", "object not found", "nosuchkey", "404")


def sanitize_key_segment(value: str) -> str:
    """Replace characters that are unsafe in a storage key with underscores."""
    return re.sub(r"[^\w\-.@]", "_", value) or "_"


def ledger_key(owner: str, filename: str) -> str:
    """Storage key for an owner's ledger: {owner}/{filename}."""
    return f"{sanitize_key_segment(owner)}/{filename}"


def attachment_key(owner: str, message_id: str, attachment_name: str) -> str:
    """Storage key for a single attachment: {owner}/{message_id}/{name}."""
    return f"{sanitize_key_segment(owner)}/{sanitize_key_segment(message_id)}/{sanitize_key_segment(attachment_name)}"


def _is_not_found(exc: Exception) -> bool:
    """True when a storage client error means the object does not exist."""
    status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
    if str(status) == "404":
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _NOT_FOUND_MARKERS)


def _rewrite_signed_url_host(signed_url: str) -> str:
    """
    Replace the host in a signed URL with the browser-accessible Supabase URL.

    When the backend runs inside Docker it reaches Supabase through an
    internal URL like ``http://host.docker.internal:54321``, and Supabase
    embeds that host in every signed URL it generates. If
    ``SUPABASE_PUBLIC_URL`` is set its scheme and host replace the internal
    ones; otherwise the URL is returned unchanged.
    """
    public_url = os.getenv("SUPABASE_PUBLIC_URL", "").strip()
    if not public_url:
        return signed_url

    parsed_signed = urlparse(signed_url)
    parsed_public = urlparse(public_url)

    # Swap scheme + netloc; keep path/query/fragment from the signed URL.
    return urlunparse((
        parsed_public.scheme,
        parsed_public.netloc,
        parsed_signed.path,
        parsed_signed.params,
        parsed_signed.query,
        parsed_signed.fragment,
    ))


class ObjectStore:
    """
    Thin wrapper over one Supabase Storage bucket.

    The Supabase client is passed in by the caller; the store never builds
    its own.
    """

    def __init__(self, client, bucket: str, expiry_seconds: int = DEFAULT_EXPIRY_SECONDS):
        self._client = client
        self.bucket = bucket
        self.expiry_seconds = expiry_seconds

    def _bucket(self):
        return self._client.storage.from_(self.bucket)

    def download(self, key: str) -> bytes:
        """
        Download an object.

        Raises:
            NotFoundError: If the object does not exist.
            StorageError: On any other storage failure.
        """
        try:
            data = self._bucket().download(key)
        except Exception as e:
            if _is_not_found(e):
                raise NotFoundError(f"object {key} not found")
            raise StorageError(f"Failed to download {key} from storage: {str(e)}")

        if data is None:
            raise NotFoundError(f"object {key} not found")
        return data

    def upload(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """
        Upload (upsert) an object and return a signed URL for it.

        Raises:
            StorageError: If the upload or the URL generation fails.
        """
        try:
            self._bucket().upload(
                key,
                data,
                {
                    "content-type": content_type or "application/octet-stream",
                    "upsert": "true",  # ledgers are rewritten whole on every sync
                },
            )
        except Exception as e:
            raise StorageError(f"Failed to upload {key} to storage: {str(e)}")

        return self.get_signed_url(key)

    def get_signed_url(self, key: str, expiry_seconds: int | None = None) -> str:
        """
        Generate a signed URL valid for expiry_seconds (default: the store's).

        Raises:
            StorageError: If no URL could be generated.
        """
        expiry = expiry_seconds or self.expiry_seconds
        try:
            result = self._bucket().create_signed_url(key, expiry)
        except Exception as e:
            raise StorageError(f"Failed to generate signed URL for {key}: {str(e)}")

        url = None
        if result:
            url = result.get("signedURL") or result.get("signedUrl")
        if not url:
            raise StorageError(f"No signed URL returned from storage for {key}")

        return _rewrite_signed_url_host(url)

    def bucket_exists(self) -> bool:
        """True if the configured bucket is visible to the client."""
        buckets = self._client.storage.list_buckets()
        return self.bucket in [b.name for b in buckets]
