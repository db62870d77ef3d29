"""
Attachment materializer.

Uploads every attachment of a message set to object storage on a bounded
worker pool and sets each attachment's signed URL. A failed upload is logged
and leaves that attachment's url empty; it never stops its siblings.
materialize_attachments() returns only once every upload has finished, so a
ledger written afterwards never points at an in-flight upload.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

from app.models.mail import Attachment, Message
from app.services.errors import UploadError
from app.services.storage import ObjectStore, attachment_key

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_WORKERS = 8


def _upload_one(store: ObjectStore, key: str, attachment: Attachment) -> None:
    try:
        url = store.upload(key, attachment.content, attachment.content_type)
    except Exception as e:
        raise UploadError(f"error uploading attachment {attachment.name}: {e}")
    attachment.url = url
    # The store holds the bytes now
    attachment.content = b""


def _unique_key(key: str, taken: set[str]) -> str:
    """Suffix key as name-1.ext, name-2.ext, ... until it is not in taken."""
    if key not in taken:
        return key
    head, slash, name = key.rpartition("/")
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem:
        stem, dot, ext = name, "", ""
    n = 1
    while True:
        candidate = f"{head}{slash}{stem}-{n}{dot}{ext}"
        if candidate not in taken:
            return candidate
        n += 1


def materialize_attachments(
    messages: list[Message],
    owner: str,
    store: ObjectStore,
    max_workers: int = DEFAULT_UPLOAD_WORKERS,
) -> int:
    """
    Upload all attachments of messages under {owner}/{message_id}/{name}.
    A repeated name within one message is stored as name-1.ext, name-2.ext.

    Returns:
        Number of attachments that failed to upload.
    """
    # Attachments sharing a name within one message would overwrite each other
    jobs = []
    taken: set[str] = set()
    for msg in messages:
        for att in msg.attachments:
            key = _unique_key(attachment_key(owner, msg.id, att.name), taken)
            taken.add(key)
            jobs.append((key, att))
    if not jobs:
        return 0

    failed = 0
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="attachment-upload") as pool:
        futures = [(key, pool.submit(_upload_one, store, key, att)) for key, att in jobs]
        for key, future in futures:
            try:
                future.result()
            except UploadError as e:
                failed += 1
                logger.warning(f"[materialize_attachments] {e.message} (key: {key}, owner: {owner})")

    logger.info(f"Uploaded {len(jobs) - failed} of {len(jobs)} attachments for {owner}")
    return failed
