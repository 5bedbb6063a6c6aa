"""Attachment storage on the local filesystem.

Uploaded files live under ``UPLOADS_DIR/messages`` and are served back under
``/uploads/messages``; a file message's content is that URL path.
"""
import logging
import os
import uuid

from fastapi import UploadFile

from .config import MAX_UPLOAD_MB, UPLOADS_DIR, UPLOADS_URL_PREFIX
from .errors import ValidationFailure
from .models import MessageType

log = logging.getLogger(__name__)

SUBDIR = "messages"
CHUNK = 1024 * 1024


def messages_dir() -> str:
    path = os.path.join(UPLOADS_DIR, SUBDIR)
    os.makedirs(path, exist_ok=True)
    return path


def message_type_for(content_type: str) -> MessageType:
    return MessageType.IMAGE if (content_type or "").startswith("image/") else MessageType.FILE


def save_upload(upload: UploadFile) -> str:
    """Write the upload to disk and return the URL path stored as message content."""
    ext = os.path.splitext(upload.filename or "")[1][:16]
    name = f"{uuid.uuid4().hex}{ext}"
    target = os.path.join(messages_dir(), name)
    limit = MAX_UPLOAD_MB * 1024 * 1024
    written = 0
    with open(target, "wb") as out:
        while True:
            chunk = upload.file.read(CHUNK)
            if not chunk:
                break
            written += len(chunk)
            if written > limit:
                out.close()
                os.remove(target)
                raise ValidationFailure.field("file", f"File exceeds {MAX_UPLOAD_MB} MB")
            out.write(chunk)
    if written == 0:
        os.remove(target)
        raise ValidationFailure.field("file", "No file uploaded")
    return f"{UPLOADS_URL_PREFIX}/{SUBDIR}/{name}"


def local_path(content: str):
    prefix = f"{UPLOADS_URL_PREFIX}/{SUBDIR}/"
    if not content or not content.startswith(prefix):
        return None
    name = os.path.basename(content[len(prefix):])
    if not name:
        return None
    return os.path.join(UPLOADS_DIR, SUBDIR, name)


def remove_upload(content: str) -> bool:
    """Best effort; a failure never blocks deleting the message itself."""
    path = local_path(content)
    if path is None:
        return False
    try:
        if os.path.exists(path):
            os.remove(path)
            log.info("Deleted file: %s", path)
            return True
    except OSError as e:
        log.error("Error deleting file %s: %s", path, e)
    return False
