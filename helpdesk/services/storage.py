"""Disk-backed attachment storage with a MIME allowlist and size cap."""

from __future__ import annotations

import logging
import os
import secrets
import time
from dataclasses import dataclass
from pathlib import Path

from fastapi import UploadFile

from helpdesk.config import settings
from helpdesk.errors import AppError

logger = logging.getLogger("helpdesk.storage")

ALLOWED_MIME_TYPES = frozenset({
    # Images
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/bmp",
    "image/svg+xml",
    # Videos
    "video/mp4",
    "video/mpeg",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-ms-wmv",
    "video/webm",
    "video/ogg",
    # Documents
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
    "text/csv",
    "application/zip",
    "application/x-zip-compressed",
})

_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class StoredFile:
    filename: str
    original_name: str
    path: str
    mime_type: str
    size: int


def upload_root() -> Path:
    root = Path(settings.upload_dir).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def path_for(filename: str) -> Path:
    # Stored names are generated here; refuse anything that could walk out of the root.
    if os.path.basename(filename) != filename or filename in {"", ".", ".."}:
        raise AppError("Invalid file name", status_code=400)
    return upload_root() / filename


def _unique_name(original_name: str) -> str:
    ext = Path(original_name or "").suffix.lower()[:16]
    return f"file-{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{ext}"


async def store(upload: UploadFile, max_bytes: int | None = None) -> StoredFile:
    """Validate and write an upload; 400 on disallowed type or oversize file."""
    limit = max_bytes if max_bytes is not None else settings.max_upload_bytes
    mime_type = (upload.content_type or "").split(";")[0].strip().lower()
    if mime_type not in ALLOWED_MIME_TYPES:
        raise AppError(
            "Invalid file type. Only images, videos, and documents are allowed.",
            status_code=400,
        )

    original_name = os.path.basename(upload.filename or "upload")
    filename = _unique_name(original_name)
    destination = path_for(filename)

    size = 0
    try:
        with destination.open("wb") as fh:
            while chunk := await upload.read(_CHUNK_SIZE):
                size += len(chunk)
                if size > limit:
                    raise AppError(
                        f"File too large. Maximum size is {limit // (1024 * 1024)}MB.",
                        status_code=400,
                    )
                fh.write(chunk)
    except BaseException:
        destination.unlink(missing_ok=True)
        raise

    if size == 0:
        destination.unlink(missing_ok=True)
        raise AppError("No file uploaded", status_code=400)

    logger.info("stored attachment %s (%s bytes)", filename, size)
    return StoredFile(
        filename=filename,
        original_name=original_name,
        path=str(destination),
        mime_type=mime_type,
        size=size,
    )


def delete(filename: str) -> None:
    """Remove a stored file; a missing file is not an error."""
    try:
        path_for(filename).unlink(missing_ok=True)
    except OSError:
        logger.exception("failed to delete attachment %s", filename)
