"""Attachment validation, repository paths and content types for capsule files."""

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import List, Optional

from timecapsule.capsules.models import (
    ALLOWED_MIME_TYPES,
    CONTENT_LIMITS,
    MAX_PHOTOS,
    CapsuleMetadata,
    ContentType,
)

log = logging.getLogger(__name__)

CAPSULES_DIR = "capsules"

_EXTENSION_BY_MIME = {
    "video/mp4": "mp4",
    "video/webm": "webm",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
}


class AttachmentError(ValueError):
    """Upload rejected by size, type or length limits; message is shown to the client."""


@dataclass
class Attachment:
    """One uploaded form file, read into memory."""

    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def _mib(limit: int) -> int:
    return limit // (1024 * 1024)


def file_extension(filename: str, mime_type: str) -> str:
    """Extension from the file name, else from the MIME type, else 'bin'."""
    suffix = PurePosixPath(filename or "").suffix.lstrip(".").lower()
    if suffix:
        return suffix
    return _EXTENSION_BY_MIME.get(mime_type, "bin")


def capsule_file_path(capsule_id: str, extension: str) -> str:
    """capsules/<id>.<ext>"""
    return f"{CAPSULES_DIR}/{capsule_id}.{extension}"


def photo_file_path(capsule_id: str, index: int, extension: str) -> str:
    """capsules/<id>/photo-<n>.<ext>"""
    return f"{CAPSULES_DIR}/{capsule_id}/photo-{index}.{extension}"


def guess_content_type(path: str) -> str:
    """Content-Type for a stored file, from its extension."""
    content_type, _ = mimetypes.guess_type(path)
    return content_type or "application/octet-stream"


def validate_content(
    metadata: CapsuleMetadata,
    file: Optional[Attachment],
    photos: List[Attachment],
) -> None:
    """
    Check the upload against the per-type limits. Raises AttachmentError.

    Text capsules need textContent. Video, audio and photo capsules need a file of an
    allowed MIME type within the type's size limit. Extra photos share the photo budget
    with a main photo.
    """
    content_type = metadata.content_type
    if content_type == ContentType.TEXT:
        if not metadata.text_content:
            raise AttachmentError("Text content required")
        if len(metadata.text_content) > CONTENT_LIMITS[ContentType.TEXT]:
            raise AttachmentError(
                f"Text content exceeds {CONTENT_LIMITS[ContentType.TEXT]} characters"
            )
    else:
        if file is None:
            raise AttachmentError("File required for non-text capsules")
        limit = CONTENT_LIMITS[content_type]
        if file.size > limit:
            raise AttachmentError(f"File size exceeds {_mib(limit)}MB limit")
        if file.content_type not in ALLOWED_MIME_TYPES[content_type]:
            raise AttachmentError(f"Invalid file type: {file.content_type}")

    if len(photos) > MAX_PHOTOS:
        raise AttachmentError(f"At most {MAX_PHOTOS} photos allowed")
    photo_limit = CONTENT_LIMITS[ContentType.PHOTO]
    for photo in photos:
        if photo.content_type not in ALLOWED_MIME_TYPES[ContentType.PHOTO]:
            raise AttachmentError(f"Invalid photo type: {photo.content_type}")
    photo_bytes = sum(p.size for p in photos)
    if content_type == ContentType.PHOTO and file is not None:
        photo_bytes += file.size
    if photo_bytes > photo_limit:
        raise AttachmentError(f"Photos exceed {_mib(photo_limit)}MB combined limit")


def upload_size(file: Optional[Attachment], photos: List[Attachment]) -> int:
    """Bytes this capsule will add to the repository."""
    return (file.size if file else 0) + sum(p.size for p in photos)


def exceeds_quota(used_bytes: int, incoming_bytes: int, limit_bytes: int) -> bool:
    """True if adding incoming_bytes would go past the repository limit."""
    return incoming_bytes > 0 and used_bytes + incoming_bytes > limit_bytes
