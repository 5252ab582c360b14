"""Capsule records (manifest entries), creation metadata, token mapping, and derived state."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from timecapsule.security.crypto import sha256_hash

MAX_PHOTOS = 5
MAX_MESSAGE_LENGTH = 1000


class ContentType(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    PHOTO = "photo"
    TEXT = "text"


# Bytes for file types, characters for text. Photo limit covers main file and extra photos.
CONTENT_LIMITS: Dict[ContentType, int] = {
    ContentType.VIDEO: 100 * 1024 * 1024,
    ContentType.AUDIO: 50 * 1024 * 1024,
    ContentType.PHOTO: 50 * 1024 * 1024,
    ContentType.TEXT: 10000,
}

ALLOWED_MIME_TYPES: Dict[ContentType, List[str]] = {
    ContentType.VIDEO: ["video/mp4", "video/webm"],
    ContentType.AUDIO: ["audio/mpeg", "audio/mp4"],
    ContentType.PHOTO: ["image/jpeg", "image/png", "image/gif"],
}


class _CamelModel(BaseModel):
    """Manifest and API JSON use camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PhotoAttachment(_CamelModel):
    """Extra photo stored next to the capsule."""

    id: str
    file_path: str
    file_size: int
    mime_type: str


class Capsule(_CamelModel):
    """One entry of capsules.json. Unknown keys are kept so rewrites do not drop them."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    title: str
    unlock_at: int
    recipient_email: str
    recipient_name: Optional[str] = None
    sender_name: str
    sender_email: str
    content_type: ContentType
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    text_content: Optional[str] = None
    preview_message: Optional[str] = None
    additional_message: Optional[str] = None
    photos: Optional[List[PhotoAttachment]] = None
    magic_token: str
    magic_token_hash: str
    pin: Optional[str] = None
    pin_hash: Optional[str] = None
    created_at: int
    creation_email_sent: bool = False
    unlock_email_sent: bool = False
    unlocked_at: Optional[int] = None
    viewed_at: Optional[int] = None
    whatsapp_shared_at_creation: bool = False

    def expected_pin_hash(self) -> Optional[str]:
        """SHA-256 of the issued PIN, or None before unlock."""
        if self.pin_hash:
            return self.pin_hash
        return sha256_hash(self.pin) if self.pin else None

    def to_json_dict(self) -> Dict[str, Any]:
        """Manifest representation (camelCase, absent optionals omitted)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CapsuleMetadata(_CamelModel):
    """The metadata JSON posted with a new capsule."""

    title: str = Field(min_length=1)
    unlock_at: int
    recipient_email: EmailStr
    recipient_name: Optional[str] = None
    content_type: ContentType
    text_content: Optional[str] = None
    preview_message: Optional[str] = Field(default=None, max_length=MAX_MESSAGE_LENGTH)
    additional_message: Optional[str] = Field(default=None, max_length=MAX_MESSAGE_LENGTH)
    whatsapp_shared_at_creation: bool = False


class TokenMapping(_CamelModel):
    """Store record at token:<hash> pointing a magic token at its repository and capsule."""

    user_id: str
    repo_full_name: str
    capsule_id: str


class CapsuleState(str, Enum):
    """Lifecycle derived from the clock and stored flags; never stored itself."""

    PENDING = "pending"  # before unlock time (countdown)
    UNLOCKING = "unlocking"  # unlock time passed, waiting for the scheduled job
    PIN_REQUIRED = "pinRequired"  # unlocked and a PIN was issued
    UNLOCKED = "unlocked"  # unlocked without a PIN on record


def derive_status(
    now: int,
    unlock_at: int,
    unlock_email_sent: bool,
    pin_present: bool,
) -> CapsuleState:
    """Capsule state at time now (epoch seconds)."""
    if now < unlock_at:
        return CapsuleState.PENDING
    if not unlock_email_sent:
        return CapsuleState.UNLOCKING
    if pin_present:
        return CapsuleState.PIN_REQUIRED
    return CapsuleState.UNLOCKED


def capsule_state(capsule: Capsule, now: int) -> CapsuleState:
    """derive_status for a stored capsule."""
    return derive_status(
        now, capsule.unlock_at, capsule.unlock_email_sent, capsule.expected_pin_hash() is not None
    )


def view_status(state: CapsuleState) -> Dict[str, bool]:
    """Flags the viewer page switches on."""
    unlocked = state in (CapsuleState.PIN_REQUIRED, CapsuleState.UNLOCKED)
    return {
        "unlocked": unlocked,
        "pending": state == CapsuleState.UNLOCKING,
        "requiresPin": state == CapsuleState.PIN_REQUIRED,
    }


_PUBLIC_FIELDS = {
    "id",
    "title",
    "unlock_at",
    "recipient_email",
    "recipient_name",
    "sender_name",
    "content_type",
    "file_size",
    "preview_message",
    "photos",
    "created_at",
    "unlock_email_sent",
    "unlocked_at",
    "viewed_at",
}


def sanitize_capsule(capsule: Capsule, include_pin: bool = False) -> Dict[str, Any]:
    """
    Client-safe projection of a capsule. Never contains the magic token, its hash, the
    sender's email or the PIN hash; the PIN only when include_pin and one exists.
    """
    fields = set(_PUBLIC_FIELDS)
    if include_pin and capsule.pin:
        fields.add("pin")
    return capsule.model_dump(mode="json", by_alias=True, exclude_none=True, include=fields)
