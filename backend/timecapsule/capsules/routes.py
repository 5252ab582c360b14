"""Capsule routes: create, view, PIN verification, content proxy, dashboard."""

import hmac
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Optional, Tuple

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import FormData, UploadFile

from timecapsule.auth.models import UserSession
from timecapsule.auth.sessions import get_user_session
from timecapsule.capsules.manifest import (
    CapsuleManifest,
    ManifestError,
    get_all_capsules,
    split_full_name,
    update_capsules_json,
)
from timecapsule.capsules.models import (
    MAX_PHOTOS,
    Capsule,
    CapsuleMetadata,
    CapsuleState,
    PhotoAttachment,
    TokenMapping,
    capsule_state,
    sanitize_capsule,
    view_status,
)
from timecapsule.capsules.rate_limit import check_pin_rate_limit, increment_pin_attempts
from timecapsule.capsules.storage import (
    Attachment,
    AttachmentError,
    capsule_file_path,
    exceeds_quota,
    file_extension,
    guess_content_type,
    photo_file_path,
    upload_size,
    validate_content,
)
from timecapsule.config import get_settings
from timecapsule.db.session import get_db
from timecapsule.github.client import GitHubClient, GitHubError
from timecapsule.gmail.client import GmailError, send_email
from timecapsule.gmail.templates import (
    CapsuleEmailData,
    creation_email,
    format_unlock_date,
    whatsapp_share_link,
)
from timecapsule.gmail.tokens import GmailTokenStore
from timecapsule.http import get_transport
from timecapsule.kv import store as kv
from timecapsule.kv.store import KVKeys
from timecapsule.limiter import limiter
from timecapsule.security.crypto import generate_secure_token, sha256_hash

router = APIRouter(prefix="/api/capsule", tags=["capsule"])
log = logging.getLogger(__name__)

Transport = Annotated[Optional[httpx.AsyncBaseTransport], Depends(get_transport)]
DB = Annotated[AsyncSession, Depends(get_db)]

_PIN_FORMAT = re.compile(r"[0-9]{4}")
_PHOTO_FIELD = re.compile(r"photo([0-9]+)")

_CAPSULE_NOT_FOUND = "This capsule link is invalid or the capsule no longer exists"
_SIGN_IN_AGAIN = "Sign in with GitHub again"
_NOT_UNLOCKED = "The capsule opens on its unlock date"


def _now() -> int:
    """Current time in epoch seconds."""
    return int(time.time())


def _error(status_code: int, error: str, **extra: Any) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": error, **extra})


class PinRequest(BaseModel):
    """Body of verify-pin."""

    pin: str


@dataclass
class _LocatedCapsule:
    """A capsule found through its token mapping, with what is needed to read or rewrite it."""

    mapping: TokenMapping
    github: GitHubClient
    manifest: CapsuleManifest
    capsule: Capsule
    revision: Optional[str]

    @property
    def owner_repo(self):
        return split_full_name(self.mapping.repo_full_name)


async def _github_for_user(
    session: AsyncSession, user_id: str, transport: Optional[httpx.AsyncBaseTransport]
) -> GitHubClient:
    token = await kv.get_encrypted_token(
        session, KVKeys.github_token(user_id), get_settings().encryption_key
    )
    if not token:
        raise _error(
            status.HTTP_404_NOT_FOUND,
            "GitHub token not found",
            message="Reconnect your GitHub account and try again",
        )
    return GitHubClient(token, transport=transport)


async def _locate(
    session: AsyncSession, token_hash: str, transport: Optional[httpx.AsyncBaseTransport]
) -> _LocatedCapsule:
    """Token mapping -> user's GitHub token -> manifest entry. Any missing link is a 404."""
    mapping = await kv.get_record(session, KVKeys.token_to_repo(token_hash), TokenMapping)
    if mapping is None:
        raise _error(status.HTTP_404_NOT_FOUND, "Capsule not found", message=_CAPSULE_NOT_FOUND)
    github = await _github_for_user(session, mapping.user_id, transport)
    manifest = CapsuleManifest.for_repo(github, mapping.repo_full_name)
    capsule, revision = await manifest.find(token_hash)
    if capsule is None:
        raise _error(status.HTTP_404_NOT_FOUND, "Capsule not found", message=_CAPSULE_NOT_FOUND)
    return _LocatedCapsule(mapping, github, manifest, capsule, revision)


async def _update_best_effort(
    manifest: CapsuleManifest,
    capsule: Capsule,
    revision: Optional[str],
    **changes: Any,
) -> None:
    """Rewrite one manifest record; bookkeeping only, so failures are logged and dropped."""
    try:
        await manifest.replace(capsule.model_copy(update=changes), revision)
    except (ManifestError, GitHubError, httpx.HTTPError) as e:
        log.warning("Could not record %s for capsule %s: %s", ", ".join(changes), capsule.id, e)


async def _read_attachment(upload: UploadFile) -> Attachment:
    data = await upload.read()
    return Attachment(
        filename=upload.filename or "",
        content_type=upload.content_type or "",
        data=data,
    )


async def _read_photos(form: FormData) -> List[Attachment]:
    """Every photoN upload in index order. An index past the photo limit is a 400."""
    indexed: List[Tuple[int, UploadFile]] = []
    for key, value in form.multi_items():
        match = _PHOTO_FIELD.fullmatch(key)
        if match is None or not isinstance(value, UploadFile):
            continue
        index = int(match.group(1))
        if index >= MAX_PHOTOS:
            raise _error(
                status.HTTP_400_BAD_REQUEST,
                "Too many photos",
                message=f"At most {MAX_PHOTOS} photos allowed (photo0 to photo{MAX_PHOTOS - 1})",
            )
        indexed.append((index, value))
    if len(indexed) > MAX_PHOTOS:
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            "Too many photos",
            message=f"At most {MAX_PHOTOS} photos allowed",
        )
    indexed.sort(key=lambda item: item[0])
    return [await _read_attachment(upload) for _, upload in indexed]


def _magic_link(magic_token: str) -> str:
    return f"{get_settings().frontend_url.rstrip('/')}/open?t={magic_token}"


async def _send_creation_email(
    session: AsyncSession,
    user_id: str,
    capsule: Capsule,
    magic_link: str,
    transport: Optional[httpx.AsyncBaseTransport],
) -> bool:
    """Notify the recipient that a capsule is on its way. Returns False if it was not sent."""
    settings = get_settings()
    token_store = GmailTokenStore(
        session,
        user_id,
        settings.encryption_key,
        settings.gmail_client_id,
        settings.gmail_client_secret,
        transport,
    )
    try:
        access_token = await token_store.get_valid_token()
        if access_token is None:
            log.warning("No Gmail tokens for user_id=%s; creation email skipped", user_id)
            return False
        html, text = creation_email(
            CapsuleEmailData(
                recipient_email=capsule.recipient_email,
                recipient_name=capsule.recipient_name,
                sender_name=capsule.sender_name,
                sender_email=capsule.sender_email,
                capsule_title=capsule.title,
                unlock_date=format_unlock_date(capsule.unlock_at),
                magic_link=magic_link,
                preview_message=capsule.preview_message,
            )
        )
        await send_email(
            capsule.recipient_email,
            f"\U0001F381 Time capsule from {capsule.sender_name}",
            html,
            text,
            access_token,
            transport,
        )
    except (GmailError, httpx.HTTPError) as e:
        log.error("Creation email for capsule %s failed: %s", capsule.id, e)
        return False
    return True


def _require_session_ready(user_session: UserSession) -> None:
    if not user_session.repository or not user_session.repository.full_name:
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            "GitHub must be connected",
            message="Connect your GitHub account before creating a capsule",
        )
    if not user_session.gmail_connected:
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            "Gmail must be connected",
            message="Connect Gmail so the capsule can be emailed to the recipient",
        )


@router.post("/create")
@limiter.limit("10/minute")
async def create_capsule(request: Request, session: DB, transport: Transport) -> dict:
    """
    Create a capsule from a multipart form: userId, metadata (JSON), file, photo0..photo4.

    Everything is validated before the first write. Writes then happen in order: files
    (one commit), manifest append, token mapping, creation email. A failed email does not
    undo the capsule.
    """
    form = await request.form()
    user_id = form.get("userId")
    if not user_id or not isinstance(user_id, str):
        raise _error(
            status.HTTP_400_BAD_REQUEST, "Missing userId", message="Form field userId is required"
        )
    raw_metadata = form.get("metadata")
    if not raw_metadata or not isinstance(raw_metadata, str):
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            "Missing required fields",
            message="Form field metadata is required",
        )
    try:
        metadata = CapsuleMetadata.model_validate_json(raw_metadata)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise _error(status.HTTP_400_BAD_REQUEST, "Invalid metadata", message=f"Invalid fields: {fields}")

    user_session = await get_user_session(session, user_id)
    if user_session is None:
        raise _error(status.HTTP_404_NOT_FOUND, "User session not found", message=_SIGN_IN_AGAIN)
    _require_session_ready(user_session)

    if metadata.unlock_at <= _now():
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            "Unlock time must be in the future",
            message="metadata.unlockAt must be later than the current time",
        )

    upload = form.get("file")
    file = await _read_attachment(upload) if isinstance(upload, UploadFile) else None
    photos = await _read_photos(form)
    try:
        validate_content(metadata, file, photos)
    except AttachmentError as e:
        raise _error(status.HTTP_400_BAD_REQUEST, "Invalid content", message=str(e))

    github = await _github_for_user(session, user_id, transport)
    settings = get_settings()
    full_name = user_session.repository.full_name
    owner, repo = split_full_name(full_name)
    incoming = upload_size(file, photos)
    storage_used = await github.get_repository_size(owner, repo)
    if exceeds_quota(storage_used, incoming, settings.storage_limit_bytes):
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            "Storage limit exceeded",
            storageUsed=storage_used,
            storageLimit=settings.storage_limit_bytes,
        )

    capsule_id = str(uuid.uuid4())
    magic_token = generate_secure_token(16)
    token_hash = sha256_hash(magic_token)

    files = []
    file_path: Optional[str] = None
    if file is not None:
        file_path = capsule_file_path(capsule_id, file_extension(file.filename, file.content_type))
        files.append((file_path, file.data))
    photo_records: List[PhotoAttachment] = []
    for i, photo in enumerate(photos):
        path = photo_file_path(capsule_id, i, file_extension(photo.filename, photo.content_type))
        files.append((path, photo.data))
        photo_records.append(
            PhotoAttachment(
                id=f"photo-{i}", file_path=path, file_size=photo.size, mime_type=photo.content_type
            )
        )

    capsule = Capsule(
        id=capsule_id,
        title=metadata.title,
        unlock_at=metadata.unlock_at,
        recipient_email=metadata.recipient_email,
        recipient_name=metadata.recipient_name,
        sender_name=user_session.sender_name,
        sender_email=user_session.sender_email,
        content_type=metadata.content_type,
        file_path=file_path,
        file_size=file.size if file else None,
        text_content=metadata.text_content,
        preview_message=metadata.preview_message,
        additional_message=metadata.additional_message,
        photos=photo_records or None,
        magic_token=magic_token,
        magic_token_hash=token_hash,
        created_at=_now(),
        whatsapp_shared_at_creation=metadata.whatsapp_shared_at_creation,
    )

    try:
        if files:
            await github.upload_files(owner, repo, files, f"Add capsule files: {metadata.title}")
        revision = await update_capsules_json(github, owner, repo, capsule)
    except (ManifestError, GitHubError, httpx.HTTPError) as e:
        log.error("Capsule creation failed for user_id=%s: %s", user_id, e)
        raise _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to create capsule", message=str(e)
        )

    await kv.store_json(
        session,
        KVKeys.token_to_repo(token_hash),
        TokenMapping(user_id=user_id, repo_full_name=full_name, capsule_id=capsule_id),
    )
    await session.commit()
    log.info("Created capsule %s in %s", capsule_id, full_name)

    magic_link = _magic_link(magic_token)
    email_sent = await _send_creation_email(session, user_id, capsule, magic_link, transport)
    if email_sent:
        manifest = CapsuleManifest(github, owner, repo)
        await _update_best_effort(manifest, capsule, revision, creation_email_sent=True)

    unlock_date = format_unlock_date(metadata.unlock_at)
    whatsapp_link = whatsapp_share_link(
        f"Hi! I sent you a time capsule that unlocks on {unlock_date}. "
        f"Check your email or view it here: {magic_link}"
    )
    return {
        "success": True,
        "capsule": {
            "id": capsule_id,
            "title": metadata.title,
            "unlockAt": metadata.unlock_at,
            "magicLink": magic_link,
            "whatsappLink": whatsapp_link,
            "creationEmailSent": email_sent,
        },
    }


@router.get("/view/{token}")
async def view_capsule(token: str, session: DB, transport: Transport) -> dict:
    """Public view of a capsule by magic token; state is derived from the clock on every call."""
    token_hash = sha256_hash(token)
    located = await _locate(session, token_hash, transport)
    state = capsule_state(located.capsule, _now())
    body: Dict[str, Any] = {
        "capsule": sanitize_capsule(located.capsule),
        "status": view_status(state),
    }
    if state == CapsuleState.PIN_REQUIRED:
        limit = await check_pin_rate_limit(session, token_hash)
        body["rateLimit"] = {"remaining": limit.remaining, "exceeded": limit.exceeded}
    return body


@router.post("/view/{token}/verify-pin")
@limiter.limit("30/minute")
async def verify_pin(
    request: Request,
    token: str,
    body: PinRequest,
    session: DB,
    transport: Transport,
) -> dict:
    """
    Check the 4-digit PIN. Format is checked first, then the failed-attempt limit,
    then the capsule. Only a wrong PIN counts as an attempt.
    """
    if not _PIN_FORMAT.fullmatch(body.pin):
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            "PIN must be exactly 4 digits",
            message="Enter the 4-digit PIN from the unlock email",
        )

    token_hash = sha256_hash(token)
    limit = await check_pin_rate_limit(session, token_hash)
    if limit.exceeded:
        raise _error(
            status.HTTP_429_TOO_MANY_REQUESTS, "Too many attempts. Try again later.", remaining=0
        )

    located = await _locate(session, token_hash, transport)
    capsule = located.capsule
    if capsule_state(capsule, _now()) != CapsuleState.PIN_REQUIRED:
        raise _error(status.HTTP_403_FORBIDDEN, "Capsule is not unlocked yet", message=_NOT_UNLOCKED)

    if not hmac.compare_digest(sha256_hash(body.pin), capsule.expected_pin_hash() or ""):
        limit = await increment_pin_attempts(session, token_hash)
        await session.commit()
        log.warning("Wrong PIN for capsule %s (%d attempt(s))", capsule.id, limit.attempts)
        if limit.exceeded:
            raise _error(
                status.HTTP_429_TOO_MANY_REQUESTS,
                "Too many attempts. Try again later.",
                remaining=0,
            )
        raise _error(status.HTTP_401_UNAUTHORIZED, "Incorrect PIN", remaining=limit.remaining)

    worker_url = get_settings().worker_url.rstrip("/")
    capsule_body = sanitize_capsule(capsule, include_pin=True)
    if capsule.text_content is not None:
        capsule_body["textContent"] = capsule.text_content
    if capsule.additional_message is not None:
        capsule_body["additionalMessage"] = capsule.additional_message
    content_url = f"{worker_url}/api/capsule/content/{token_hash}" if capsule.file_path else None
    photo_urls = [
        f"{worker_url}/api/capsule/photo/{token_hash}/{i}" for i in range(len(capsule.photos or []))
    ]

    if capsule.viewed_at is None:
        await _update_best_effort(located.manifest, capsule, located.revision, viewed_at=_now())

    log.info("Capsule %s opened", capsule.id)
    return {
        "success": True,
        "capsule": capsule_body,
        "contentUrl": content_url,
        "photoUrls": photo_urls,
    }


def _require_unlocked(capsule: Capsule) -> None:
    if capsule_state(capsule, _now()) not in (CapsuleState.PIN_REQUIRED, CapsuleState.UNLOCKED):
        raise _error(status.HTTP_403_FORBIDDEN, "Capsule is not unlocked yet", message=_NOT_UNLOCKED)


async def _proxy_file(located: _LocatedCapsule, path: str, media_type: str) -> Response:
    owner, repo = located.owner_repo
    data = await located.github.get_raw_file(owner, repo, path)
    if data is None:
        raise _error(
            status.HTTP_404_NOT_FOUND,
            "File not found",
            message="The capsule file is missing from its repository",
        )
    return Response(content=data, media_type=media_type)


@router.get("/content/{token_hash}")
async def get_content(token_hash: str, session: DB, transport: Transport) -> Response:
    """Main capsule file, fetched from the repository and returned as-is."""
    located = await _locate(session, token_hash, transport)
    _require_unlocked(located.capsule)
    path = located.capsule.file_path
    if not path:
        raise _error(
            status.HTTP_404_NOT_FOUND,
            "Capsule has no file",
            message="This capsule has no attached file",
        )
    return await _proxy_file(located, path, guess_content_type(path))


@router.get("/photo/{token_hash}/{index}")
async def get_photo(token_hash: str, index: int, session: DB, transport: Transport) -> Response:
    """One extra photo by position."""
    located = await _locate(session, token_hash, transport)
    _require_unlocked(located.capsule)
    photos = located.capsule.photos or []
    if index < 0 or index >= len(photos):
        raise _error(
            status.HTTP_404_NOT_FOUND,
            "Photo not found",
            message=f"This capsule has {len(photos)} photo(s)",
        )
    photo = photos[index]
    return await _proxy_file(located, photo.file_path, photo.mime_type or guess_content_type(photo.file_path))


@router.get("/dashboard/{user_id}")
async def dashboard(user_id: str, session: DB, transport: Transport) -> dict:
    """Counts, storage usage, sanitized capsule list and repository link for one user."""
    user_session = await get_user_session(session, user_id)
    if user_session is None:
        raise _error(status.HTTP_404_NOT_FOUND, "User session not found", message=_SIGN_IN_AGAIN)
    if not user_session.repository:
        raise _error(
            status.HTTP_400_BAD_REQUEST,
            "GitHub must be connected",
            message="Connect your GitHub account to see your capsules",
        )
    github = await _github_for_user(session, user_id, transport)
    settings = get_settings()
    repository = user_session.repository
    owner, repo = split_full_name(repository.full_name)

    capsules = await get_all_capsules(github, owner, repo)
    used = await github.get_repository_size(owner, repo)
    limit = settings.storage_limit_bytes
    now = _now()
    failed_before = now - settings.unlock_grace_seconds

    github_user = user_session.github_user
    return {
        "user": {
            "id": user_id,
            "name": github_user.name,
            "email": github_user.email,
            "avatar": github_user.avatar_url,
        },
        "storage": {
            "used": used,
            "limit": limit,
            "percentage": round(used / limit * 100, 1) if limit else 0,
        },
        "capsules": {
            "total": len(capsules),
            "pending": sum(1 for c in capsules if now < c.unlock_at),
            "unlocked": sum(1 for c in capsules if c.unlock_email_sent),
            "failed": sum(
                1 for c in capsules if not c.unlock_email_sent and c.unlock_at < failed_before
            ),
        },
        "capsuleList": [sanitize_capsule(c) for c in capsules],
        "repository": {"name": repository.name, "url": repository.html_url},
    }
