"""
Key-value accessor: JSON records, encrypted tokens and counters over the kv_entries table.

All functions take the request's AsyncSession; caller (get_db) commits.
"""

import json
import logging
import time
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import delete as sa_delete
from sqlalchemy.ext.asyncio import AsyncSession

from timecapsule.kv.model import KVEntry
from timecapsule.security.crypto import DecryptionFailed, EncryptedData, decrypt, encrypt

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

DEFAULT_COUNTER_TTL = 3600


class CorruptRecordError(Exception):
    """A stored record is not valid JSON or does not match its expected shape."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Corrupt record {key}: {reason}")
        self.key = key


class KVKeys:
    """Key patterns for everything the service keeps in the store."""

    @staticmethod
    def github_token(user_id: str) -> str:
        return f"github_token:{user_id}"

    @staticmethod
    def gmail_token(user_id: str) -> str:
        return f"gmail_token:{user_id}"

    @staticmethod
    def user_session(user_id: str) -> str:
        return f"user_session:{user_id}"

    @staticmethod
    def token_to_repo(token_hash: str) -> str:
        return f"token:{token_hash}"

    @staticmethod
    def pin_attempts(token_hash: str) -> str:
        return f"pin_attempts:{token_hash}"

    @staticmethod
    def oauth_state(state: str) -> str:
        return f"oauth_state:{state}"


async def _get_live_entry(session: AsyncSession, key: str) -> Optional[KVEntry]:
    """Return the row for key, or None if missing or expired. Expired rows stay until purge_expired."""
    row = await session.get(KVEntry, key)
    if row is None:
        return None
    if row.expires_at is not None and row.expires_at <= time.time():
        return None
    return row


async def purge_expired(session: AsyncSession) -> int:
    """Delete all expired rows and return how many were removed. Caller must commit."""
    result = await session.execute(
        sa_delete(KVEntry).where(
            KVEntry.expires_at.is_not(None),
            KVEntry.expires_at <= time.time(),
        )
    )
    return result.rowcount or 0


async def get_raw(session: AsyncSession, key: str) -> Optional[str]:
    """Return the stored string for key, or None."""
    row = await _get_live_entry(session, key)
    return row.value if row else None


async def put_raw(
    session: AsyncSession,
    key: str,
    value: str,
    ttl_seconds: Optional[int] = None,
) -> None:
    """Store a string under key, replacing any previous value and TTL."""
    expires_at = time.time() + ttl_seconds if ttl_seconds else None
    row = await session.get(KVEntry, key)
    if row:
        row.value = value
        row.expires_at = expires_at
    else:
        session.add(KVEntry(key=key, value=value, expires_at=expires_at))
    # autoflush is off; flush so later reads in this session see the write
    await session.flush()


async def delete(session: AsyncSession, key: str) -> None:
    """Remove key if present."""
    row = await session.get(KVEntry, key)
    if row:
        await session.delete(row)
        await session.flush()


async def exists(session: AsyncSession, key: str) -> bool:
    """True if key holds a live value."""
    return await _get_live_entry(session, key) is not None


async def store_json(
    session: AsyncSession,
    key: str,
    value: Any,
    ttl_seconds: Optional[int] = None,
) -> None:
    """Store any JSON-serializable value (pydantic models are dumped by alias)."""
    if isinstance(value, BaseModel):
        payload = value.model_dump_json(by_alias=True, exclude_none=True)
    else:
        payload = json.dumps(value)
    await put_raw(session, key, payload, ttl_seconds)


async def get_json(session: AsyncSession, key: str) -> Optional[Any]:
    """Return parsed JSON for key, or None if missing. Malformed JSON is logged and read as missing."""
    raw = await get_raw(session, key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        log.error("Failed to parse JSON from store key=%s: %s", key, e)
        return None


async def get_record(session: AsyncSession, key: str, model: Type[M]) -> Optional[M]:
    """
    Return the record at key validated as model, or None if missing.
    Raises CorruptRecordError if the stored value is not valid JSON or not a valid model.
    """
    raw = await get_raw(session, key)
    if raw is None:
        return None
    try:
        return model.model_validate_json(raw)
    except ValidationError as e:
        log.error("Corrupt %s record at key=%s", model.__name__, key)
        raise CorruptRecordError(key, f"{e.error_count()} validation error(s)") from e


async def store_encrypted_token(
    session: AsyncSession,
    key: str,
    token: str,
    encryption_key: str,
) -> None:
    """Encrypt token with the master key and store it (no TTL)."""
    encrypted = encrypt(token, encryption_key)
    await put_raw(session, key, encrypted.model_dump_json())


async def get_encrypted_token(
    session: AsyncSession,
    key: str,
    encryption_key: str,
) -> Optional[str]:
    """Return the decrypted token, or None if missing or not decryptable with this key."""
    raw = await get_raw(session, key)
    if raw is None:
        return None
    try:
        return decrypt(EncryptedData.model_validate_json(raw), encryption_key)
    except (DecryptionFailed, ValidationError, ValueError) as e:
        log.error("Failed to decrypt token at key=%s: %s", key, e)
        return None


async def increment_counter(
    session: AsyncSession,
    key: str,
    ttl_seconds: int = DEFAULT_COUNTER_TTL,
) -> int:
    """Add one to the counter at key and return the new count. Every increment resets the TTL."""
    current = await get_json(session, key)
    count = current.get("count", 0) if isinstance(current, dict) else 0
    new_count = int(count) + 1
    await store_json(session, key, {"count": new_count}, ttl_seconds)
    return new_count


async def get_counter(session: AsyncSession, key: str) -> int:
    """Current counter value (0 if absent or expired)."""
    current = await get_json(session, key)
    if not isinstance(current, dict):
        return 0
    return int(current.get("count", 0) or 0)


async def reset_counter(session: AsyncSession, key: str) -> None:
    """Delete the counter."""
    await delete(session, key)
