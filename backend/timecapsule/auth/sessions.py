"""Load and save UserSession records."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from timecapsule.auth.models import UserSession
from timecapsule.kv.store import KVKeys, get_record, store_json


async def get_user_session(session: AsyncSession, user_id: str) -> Optional[UserSession]:
    """Session for user_id, or None. Raises CorruptRecordError if the stored record is invalid."""
    return await get_record(session, KVKeys.user_session(user_id), UserSession)


async def save_user_session(session: AsyncSession, user_session: UserSession) -> None:
    """Write the session record (no TTL). Caller must commit."""
    await store_json(session, KVKeys.user_session(user_session.user_id), user_session)
