"""Gmail token cache: the one place that knows about expiry, refresh and persistence."""

import logging
from typing import Optional

import httpx
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from timecapsule.gmail.client import GmailTokens, needs_refresh, refresh_access_token
from timecapsule.kv.store import KVKeys, get_encrypted_token, store_encrypted_token

log = logging.getLogger(__name__)


class GmailTokenStore:
    """
    Encrypted Gmail tokens for one user.

    get_valid_token() returns an access token that is good for at least five minutes,
    refreshing it on demand. With persist_refreshed the refreshed token is written back,
    otherwise it only lives for the current call.
    """

    def __init__(
        self,
        session: AsyncSession,
        user_id: str,
        encryption_key: str,
        client_id: str,
        client_secret: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        persist_refreshed: bool = True,
    ) -> None:
        self._session = session
        self._key = KVKeys.gmail_token(user_id)
        self._encryption_key = encryption_key
        self._client_id = client_id
        self._client_secret = client_secret
        self._transport = transport
        self._persist_refreshed = persist_refreshed

    async def load(self) -> Optional[GmailTokens]:
        """Stored tokens, or None if missing or unreadable."""
        raw = await get_encrypted_token(self._session, self._key, self._encryption_key)
        if raw is None:
            return None
        try:
            return GmailTokens.model_validate_json(raw)
        except ValidationError:
            log.error("Stored Gmail tokens at %s are malformed", self._key)
            return None

    async def save(self, tokens: GmailTokens) -> None:
        """Encrypt and store tokens."""
        await store_encrypted_token(
            self._session, self._key, tokens.model_dump_json(), self._encryption_key
        )

    async def get_valid_token(self) -> Optional[str]:
        """Access token ready to use, or None if the user never connected Gmail."""
        tokens = await self.load()
        if tokens is None:
            return None
        if not needs_refresh(tokens):
            return tokens.access_token
        refreshed = await refresh_access_token(
            tokens.refresh_token, self._client_id, self._client_secret, self._transport
        )
        if self._persist_refreshed:
            await self.save(
                tokens.model_copy(
                    update={
                        "access_token": refreshed.access_token,
                        "expiry_date": refreshed.expiry_date,
                    }
                )
            )
            log.debug("Persisted refreshed Gmail token at %s", self._key)
        return refreshed.access_token
