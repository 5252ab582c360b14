"""Failed-PIN counter per magic token hash (5 per hour, window slides with each failure)."""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from timecapsule.kv.store import KVKeys, get_counter, increment_counter

PIN_MAX_ATTEMPTS = 5
PIN_WINDOW_SECONDS = 3600


@dataclass(frozen=True)
class PinRateLimit:
    """Snapshot of the failed-attempt counter."""

    exceeded: bool
    attempts: int
    remaining: int


def _snapshot(attempts: int) -> PinRateLimit:
    return PinRateLimit(
        exceeded=attempts >= PIN_MAX_ATTEMPTS,
        attempts=attempts,
        remaining=max(0, PIN_MAX_ATTEMPTS - attempts),
    )


async def check_pin_rate_limit(session: AsyncSession, token_hash: str) -> PinRateLimit:
    """Read-only check; does not count as an attempt."""
    attempts = await get_counter(session, KVKeys.pin_attempts(token_hash))
    return _snapshot(attempts)


async def increment_pin_attempts(session: AsyncSession, token_hash: str) -> PinRateLimit:
    """Record one failed verification and return the updated snapshot."""
    attempts = await increment_counter(
        session, KVKeys.pin_attempts(token_hash), PIN_WINDOW_SECONDS
    )
    return _snapshot(attempts)
