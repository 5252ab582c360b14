"""Tests for the key-value accessor: JSON records, encrypted tokens, counters, TTLs."""

import time

import pytest

from timecapsule.capsules.models import TokenMapping
from timecapsule.kv import store as kv
from timecapsule.kv.model import KVEntry
from timecapsule.kv.store import CorruptRecordError, KVKeys

KEY = "0123456789abcdef" * 4


def test_key_builders() -> None:
    """Key patterns used by the service."""
    assert KVKeys.github_token("7") == "github_token:7"
    assert KVKeys.gmail_token("7") == "gmail_token:7"
    assert KVKeys.user_session("7") == "user_session:7"
    assert KVKeys.token_to_repo("abc") == "token:abc"
    assert KVKeys.pin_attempts("abc") == "pin_attempts:abc"
    assert KVKeys.oauth_state("s") == "oauth_state:s"


@pytest.mark.asyncio
async def test_store_and_get_json(db_session) -> None:
    """Stored JSON reads back; missing keys read as None."""
    await kv.store_json(db_session, "kvtest:json", {"a": 1, "b": [1, 2]})
    assert await kv.get_json(db_session, "kvtest:json") == {"a": 1, "b": [1, 2]}
    assert await kv.exists(db_session, "kvtest:json")
    assert await kv.get_json(db_session, "kvtest:missing") is None
    assert not await kv.exists(db_session, "kvtest:missing")


@pytest.mark.asyncio
async def test_store_json_overwrites(db_session) -> None:
    """A second put replaces the value."""
    await kv.store_json(db_session, "kvtest:overwrite", {"v": 1})
    await kv.store_json(db_session, "kvtest:overwrite", {"v": 2})
    assert await kv.get_json(db_session, "kvtest:overwrite") == {"v": 2}


@pytest.mark.asyncio
async def test_delete(db_session) -> None:
    """Deleted keys read as missing; deleting a missing key is fine."""
    await kv.store_json(db_session, "kvtest:delete", {"v": 1})
    await kv.delete(db_session, "kvtest:delete")
    await db_session.flush()
    assert await kv.get_json(db_session, "kvtest:delete") is None
    await kv.delete(db_session, "kvtest:never-there")


@pytest.mark.asyncio
async def test_malformed_json_reads_as_missing(db_session) -> None:
    """get_json logs and returns None for a value that is not JSON."""
    await kv.put_raw(db_session, "kvtest:garbage", "{not json")
    assert await kv.get_json(db_session, "kvtest:garbage") is None


@pytest.mark.asyncio
async def test_expired_entry_reads_as_missing_and_is_purged(db_session) -> None:
    """Entries past their expiry are invisible and removed by purge_expired."""
    db_session.add(KVEntry(key="kvtest:expired", value='{"v": 1}', expires_at=time.time() - 5))
    await db_session.flush()
    assert await kv.get_json(db_session, "kvtest:expired") is None
    assert not await kv.exists(db_session, "kvtest:expired")
    purged = await kv.purge_expired(db_session)
    assert purged >= 1
    db_session.expunge_all()
    assert await db_session.get(KVEntry, "kvtest:expired") is None


@pytest.mark.asyncio
async def test_ttl_sets_expiry(db_session) -> None:
    """A TTL is stored as an absolute expiry time."""
    await kv.store_json(db_session, "kvtest:ttl", {"v": 1}, ttl_seconds=600)
    row = await db_session.get(KVEntry, "kvtest:ttl")
    assert row.expires_at == pytest.approx(time.time() + 600, abs=5)


@pytest.mark.asyncio
async def test_get_record_validates_model(db_session) -> None:
    """Typed reads return the model, None when missing, and raise on a bad shape."""
    mapping = TokenMapping(user_id="1", repo_full_name="octo/repo", capsule_id="c1")
    await kv.store_json(db_session, "kvtest:mapping", mapping)
    assert await kv.get_json(db_session, "kvtest:mapping") == {
        "userId": "1",
        "repoFullName": "octo/repo",
        "capsuleId": "c1",
    }
    assert await kv.get_record(db_session, "kvtest:mapping", TokenMapping) == mapping
    assert await kv.get_record(db_session, "kvtest:nomapping", TokenMapping) is None

    await kv.store_json(db_session, "kvtest:badmapping", {"userId": "1"})
    with pytest.raises(CorruptRecordError):
        await kv.get_record(db_session, "kvtest:badmapping", TokenMapping)
    await kv.put_raw(db_session, "kvtest:notjson", "{{{")
    with pytest.raises(CorruptRecordError):
        await kv.get_record(db_session, "kvtest:notjson", TokenMapping)


@pytest.mark.asyncio
async def test_encrypted_token_round_trip(db_session) -> None:
    """Tokens are stored encrypted and read back in clear."""
    await kv.store_encrypted_token(db_session, "kvtest:token", "gho_secret", KEY)
    raw = await kv.get_raw(db_session, "kvtest:token")
    assert "gho_secret" not in raw
    assert await kv.get_encrypted_token(db_session, "kvtest:token", KEY) == "gho_secret"


@pytest.mark.asyncio
async def test_encrypted_token_wrong_key_reads_as_missing(db_session) -> None:
    """A rotated master key degrades to 'no credential'."""
    await kv.store_encrypted_token(db_session, "kvtest:token2", "gho_secret", KEY)
    assert await kv.get_encrypted_token(db_session, "kvtest:token2", "e" * 64) is None
    assert await kv.get_encrypted_token(db_session, "kvtest:no-token", KEY) is None


@pytest.mark.asyncio
async def test_counter(db_session) -> None:
    """increment returns the new count; reset clears it."""
    key = "kvtest:counter"
    assert await kv.get_counter(db_session, key) == 0
    assert await kv.increment_counter(db_session, key, 60) == 1
    assert await kv.increment_counter(db_session, key, 60) == 2
    assert await kv.get_counter(db_session, key) == 2
    await kv.reset_counter(db_session, key)
    await db_session.flush()
    assert await kv.get_counter(db_session, key) == 0


@pytest.mark.asyncio
async def test_counter_increment_refreshes_ttl(db_session) -> None:
    """Every increment pushes the expiry out again."""
    key = "kvtest:counter-ttl"
    db_session.add(KVEntry(key=key, value='{"count": 3}', expires_at=time.time() + 10))
    await db_session.flush()
    assert await kv.increment_counter(db_session, key, 3600) == 4
    row = await db_session.get(KVEntry, key)
    assert row.expires_at == pytest.approx(time.time() + 3600, abs=5)
