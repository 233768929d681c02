"""
Unit tests for CredentialStore.

Tests cover:
- write/read round trip with binary fields
- backup-before-overwrite
- recovery from a corrupted or missing primary
- salvage parse and unrecoverable data
- bounded write retries and transport failures
- remove / clear
"""

import pytest

from warelay.store import codec
from warelay.store.credentials import CredentialStore, ReadOutcome


CREDS = {
    "noiseKey": {"private": b"\x00\x01\x02", "public": b"\xff" * 4},
    "registrationId": 42,
    "me": {"id": "8613800000000:1@s.whatsapp.net"},
}


# =============================================================================
# Write / read
# =============================================================================


@pytest.mark.asyncio
async def test_round_trip_preserves_bytes(store, fake_client):
    assert await store.write("creds.json", CREDS) is True

    value = await store.read("creds.json")

    assert value == CREDS
    assert isinstance(value["noiseKey"]["private"], bytes)
    assert fake_client.raw("creds_json") is not None


@pytest.mark.asyncio
async def test_first_write_creates_no_backup(store, fake_client):
    await store.write("creds.json", CREDS)

    assert fake_client.raw("creds_json.backup") is None


@pytest.mark.asyncio
async def test_overwrite_copies_previous_primary_to_backup(store, fake_client):
    first = {"v": 1}
    second = {"v": 2}
    await store.write("pre-key-1.json", first)
    await store.write("pre-key-1.json", second)

    assert codec.loads(fake_client.raw("pre-key-1_json")) == second
    assert codec.loads(fake_client.raw("pre-key-1_json.backup")) == first


@pytest.mark.asyncio
async def test_key_names_are_flattened(store, fake_client):
    await store.write("session-a:b/c.json", {"x": 1})

    assert fake_client.raw("session-a-b__c_json") is not None


@pytest.mark.asyncio
async def test_read_missing_key_returns_none(store):
    result = await store.read_result("nope.json")

    assert result.value is None
    assert result.outcome == ReadOutcome.NOT_FOUND


# =============================================================================
# Recovery
# =============================================================================


@pytest.mark.asyncio
async def test_corrupted_primary_recovers_from_backup(store, fake_client):
    await store.write("creds.json", {"v": 1})
    await store.write("creds.json", {"v": 2})
    fake_client.put_raw("creds_json", "{not json")

    result = await store.read_result("creds.json")

    assert result.value == {"v": 1}
    assert result.outcome == ReadOutcome.RECOVERED
    # primary repaired from backup
    assert codec.loads(fake_client.raw("creds_json")) == {"v": 1}


@pytest.mark.asyncio
async def test_missing_primary_restored_from_backup(store, fake_client):
    fake_client.put_raw("creds_json.backup", codec.dumps({"v": 7}))

    result = await store.read_result("creds.json")

    assert result.value == {"v": 7}
    assert result.outcome == ReadOutcome.RECOVERED
    assert fake_client.raw("creds_json") is not None


@pytest.mark.asyncio
async def test_salvage_when_buffer_revival_fails(store, fake_client):
    fake_client.put_raw("creds_json", '{"a":{"type":"Buffer","data":"%%%"}}')

    result = await store.read_result("creds.json")

    assert result.outcome == ReadOutcome.SALVAGED
    assert result.value == {"a": {"type": "Buffer", "data": "%%%"}}


@pytest.mark.asyncio
async def test_unrecoverable_returns_none(store, fake_client):
    fake_client.put_raw("creds_json", "{broken")
    fake_client.put_raw("creds_json.backup", "also broken")

    result = await store.read_result("creds.json")

    assert result.value is None
    assert result.outcome == ReadOutcome.UNRECOVERABLE


@pytest.mark.asyncio
async def test_read_transport_error_yields_unavailable(store, fake_client):
    await store.write("creds.json", CREDS)
    fake_client.fail["select_one"] = 1

    result = await store.read_result("creds.json")

    assert result.value is None
    assert result.outcome == ReadOutcome.UNAVAILABLE


# =============================================================================
# Write validation and retries
# =============================================================================


@pytest.mark.asyncio
async def test_write_rejects_non_structured_value(store, no_sleep, fake_client):
    assert await store.write("creds.json", "just a string") is False
    # three attempts, waits of 1s and 2s between them
    assert no_sleep.delays == [1.0, 2.0]
    assert fake_client.raw("creds_json") is None


@pytest.mark.asyncio
async def test_write_rejects_empty_payload(store, fake_client):
    assert await store.write("creds.json", {}) is False
    assert fake_client.raw("creds_json") is None


@pytest.mark.asyncio
async def test_write_retries_transient_failure(store, fake_client, no_sleep):
    fake_client.fail["upsert"] = 1

    assert await store.write("creds.json", CREDS) is True
    assert no_sleep.delays == [1.0]
    assert await store.read("creds.json") == CREDS


@pytest.mark.asyncio
async def test_write_gives_up_after_three_attempts(store, fake_client, no_sleep):
    fake_client.fail["upsert"] = 10

    assert await store.write("creds.json", CREDS) is False
    assert len(no_sleep.delays) == 2


# =============================================================================
# Remove / clear
# =============================================================================


@pytest.mark.asyncio
async def test_remove_deletes_primary_and_backup(store, fake_client):
    await store.write("pre-key-5.json", {"v": 1})
    await store.write("pre-key-5.json", {"v": 2})

    await store.remove("pre-key-5.json")

    assert fake_client.raw("pre-key-5_json") is None
    assert fake_client.raw("pre-key-5_json.backup") is None
    assert await store.read("pre-key-5.json") is None


@pytest.mark.asyncio
async def test_clear_only_touches_own_session(fake_client, no_sleep):
    mine = CredentialStore(fake_client, "test", sleep=no_sleep)
    other = CredentialStore(fake_client, "other", sleep=no_sleep)
    await mine.write("creds.json", {"v": 1})
    await other.write("creds.json", {"v": 2})

    assert await mine.clear() is True

    assert await mine.read("creds.json") is None
    assert await other.read("creds.json") == {"v": 2}
