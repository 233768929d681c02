"""
Integration-style tests for ConnectionSupervisor with scripted fake sessions.

Tests cover:
- fresh startup: creds persisted once, pairingRequired before connected
- restart-required (515): new generation, attempts 0, fixed short delay
- generation guard: events from superseded sessions are dropped
- FATAL after repeated 401, start() ignored, reset() recovers
- startup errors retried with backoff
- creds.update persistence, message routing, connection logs
"""

import asyncio

import pytest

from warelay.session.state import ConnectionState, ReconnectPolicy
from warelay.session.supervisor import ConnectionSupervisor
from warelay.store.records import ConnectionLogWriter
from tests.conftest import FakeSessionFactory


USER = {"id": "8613800000000:1@s.whatsapp.net", "name": "Relay"}


async def settle(predicate, rounds: int = 200):
    """Yield to the loop until predicate() is true."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def pair_then_open():
    async def script(cb):
        await cb.on_pairing("qr-payload")
        await cb.on_open(USER)
    return script


async def open_only(cb):
    await cb.on_open(USER)


def close_with(code):
    async def script(cb):
        await cb.on_close(code, f"closed {code}")
    return script


@pytest.fixture
def make_supervisor(store, creds_factory, no_sleep, fake_client):
    def _make(factory, **kwargs):
        supervisor = ConnectionSupervisor(
            store=store,
            session_factory=factory,
            creds_factory=creds_factory,
            policy=ReconnectPolicy(),
            connection_log=ConnectionLogWriter(fake_client),
            sleep=no_sleep,
            **kwargs,
        )
        events = []

        async def listener(event):
            events.append(event)

        supervisor.subscribe(listener)
        return supervisor, events
    return _make


# =============================================================================
# Startup and pairing
# =============================================================================


@pytest.mark.asyncio
async def test_fresh_start_persists_creds_once_and_pairs(make_supervisor, creds_factory, fake_client):
    factory = FakeSessionFactory([pair_then_open()])
    supervisor, events = make_supervisor(factory)

    await supervisor.start()

    assert supervisor.state == ConnectionState.CONNECTED
    assert [e.kind for e in events] == ["pairingRequired", "connected"]
    assert events[0].challenge == "qr-payload"
    assert len(creds_factory.calls) == 1
    # one write only: no backup row exists yet
    assert fake_client.raw("creds_json") is not None
    assert fake_client.raw("creds_json.backup") is None

    status = supervisor.status()
    assert status["connected"] is True
    assert status["user"] == USER
    assert status["last_connected_at"] is not None
    assert status["attempts"] == 0


@pytest.mark.asyncio
async def test_start_is_idempotent(make_supervisor):
    factory = FakeSessionFactory([open_only])
    supervisor, _ = make_supervisor(factory)

    await supervisor.start()
    await supervisor.start()

    assert len(factory.sessions) == 1
    assert supervisor.generation == 1


@pytest.mark.asyncio
async def test_existing_creds_are_reused(make_supervisor, store, creds_factory):
    await store.write("creds.json", {
        "noiseKey": {"private": b"n"},
        "signedIdentityKey": {"private": b"s"},
        "signedPreKey": {"keyId": 1},
        "me": {"id": "existing"},
    })
    factory = FakeSessionFactory([open_only])
    supervisor, _ = make_supervisor(factory)

    await supervisor.start()

    assert creds_factory.calls == []
    assert factory.sessions[0].auth.account_id == "existing"


# =============================================================================
# Restart required / generation guard
# =============================================================================


@pytest.mark.asyncio
async def test_restart_required_starts_new_generation(make_supervisor, no_sleep):
    saved = {}

    async def first(cb):
        saved["callbacks"] = cb
        await cb.on_pairing("qr")
        await cb.on_close(515, "restart required")

    factory = FakeSessionFactory([first, open_only])
    supervisor, events = make_supervisor(factory)

    await supervisor.start()
    await settle(lambda: supervisor.state == ConnectionState.CONNECTED)

    assert supervisor.generation == 2
    assert supervisor.attempts == 0
    assert no_sleep.delays == [1.0]
    assert factory.sessions[0].closed is True
    assert factory.sessions[0].callbacks is None
    assert [e.kind for e in events] == ["pairingRequired", "disconnected", "connected"]

    # a late event from the superseded session is discarded
    await saved["callbacks"].on_close(428, "stale")
    assert supervisor.state == ConnectionState.CONNECTED
    assert supervisor.attempts == 0


# =============================================================================
# FATAL and reset
# =============================================================================


@pytest.mark.asyncio
async def test_logged_out_goes_fatal_after_five_retries(make_supervisor, no_sleep, fake_client):
    factory = FakeSessionFactory([close_with(401) for _ in range(6)])
    supervisor, events = make_supervisor(factory)

    await supervisor.start()
    await settle(lambda: supervisor.state == ConnectionState.FATAL)

    assert len(factory.sessions) == 6
    assert len(no_sleep.delays) == 5
    assert supervisor.status()["retry_pending"] is False
    assert supervisor.status()["fatal_reason"]

    # start is ignored while FATAL
    await supervisor.start()
    assert len(factory.sessions) == 6

    logged = [row["event_type"] for row in fake_client.tables["connection_logs"]]
    assert logged == ["disconnect"] * 6


@pytest.mark.asyncio
async def test_reset_clears_fatal_and_auth(make_supervisor, fake_client):
    factory = FakeSessionFactory([close_with(500) for _ in range(6)] + [pair_then_open()])
    supervisor, _ = make_supervisor(factory)

    await supervisor.start()
    await settle(lambda: supervisor.state == ConnectionState.FATAL)
    assert fake_client.auth

    assert await supervisor.reset() is True

    assert supervisor.state == ConnectionState.DISCONNECTED
    assert supervisor.attempts == 0
    assert supervisor.status()["fatal_reason"] is None
    assert fake_client.auth == {}

    await supervisor.start()
    assert supervisor.state == ConnectionState.CONNECTED


# =============================================================================
# Startup errors
# =============================================================================


@pytest.mark.asyncio
async def test_store_outage_at_startup_is_retried(make_supervisor, fake_client, no_sleep, creds_factory):
    fake_client.fail["select_one"] = 1
    factory = FakeSessionFactory([open_only])
    supervisor, _ = make_supervisor(factory)

    await supervisor.start()
    assert supervisor.state == ConnectionState.DISCONNECTED
    assert supervisor.attempts == 1

    await settle(lambda: supervisor.state == ConnectionState.CONNECTED)

    assert 5.0 <= no_sleep.delays[0] <= 6.0
    # no credentials were generated while the store was unreachable
    assert len(creds_factory.calls) == 1
    assert len(factory.sessions) == 1


# =============================================================================
# Credential updates and messages
# =============================================================================


@pytest.mark.asyncio
async def test_creds_update_is_persisted(make_supervisor, store):
    async def script(cb):
        await cb.on_pairing("qr")
        await cb.on_creds_update({"me": {"id": "paired-account"}})
        await cb.on_open(USER)

    supervisor, _ = make_supervisor(FakeSessionFactory([script]))

    await supervisor.start()

    saved = await store.read("creds.json")
    assert saved["me"] == {"id": "paired-account"}
    assert isinstance(saved["noiseKey"]["private"], bytes)


@pytest.mark.asyncio
async def test_messages_routed_to_handler(make_supervisor):
    received = []

    async def handler(upsert):
        received.append(upsert)

    async def script(cb):
        await cb.on_open(USER)
        await cb.on_messages({"type": "notify", "messages": []})

    supervisor, _ = make_supervisor(FakeSessionFactory([script]), on_messages=handler)

    await supervisor.start()

    assert received == [{"type": "notify", "messages": []}]


@pytest.mark.asyncio
async def test_connection_log_rows(make_supervisor, fake_client):
    supervisor, _ = make_supervisor(FakeSessionFactory([pair_then_open()]))

    await supervisor.start()

    rows = fake_client.tables["connection_logs"]
    assert [r["event_type"] for r in rows] == ["pairing_required", "connected"]
    assert rows[1]["status_code"] == 200
    assert rows[1]["reason"] == "Success"


@pytest.mark.asyncio
async def test_stop_tears_down_session(make_supervisor):
    factory = FakeSessionFactory([open_only])
    supervisor, _ = make_supervisor(factory)

    await supervisor.start()
    await supervisor.stop()

    assert supervisor.state == ConnectionState.DISCONNECTED
    assert factory.sessions[0].closed is True
    assert supervisor.session is None
