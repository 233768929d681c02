"""
Tests for BridgeSessionClient against a local websockets server acting as the bridge.
"""

import asyncio
import json

import pytest
import websockets

from warelay.config.schema import BridgeConfig
from warelay.errors import TransientNetworkError
from warelay.session.bridge import BridgeSessionClient, bridge_creds_factory
from warelay.session.client import SessionCallbacks
from warelay.store import codec
from warelay.store.auth_state import SignalKeyStore, AuthState


class Recorder:
    """Collects session callbacks as (name, args) tuples."""

    def __init__(self):
        self.calls = []
        self.opened = asyncio.Event()
        self.closed = asyncio.Event()

    def callbacks(self) -> SessionCallbacks:
        async def on_pairing(challenge):
            self.calls.append(("pairing", challenge))

        async def on_open(user):
            self.calls.append(("open", user))
            self.opened.set()

        async def on_close(code, reason):
            self.calls.append(("close", int(code) if code is not None else None))
            self.closed.set()

        async def on_creds_update(update):
            self.calls.append(("creds", update))

        async def on_messages(upsert):
            self.calls.append(("messages", upsert))

        return SessionCallbacks(on_pairing, on_open, on_close, on_creds_update, on_messages)


async def start_bridge(handler):
    server = await websockets.serve(handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, f"ws://127.0.0.1:{port}"


@pytest.fixture
def auth(store):
    return AuthState(creds={"noiseKey": {"private": b"\x01\x02"}}, keys=SignalKeyStore(store), store=store)


@pytest.mark.asyncio
async def test_session_start_pairing_keys_and_send(auth, store):
    await store.write("session-peer.json", {"record": b"\x09"})
    received = []

    async def bridge(ws):
        received.append(json.loads(await ws.recv()))  # auth
        received.append(json.loads(await ws.recv()))  # session.start
        await ws.send(json.dumps({"type": "qr", "qr": "2@abc"}))
        await ws.send(json.dumps({"type": "creds.update", "update": {"me": {"id": "acct"}}}))
        await ws.send(json.dumps({"type": "keys.get", "requestId": "k1", "category": "session", "ids": ["peer", "nope"]}))
        received.append(json.loads(await ws.recv()))  # keys.result
        await ws.send(json.dumps({"type": "open", "user": {"id": "acct"}}))
        request = json.loads(await ws.recv())
        received.append(request)
        await ws.send(json.dumps({
            "type": "sent", "requestId": request["requestId"], "result": {"key": {"id": "M1"}},
        }))
        await ws.wait_closed()

    server, url = await start_bridge(bridge)
    recorder = Recorder()
    client = BridgeSessionClient(auth, recorder.callbacks(), BridgeConfig(url=url, token="secret"))
    try:
        await client.connect()
        await asyncio.wait_for(recorder.opened.wait(), timeout=5)
        sent = await client.send_message("123@s.whatsapp.net", {"text": "hi"})
    finally:
        await client.close()
        server.close()
        await server.wait_closed()

    assert received[0] == {"type": "auth", "token": "secret"}
    assert received[1]["type"] == "session.start"
    assert codec.loads(json.dumps(received[1]["creds"])) == {"noiseKey": {"private": b"\x01\x02"}}
    keys_result = received[2]
    assert keys_result["requestId"] == "k1"
    assert keys_result["data"]["nope"] is None
    assert keys_result["data"]["peer"]["record"] == {"type": "Buffer", "data": "CQ=="}
    assert received[3]["type"] == "send"
    assert sent == {"key": {"id": "M1"}}
    assert ("pairing", "2@abc") in recorder.calls
    assert ("creds", {"me": {"id": "acct"}}) in recorder.calls
    assert client.user == {"id": "acct"}
    # a locally initiated close is not reported as a disconnect
    assert not recorder.closed.is_set()


@pytest.mark.asyncio
async def test_dropped_bridge_reported_as_connection_closed(auth):
    async def bridge(ws):
        await ws.recv()
        await ws.close()

    server, url = await start_bridge(bridge)
    recorder = Recorder()
    client = BridgeSessionClient(auth, recorder.callbacks(), BridgeConfig(url=url))
    try:
        await client.connect()
        await asyncio.wait_for(recorder.closed.wait(), timeout=5)
    finally:
        await client.close()
        server.close()
        await server.wait_closed()

    assert recorder.calls == [("close", 428)]


@pytest.mark.asyncio
async def test_close_during_handshake_starts_no_session(auth):
    frames = []
    finished = asyncio.Event()

    async def bridge(ws):
        try:
            async for raw in ws:
                frames.append(json.loads(raw))
        finally:
            finished.set()

    server, url = await start_bridge(bridge)
    recorder = Recorder()
    client = BridgeSessionClient(auth, recorder.callbacks(), BridgeConfig(url=url))
    try:
        connecting = asyncio.create_task(client.connect())
        await asyncio.sleep(0)
        await client.close()
        await connecting
        # the bridge sees its connection closed without any session frames
        await asyncio.wait_for(finished.wait(), timeout=5)
    finally:
        server.close()
        await server.wait_closed()

    assert frames == []
    assert client._ws is None
    assert client._reader is None
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_unreachable_bridge_is_transient(auth):
    client = BridgeSessionClient(auth, Recorder().callbacks(), BridgeConfig(url="ws://127.0.0.1:9"))

    with pytest.raises(TransientNetworkError):
        await client.connect()


@pytest.mark.asyncio
async def test_creds_factory_revives_binary_fields():
    async def bridge(ws):
        request = json.loads(await ws.recv())
        assert request == {"type": "creds.init"}
        await ws.send(json.dumps({
            "type": "creds",
            "creds": {"noiseKey": {"private": {"type": "Buffer", "data": "AQI="}}, "registrationId": 7},
        }))

    server, url = await start_bridge(bridge)
    try:
        creds = await bridge_creds_factory(BridgeConfig(url=url))()
    finally:
        server.close()
        await server.wait_closed()

    assert creds == {"noiseKey": {"private": b"\x01\x02"}, "registrationId": 7}
