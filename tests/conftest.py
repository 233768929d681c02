"""
Shared pytest fixtures for warelay tests.

This module provides:
- FakeStoreClient: in-memory stand-in for RestStoreClient with failure injection
- FakeSession / FakeSessionFactory: scripted SessionClient doubles
- no_sleep: an awaitable sleep replacement that records delays
"""

import asyncio
from typing import Any, Awaitable, Callable

import pytest

from warelay.errors import TransientNetworkError
from warelay.session.client import SessionCallbacks, SessionClient
from warelay.store.auth_state import AuthState
from warelay.store.credentials import CredentialStore


# =============================================================================
# Remote store double
# =============================================================================


class FakeStoreClient:
    """
    In-memory PostgREST double.

    auth_data rows are keyed by (session_id, file_name); other tables are
    append-only lists. Set ``fail[op] = n`` to make the next n calls of that
    operation raise TransientNetworkError.
    """

    def __init__(self):
        self.auth: dict[tuple[str, str], dict[str, Any]] = {}
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.fail: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []

    def _maybe_fail(self, op: str) -> None:
        self.calls.append((op, ""))
        if self.fail.get(op, 0) > 0:
            self.fail[op] -= 1
            raise TransientNetworkError(f"injected {op} failure")

    @staticmethod
    def _matches(row: dict[str, Any], eq: dict[str, Any] | None) -> bool:
        return all(row.get(k) == v for k, v in (eq or {}).items())

    def _rows(self, table: str) -> list[dict[str, Any]]:
        if table == "auth_data":
            return list(self.auth.values())
        return self.tables.setdefault(table, [])

    async def select_one(self, table, eq, columns="*"):
        self._maybe_fail("select_one")
        for row in self._rows(table):
            if self._matches(row, eq):
                return dict(row)
        return None

    async def select(self, table, eq=None, columns="*", limit=None):
        self._maybe_fail("select")
        rows = [dict(r) for r in self._rows(table) if self._matches(r, eq)]
        return rows[:limit] if limit is not None else rows

    async def insert(self, table, rows):
        self._maybe_fail("insert")
        body = rows if isinstance(rows, list) else [rows]
        self.tables.setdefault(table, []).extend(dict(r) for r in body)
        return body

    async def upsert(self, table, rows, on_conflict=None):
        self._maybe_fail("upsert")
        body = rows if isinstance(rows, list) else [rows]
        for row in body:
            self.auth[(row["session_id"], row["file_name"])] = dict(row)
        return body

    async def delete(self, table, eq):
        self._maybe_fail("delete")
        if table == "auth_data":
            for key in [k for k, row in self.auth.items() if self._matches(row, eq)]:
                del self.auth[key]
        else:
            self.tables[table] = [r for r in self.tables.get(table, []) if not self._matches(r, eq)]

    async def close(self):
        pass

    # helpers for assertions ------------------------------------------------

    def raw(self, file_name: str, session_id: str = "test") -> str | None:
        row = self.auth.get((session_id, file_name))
        return row["file_data"] if row else None

    def put_raw(self, file_name: str, data: str, session_id: str = "test") -> None:
        self.auth[(session_id, file_name)] = {
            "session_id": session_id,
            "file_name": file_name,
            "file_data": data,
        }


# =============================================================================
# Session doubles
# =============================================================================


Script = Callable[[SessionCallbacks], Awaitable[None]]


class FakeSession(SessionClient):
    """SessionClient double driven by an optional connect script."""

    def __init__(self, auth: AuthState, callbacks: SessionCallbacks, script: Script | None = None):
        super().__init__(auth, callbacks)
        self.script = script
        self.closed = False
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.read_keys: list[dict[str, Any]] = []
        self.presences: list[str] = []
        self.media: bytes = b"media-bytes"

    async def connect(self) -> None:
        if self.script is not None:
            await self.script(self.callbacks)

    async def close(self) -> None:
        self.closed = True

    async def send_message(self, jid, content):
        self.sent.append((jid, content))
        return {"key": {"id": f"SENT{len(self.sent)}", "remoteJid": jid}}

    async def read_messages(self, keys):
        self.read_keys.extend(keys)

    async def send_presence(self, presence):
        self.presences.append(presence)

    async def download_media(self, message):
        return self.media


class FakeSessionFactory:
    """Creates one FakeSession per connection attempt, consuming scripts in order."""

    def __init__(self, scripts: list[Script | None] | None = None):
        self.scripts = list(scripts or [])
        self.sessions: list[FakeSession] = []

    def __call__(self, auth: AuthState, callbacks: SessionCallbacks) -> FakeSession:
        script = self.scripts.pop(0) if self.scripts else None
        session = FakeSession(auth, callbacks, script)
        self.sessions.append(session)
        return session


# =============================================================================
# Fixtures
# =============================================================================


class RecordingSleep:
    """Awaitable sleep replacement that records requested delays and yields once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


FRESH_CREDS = {
    "noiseKey": {"private": b"\x01" * 32, "public": b"\x02" * 32},
    "signedIdentityKey": {"private": b"\x03" * 32, "public": b"\x04" * 32},
    "signedPreKey": {"keyId": 1, "keyPair": {"private": b"\x05" * 32, "public": b"\x06" * 32}},
    "advSecretKey": "c2VjcmV0",
    "registrationId": 1234,
}


@pytest.fixture
def fake_client():
    return FakeStoreClient()


@pytest.fixture
def no_sleep():
    return RecordingSleep()


@pytest.fixture
def store(fake_client, no_sleep):
    return CredentialStore(fake_client, "test", sleep=no_sleep)


@pytest.fixture
def creds_factory():
    calls = []

    async def factory():
        calls.append(1)
        return {k: (dict(v) if isinstance(v, dict) else v) for k, v in FRESH_CREDS.items()}

    factory.calls = calls
    return factory
