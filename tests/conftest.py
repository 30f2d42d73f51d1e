"""Shared pytest fixtures and test doubles."""

import asyncio
import os
from unittest.mock import patch

import pytest
import pytest_asyncio

from wasession.config import SessionConfig
from wasession.connection import ConnectionManager
from wasession.credentials import CredentialStore
from wasession.exceptions import CredentialStoreError
from wasession.models import (
    ConnectionState,
    ConnectionStateChange,
    CredentialUpdate,
    Credentials,
)
from wasession.transport.base import TransportSession


class FakeTransport(TransportSession):
    """In-memory transport that records calls and lets tests emit events."""

    def __init__(self, options, fail_connect=False, open_on_connect=False):
        super().__init__(options)
        self.fail_connect = fail_connect
        self.open_on_connect = open_on_connect
        self.connected = False
        self.closed = False
        self.logged_out = False
        self.sent = []
        self.send_result = {"key": {"id": "3EB0C767D71D"}, "status": 1}
        self.send_error = None

    async def connect(self):
        if self.fail_connect:
            raise OSError("connection refused")
        if self.open_on_connect:
            # Report open before the handshake finishes.
            await self.emit(ConnectionStateChange(state=ConnectionState.OPEN))
            await asyncio.sleep(0.01)
        self.connected = True

    async def send(self, address, content):
        if self.send_error:
            raise self.send_error
        self.sent.append((address, content))
        return self.send_result

    async def close(self):
        self.closed = True

    async def logout(self):
        self.logged_out = True
        await self.close()

    async def emit(self, event):
        await self._emit(event)


class TransportRecorder:
    """Transport factory that keeps every transport it builds."""

    def __init__(self):
        self.created: list[FakeTransport] = []
        self.fail_after = None
        self.fail_connect = False
        self.open_on_connect = False

    def __call__(self, options):
        if self.fail_after is not None and len(self.created) >= self.fail_after:
            raise RuntimeError("transport construction failed")
        transport = FakeTransport(
            options,
            fail_connect=self.fail_connect,
            open_on_connect=self.open_on_connect,
        )
        self.created.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.created[-1]


class MemoryCredentialStore(CredentialStore):
    """Credential store backed by a dict."""

    def __init__(self):
        self.data: dict[str, Credentials] = {}
        self.saved: list[CredentialUpdate] = []
        self.fail_load = False
        self.fail_save = False

    async def load(self, session_id):
        if self.fail_load:
            raise CredentialStoreError(session_id, "disk unavailable")
        return self.data.get(session_id, Credentials.empty())

    async def save(self, session_id, update):
        if self.fail_save:
            raise CredentialStoreError(session_id, "disk full")
        current = self.data.get(session_id, Credentials.empty())
        self.data[session_id] = current.apply(update)
        self.saved.append(update)

    async def exists(self, session_id):
        return session_id in self.data


@pytest.fixture(autouse=True)
def _restore_environ():
    """Undo environment changes (e.g. from load_dotenv) after each test."""
    with patch.dict(os.environ):
        yield


@pytest.fixture
def session_config(tmp_path):
    """Config with a long backoff so scheduled reconnects never fire."""
    return SessionConfig(
        session_id="test-session",
        auth_dir=tmp_path / "auth",
        base_reconnect_delay=5.0,
        max_reconnect_attempts=5,
    )


@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def transports():
    return TransportRecorder()


@pytest_asyncio.fixture
async def manager(store, transports, session_config):
    mgr = ConnectionManager(store, transports, config=session_config)
    yield mgr
    await mgr.close()
