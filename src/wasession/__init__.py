"""
wasession: persistent WhatsApp-style client session manager.

Keeps one authenticated transport alive, reconnects with bounded linear
backoff, persists rotating credentials, and exposes a small send/receive
surface to application code.
"""

from wasession.config import SessionConfig
from wasession.connection import ConnectionManager
from wasession.credentials import CredentialStore, FileCredentialStore
from wasession.dispatcher import MessageDispatcher, format_recipient
from wasession.exceptions import (
    CredentialStoreError,
    InitializationError,
    NotConnectedError,
    SendError,
    SessionError,
    TerminalLogout,
)
from wasession.models import ConnectionStatus, InboundMessage

__all__ = [
    "ConnectionManager",
    "ConnectionStatus",
    "CredentialStore",
    "CredentialStoreError",
    "FileCredentialStore",
    "InboundMessage",
    "InitializationError",
    "MessageDispatcher",
    "NotConnectedError",
    "SendError",
    "SessionConfig",
    "SessionError",
    "TerminalLogout",
    "format_recipient",
]
