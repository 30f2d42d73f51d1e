"""
Pydantic models for the session system.

Covers:
- Session status and terminal reasons
- Credential material and incremental updates
- Typed transport events (credential update, QR, connection state, messages)
- Normalized inbound/outbound message shapes
"""

from enum import Enum, IntEnum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


# ─── Session state ───────────────────────────────────────────────────


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class TerminalReason(str, Enum):
    """Why automatic reconnection stopped."""

    LOGGED_OUT = "logged_out"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"


class DisconnectReason(IntEnum):
    """Close codes reported by the messaging service."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    TIMED_OUT = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


class ClientIdentity(BaseModel):
    """Browser profile the client announces to the service."""

    platform: str = "Ubuntu"
    browser: str = "Chrome"
    version: str = "22.04.4"

    def as_tuple(self) -> tuple[str, str, str]:
        return (self.platform, self.browser, self.version)


# ─── Credentials ─────────────────────────────────────────────────────


def _deep_merge(base: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class CredentialUpdate(BaseModel):
    """
    Incremental credential change emitted by the transport.

    ``creds`` is deep-merged into the identity material. ``keys`` maps a key
    category (e.g. "pre-key", "session") to entries; an entry whose value is
    None is deleted.
    """

    creds: dict[str, Any] = Field(default_factory=dict)
    keys: dict[str, dict[str, Any]] = Field(default_factory=dict)


class Credentials(BaseModel):
    """Durable authentication state for one session."""

    creds: dict[str, Any] = Field(default_factory=dict)
    keys: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @classmethod
    def empty(cls) -> "Credentials":
        """Fresh first-run state; the transport will ask for QR pairing."""
        return cls(creds={"registered": False})

    @property
    def registered(self) -> bool:
        return bool(self.creds.get("registered"))

    def apply(self, update: CredentialUpdate) -> "Credentials":
        """Return a copy with the update applied."""
        keys = {category: dict(entries) for category, entries in self.keys.items()}
        for category, entries in update.keys.items():
            bucket = keys.setdefault(category, {})
            for key_id, value in entries.items():
                if value is None:
                    bucket.pop(key_id, None)
                else:
                    bucket[key_id] = value
        return Credentials(creds=_deep_merge(self.creds, update.creds), keys=keys)


# ─── Transport events ────────────────────────────────────────────────


class QrChallenge(BaseModel):
    """One-time pairing payload to show to the user."""

    payload: str


class ConnectionState(str, Enum):
    OPEN = "open"
    CONNECTING = "connecting"
    CLOSE = "close"


class ConnectionStateChange(BaseModel):
    """Transport reports a lifecycle transition."""

    state: ConnectionState
    close_reason: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_logged_out(self) -> bool:
        return (
            self.state == ConnectionState.CLOSE
            and self.close_reason == DisconnectReason.LOGGED_OUT
        )


class MessageBatch(BaseModel):
    """Raw inbound messages, as delivered by the protocol."""

    messages: list[dict[str, Any]] = Field(default_factory=list)
    kind: str = "notify"


TransportEvent = Union[CredentialUpdate, QrChallenge, ConnectionStateChange, MessageBatch]


# ─── Messages ────────────────────────────────────────────────────────


class InboundMessage(BaseModel):
    """Normalized inbound message handed to application callbacks."""

    sender: str
    text: str
    is_from_self: bool = False
    message_id: Optional[str] = None
    push_name: Optional[str] = None


class OutboundRequest(BaseModel):
    """A text message addressed to a canonical recipient."""

    recipient: str
    text: str

    def content(self) -> dict[str, Any]:
        return {"text": self.text}


# ─── Transport construction ──────────────────────────────────────────


class TransportOptions(BaseModel):
    """Everything a transport needs to open one connection."""

    credentials: Credentials
    connect_timeout_ms: int = 30_000
    query_timeout_ms: int = 60_000
    keep_alive_interval_ms: int = 10_000
    client_identity: ClientIdentity = Field(default_factory=ClientIdentity)
