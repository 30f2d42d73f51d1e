"""
Exception hierarchy for wasession.

Transport and storage failures surface to the caller of the operation that
triggered them. Connection drops are handled by the reconnect policy and are
never raised, except as ``TerminalLogout`` when sending on a deauthorized
session.
"""

from typing import Optional


class SessionError(Exception):
    """Base class for all wasession errors."""

    def __init__(self, message: str = "An unspecified session error occurred."):
        super().__init__(message)


class InitializationError(SessionError):
    """Raised when credentials cannot be loaded or the transport cannot be built."""

    def __init__(self, message: str = "Failed to initialize the session."):
        super().__init__(message)


class NotConnectedError(SessionError):
    """Raised when a send is attempted while the session is not connected."""

    def __init__(self, message: str = "Client is not connected."):
        super().__init__(message)


class TerminalLogout(NotConnectedError):
    """
    The server deauthorized this device.

    Reconnection stops for good; a fresh QR pairing is needed on the next
    ``initialize()``.
    """

    def __init__(
        self,
        status_code: Optional[int] = None,
        message: str = "Device was logged out. Scan a new QR code to pair again.",
    ):
        self.status_code = status_code
        super().__init__(message)


class SendError(SessionError):
    """Raised when the transport rejects an outbound message."""

    def __init__(self, recipient: str = "unknown", message: str = "Send failed."):
        self.recipient = recipient
        super().__init__(f"Failed to send message to '{recipient}': {message}")


class CredentialStoreError(SessionError):
    """Raised when credential material cannot be read or written."""

    def __init__(self, session_id: str = "unknown", message: str = "Storage error."):
        self.session_id = session_id
        super().__init__(f"Credential store error for session '{session_id}': {message}")
