"""
Base class for transport sessions.

Each transport implements this ABC and the ConnectionManager drives it,
mirroring how channel drivers plug into a manager.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from wasession.models import TransportEvent, TransportOptions

EventCallback = Callable[[TransportEvent], Awaitable[None]]


class TransportSession(ABC):
    """
    One connection to the messaging service.

    Lifecycle events, credential updates, QR challenges and inbound message
    batches are pushed to the registered callback in the order they occur.
    """

    def __init__(self, options: TransportOptions):
        self.options = options
        self._callback: Optional[EventCallback] = None

    def set_callback(self, callback: EventCallback) -> None:
        """Register the single consumer of this transport's events."""
        self._callback = callback

    async def _emit(self, event: TransportEvent) -> None:
        if self._callback:
            await self._callback(event)

    @abstractmethod
    async def connect(self) -> None:
        """
        Start connecting.

        Must return once the connection attempt is under way; the outcome is
        reported later as a ConnectionStateChange event.
        """
        pass

    @abstractmethod
    async def send(self, address: str, content: dict[str, Any]) -> Any:
        """
        Send a message to a canonical address.

        Returns:
            The service's receipt for the message.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Tear down the connection. Safe to call more than once."""
        pass

    async def logout(self) -> None:
        """Deauthorize this device on the service, then close."""
        await self.close()


TransportFactory = Callable[[TransportOptions], TransportSession]
