"""
Transport layer.

A transport is one network connection to the messaging service. The wire
protocol lives behind it; the session manager only sees typed events and a
send method.
"""

from wasession.transport.base import EventCallback, TransportFactory, TransportSession
from wasession.transport.bridge import BridgeTransport

__all__ = ["BridgeTransport", "EventCallback", "TransportFactory", "TransportSession"]
