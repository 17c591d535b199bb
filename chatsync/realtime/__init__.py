"""
Realtime Package

This package contains the client side of the realtime relay link.

Modules:
- events: JSON wire protocol (tagged union of event frames)
- transport: TransportSession connection lifecycle, reconnect and dispatch
- typing_tracker: TypingTracker throttled announces and auto-expiring remote typers
"""

from .events import EventType, encode_event, parse_event
from .transport import ConnectionState, TransportSession
from .typing_tracker import TypingTracker

__all__ = [
    "EventType",
    "encode_event",
    "parse_event",
    "ConnectionState",
    "TransportSession",
    "TypingTracker",
]
