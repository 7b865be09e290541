"""Adapters package - delivery between the engine and connected clients.

This package contains the outbound event types, the channel abstraction
over a client socket, and the relay that buffers and replays events.
"""
from __future__ import annotations

__all__ = [
    "Channel",
    "EventRelay",
    "WebSocketChannel",
]

from sessionrelay.adapters.channel import Channel, WebSocketChannel
from sessionrelay.adapters.relay import EventRelay
