"""Session relay: drive claude CLI sessions remotely over a WebSocket."""

__version__ = "0.1.0"
