"""Duplex channel to a connected client.

``send`` is synchronous: events go onto a bounded outbound queue that a
writer task drains onto the socket. Everything that publishes therefore
runs without awaiting, and per-session ordering is simply call order.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from aiohttp import WSCloseCode, web

logger = logging.getLogger(__name__)


class Channel:
    """Minimal channel interface used by the relay."""

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    def send(self, event: dict[str, Any]) -> bool:
        """Queue one event. Returns False if it could not be accepted."""
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class WebSocketChannel(Channel):
    """Channel backed by an aiohttp WebSocketResponse."""

    def __init__(self, ws: web.WebSocketResponse, maxsize: int = 5000, label: str = "") -> None:
        self._ws = ws
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._writer: asyncio.Task | None = None
        self.label = label

    @property
    def is_open(self) -> bool:
        return not self._closed and not self._ws.closed

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    def send(self, event: dict[str, Any]) -> bool:
        if not self.is_open:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Channel %s queue full at %s event, closing", self.label, event.get("type")
            )
            self._abort()
            return False
        return True

    def close(self) -> None:
        self._closed = True
        if self._writer is not None:
            self._writer.cancel()
            self._writer = None

    def _abort(self) -> None:
        # A client that missed an event must reconnect and replay the buffer.
        self.close()
        if not self._ws.closed:
            asyncio.ensure_future(
                self._ws.close(code=WSCloseCode.TRY_AGAIN_LATER, message=b"backlog")
            )

    async def _write_loop(self) -> None:
        try:
            while True:
                event = await self._queue.get()
                if self._ws.closed:
                    break
                await self._ws.send_str(json.dumps(event))
        except asyncio.CancelledError:
            pass
        except ConnectionResetError:
            logger.info("Channel %s reset by peer", self.label)
        except Exception:
            logger.exception("Channel %s writer failed", self.label)
        finally:
            self._closed = True
