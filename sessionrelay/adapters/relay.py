"""Event relay: live delivery plus bounded replay per session.

Every published event lands in the session's live buffer; if a channel
is bound and open it is also sent straight away. When a client attaches
the buffer is replayed in order, followed by any terminal event that was
held back while nobody was listening. Once that held-back terminal has
been delivered the buffer is emptied, so later attaches do not replay a
finished cycle without its ending.
"""
from __future__ import annotations

import logging
from typing import Any

from sessionrelay.adapters.channel import Channel
from sessionrelay.adapters.events import RelayEvent, event_to_dict
from sessionrelay.shared.models.session import SessionRecord
from sessionrelay.shared.services.persistence import SessionStore

logger = logging.getLogger(__name__)


def _as_dict(event: RelayEvent | dict[str, Any]) -> dict[str, Any]:
    if isinstance(event, RelayEvent):
        return event_to_dict(event)
    return event


class EventRelay:
    def __init__(self, store: SessionStore) -> None:
        self._store = store

    def publish(self, session_key: str, event: RelayEvent | dict[str, Any]) -> bool:
        """Buffer an event and deliver it if a channel is bound.

        Returns True if it was handed to a channel.
        """
        record = self._store.get(session_key)
        payload = _as_dict(event)
        if record is None:
            logger.debug("publish: no session %s, dropping %s", session_key, payload.get("type"))
            return False
        record.live_buffer.append(payload)
        channel = record.channel
        if channel is None:
            return False
        return channel.send(payload)

    def complete(self, session_key: str, event: RelayEvent | dict[str, Any]) -> bool:
        """Deliver a terminal event, or hold it until the next attach.

        Attached: sent and buffered like any other event. Unattached: kept
        as the session's single deferred terminal (replacing any earlier
        one) and not buffered, so the next attach delivers it exactly once.
        """
        record = self._store.get(session_key)
        payload = _as_dict(event)
        if record is None:
            logger.debug("complete: no session %s, dropping terminal event", session_key)
            return False
        channel = record.channel
        if channel is not None:
            record.live_buffer.append(payload)
            if channel.send(payload):
                return True
            record.live_buffer.pop()
        if record.deferred_terminal is not None:
            logger.warning(
                "[%s] replacing undelivered terminal event %s", session_key,
                record.deferred_terminal,
            )
        record.deferred_terminal = payload
        logger.info("[%s] channel unavailable at completion — deferred done for reconnect", session_key)
        return False

    def attach(self, session_key: str, channel: Channel) -> int:
        """Bind channel to a session and replay what it missed.

        Returns the number of events handed to the channel.
        """
        record = self._store.get(session_key)
        if record is None:
            return 0
        record.channel = channel
        return self._replay(record, channel)

    def attach_all(self, channel: Channel) -> int:
        total = 0
        for record in list(self._store.records()):
            record.channel = channel
            total += self._replay(record, channel)
        return total

    def reset(self, session_key: str) -> None:
        """Start a new response cycle: drop buffered and deferred events."""
        record = self._store.get(session_key)
        if record is None:
            return
        record.live_buffer.clear()
        record.deferred_terminal = None

    def send_direct(self, channel: Channel | None, event: RelayEvent | dict[str, Any]) -> bool:
        """Send outside any session buffer (auth replies, listings)."""
        if channel is None or not channel.is_open:
            return False
        return channel.send(_as_dict(event))

    def _replay(self, record: SessionRecord, channel: Channel) -> int:
        sent = 0
        if record.live_buffer:
            logger.info(
                "  ↩ Replaying %d events for session %s",
                len(record.live_buffer), record.session_key,
            )
        for payload in list(record.live_buffer):
            if not channel.is_open or not channel.send(payload):
                logger.info("[%s] channel closed mid-replay after %d events", record.session_key, sent)
                return sent
            sent += 1
        if record.deferred_terminal is not None:
            if channel.is_open and channel.send(record.deferred_terminal):
                logger.info("  → Delivered queued done for %s", record.session_key)
                record.deferred_terminal = None
                # The cycle has been handed over in full.
                record.live_buffer.clear()
                sent += 1
        return sent
