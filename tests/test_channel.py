import asyncio

import pytest

from sessionrelay.adapters.channel import WebSocketChannel
from sessionrelay.adapters.events import Done, Token
from sessionrelay.adapters.relay import EventRelay
from sessionrelay.shared.services.persistence import SessionStore


class _FakeSocket:
    def __init__(self) -> None:
        self.closed = False
        self.close_code: int | None = None
        self.sent: list[str] = []

    async def send_str(self, data: str) -> None:
        self.sent.append(data)

    async def close(self, *, code: int = 1000, message: bytes = b"") -> bool:
        self.closed = True
        self.close_code = code
        return True


@pytest.mark.asyncio
async def test_full_queue_closes_channel_instead_of_skipping_events() -> None:
    ws = _FakeSocket()
    channel = WebSocketChannel(ws, maxsize=2, label="slow")

    assert channel.send({"type": "token", "text": "a"})
    assert channel.send({"type": "token", "text": "b"})
    assert channel.send({"type": "token", "text": "c"}) is False
    assert channel.is_open is False
    assert channel.send({"type": "token", "text": "d"}) is False

    await asyncio.sleep(0)
    assert ws.closed
    assert ws.close_code == 1013


@pytest.mark.asyncio
async def test_overflowed_session_is_recovered_by_replay() -> None:
    store = SessionStore()
    store.create_if_absent("s")
    relay = EventRelay(store)
    channel = WebSocketChannel(_FakeSocket(), maxsize=1)
    relay.attach("s", channel)

    relay.publish("s", Token(session_key="s", text="a"))
    relay.publish("s", Token(session_key="s", text="b"))
    relay.complete("s", Done(session_key="s", subtype="success"))
    assert store.get("s").deferred_terminal is not None

    ws = _FakeSocket()
    fresh = WebSocketChannel(ws)
    fresh.start()
    assert relay.attach("s", fresh) == 3
    await asyncio.sleep(0.05)
    fresh.close()
    assert [line.count('"type": "token"') for line in ws.sent] == [1, 1, 0]
    assert '"subtype": "success"' in ws.sent[-1]
