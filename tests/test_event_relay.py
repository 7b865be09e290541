from typing import Any

from sessionrelay.adapters.channel import Channel
from sessionrelay.adapters.events import Done, Token, event_to_dict
from sessionrelay.adapters.relay import EventRelay
from sessionrelay.shared.services.persistence import SessionStore


class _FakeChannel(Channel):
    def __init__(self, close_after: int | None = None) -> None:
        self.events: list[dict[str, Any]] = []
        self.open = True
        self._close_after = close_after

    @property
    def is_open(self) -> bool:
        return self.open

    def send(self, event: dict[str, Any]) -> bool:
        if not self.open:
            return False
        self.events.append(event)
        if self._close_after is not None and len(self.events) >= self._close_after:
            self.open = False
        return True

    def close(self) -> None:
        self.open = False


def _types(events: list[dict[str, Any]]) -> list[str]:
    return [e["type"] for e in events]


def _setup(capacity: int = 500) -> tuple[SessionStore, EventRelay]:
    store = SessionStore(buffer_capacity=capacity)
    store.create_if_absent("s")
    return store, EventRelay(store)


def test_live_buffer_keeps_most_recent_events() -> None:
    store, relay = _setup(capacity=3)
    for i in range(5):
        relay.publish("s", Token(session_key="s", text=str(i)))
    assert [e["text"] for e in store.get("s").live_buffer] == ["2", "3", "4"]


def test_replay_then_live_preserves_order() -> None:
    _, relay = _setup()
    relay.publish("s", Token(session_key="s", text="a"))
    relay.publish("s", Token(session_key="s", text="b"))

    channel = _FakeChannel()
    assert relay.attach("s", channel) == 2
    relay.publish("s", Token(session_key="s", text="c"))

    assert [e["text"] for e in channel.events] == ["a", "b", "c"]


def test_deferred_terminal_delivered_exactly_once() -> None:
    store, relay = _setup()
    relay.publish("s", Token(session_key="s", text="partial"))
    assert relay.complete("s", Done(session_key="s", subtype="success")) is False
    assert store.get("s").deferred_terminal is not None
    assert len(store.get("s").live_buffer) == 1

    first = _FakeChannel()
    relay.attach("s", first)
    assert _types(first.events) == ["token", "done"]
    assert store.get("s").deferred_terminal is None

    assert len(store.get("s").live_buffer) == 0

    second = _FakeChannel()
    relay.attach("s", second)
    assert second.events == []


def test_second_deferred_terminal_replaces_first() -> None:
    _, relay = _setup()
    relay.complete("s", Done(session_key="s", subtype="cancelled"))
    relay.complete("s", Done(session_key="s", subtype="success"))

    channel = _FakeChannel()
    relay.attach("s", channel)
    dones = [e for e in channel.events if e["type"] == "done"]
    assert dones == [{"type": "done", "sessionKey": "s", "subtype": "success"}]


def test_terminal_while_attached_is_sent_and_buffered() -> None:
    store, relay = _setup()
    channel = _FakeChannel()
    relay.attach("s", channel)
    assert relay.complete("s", Done(session_key="s", subtype="success"))
    assert _types(channel.events) == ["done"]
    assert store.get("s").deferred_terminal is None
    assert _types(list(store.get("s").live_buffer)) == ["done"]


def test_closed_channel_counts_as_unattached() -> None:
    store, relay = _setup()
    channel = _FakeChannel()
    relay.attach("s", channel)
    channel.close()

    assert relay.publish("s", Token(session_key="s", text="x")) is False
    relay.complete("s", Done(session_key="s", subtype="success"))
    assert channel.events == []
    assert store.get("s").deferred_terminal["subtype"] == "success"


def test_channel_closing_mid_replay_keeps_deferred_terminal() -> None:
    store, relay = _setup()
    for text in "abc":
        relay.publish("s", Token(session_key="s", text=text))
    relay.complete("s", Done(session_key="s", subtype="success"))

    flaky = _FakeChannel(close_after=2)
    assert relay.attach("s", flaky) == 2
    assert store.get("s").deferred_terminal is not None

    steady = _FakeChannel()
    relay.attach("s", steady)
    assert _types(steady.events) == ["token", "token", "token", "done"]


def test_reset_starts_a_new_cycle() -> None:
    store, relay = _setup()
    relay.publish("s", Token(session_key="s", text="old"))
    relay.complete("s", Done(session_key="s"))
    relay.reset("s")
    assert len(store.get("s").live_buffer) == 0
    assert store.get("s").deferred_terminal is None


def test_attach_all_binds_every_session() -> None:
    store, relay = _setup()
    store.create_if_absent("t")
    relay.publish("t", Token(session_key="t", text="from t"))

    channel = _FakeChannel()
    relay.attach_all(channel)
    relay.publish("s", Token(session_key="s", text="from s"))
    assert [e["sessionKey"] for e in channel.events] == ["t", "s"]


def test_publish_to_unknown_session_is_dropped() -> None:
    _, relay = _setup()
    assert relay.publish("nope", Token(session_key="nope", text="x")) is False


def test_event_to_dict_uses_wire_names_and_omits_unset_fields() -> None:
    assert event_to_dict(Done(session_key="s", subtype="cancelled")) == {
        "type": "done", "sessionKey": "s", "subtype": "cancelled",
    }
    assert event_to_dict(Done(session_key="s", subtype="error", error=True, code=2)) == {
        "type": "done", "sessionKey": "s", "subtype": "error", "error": True, "code": 2,
    }
