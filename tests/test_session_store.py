import json
import logging
import time
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

from sessionrelay.shared.models.session import HistoryRole, Job
from sessionrelay.shared.services.persistence import SessionStore


def test_create_if_absent_returns_existing_record() -> None:
    store = SessionStore()
    first = store.create_if_absent("a", "Work")
    second = store.create_if_absent("a", "Other")
    assert first is second
    assert second.label == "Work"
    assert store.keys() == ["a"]


def test_new_record_uses_store_defaults() -> None:
    store = SessionStore(default_model="claude-opus-4-6", default_effort="low", buffer_capacity=7)
    record = store.create_if_absent("a")
    assert record.label == "Session"
    assert record.model == "claude-opus-4-6"
    assert record.effort == "low"
    assert record.live_buffer.maxlen == 7


def test_save_and_load_round_trip_durable_fields_only() -> None:
    with TemporaryDirectory() as tmp:
        path = Path(tmp) / "sessions.json"
        store = SessionStore(path)
        record = store.create_if_absent("k1", "Research")
        record.conversation_id = "conv-9"
        record.plan_mode = True
        record.agent_name = "reviewer"
        record.add_history(HistoryRole.USER, "hi")
        record.add_history(HistoryRole.ASSISTANT, "hello")
        record.live_buffer.append({"type": "token", "text": "hello"})
        record.deferred_terminal = {"type": "done"}
        record.job = Job()
        assert store.save()

        on_disk = json.loads(path.read_text(encoding="utf-8"))
        assert on_disk[0]["claudeSessionId"] == "conv-9"
        assert on_disk[0]["history"] == [
            {"role": "user", "text": "hi"},
            {"role": "claude", "text": "hello"},
        ]
        assert "liveBuffer" not in on_disk[0]

        reloaded = SessionStore(path)
        assert reloaded.load() == 1
        restored = reloaded.get("k1")
        assert restored.label == "Research"
        assert restored.conversation_id == "conv-9"
        assert restored.plan_mode is True
        assert restored.agent_name == "reviewer"
        assert [e.text for e in restored.history] == ["hi", "hello"]
        assert restored.job is None
        assert len(restored.live_buffer) == 0
        assert restored.deferred_terminal is None
        assert restored.channel is None


def test_load_tolerates_missing_and_corrupt_files() -> None:
    with TemporaryDirectory() as tmp:
        path = Path(tmp) / "sessions.json"
        store = SessionStore(path)
        assert store.load() == 0

        path.write_text("{not json", encoding="utf-8")
        assert store.load() == 0
        assert len(store) == 0


def test_restore_skips_entries_without_key() -> None:
    store = SessionStore()
    count = store.restore([{"label": "orphan"}, {"sessionKey": "ok"}, "junk"])
    assert count == 1
    assert "ok" in store


def test_delete_removes_record() -> None:
    store = SessionStore()
    store.create_if_absent("gone")
    assert store.delete("gone") is not None
    assert store.get("gone") is None
    assert store.delete("gone") is None


def test_save_without_path_is_a_no_op() -> None:
    store = SessionStore()
    store.create_if_absent("x")
    assert store.save() is False


def test_failed_save_is_logged_and_keeps_records(caplog: pytest.LogCaptureFixture) -> None:
    with TemporaryDirectory() as tmp:
        path = Path(tmp) / "sessions.json"
        path.mkdir()
        store = SessionStore(path)
        store.create_if_absent("keep", "Work")

        with caplog.at_level(logging.ERROR, logger="sessionrelay.shared.services.persistence"):
            assert store.save() is False

        assert "Failed to save sessions" in caplog.text
        assert [p.name for p in Path(tmp).iterdir()] == ["sessions.json"]
        assert path.is_dir()
        assert store.get("keep").label == "Work"


def test_restore_normalises_millisecond_timestamps() -> None:
    store = SessionStore()
    store.restore([
        {"sessionKey": "ms", "createdAt": 1_700_000_000_000},
        {"sessionKey": "s", "createdAt": 1_700_000_000.5},
        {"sessionKey": "bad", "createdAt": "yesterday"},
    ])
    assert store.get("ms").created_at == 1_700_000_000.0
    assert store.get("s").created_at == 1_700_000_000.5
    assert abs(store.get("bad").created_at - time.time()) < 60
