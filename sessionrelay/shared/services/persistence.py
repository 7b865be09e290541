"""Session store — in-memory map of session key → record, persisted to disk.

Storage layout:
    <data_dir>/sessions.json   (list of record snapshots)

Every mutation rewrites the whole file (write to temp, fsync, rename), so
the file always reflects the last successful save. Only durable fields
are written; running processes, buffers and channel bindings are
transient and come back empty after a restart.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections import deque
from pathlib import Path
from typing import Any, Iterator

from sessionrelay.shared.models.session import (
    DEFAULT_BUFFER_CAPACITY,
    DEFAULT_LABEL,
    HistoryEntry,
    SessionRecord,
)

logger = logging.getLogger(__name__)

# Anything past this is epoch milliseconds rather than seconds.
_MS_THRESHOLD = 1e11


def epoch_seconds(value: Any) -> float:
    """Coerce a stored timestamp (seconds or milliseconds) to seconds."""
    try:
        stamp = float(value)
    except (TypeError, ValueError):
        return time.time()
    if stamp <= 0:
        return time.time()
    return stamp / 1000 if stamp > _MS_THRESHOLD else stamp


def write_snapshot(path: Path, payload: Any) -> None:
    """Replace path with payload as JSON via temp file + fsync + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=path.parent,
        prefix=f".{path.name}.", suffix=".tmp", delete=False,
    ) as tmp:
        try:
            json.dump(payload, tmp, indent=2, ensure_ascii=False)
            tmp.flush()
            os.fsync(tmp.fileno())
        except BaseException:
            tmp.close()
            os.unlink(tmp.name)
            raise
    try:
        os.replace(tmp.name, path)
    except OSError:
        os.unlink(tmp.name)
        raise


class SessionStore:
    """Owns every SessionRecord for the lifetime of the server.

    Constructed once and injected into the driver, relay and gateway.
    All access happens on the event loop thread, so there is no locking.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        buffer_capacity: int = DEFAULT_BUFFER_CAPACITY,
        default_model: str = "claude-sonnet-4-6",
        default_effort: str = "high",
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._buffer_capacity = buffer_capacity
        self._default_model = default_model
        self._default_effort = default_effort
        self._records: dict[str, SessionRecord] = {}

    @property
    def path(self) -> Path | None:
        return self._path

    # ── Lookup ──

    def get(self, key: str) -> SessionRecord | None:
        return self._records.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)

    def keys(self) -> list[str]:
        return list(self._records)

    def records(self) -> Iterator[SessionRecord]:
        return iter(self._records.values())

    # ── Mutation ──

    def create_if_absent(self, key: str, label: str | None = None) -> SessionRecord:
        """Return the record for key, creating it on first reference."""
        record = self._records.get(key)
        if record is not None:
            return record
        record = SessionRecord(
            session_key=key,
            label=label or DEFAULT_LABEL,
            effort=self._default_effort,
            model=self._default_model,
            live_buffer=deque(maxlen=self._buffer_capacity),
        )
        self._records[key] = record
        logger.info("Created session %s (%s)", key, record.label)
        return record

    def delete(self, key: str) -> SessionRecord | None:
        record = self._records.pop(key, None)
        if record is not None:
            record.channel = None
            logger.info("Deleted session %s", key)
        return record

    # ── Snapshots ──

    def snapshot_all(self) -> list[dict[str, Any]]:
        return [record.to_snapshot() for record in self._records.values()]

    def restore(self, snapshots: list[dict[str, Any]]) -> int:
        """Rebuild records from snapshots. Transient fields start empty."""
        restored = 0
        for data in snapshots:
            if not isinstance(data, dict):
                continue
            key = data.get("sessionKey")
            if not key:
                logger.warning("Skipping snapshot without sessionKey: %r", data)
                continue
            history = [
                HistoryEntry.from_dict(item)
                for item in data.get("history") or []
                if isinstance(item, dict)
            ]
            self._records[key] = SessionRecord(
                session_key=key,
                label=data.get("label") or DEFAULT_LABEL,
                conversation_id=data.get("claudeSessionId"),
                history=history,
                effort=data.get("effort") or self._default_effort,
                model=data.get("model") or self._default_model,
                plan_mode=bool(data.get("planMode", False)),
                agent_name=data.get("agentName"),
                created_at=epoch_seconds(data.get("createdAt")),
                live_buffer=deque(maxlen=self._buffer_capacity),
            )
            restored += 1
        return restored

    # ── Disk ──

    def load(self) -> int:
        """Load the snapshot file if present. Errors are logged, not raised."""
        if self._path is None or not self._path.exists():
            return 0
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to load sessions from %s: %s", self._path, exc)
            return 0
        if not isinstance(data, list):
            logger.error("Ignoring %s: expected a list of sessions", self._path)
            return 0
        count = self.restore(data)
        logger.info("📂 Loaded %d saved sessions", count)
        return count

    def save(self) -> bool:
        """Write a full snapshot. Failures are logged and reported as False."""
        if self._path is None:
            return False
        try:
            write_snapshot(self._path, self.snapshot_all())
        except (OSError, TypeError, ValueError):
            logger.exception("Failed to save sessions to %s", self._path)
            return False
        logger.debug("Sessions saved to %s (%d)", self._path, len(self._records))
        return True
