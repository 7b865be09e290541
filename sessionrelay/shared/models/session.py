"""Session state — one logical conversation and its running job."""

from __future__ import annotations

import asyncio
import time
import weakref
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sessionrelay.engine.decoder import LineDecoder

if TYPE_CHECKING:
    from sessionrelay.adapters.channel import Channel
    from sessionrelay.engine.plan_gate import PlanGate

DEFAULT_LABEL = "Session"
DEFAULT_BUFFER_CAPACITY = 500


class HistoryRole(Enum):
    USER = "user"
    ASSISTANT = "claude"


class JobState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PLAN_WAITING = "plan_waiting"
    DONE = "done"
    CANCELLED = "cancelled"
    KILLED = "killed"


@dataclass
class HistoryEntry:
    role: HistoryRole
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "text": self.text}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        try:
            role = HistoryRole(data.get("role", "user"))
        except ValueError:
            role = HistoryRole.ASSISTANT
        return cls(role=role, text=str(data.get("text", "")))


@dataclass
class Attachment:
    path: Path
    name: str


@dataclass
class Job:
    """Per-job accumulator for one child process.

    Everything the decode loop learns about the current run lives here
    and is handed to the completion step, so nothing is captured in
    closures over the session.
    """

    process: asyncio.subprocess.Process | None = None
    plan_mode: bool = False
    response_text: str = ""
    subtype: str | None = None
    state: JobState = JobState.RUNNING
    gate: PlanGate | None = field(default=None, repr=False)
    tasks: list[asyncio.Task] = field(default_factory=list, repr=False)
    finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None


def _new_buffer(capacity: int = DEFAULT_BUFFER_CAPACITY) -> deque:
    return deque(maxlen=capacity)


@dataclass
class SessionRecord:
    """Durable state of one session plus its transient runtime fields."""

    session_key: str
    label: str = DEFAULT_LABEL
    conversation_id: str | None = None
    history: list[HistoryEntry] = field(default_factory=list)
    effort: str = "high"
    model: str = "claude-sonnet-4-6"
    plan_mode: bool = False
    agent_name: str | None = None
    created_at: float = field(default_factory=time.time)

    # Transient: never persisted, reset on restore.
    job: Job | None = field(default=None, repr=False)
    decoder: LineDecoder = field(default_factory=LineDecoder, repr=False)
    attachments: list[Attachment] = field(default_factory=list, repr=False)
    live_buffer: deque = field(default_factory=_new_buffer, repr=False)
    deferred_terminal: dict[str, Any] | None = field(default=None, repr=False)
    _channel_ref: weakref.ref | None = field(default=None, repr=False)

    @property
    def channel(self) -> Channel | None:
        """The bound channel, or None if unbound, collected or closed."""
        if self._channel_ref is None:
            return None
        channel = self._channel_ref()
        if channel is None or not channel.is_open:
            return None
        return channel

    @channel.setter
    def channel(self, channel: Channel | None) -> None:
        self._channel_ref = weakref.ref(channel) if channel is not None else None

    @property
    def running(self) -> bool:
        return self.job is not None

    @property
    def state(self) -> JobState:
        if self.job is None:
            return JobState.IDLE
        return self.job.state

    def add_history(self, role: HistoryRole, text: str) -> HistoryEntry:
        entry = HistoryEntry(role=role, text=text)
        self.history.append(entry)
        return entry

    def to_snapshot(self) -> dict[str, Any]:
        """Persisted fields only, in the on-disk key format."""
        return {
            "sessionKey": self.session_key,
            "label": self.label,
            "claudeSessionId": self.conversation_id,
            "history": [entry.to_dict() for entry in self.history],
            "effort": self.effort,
            "model": self.model,
            "planMode": self.plan_mode,
            "agentName": self.agent_name,
            "createdAt": self.created_at,
        }

    def to_summary(self) -> dict[str, Any]:
        """Shape sent to the client in auth_ok."""
        return {
            "sessionKey": self.session_key,
            "label": self.label,
            "history": [entry.to_dict() for entry in self.history],
            "thinking": self.running,
            "effort": self.effort,
            "model": self.model,
            "planMode": self.plan_mode,
            "agentName": self.agent_name,
        }
