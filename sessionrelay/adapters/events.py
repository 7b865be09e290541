"""Outbound event types sent over the channel.

Each event is a dataclass whose ``event_type`` becomes the wire ``type``
discriminator. Field names are mapped to the client's camelCase keys via
``wire`` metadata; optional fields left as ``None`` are omitted.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any


def _wire(name: str, default: Any = None, **kwargs: Any) -> Any:
    return field(default=default, metadata={"wire": name}, **kwargs)


def _omit_if_none() -> dict[str, bool]:
    return {"omit_none": True}


@dataclass
class RelayEvent:
    """Base outbound event."""
    event_type: str = ""


@dataclass
class SessionEvent(RelayEvent):
    """An event scoped to one session."""
    session_key: str = _wire("sessionKey", "")


@dataclass
class AuthOk(RelayEvent):
    event_type: str = "auth_ok"
    sessions: list = field(default_factory=list)


@dataclass
class AuthFail(RelayEvent):
    event_type: str = "auth_fail"


@dataclass
class Pong(RelayEvent):
    event_type: str = "pong"


@dataclass
class SessionInit(SessionEvent):
    event_type: str = "session_init"
    session_id: str = _wire("sessionId", "")


@dataclass
class Token(SessionEvent):
    """Assistant text delta."""
    event_type: str = "token"
    text: str = ""


@dataclass
class ToolUse(SessionEvent):
    event_type: str = "tool_use"
    name: str = ""
    input: Any = None
    id: str = ""


@dataclass
class ToolResult(SessionEvent):
    event_type: str = "tool_result"
    tool_use_id: str = ""
    content: str = ""


@dataclass
class Usage(SessionEvent):
    event_type: str = "usage"
    input_tokens: int = _wire("inputTokens", 0)
    output_tokens: int = _wire("outputTokens", 0)
    context_limit: int = _wire("contextLimit", 0)


@dataclass
class Done(SessionEvent):
    """Terminal event: exactly one per child process."""
    event_type: str = "done"
    subtype: str | None = field(default=None, metadata=_omit_if_none())
    error: bool | None = field(default=None, metadata=_omit_if_none())
    code: int | None = field(default=None, metadata=_omit_if_none())


@dataclass
class PlanWaiting(SessionEvent):
    event_type: str = "plan_waiting"


@dataclass
class SysMsg(SessionEvent):
    event_type: str = "sys_msg"
    text: str = ""
    level: str | None = field(default=None, metadata=_omit_if_none())


@dataclass
class ErrorEvent(SessionEvent):
    event_type: str = "error"
    text: str = ""


@dataclass
class SessionKilled(SessionEvent):
    event_type: str = "session_killed"


@dataclass
class AttachmentOk(SessionEvent):
    event_type: str = "attachment_ok"
    name: str = ""


@dataclass
class AgentsList(RelayEvent):
    event_type: str = "agents_list"
    agents: list = field(default_factory=list)


@dataclass
class AgentSaved(RelayEvent):
    event_type: str = "agent_saved"
    name: str = ""


@dataclass
class TerminalSessions(RelayEvent):
    event_type: str = "terminal_sessions"
    sessions: list = field(default_factory=list)


@dataclass
class TerminalHistory(RelayEvent):
    event_type: str = "terminal_history"
    session_id: str = _wire("sessionId", "")
    messages: list = field(default_factory=list)
    error: str | None = field(default=None, metadata=_omit_if_none())


def event_to_dict(event: RelayEvent) -> dict[str, Any]:
    """Convert an event dataclass to its wire dict."""
    out: dict[str, Any] = {"type": event.event_type}
    for f in fields(event):
        if f.name == "event_type":
            continue
        value = getattr(event, f.name)
        if value is None and f.metadata.get("omit_none"):
            continue
        out[f.metadata.get("wire", f.name)] = value
    return out
