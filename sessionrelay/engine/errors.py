"""Exception hierarchy for the relay engine.

Every failure here is scoped to one session. Callers catch these at the
point of origin and turn them into outbound ``error`` / ``sys_msg``
events instead of letting them reach the server loop.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""


class SpawnError(RelayError):
    """The child process for a session could not be started."""
    def __init__(self, session_key: str, reason: str):
        self.session_key = session_key
        self.reason = reason
        super().__init__(f"Failed to start process for session {session_key}: {reason}")


class AgentLoadError(RelayError):
    """An agent persona file could not be read."""
    def __init__(self, agent_name: str, reason: str):
        self.agent_name = agent_name
        self.reason = reason
        super().__init__(f"Could not load agent {agent_name!r}: {reason}")


class UploadError(RelayError):
    """An uploaded attachment could not be decoded or written."""
    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Failed to save {name}: {reason}")


class TranscriptionError(RelayError):
    """The speech-to-text endpoint rejected or failed a request."""
