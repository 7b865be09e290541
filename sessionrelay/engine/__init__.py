"""Relay engine: configuration, line decoding, plan gate and the process driver."""
from .config import RelayConfig
from .errors import (
    AgentLoadError,
    RelayError,
    SpawnError,
    TranscriptionError,
    UploadError,
)

__all__ = [
    "RelayConfig",
    "RelayError",
    "SpawnError",
    "AgentLoadError",
    "UploadError",
    "TranscriptionError",
]
