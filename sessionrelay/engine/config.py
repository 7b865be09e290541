"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via RELAY_* env vars, or
with a YAML file (see yaml_config.py). The plain
PORT / CLAUDE_PASSWORD / OPENAI_API_KEY names are honoured too.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PASSWORD = "changeme"

DEFAULT_PLAN_PROMPT_PATTERNS = [
    r"do you want to proceed",
    r"approve",
    r"yes/no",
    r"y/n",
    r"\(y\)",
    r"\[y\]",
]

# stderr lines from the pty wrapper, not from the child itself.
DEFAULT_BENIGN_STDERR_PATTERNS = [
    r"^unbuffer",
    r"^expect",
]

DEFAULT_SYSTEM_DIRECTIVE = (
    "When creating or saving any files, always save to {uploads_dir}. "
    "Never ask where to save — always use that directory. "
    "Tell the user the filename when done."
)


def _default_data_dir() -> Path:
    return Path.home() / "claude-mobile"


def _default_claude_home() -> Path:
    return Path.home() / ".claude"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class RelayConfig:
    """Relay server configuration."""

    # Network
    host: str = "0.0.0.0"
    port: int = 3000
    password: str = DEFAULT_PASSWORD

    # Child process. wrapper_command (e.g. "unbuffer") is prepended when set
    # so the child sees a pty and flushes its output line by line.
    claude_command: str = "claude"
    wrapper_command: str = ""
    child_path: str = "/usr/local/bin:/usr/bin:/bin"

    # Storage
    data_dir: Path = field(default_factory=_default_data_dir)
    claude_home: Path = field(default_factory=_default_claude_home)

    # Per-session defaults
    default_model: str = "claude-sonnet-4-6"
    default_effort: str = "high"
    # --effort is only passed for models whose id contains this marker.
    effort_model_marker: str = "opus"
    system_directive: str = DEFAULT_SYSTEM_DIRECTIVE

    # Relay
    live_buffer_capacity: int = 500
    tool_result_limit: int = 800
    context_limit: int = 200_000
    channel_queue_size: int = 5000

    # Plan mode
    plan_idle_seconds: float = 2.0
    plan_reject_grace_seconds: float = 0.2
    plan_prompt_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_PLAN_PROMPT_PATTERNS)
    )
    benign_stderr_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_BENIGN_STDERR_PATTERNS)
    )

    # Transcription
    openai_api_key: str = ""
    transcribe_url: str = "https://api.openai.com/v1/audio/transcriptions"
    transcribe_model: str = "whisper-1"

    # Housekeeping commands exposed through run_cmd
    command_timeout_seconds: float = 15.0

    # Logging
    log_level: str = "INFO"
    log_ring_size: int = 200

    @property
    def uploads_dir(self) -> Path:
        return self.data_dir / "uploads"

    @property
    def sessions_file(self) -> Path:
        return self.data_dir / "sessions.json"

    @property
    def agents_dir(self) -> Path:
        return self.claude_home / "agents"

    @property
    def log_file(self) -> Path:
        return self.data_dir / "logs" / "relay-server.log"

    @property
    def uses_default_password(self) -> bool:
        return self.password == DEFAULT_PASSWORD

    def directive(self) -> str:
        """System directive naming the upload directory."""
        return self.system_directive.format(uploads_dir=self.uploads_dir)

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from RELAY_* environment variables."""
        relay_vars = sorted(k for k in os.environ if k.startswith("RELAY_"))
        if relay_vars:
            logger.info(
                "RelayConfig.from_env: RELAY_* env overrides: %s",
                ", ".join(relay_vars),
            )
        else:
            logger.debug("RelayConfig.from_env: no RELAY_* env vars set, using defaults")

        data_dir = os.getenv("RELAY_DATA_DIR")
        claude_home = os.getenv("RELAY_CLAUDE_HOME")
        config = cls(
            host=os.getenv("RELAY_HOST", cls.host),
            port=int(os.getenv("RELAY_PORT", os.getenv("PORT", str(cls.port)))),
            password=os.getenv(
                "RELAY_PASSWORD", os.getenv("CLAUDE_PASSWORD", cls.password)
            ),
            claude_command=os.getenv("RELAY_CLAUDE_COMMAND", cls.claude_command),
            wrapper_command=os.getenv("RELAY_WRAPPER_COMMAND", cls.wrapper_command),
            child_path=os.getenv("RELAY_CHILD_PATH", cls.child_path),
            data_dir=Path(data_dir).expanduser() if data_dir else _default_data_dir(),
            claude_home=(
                Path(claude_home).expanduser() if claude_home else _default_claude_home()
            ),
            default_model=os.getenv("RELAY_DEFAULT_MODEL", cls.default_model),
            default_effort=os.getenv("RELAY_DEFAULT_EFFORT", cls.default_effort),
            live_buffer_capacity=int(os.getenv(
                "RELAY_LIVE_BUFFER", str(cls.live_buffer_capacity)
            )),
            tool_result_limit=int(os.getenv(
                "RELAY_TOOL_RESULT_LIMIT", str(cls.tool_result_limit)
            )),
            plan_idle_seconds=float(os.getenv(
                "RELAY_PLAN_IDLE_SECONDS", str(cls.plan_idle_seconds)
            )),
            plan_reject_grace_seconds=float(os.getenv(
                "RELAY_PLAN_REJECT_GRACE", str(cls.plan_reject_grace_seconds)
            )),
            openai_api_key=os.getenv(
                "RELAY_OPENAI_API_KEY", os.getenv("OPENAI_API_KEY", "")
            ),
            log_level=os.getenv("RELAY_LOG_LEVEL", cls.log_level).upper(),
        )
        if _env_bool("RELAY_UNBUFFER", False) and not config.wrapper_command:
            config.wrapper_command = "unbuffer"
        logger.info(
            "RelayConfig.from_env: port=%s model=%s data_dir=%s wrapper=%s",
            config.port, config.default_model, config.data_dir,
            config.wrapper_command or "<none>",
        )
        return config
