"""Read sessions the CLI recorded when it was used from a terminal.

``~/.claude/history.jsonl`` lists prompts with their session id and
project; ``~/.claude/projects/<encoded-path>/<session_id>.jsonl`` holds
the full transcript. The relay offers recent ones so a client can resume
them (new_session with resumeSessionId).
"""
from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Iterable, Iterator

logger = logging.getLogger(__name__)


def _iter_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(entry, dict):
            yield entry


def _content_text(content: Any) -> str:
    if isinstance(content, list):
        return "\n".join(
            c.get("text", "") for c in content
            if isinstance(c, dict) and c.get("type") == "text"
        )
    return str(content)


class TerminalHistory:
    def __init__(self, claude_home: Path) -> None:
        self._home = Path(claude_home)

    @property
    def history_file(self) -> Path:
        return self._home / "history.jsonl"

    @property
    def projects_dir(self) -> Path:
        return self._home / "projects"

    def list_sessions(
        self,
        exclude_ids: Iterable[str] = (),
        *,
        hours: float = 24,
        limit: int = 20,
        now: float | None = None,
    ) -> list[dict[str, Any]]:
        """Most recent distinct terminal sessions, newest first."""
        if not self.history_file.exists():
            return []
        # history.jsonl timestamps are epoch milliseconds.
        cutoff_ms = ((now if now is not None else time.time()) - hours * 3600) * 1000
        skip = set(exclude_ids)
        entries = [
            e for e in _iter_jsonl(self.history_file)
            if e.get("sessionId") and (e.get("timestamp") or 0) >= cutoff_ms
        ]
        sessions: list[dict[str, Any]] = []
        for entry in reversed(entries):
            session_id = entry["sessionId"]
            if session_id in skip:
                continue
            skip.add(session_id)
            project = entry.get("project") or ""
            sessions.append({
                "sessionId": session_id,
                "project": Path(project).name if project else "Terminal",
                "projectPath": project,
                "timestamp": entry.get("timestamp") or 0,
            })
            if len(sessions) >= limit:
                break
        return sessions

    def find_transcript(self, session_id: str, project_path: str | None = None) -> Path | None:
        name = f"{Path(session_id).name}.jsonl"
        if project_path:
            # The CLI encodes /home/user/app as -home-user-app-
            candidate = self.projects_dir / (project_path.replace("/", "-") + "-") / name
            if candidate.exists():
                return candidate
        if self.projects_dir.is_dir():
            for directory in self.projects_dir.iterdir():
                candidate = directory / name
                if candidate.exists():
                    return candidate
        return None

    def load_messages(
        self, session_id: str, project_path: str | None = None, *, limit: int = 20,
    ) -> list[dict[str, str]]:
        """Last ``limit`` user/assistant text messages of a transcript.

        Raises FileNotFoundError if no transcript exists for session_id.
        """
        path = self.find_transcript(session_id, project_path)
        if path is None:
            raise FileNotFoundError(f"Session file not found: {session_id}")
        messages = []
        for entry in _iter_jsonl(path):
            kind = entry.get("type")
            if kind not in ("user", "assistant"):
                continue
            message = entry.get("message")
            if not isinstance(message, dict) or not message.get("content"):
                continue
            text = _content_text(message["content"]).strip()
            if text:
                messages.append({"role": "user" if kind == "user" else "claude", "text": text})
        return messages[-limit:]
