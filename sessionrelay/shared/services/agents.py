"""Agent persona files: ``<agents_dir>/<name>.md`` with YAML front-matter.

    ---
    name: reviewer
    description: Reviews diffs for bugs
    tools: inherit
    ---

    You are a meticulous reviewer...

The body (front-matter stripped) is appended to the child's system prompt.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml

from sessionrelay.engine.errors import AgentLoadError

logger = logging.getLogger(__name__)

_FRONT_MATTER_RE = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)
_UNSAFE_NAME_RE = re.compile(r"[^a-z0-9\-_]", re.IGNORECASE)


def split_front_matter(content: str) -> tuple[dict[str, Any], str]:
    """Return (front-matter mapping, body). Bad YAML yields an empty mapping."""
    match = _FRONT_MATTER_RE.match(content)
    if not match:
        return {}, content.strip()
    body = content[match.end():].strip()
    try:
        meta = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        logger.warning("Unparseable agent front-matter: %s", exc)
        meta = {}
    if not isinstance(meta, dict):
        meta = {}
    return meta, body


def safe_agent_name(name: str) -> str:
    return _UNSAFE_NAME_RE.sub("-", name).lower()


class AgentLibrary:
    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)

    def path_for(self, name: str) -> Path:
        return self._dir / f"{Path(name).name}.md"

    def load_prompt(self, name: str) -> str:
        """Body of the agent file, front-matter removed."""
        path = self.path_for(name)
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise AgentLoadError(name, str(exc)) from exc
        _, body = split_front_matter(content)
        return body

    def list_agents(self) -> list[dict[str, str]]:
        if not self._dir.is_dir():
            return []
        agents = []
        for path in sorted(self._dir.glob("*.md")):
            try:
                meta, _ = split_front_matter(path.read_text(encoding="utf-8"))
            except OSError as exc:
                logger.warning("Skipping unreadable agent file %s: %s", path, exc)
                continue
            agents.append({"name": path.stem, "desc": str(meta.get("description") or "").strip()})
        return agents

    def create(self, name: str, prompt: str) -> str:
        """Write a new agent file and return its sanitized name."""
        safe = safe_agent_name(name)
        meta = {
            "name": safe,
            "description": prompt[:80],
            "tools": "inherit",
        }
        front = yaml.safe_dump(meta, sort_keys=False, allow_unicode=True).strip()
        self._dir.mkdir(parents=True, exist_ok=True)
        self.path_for(safe).write_text(f"---\n{front}\n---\n\n{prompt}\n", encoding="utf-8")
        logger.info("🤖 Created agent: %s", safe)
        return safe
