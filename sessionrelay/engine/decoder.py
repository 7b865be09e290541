"""Line reassembly and classification for the child's output stream.

The child writes newline-delimited JSON events to stdout, interleaved
with the occasional line of plain text (prompts, banners, progress).
Bytes arrive in arbitrary chunks, so lines are reassembled here before
anything looks at them.
"""
from __future__ import annotations

import codecs
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Pattern

logger = logging.getLogger(__name__)

# CSI (ESC [ params letter) and OSC (ESC ] ... BEL) sequences.
_ANSI_CSI_RE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]")
_ANSI_OSC_RE = re.compile(r"\x1b\][^\x07]*\x07")
_NEWLINE_RE = re.compile(r"\r\n|\r|\n")


def strip_ansi(text: str) -> str:
    return _ANSI_OSC_RE.sub("", _ANSI_CSI_RE.sub("", text))


class LineDecoder:
    """Incremental bytes → complete-lines decoder.

    Holds the partial trailing fragment between chunks. Escape stripping
    and trimming happen per complete line, so the output does not depend
    on where the chunk boundaries fell.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""

    @property
    def partial(self) -> str:
        return self._partial

    def feed(self, data: bytes) -> list[str]:
        text = self._utf8.decode(data)
        if not text:
            return []
        self._partial += text
        # A trailing CR may be the first half of a CRLF; hold it back.
        held_cr = self._partial.endswith("\r")
        body = self._partial[:-1] if held_cr else self._partial
        parts = _NEWLINE_RE.split(body)
        tail = parts.pop()
        self._partial = tail + ("\r" if held_cr else "")
        return _clean(parts)

    def flush(self) -> list[str]:
        """Return whatever is left as a final line and reset."""
        rest = self._partial + self._utf8.decode(b"", final=True)
        self.reset()
        return _clean(_NEWLINE_RE.split(rest))

    def reset(self) -> None:
        self._utf8.reset()
        self._partial = ""


def _clean(lines: Iterable[str]) -> list[str]:
    out = []
    for line in lines:
        cleaned = strip_ansi(line).strip()
        if cleaned:
            out.append(cleaned)
    return out


class LineKind(Enum):
    JSON = "json"
    MALFORMED = "malformed"
    PLAN_PROMPT = "plan_prompt"
    INFO = "info"


@dataclass
class DecodedLine:
    kind: LineKind
    text: str
    event: dict[str, Any] | None = field(default=None)


def compile_patterns(patterns: Iterable[str]) -> list[Pattern[str]]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as exc:
            logger.warning("Ignoring invalid pattern %r: %s", pattern, exc)
    return compiled


def classify_line(
    line: str,
    *,
    plan_mode: bool = False,
    prompt_patterns: Iterable[Pattern[str]] = (),
) -> DecodedLine:
    """Sort a complete line into structured event, approval prompt or info text."""
    if line.startswith("{"):
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return DecodedLine(LineKind.MALFORMED, line)
        if isinstance(event, dict):
            return DecodedLine(LineKind.JSON, line, event)
        return DecodedLine(LineKind.MALFORMED, line)
    if plan_mode and any(p.search(line) for p in prompt_patterns):
        return DecodedLine(LineKind.PLAN_PROMPT, line)
    return DecodedLine(LineKind.INFO, line)
