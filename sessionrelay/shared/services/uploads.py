"""Upload directory — attachments from the client and files the child writes."""
from __future__ import annotations

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sessionrelay.engine.errors import UploadError

logger = logging.getLogger(__name__)


@dataclass
class StoredFile:
    name: str
    size: int
    mtime: float

    @property
    def modified(self) -> datetime:
        return datetime.fromtimestamp(self.mtime)


def _decode_base64(data: str) -> bytes:
    # Browsers hand over data URLs ("data:image/png;base64,....").
    if "," in data:
        data = data.split(",", 1)[1]
    return base64.b64decode(data, validate=False)


class UploadStore:
    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    def ensure(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)

    def save(self, name: str, data_b64: str) -> Path:
        """Decode and write an attachment under a timestamped basename."""
        safe_name = Path(name or "upload").name or "upload"
        try:
            payload = _decode_base64(data_b64 or "")
        except (binascii.Error, ValueError) as exc:
            raise UploadError(safe_name, f"invalid base64: {exc}") from exc
        path = self._dir / f"{int(time.time() * 1000)}_{safe_name}"
        try:
            self.ensure()
            path.write_bytes(payload)
        except OSError as exc:
            raise UploadError(safe_name, str(exc)) from exc
        return path

    def list_files(self) -> list[StoredFile]:
        """Regular files, newest first."""
        if not self._dir.is_dir():
            return []
        files = []
        for entry in self._dir.iterdir():
            if not entry.is_file():
                continue
            stat = entry.stat()
            files.append(StoredFile(entry.name, stat.st_size, stat.st_mtime))
        files.sort(key=lambda f: f.mtime, reverse=True)
        return files

    def resolve(self, name: str) -> Path | None:
        """Map a client-supplied name to a file inside the directory, basename only."""
        candidate = self._dir / Path(name).name
        if not Path(name).name or not candidate.is_file():
            return None
        return candidate
