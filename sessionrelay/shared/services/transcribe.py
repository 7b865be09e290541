"""Speech-to-text via an OpenAI-compatible ``/audio/transcriptions`` endpoint."""
from __future__ import annotations

import logging

import aiohttp

from sessionrelay.engine.errors import TranscriptionError

logger = logging.getLogger(__name__)


def _extension_for(mime_type: str) -> str:
    return "m4a" if "mp4" in mime_type else "webm"


class Transcriber:
    def __init__(
        self,
        api_key: str,
        url: str = "https://api.openai.com/v1/audio/transcriptions",
        model: str = "whisper-1",
        timeout_seconds: float = 60.0,
    ) -> None:
        self._api_key = api_key
        self._url = url
        self._model = model
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    async def transcribe(self, audio: bytes, mime_type: str = "audio/webm") -> str:
        if not self._api_key:
            raise TranscriptionError("No OpenAI key configured")

        form = aiohttp.FormData()
        form.add_field("model", self._model)
        form.add_field(
            "file", audio,
            filename=f"audio.{_extension_for(mime_type)}",
            content_type=mime_type,
        )
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as http:
                async with http.post(self._url, data=form, headers=headers) as resp:
                    try:
                        payload = await resp.json(content_type=None)
                    except ValueError as exc:
                        raise TranscriptionError("Parse error") from exc
        except aiohttp.ClientError as exc:
            raise TranscriptionError(f"request failed: {exc}") from exc

        if not isinstance(payload, dict):
            raise TranscriptionError("Parse error")
        text = payload.get("text")
        if text:
            return text
        error = payload.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        logger.warning("Transcription failed status=%s: %s", resp.status, message)
        raise TranscriptionError(message or "failed")
