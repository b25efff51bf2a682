"""
Transcription Client — one-shot speech-to-text over HTTP.

Posts one recorded segment to an Azure-style fast transcription endpoint
and returns the best transcript it can find in the response:

1. combinedPhrases[0].text, when present
2. otherwise the non-blank phrases[].text joined with single spaces
3. otherwise ""

An empty result means "nothing was said". Any backend failure (non-2xx,
transport error, unparseable body) raises TranscriptionError instead, so
callers can tell the two apart.
"""
from __future__ import annotations

import io
import json
import wave
import structlog
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import TranscriptionConfig, get_settings
from voice.cancellation import CancellationScope
from voice.errors import TranscriptionError

logger = structlog.get_logger()

SAMPLE_RATE_HZ = 16000
SAMPLE_WIDTH_BYTES = 2
CHANNELS = 1


def ensure_wav_container(audio: bytes) -> bytes:
    """Wrap raw 16 kHz mono 16-bit PCM in a WAV container unless it already is one."""
    if audio[:4] == b"RIFF" and audio[8:12] == b"WAVE":
        return audio
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(CHANNELS)
        wav.setsampwidth(SAMPLE_WIDTH_BYTES)
        wav.setframerate(SAMPLE_RATE_HZ)
        wav.writeframes(audio)
    return buf.getvalue()


def extract_transcript(payload: dict[str, Any]) -> str:
    combined = payload.get("combinedPhrases")
    if isinstance(combined, list) and combined:
        first = combined[0]
        if isinstance(first, dict) and "text" in first:
            return first.get("text") or ""

    phrases = payload.get("phrases")
    if isinstance(phrases, list):
        parts = []
        for phrase in phrases:
            if not isinstance(phrase, dict):
                continue
            text = phrase.get("text")
            if isinstance(text, str) and text.strip():
                parts.append(text)
        return " ".join(parts)

    return ""


class TranscriptionClient:
    """
    Usage:
        client = TranscriptionClient()
        text = await client.transcribe(wav_bytes, "en-US", scope)
    """

    def __init__(
        self,
        config: TranscriptionConfig = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_settings().transcription
        self.client = client

    @property
    def url(self) -> str:
        base = self.config.endpoint or f"https://{self.config.region}.api.cognitive.microsoft.com"
        return f"{base.rstrip('/')}/speechtotext/transcriptions:transcribe?api-version={self.config.api_version}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.config.timeout_s)
        return self.client

    async def transcribe(
        self,
        audio: bytes,
        language_hint: Optional[str],
        scope: CancellationScope,
    ) -> str:
        scope.raise_if_cancelled()
        if not audio:
            return ""

        locale = language_hint if language_hint and language_hint.strip() else self.config.default_locale
        files = {
            "audio": ("audio.wav", ensure_wav_container(audio), "audio/wav"),
            "definition": (None, json.dumps({"locales": [locale]}), "application/json"),
        }
        headers = {"Ocp-Apim-Subscription-Key": self.config.api_key}

        try:
            response = await self._post(files, headers)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error("transcription_backend_rejected",
                         status=e.response.status_code, locale=locale)
            raise TranscriptionError(f"Transcription failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("transcription_transport_failed", error=str(e))
            raise TranscriptionError(f"Transcription request failed: {e}") from e
        except ValueError as e:
            logger.error("transcription_response_malformed", error=str(e))
            raise TranscriptionError("Transcription response was not valid JSON") from e

        if not isinstance(payload, dict):
            raise TranscriptionError("Transcription response was not a JSON object")

        text = extract_transcript(payload)
        logger.info("transcription_completed", locale=locale,
                    audio_bytes=len(audio), chars=len(text))
        return text

    async def _post(self, files: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        client = await self._get_client()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.retry_attempts)),
            wait=wait_exponential(multiplier=0.2, max=2),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                return await client.post(self.url, files=files, headers=headers)

    async def close(self):
        if self.client:
            await self.client.aclose()
