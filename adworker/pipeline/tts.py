"""
Speech synthesis — Yandex SpeechKit v1 — and background music lookup.

Without real credentials the synthesizer produces silent WAV audio sized
to the text, so the pipeline runs end to end offline.
"""

import io
import logging
import wave
from typing import Optional

import httpx
from pydantic import BaseModel

from ..config import Settings, is_mock
from .errors import ProviderError, ValidationError
from .http import request_with_backoff

logger = logging.getLogger(__name__)

YANDEX_TTS_URL = "https://tts.api.cloud.yandex.net/speech/v1/tts:synthesize"
TTS_TIMEOUT = 15  # seconds

SILENCE_SAMPLE_RATE = 16000
CHARS_PER_SECOND = 15
MAX_SILENCE_SECONDS = 30

MUSIC_THEMES = ("energetic", "calm", "lofi")
DEFAULT_MUSIC_THEME = "energetic"


class SpeechResult(BaseModel):
    audio: bytes
    mime_type: str
    voice: str


def silent_wav(seconds: int) -> bytes:
    """Mono 16-bit PCM silence."""
    out = io.BytesIO()
    with wave.open(out, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(SILENCE_SAMPLE_RATE)
        wav.writeframes(b"\x00\x00" * SILENCE_SAMPLE_RATE * seconds)
    return out.getvalue()


class SpeechSynthesizer:
    provider = "yandex-cloud"

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = settings.yandex_api_key
        self.folder_id = settings.yandex_folder_id
        self.default_voice = settings.default_tts_voice
        self.offline = not self.api_key or is_mock(self.api_key)
        self._transport = transport

    async def synthesize(self, text: str, voice: Optional[str] = None) -> SpeechResult:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Speech text must not be empty")
        voice = voice or self.default_voice

        if self.offline:
            seconds = max(1, min(MAX_SILENCE_SECONDS, len(text) // CHARS_PER_SECOND))
            logger.warning(f"TTS offline: {seconds}s of silence for \"{text[:10]}...\"")
            return SpeechResult(audio=silent_wav(seconds), mime_type="audio/wav", voice=voice)

        if not self.folder_id:
            raise ValidationError("YANDEX_FOLDER_ID is missing")

        logger.info(f"TTS generating ({voice}): \"{text[:20]}...\"")
        async with httpx.AsyncClient(timeout=TTS_TIMEOUT, transport=self._transport) as client:
            response = await request_with_backoff(
                client,
                "POST",
                YANDEX_TTS_URL,
                provider=self.provider,
                headers={"Authorization": f"Api-Key {self.api_key}"},
                data={
                    "text": text,
                    "lang": "ru-RU",
                    "voice": voice,
                    "folderId": self.folder_id,
                    "format": "mp3",
                },
            )

        if not response.content:
            raise ProviderError("TTS returned empty audio", self.provider)
        return SpeechResult(audio=response.content, mime_type="audio/mpeg", voice=voice)


class MusicLibrary:
    """Static theme → track lookup with per-theme overrides from config."""

    def __init__(self, settings: Settings):
        self.overrides = {k.lower(): v for k, v in settings.music_urls.items()}
        base = settings.s3_public_url or "https://mock-storage.local"
        self.base_url = base.rstrip("/")

    def url_for(self, theme: Optional[str]) -> str:
        theme = (theme or DEFAULT_MUSIC_THEME).lower()
        if theme in self.overrides:
            return self.overrides[theme]
        if theme not in MUSIC_THEMES:
            theme = DEFAULT_MUSIC_THEME
        return self.overrides.get(theme) or f"{self.base_url}/music/{theme}.mp3"
