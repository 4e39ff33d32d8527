"""
Text-to-speech for speakable segments.

Deepgram Aura is asked for headerless mu-law 8kHz so the bytes can go to
Twilio without conversion.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog

from src.callflow.config import Config, get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"


class TTSProvider(ABC):
    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        """Return mu-law 8kHz audio for `text` (empty bytes when nothing was produced)."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class DeepgramAuraTTS(TTSProvider):
    """Deepgram Aura REST synthesis, one request per segment."""

    def __init__(self, config: Optional[Config] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
        return self._client

    def request_params(self) -> dict[str, Any]:
        return {
            "model": self.config.deepgram_tts_model,
            "encoding": "mulaw",
            "sample_rate": 8000,
            "container": "none",
        }

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            return b""

        response = await self._get_client().post(
            DEEPGRAM_SPEAK_URL,
            params=self.request_params(),
            headers={
                "Authorization": f"Token {self.config.deepgram_api_key}",
                "Content-Type": "application/json",
            },
            json={"text": text},
        )
        if response.is_error:
            logger.error(
                "Deepgram TTS request failed",
                status_code=response.status_code,
                response=response.text[:200],
            )
            response.raise_for_status()

        return response.content

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
