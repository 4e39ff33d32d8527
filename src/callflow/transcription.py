"""
Deepgram live transcription and utterance assembly.

Deepgram reports three things we care about:
- interim results (is_final=false): used only to detect barge-in
- final results (is_final=true), optionally marked speech_final when the
  endpointer saw a natural pause
- UtteranceEnd, sent after `utterance_end_ms` of silence even if no
  speech_final was produced

The assembler turns these into at most one finalized transcript per utterance.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, List, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.callflow.config import Config, get_config
from src.callflow.events import (
    FinalTranscript,
    InterimUtterance,
    RecognitionEvent,
    RecognitionEventType,
    TranscriptSignal,
)

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


class TranscriptAssembler:
    """Per-call utterance accumulation state machine."""

    def __init__(self) -> None:
        self._final_result = ""
        # True once a pause-triggered final flushed the buffer, so a later
        # UtteranceEnd for the same speech does not emit it twice.
        self._speech_final = False

    @property
    def pending_text(self) -> str:
        return self._final_result.strip()

    def consume(self, event: RecognitionEvent) -> List[TranscriptSignal]:
        """Classify one recognition event and return the signals it produces."""
        if event.type == RecognitionEventType.UTTERANCE_END:
            if self._speech_final:
                logger.debug("Speech was already final when UtteranceEnd received")
                return []
            logger.debug(
                "UtteranceEnd received before speech_final, flushing collected text",
                text=self.pending_text,
            )
            self._speech_final = True
            return self._flush()

        text = event.transcript or ""

        if not event.is_final:
            return [InterimUtterance(text=text)]

        if not text.strip():
            return []

        self._final_result += f" {text}"
        if event.speech_final:
            self._speech_final = True
            return self._flush()

        # More speech is expected in this utterance.
        self._speech_final = False
        return []

    def reset(self) -> None:
        self._final_result = ""
        self._speech_final = False

    def _flush(self) -> List[TranscriptSignal]:
        text = self._final_result.strip()
        self._final_result = ""
        if not text:
            return []
        return [FinalTranscript(text=text)]


def parse_deepgram_message(data: dict) -> Optional[RecognitionEvent]:
    """Map a Deepgram listen message onto a RecognitionEvent (None for other kinds)."""
    msg_type = data.get("type", "")

    if msg_type == "UtteranceEnd":
        return RecognitionEvent(type=RecognitionEventType.UTTERANCE_END)

    if msg_type != "Results":
        return None

    alternatives = (data.get("channel") or {}).get("alternatives") or []
    transcript = alternatives[0].get("transcript", "") if alternatives else ""
    return RecognitionEvent(
        transcript=transcript or "",
        is_final=bool(data.get("is_final", False)),
        speech_final=bool(data.get("speech_final", False)),
    )


class DeepgramSTT:
    """
    Deepgram streaming STT client using raw WebSocket.

    Twilio's mu-law 8kHz frames are forwarded unchanged.
    """

    def __init__(
        self,
        on_event: Optional[Callable[[RecognitionEvent], Awaitable[None]]] = None,
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self._on_event = on_event
        self._ws: Optional[Any] = None
        self._is_connected = False
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def set_event_callback(self, callback: Callable[[RecognitionEvent], Awaitable[None]]) -> None:
        self._on_event = callback

    def listen_url(self) -> str:
        params = {
            "encoding": "mulaw",
            "sample_rate": 8000,
            "model": self.config.deepgram_stt_model,
            "punctuate": "true",
            "interim_results": "true",
            "endpointing": self.config.deepgram_endpointing_ms,
            "utterance_end_ms": self.config.deepgram_utterance_end_ms,
        }
        return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            self._ws = await websockets.connect(
                self.listen_url(),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected", model=self.config.deepgram_stt_model)
        return True

    async def disconnect(self) -> None:
        """Disconnect from Deepgram."""
        self._is_connected = False

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected")

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send a mu-law/8000 frame to Deepgram."""
        if not self._is_connected or not self._ws:
            return

        try:
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                    await self._handle_message(data)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

    async def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = data.get("type", "")

        if msg_type == "Error":
            logger.error("Deepgram error", error=data.get("description") or data.get("message"), details=data)
            return
        if msg_type == "Warning":
            logger.warning("Deepgram warning", details=data)
            return
        if msg_type == "Metadata":
            logger.debug("Deepgram metadata", request_id=data.get("request_id"))
            return

        event = parse_deepgram_message(data)
        if event is None:
            return

        logger.debug(
            "STT event",
            type=event.type.value,
            text=event.transcript[:50],
            is_final=event.is_final,
            speech_final=event.speech_final,
        )
        if self._on_event:
            await self._on_event(event)
