"""
Ordered outbound audio.

Synthesis latency differs per segment, so audio for segment 3 can be ready
before segment 2. The emitter holds early arrivals and writes audio to the
caller strictly in sequence order, following each chunk with a mark so the
controller can tell how much audio is still queued on Twilio's side.
"""

import uuid
from typing import Awaitable, Callable, Dict, Optional

import structlog

from src.callflow.events import AudioSent
from src.callflow.twilio_protocol import create_mark_message, create_media_message

logger = structlog.get_logger(__name__)


class OrderedAudioEmitter:
    """Per-call reordering buffer in front of the Twilio playback sink."""

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        on_sent: Optional[Callable[[AudioSent], None]] = None,
        stream_sid: str = "",
    ):
        self._send_message = send_message
        self._on_sent = on_sent
        self.stream_sid = stream_sid
        self.expected_index = 0
        self._buffer: Dict[int, bytes] = {}
        self.sent_count = 0
        self.dropped_count = 0

    @property
    def buffered_indices(self) -> list[int]:
        return sorted(self._buffer)

    async def submit(self, index: Optional[int], payload: bytes) -> None:
        """Send, buffer, or drop one chunk according to its sequence index."""
        if index is None:
            await self._send_audio(payload)
            return

        if index < self.expected_index:
            self.dropped_count += 1
            logger.warning(
                "Dropping stale audio chunk",
                index=index,
                expected_index=self.expected_index,
            )
            return

        if index > self.expected_index:
            if index in self._buffer:
                self.dropped_count += 1
                logger.warning("Dropping duplicate buffered audio chunk", index=index)
                return
            self._buffer[index] = payload
            logger.debug(
                "Buffered out-of-order audio chunk",
                index=index,
                expected_index=self.expected_index,
                buffered=len(self._buffer),
            )
            return

        await self._send_audio(payload, index=index)
        self.expected_index += 1

        while self.expected_index in self._buffer:
            buffered = self._buffer.pop(self.expected_index)
            await self._send_audio(buffered, index=self.expected_index)
            self.expected_index += 1

    async def _send_audio(self, payload: bytes, index: Optional[int] = None) -> None:
        if not payload:
            # Failed synthesis still advances the sequence.
            logger.debug("Skipping empty audio chunk", index=index)
            return

        await self._send_message(create_media_message(self.stream_sid, payload))

        token = str(uuid.uuid4())
        # Registered before the mark frame is written.
        if self._on_sent:
            self._on_sent(AudioSent(token=token))
        await self._send_message(create_mark_message(self.stream_sid, token))
        self.sent_count += 1
