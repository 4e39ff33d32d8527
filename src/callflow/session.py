"""Per-call conversation controller.

Wires one Twilio Media Streams connection to its components:

    Twilio media -> DeepgramSTT -> TranscriptAssembler
        interim -> barge-in check -> Twilio clear
        final   -> turn worker -> CompletionOrchestrator
    SpeakableSegment -> TTS -> AudioChunk -> OrderedAudioEmitter -> Twilio media + mark
    Twilio mark ack -> outstanding marks

Components post typed events on the session queue, which a single dispatch
task consumes. The one exception is the emitter's sent callback: it records
the mark token inline, before the mark frame is written. Everything runs on
the call's event loop, so no locks are needed.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Set

import structlog

from src.callflow.completion import CompletionOrchestrator
from src.callflow.config import Config, get_config
from src.callflow.errors import CompletionError, ToolError
from src.callflow.events import (
    AudioChunk,
    AudioSent,
    FinalTranscript,
    InterimUtterance,
    RecognitionEvent,
    SessionEvent,
    SpeakableSegment,
)
from src.callflow.recording import RECORDING_NOTICE, start_recording
from src.callflow.stream import OrderedAudioEmitter
from src.callflow.tools.registry import ToolRegistry
from src.callflow.transcription import DeepgramSTT, TranscriptAssembler
from src.callflow.tts import DeepgramAuraTTS, TTSProvider
from src.callflow.twilio_protocol import (
    Connected,
    Dtmf,
    Mark,
    Media,
    Start,
    Stop,
    StreamState,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


@dataclass
class CallMetrics:
    """Metrics for an entire call."""
    call_sid: str = ""
    stream_sid: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    interactions: int = 0
    interruptions: int = 0
    segments: int = 0
    synthesis_failures: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "interactions": self.interactions,
            "interruptions": self.interruptions,
            "segments": self.segments,
            "synthesis_failures": self.synthesis_failures,
        }


class CallSession:
    """
    Conversation controller for one call.

    Owns the Twilio signalling state, the outstanding acknowledgment marks,
    the interaction counter and the per-call component set.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        config: Optional[Config] = None,
        registry: Optional[ToolRegistry] = None,
        stt: Optional[DeepgramSTT] = None,
        tts: Optional[TTSProvider] = None,
        orchestrator: Optional[CompletionOrchestrator] = None,
    ):
        """
        Args:
            send_message: Async function to send WebSocket messages to Twilio
            config: Optional configuration (uses default if not provided)
            registry: Tool registry (shared, built at startup)
        """
        self.config = config or get_config()
        self._send_message = send_message
        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._turns: asyncio.Queue[tuple[str, int]] = asyncio.Queue()

        self._stream = StreamState()
        self._assembler = TranscriptAssembler()
        self._stt = stt or DeepgramSTT(config=self.config)
        self._stt.set_event_callback(self._on_recognition_event)
        self._tts = tts or DeepgramAuraTTS(self.config)
        self._emitter = OrderedAudioEmitter(send_message, on_sent=self._on_audio_sent)
        self._orchestrator = orchestrator or CompletionOrchestrator(
            emit=self._on_segment,
            registry=registry,
            config=self.config,
        )

        self.interaction_count = 0
        self.metrics = CallMetrics()
        self._is_running = False
        self._stopped = False

        self._dispatch_task: Optional[asyncio.Task] = None
        self._turn_worker_task: Optional[asyncio.Task] = None
        self._stt_start_task: Optional[asyncio.Task] = None
        self._greeting_task: Optional[asyncio.Task] = None
        self._synthesis_tasks: Set[asyncio.Task] = set()

    @property
    def call_sid(self) -> str:
        return self._stream.call_sid

    @property
    def stream_sid(self) -> str:
        return self._stream.stream_sid

    @property
    def outstanding_marks(self) -> List[str]:
        return self._stream.outstanding_marks

    @property
    def orchestrator(self) -> CompletionOrchestrator:
        return self._orchestrator

    @property
    def emitter(self) -> OrderedAudioEmitter:
        return self._emitter

    async def start(self) -> None:
        """Start the dispatch task and the turn worker."""
        self._is_running = True
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        self._turn_worker_task = asyncio.create_task(self._turn_worker())
        logger.info("Call session started")

    async def stop(self) -> None:
        """Stop all components. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        self._is_running = False

        tasks = [
            t
            for t in (
                self._dispatch_task,
                self._turn_worker_task,
                self._stt_start_task,
                self._greeting_task,
                *self._synthesis_tasks,
            )
            if t and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        try:
            await self._stt.disconnect()
        except Exception as e:
            logger.warning("Error stopping STT", error=str(e))
        try:
            await self._tts.close()
        except Exception as e:
            logger.warning("Error closing TTS", error=str(e))

        self.metrics.end_time = time.time()
        metrics = self.metrics.to_dict()
        metrics.update(
            {
                "context_length": len(self._orchestrator.context),
                "audio_sent": self._emitter.sent_count,
                "audio_dropped": self._emitter.dropped_count,
                "mark_rtt_ms": round(self._stream.avg_mark_rtt_ms, 2),
            }
        )
        logger.info("Call session stopped", metrics=metrics)

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Args:
            raw_message: Raw JSON message string
        """
        try:
            event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if isinstance(event, Connected):
            logger.debug("Twilio connected")

        elif isinstance(event, Start):
            await self._handle_start(event)

        elif isinstance(event, Media):
            await self._handle_media(event)

        elif isinstance(event, Mark):
            rtt_ms = self._stream.acknowledge(event)
            if rtt_ms is not None:
                logger.debug(
                    "Audio completed mark",
                    mark_name=event.mark.name,
                    sequence_number=event.sequence_number,
                    mark_rtt_ms=round(rtt_ms, 2),
                    outstanding=len(self.outstanding_marks),
                )

        elif isinstance(event, Dtmf):
            logger.info("DTMF received", digit=event.dtmf.digit)

        elif isinstance(event, Stop):
            logger.info("Media stream ended", stream_sid=self.stream_sid)
            await self.stop()

    async def _handle_start(self, event: Start) -> None:
        self._stream.start(event)
        self._emitter.stream_sid = self._stream.stream_sid
        self._orchestrator.set_call_sid(self._stream.call_sid)
        self.metrics.call_sid = self._stream.call_sid
        self.metrics.stream_sid = self._stream.stream_sid

        # STT handshake runs in the background so it never delays the greeting.
        self._stt_start_task = asyncio.create_task(self._start_stt())
        self._greeting_task = asyncio.create_task(self._greet())

    async def _start_stt(self) -> None:
        try:
            if await self._stt.connect():
                logger.info("STT ready", call_sid=self.call_sid)
            else:
                logger.error("STT failed to start", call_sid=self.call_sid)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("STT start task error", error=str(e))

    async def _greet(self) -> None:
        """Recording notice (if enabled) then the greeting, both out of band and in that order."""
        if self.config.recording_enabled:
            await self._speak_out_of_band(RECORDING_NOTICE)
            await start_recording(self.call_sid, self.config)

        logger.info("Starting media stream greeting", stream_sid=self.stream_sid)
        await self._speak_out_of_band(self.config.greeting)

    async def _speak_out_of_band(self, text: str) -> None:
        segment = SpeakableSegment(index=None, text=text, interaction_id=0)
        self._events.put_nowait(await self._synthesize(segment))

    async def _handle_media(self, event: Media) -> None:
        if not self._is_running or not event.media.payload:
            return
        await self._stt.send_audio(event.media.payload)

    def _on_audio_sent(self, sent: AudioSent) -> None:
        # Runs inline in the emitter, before the mark frame is written.
        self._stream.track_mark(sent.token)

    async def _on_recognition_event(self, event: RecognitionEvent) -> None:
        for signal in self._assembler.consume(event):
            self._events.put_nowait(signal)

    async def _on_segment(self, segment: SpeakableSegment) -> None:
        self._events.put_nowait(segment)

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Session event failed",
                    event_type=type(event).__name__,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            finally:
                self._events.task_done()

    async def _dispatch(self, event: SessionEvent) -> None:
        if isinstance(event, InterimUtterance):
            await self._maybe_interrupt(event.text)
        elif isinstance(event, FinalTranscript):
            self._on_final_transcript(event.text)
        elif isinstance(event, SpeakableSegment):
            self._start_synthesis(event)
        elif isinstance(event, AudioChunk):
            logger.debug(
                "TTS -> Twilio",
                interaction_id=event.interaction_id,
                index=event.index,
                bytes=len(event.payload),
            )
            await self._emitter.submit(event.index, event.payload)

    async def _maybe_interrupt(self, text: str) -> bool:
        """Barge-in: clear Twilio's playback buffer when the caller talks over queued audio."""
        if not self.outstanding_marks or len(text or "") <= self.config.min_interruption_chars:
            return False

        clear_msg = self._stream.clear_message()
        if not clear_msg:
            return False

        logger.info(
            "Interruption, clearing stream",
            call_sid=self.call_sid,
            outstanding_marks=len(self.outstanding_marks),
            text=text[:50],
        )
        self.metrics.interruptions += 1
        await self._send_message(clear_msg)
        return True

    def _on_final_transcript(self, text: str) -> None:
        logger.info("STT -> LLM", interaction_id=self.interaction_count, text=text)
        self._turns.put_nowait((text, self.interaction_count))
        self.interaction_count += 1
        self.metrics.interactions = self.interaction_count

    def _start_synthesis(self, segment: SpeakableSegment) -> None:
        logger.info(
            "LLM -> TTS",
            interaction_id=segment.interaction_id,
            index=segment.index,
            text=segment.text,
        )
        self.metrics.segments += 1
        task = asyncio.create_task(self._synthesize_and_post(segment))
        self._synthesis_tasks.add(task)
        task.add_done_callback(self._synthesis_tasks.discard)

    async def _synthesize_and_post(self, segment: SpeakableSegment) -> None:
        self._events.put_nowait(await self._synthesize(segment))

    async def _synthesize(self, segment: SpeakableSegment) -> AudioChunk:
        try:
            audio = await self._tts.synthesize(segment.text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # An empty chunk still advances the emitter so later audio is not held back.
            logger.error(
                "TTS failed",
                interaction_id=segment.interaction_id,
                index=segment.index,
                error=str(e),
            )
            self.metrics.synthesis_failures += 1
            audio = b""
        return AudioChunk(
            index=segment.index,
            payload=audio,
            interaction_id=segment.interaction_id,
            label=segment.text[:40],
        )

    async def _turn_worker(self) -> None:
        """Run completions one at a time, in transcript order."""
        while True:
            text, interaction_id = await self._turns.get()
            try:
                await self._orchestrator.complete(text, interaction_id)
            except asyncio.CancelledError:
                raise
            except CompletionError as e:
                logger.error("Completion failed", interaction_id=interaction_id, error=str(e))
            except ToolError as e:
                logger.error(
                    "Tool call rejected",
                    interaction_id=interaction_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            except Exception:
                logger.exception("Turn failed", interaction_id=interaction_id)
            finally:
                self._turns.task_done()


class SessionRegistry:
    """Live sessions by connection id; entries are removed when the call ends."""

    def __init__(self) -> None:
        self._sessions: Dict[str, CallSession] = {}

    def add(self, session_id: str, session: CallSession) -> None:
        self._sessions[session_id] = session

    def get(self, session_id: str) -> Optional[CallSession]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[CallSession]:
        return self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))


async def create_session(
    send_message: Callable[[str], Awaitable[None]],
    registry: Optional[ToolRegistry] = None,
) -> CallSession:
    """
    Create and start a new call session.

    Args:
        send_message: Function to send messages to the Twilio WebSocket
        registry: Tool registry built at startup
    """
    session = CallSession(send_message, registry=registry)
    await session.start()
    return session
