"""
Typed messages passed between the per-call components.

Flow:
    RecognitionEvent -> TranscriptAssembler -> InterimUtterance | FinalTranscript
    FinalTranscript -> CompletionOrchestrator -> SpeakableSegment
    SpeakableSegment -> TTS -> AudioChunk -> OrderedAudioEmitter -> AudioSent
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class RecognitionEventType(str, Enum):
    """Deepgram message kinds the assembler cares about."""
    NORMAL = "normal"
    UTTERANCE_END = "UtteranceEnd"


@dataclass(frozen=True)
class RecognitionEvent:
    """One raw speech-recognition result."""
    transcript: str = ""
    is_final: bool = False
    speech_final: bool = False
    type: RecognitionEventType = RecognitionEventType.NORMAL
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class InterimUtterance:
    """Interim (non-final) caller text; only used for barge-in detection."""
    text: str


@dataclass(frozen=True)
class FinalTranscript:
    """A finalized caller utterance, ready for a completion request."""
    text: str


@dataclass(frozen=True)
class SpeakableSegment:
    """
    Model text ready for speech synthesis.

    `index` is the session-wide sequence number, or None for out-of-band
    announcements (greeting, recording notice, tool announcements).
    """
    index: Optional[int]
    text: str
    interaction_id: int = 0


@dataclass(frozen=True)
class AudioChunk:
    """Synthesized mu-law audio for one SpeakableSegment."""
    index: Optional[int]
    payload: bytes
    interaction_id: int = 0
    label: str = ""


@dataclass(frozen=True)
class AudioSent:
    """An audio chunk was written; its acknowledgment mark `token` is about to follow."""
    token: str


TranscriptSignal = Union[InterimUtterance, FinalTranscript]
SessionEvent = Union[InterimUtterance, FinalTranscript, SpeakableSegment, AudioChunk]
