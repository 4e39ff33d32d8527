"""
Twilio Media Streams wire format and per-stream mark bookkeeping.

Inbound frames are decoded straight into tagged msgspec structs keyed on the
"event" field; base64 audio payloads become bytes during decoding. The same
structs encode the outbound media/mark/clear frames.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)


class _Body(msgspec.Struct, rename="camel", omit_defaults=True):
    pass


class StartMetadata(_Body):
    call_sid: str = ""
    stream_sid: str = ""


class MediaFrame(_Body):
    payload: bytes = b""


class MarkLabel(_Body):
    name: str = ""


class DtmfDigit(_Body):
    digit: str = ""


class TwilioMessage(msgspec.Struct, tag_field="event", rename="camel", omit_defaults=True):
    stream_sid: str = ""


class Connected(TwilioMessage, tag="connected"):
    pass


class Start(TwilioMessage, tag="start"):
    start: StartMetadata = msgspec.field(default_factory=StartMetadata)

    @property
    def call_sid(self) -> str:
        return self.start.call_sid


class Media(TwilioMessage, tag="media"):
    media: MediaFrame = msgspec.field(default_factory=MediaFrame)


class Mark(TwilioMessage, tag="mark"):
    mark: MarkLabel = msgspec.field(default_factory=MarkLabel)
    sequence_number: str = ""


class Dtmf(TwilioMessage, tag="dtmf"):
    dtmf: DtmfDigit = msgspec.field(default_factory=DtmfDigit)


class Stop(TwilioMessage, tag="stop"):
    pass


class Clear(TwilioMessage, tag="clear"):
    pass


TwilioEvent = Union[Connected, Start, Media, Mark, Dtmf, Stop]

decoder = msgspec.json.Decoder(TwilioEvent)
encoder = msgspec.json.Encoder()


def parse_twilio_message(raw_message: Union[str, bytes]) -> TwilioEvent:
    """
    Decode one inbound frame.

    Raises:
        ValueError: malformed JSON, an unknown event or a bad base64 payload
    """
    data = raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
    try:
        return decoder.decode(data)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid Twilio message: {e}") from e


def _encode(message: TwilioMessage) -> str:
    return encoder.encode(message).decode("utf-8")


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    return _encode(Media(stream_sid=stream_sid, media=MediaFrame(payload=audio_payload)))


def create_mark_message(stream_sid: str, name: str) -> str:
    """Twilio echoes the mark back once everything queued before it has played."""
    return _encode(Mark(stream_sid=stream_sid, mark=MarkLabel(name=name)))


def create_clear_message(stream_sid: str) -> str:
    """Drops audio Twilio has buffered but not yet played."""
    return _encode(Clear(stream_sid=stream_sid))


@dataclass
class StreamState:
    """Sids of one Media Streams connection and the marks still in flight on it."""
    stream_sid: str = ""
    call_sid: str = ""
    pending_marks: Dict[str, float] = field(default_factory=dict)  # name -> send time
    mark_rtt_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=20))

    @property
    def outstanding_marks(self) -> List[str]:
        return list(self.pending_marks)

    @property
    def avg_mark_rtt_ms(self) -> float:
        if not self.mark_rtt_ms:
            return 0.0
        return sum(self.mark_rtt_ms) / len(self.mark_rtt_ms)

    def start(self, event: Start) -> None:
        self.stream_sid = event.stream_sid or event.start.stream_sid
        self.call_sid = event.call_sid
        logger.info("Call started", stream_sid=self.stream_sid, call_sid=self.call_sid)

    def track_mark(self, name: str) -> None:
        self.pending_marks[name] = time.time()

    def acknowledge(self, event: Mark) -> Optional[float]:
        """Retire an echoed mark; returns its round-trip in ms, or None when it was not ours."""
        sent_at = self.pending_marks.pop(event.mark.name, None)
        if sent_at is None:
            logger.debug("Acknowledgment for unknown mark", mark_name=event.mark.name)
            return None
        rtt_ms = (time.time() - sent_at) * 1000
        self.mark_rtt_ms.append(rtt_ms)
        return rtt_ms

    def clear_message(self) -> str:
        return create_clear_message(self.stream_sid) if self.stream_sid else ""
