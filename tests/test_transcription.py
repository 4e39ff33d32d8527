"""
Tests for utterance assembly and Deepgram message parsing.
"""

from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import pytest

from src.callflow.events import (
    FinalTranscript,
    InterimUtterance,
    RecognitionEvent,
    RecognitionEventType,
)
from src.callflow.transcription import (
    DeepgramSTT,
    TranscriptAssembler,
    parse_deepgram_message,
)


def final(text, speech_final=False):
    return RecognitionEvent(transcript=text, is_final=True, speech_final=speech_final)


def interim(text):
    return RecognitionEvent(transcript=text, is_final=False)


UTTERANCE_END = RecognitionEvent(type=RecognitionEventType.UTTERANCE_END)


class TestTranscriptAssembler:

    def test_interim_is_reported_not_accumulated(self):
        assembler = TranscriptAssembler()

        signals = assembler.consume(interim("I want"))

        assert signals == [InterimUtterance(text="I want")]
        assert assembler.pending_text == ""

    def test_speech_final_flushes_accumulated_finals(self):
        assembler = TranscriptAssembler()

        assert assembler.consume(final("I'd like")) == []
        signals = assembler.consume(final("dental coverage", speech_final=True))

        assert signals == [FinalTranscript(text="I'd like dental coverage")]
        assert assembler.pending_text == ""

    def test_utterance_end_flushes_when_no_speech_final(self):
        assembler = TranscriptAssembler()
        assembler.consume(final("yes please"))

        assert assembler.consume(UTTERANCE_END) == [FinalTranscript(text="yes please")]

    def test_utterance_end_after_speech_final_emits_nothing(self):
        """Each utterance is forwarded exactly once."""
        assembler = TranscriptAssembler()

        first = assembler.consume(final("hello", speech_final=True))
        second = assembler.consume(UTTERANCE_END)

        assert first == [FinalTranscript(text="hello")]
        assert second == []

    def test_repeated_utterance_end_is_idempotent(self):
        assembler = TranscriptAssembler()
        assembler.consume(final("okay"))

        assert len(assembler.consume(UTTERANCE_END)) == 1
        assert assembler.consume(UTTERANCE_END) == []

    def test_new_final_rearms_utterance_end(self):
        assembler = TranscriptAssembler()
        assembler.consume(final("first", speech_final=True))

        assembler.consume(final("second"))

        assert assembler.consume(UTTERANCE_END) == [FinalTranscript(text="second")]

    def test_empty_final_is_ignored(self):
        assembler = TranscriptAssembler()

        assert assembler.consume(final("   ", speech_final=True)) == []
        assert assembler.consume(UTTERANCE_END) == []

    def test_utterance_end_with_nothing_collected_emits_nothing(self):
        assembler = TranscriptAssembler()

        assert assembler.consume(UTTERANCE_END) == []

    def test_reset(self):
        assembler = TranscriptAssembler()
        assembler.consume(final("dangling"))

        assembler.reset()

        assert assembler.pending_text == ""
        assert assembler.consume(UTTERANCE_END) == []


class TestParseDeepgramMessage:

    def test_results(self):
        event = parse_deepgram_message({
            "type": "Results",
            "is_final": True,
            "speech_final": False,
            "channel": {"alternatives": [{"transcript": "hi there", "confidence": 0.98}]},
        })

        assert event.transcript == "hi there"
        assert event.is_final is True
        assert event.speech_final is False
        assert event.type == RecognitionEventType.NORMAL

    def test_results_without_alternatives(self):
        event = parse_deepgram_message({"type": "Results", "channel": {"alternatives": []}})

        assert event.transcript == ""
        assert event.is_final is False

    def test_utterance_end(self):
        event = parse_deepgram_message({"type": "UtteranceEnd", "last_word_end": 2.3})

        assert event.type == RecognitionEventType.UTTERANCE_END

    @pytest.mark.parametrize("msg_type", ["Metadata", "SpeechStarted", ""])
    def test_other_messages(self, msg_type):
        assert parse_deepgram_message({"type": msg_type}) is None


class TestDeepgramSTT:

    def test_listen_url(self):
        stt = DeepgramSTT()

        url = urlparse(stt.listen_url())
        params = parse_qs(url.query)

        assert url.netloc == "api.deepgram.com"
        assert params["encoding"] == ["mulaw"]
        assert params["sample_rate"] == ["8000"]
        assert params["model"] == ["nova-2"]
        assert params["interim_results"] == ["true"]
        assert params["endpointing"] == ["200"]
        assert params["utterance_end_ms"] == ["1000"]

    @pytest.mark.asyncio
    async def test_results_are_forwarded_to_callback(self):
        on_event = AsyncMock()
        stt = DeepgramSTT(on_event=on_event)

        await stt._handle_message({
            "type": "Results",
            "is_final": True,
            "speech_final": True,
            "channel": {"alternatives": [{"transcript": "transfer me"}]},
        })

        on_event.assert_awaited_once()
        event = on_event.await_args.args[0]
        assert event.transcript == "transfer me"
        assert event.speech_final is True

    @pytest.mark.asyncio
    async def test_error_messages_are_not_forwarded(self):
        on_event = AsyncMock()
        stt = DeepgramSTT(on_event=on_event)

        await stt._handle_message({"type": "Error", "description": "bad audio"})
        await stt._handle_message({"type": "Metadata", "request_id": "r1"})

        on_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_audio_when_disconnected_is_noop(self):
        stt = DeepgramSTT()

        await stt.send_audio(b"\xff" * 160)

        assert stt.is_connected is False
