"""Integration tests for end-to-end text-to-speech conversion."""

import os
import shutil
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from pydub import AudioSegment

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from app import (
    ConversionOrchestrator,
    ErrorClassifier,
    ReadinessStateMachine,
    ResourceResolver,
    RetryPolicy,
    SessionError,
    split_text_into_chunks,
)
from backends.mock import MockTTSBackend
from speechmaker_backend.errors import EngineUnresponsiveError
from speechmaker_backend.export import AudioConverter, audio_to_segment
from speechmaker_backend.models import SessionStatus
from speechmaker_backend.runtime import ConverterProbe

SAMPLE_TEXT = " ".join(
    f"Sentence number {i} tells a small part of the story." for i in range(120)
)


class FlakyMockBackend(MockTTSBackend):
    """Mock backend whose chosen chunk fails a fixed number of times first."""

    def __init__(self, fail_text, failures):
        super().__init__()
        self.fail_text = fail_text
        self.remaining_failures = failures

    def synthesize(self, text, voice_id, speed, output_path, deadline=None, cancel_token=None):
        if text == self.fail_text and self.remaining_failures > 0:
            self.remaining_failures -= 1
            raise EngineUnresponsiveError("TTS engine is not responding")
        return super().synthesize(text, voice_id, speed, output_path, deadline, cancel_token)


def expected_audio(backend, chunks, speed=1.0):
    combined = AudioSegment.empty()
    for chunk in chunks:
        combined += audio_to_segment(backend._text_to_audio(chunk, speed), backend.sample_rate)
    return combined.raw_data


@pytest.mark.integration
class TestConversionPipeline:
    """End-to-end conversion with the deterministic mock backend."""

    def test_parallel_conversion_matches_sequential_audio(self, tmp_path):
        """Merged WAV equals the chunks' audio concatenated in text order."""
        backend = MockTTSBackend()
        orchestrator = ConversionOrchestrator(
            backend,
            classifier=ErrorClassifier(),
            max_workers=3,
            events=MagicMock(),
            temp_root=str(tmp_path),
        )
        session = orchestrator.create_session(
            SAMPLE_TEXT,
            voice_id="en-US-MockNeural",
            speed=1.0,
            output_format="wav",
            output_path=str(tmp_path / "speech.wav"),
            max_chunk_chars=1000,
        )
        chunks = split_text_into_chunks(SAMPLE_TEXT, 1000)
        assert session.total_chunks == len(chunks) >= 3

        output = orchestrator.convert(session)

        merged = AudioSegment.from_wav(output)
        assert merged.raw_data == expected_audio(backend, chunks)
        assert session.status is SessionStatus.SUCCEEDED
        assert not os.path.isdir(session.temp_dir)

    def test_transient_failure_is_retried_without_reordering(self, tmp_path):
        """A chunk that fails once still lands in its original position."""
        chunks = split_text_into_chunks(SAMPLE_TEXT, 1000)
        backend = FlakyMockBackend(fail_text=chunks[1], failures=1)
        events = MagicMock()
        orchestrator = ConversionOrchestrator(
            backend,
            classifier=ErrorClassifier(),
            retry_policy=RetryPolicy(sleep=lambda seconds: None),
            max_workers=3,
            events=events,
            temp_root=str(tmp_path),
        )
        session = orchestrator.create_session(
            SAMPLE_TEXT,
            voice_id="en-US-MockNeural",
            speed=1.0,
            output_format="wav",
            output_path=str(tmp_path / "speech.wav"),
            max_chunk_chars=1000,
        )

        output = orchestrator.convert(session)

        assert AudioSegment.from_wav(output).raw_data == expected_audio(backend, chunks)
        assert session.jobs[1].attempt_count == 2
        events.emit.assert_any_call("retry", chunk_idx=1, attempt=2, delay_ms=1000)

    def test_unknown_voice_fails_the_session(self, tmp_path):
        """A voice the engine does not know ends the session as FAILED."""
        orchestrator = ConversionOrchestrator(
            MockTTSBackend(),
            classifier=ErrorClassifier(),
            retry_policy=RetryPolicy(sleep=lambda seconds: None),
            events=MagicMock(),
            temp_root=str(tmp_path),
        )
        session = orchestrator.create_session(
            "Just one chunk.",
            voice_id="xx-XX-UnknownNeural",
            speed=1.0,
            output_format="wav",
            output_path=str(tmp_path / "speech.wav"),
            max_chunk_chars=1000,
        )

        with pytest.raises(SessionError) as exc_info:
            orchestrator.convert(session)

        assert session.status is SessionStatus.FAILED
        assert exc_info.value.record.suggested_action == "select_voice"
        assert not (tmp_path / "speech.wav").exists()

    def test_resolver_readiness_and_conversion_flow(self, tmp_path):
        """Resources feed readiness, and readiness gates the output format."""
        backend = MockTTSBackend()
        events = MagicMock()
        classifier = ErrorClassifier(events=events)
        probe = MagicMock()
        probe.probe_bundled.return_value = None
        probe.probe_system.return_value = None
        resolver = ResourceResolver(
            voice_lister=backend.list_voices,
            classifier=classifier,
            converter_probe=probe,
            events=events,
        )
        readiness = ReadinessStateMachine(events=events)
        readiness.attach(resolver)
        readiness.update_output_folder_state(False, str(tmp_path))

        converter_status = resolver.resolve_converter()
        voice_status = resolver.resolve_voices()
        readiness.update_initialization_state(False)

        assert readiness.ready is True
        assert readiness.can_convert_to_mp3() is False
        assert AudioConverter.from_status(converter_status) is None

        orchestrator = ConversionOrchestrator(
            backend,
            classifier=classifier,
            converter=AudioConverter.from_status(converter_status),
            events=events,
            temp_root=str(tmp_path),
        )
        session = orchestrator.create_session(
            SAMPLE_TEXT,
            voice_id=voice_status.voices[0].id,
            speed=1.25,
            output_format="wav",
            output_path=str(tmp_path / "out" / "speech.wav"),
            max_chunk_chars=2000,
        )

        output = orchestrator.convert(session)

        assert os.path.isfile(output)
        assert resolver.probe_count(voice_status.kind) == 1


@pytest.mark.integration
@pytest.mark.slow
@pytest.mark.skipif(shutil.which("ffmpeg") is None, reason="ffmpeg not installed")
class TestFfmpegConversion:
    """Conversion through a real ffmpeg binary."""

    def test_multi_chunk_mp3_output(self, tmp_path):
        """Chunks are merged into a decodable MP3 file."""
        probe = ConverterProbe(bundled_path=str(tmp_path / "missing-ffmpeg"))
        resolver = ResourceResolver(
            voice_lister=MockTTSBackend().list_voices,
            classifier=ErrorClassifier(),
            converter_probe=probe,
        )
        converter_status = resolver.resolve_converter()
        assert converter_status.available is True
        assert converter_status.source == "system"

        orchestrator = ConversionOrchestrator(
            MockTTSBackend(),
            classifier=ErrorClassifier(),
            converter=AudioConverter.from_status(converter_status, timeout_ms=60000),
            events=MagicMock(),
            temp_root=str(tmp_path),
        )
        session = orchestrator.create_session(
            SAMPLE_TEXT,
            voice_id="en-US-MockNeural",
            speed=1.0,
            output_format="mp3",
            output_path=str(tmp_path / "speech.mp3"),
            max_chunk_chars=1500,
        )

        output = orchestrator.convert(session)

        audio = AudioSegment.from_file(output, format="mp3")
        assert len(audio) > 1000
        assert session.status is SessionStatus.SUCCEEDED
