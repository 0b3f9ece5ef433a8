"""Tests for the command-line entry point."""

import os
from dataclasses import replace
from unittest.mock import ANY, MagicMock

import pytest

from backends.mock import MockTTSBackend
from speechmaker_backend import cli
from speechmaker_backend.cli import (
    DEFAULT_MAIN_DEPS,
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_OK,
    main,
    parse_args,
)
from speechmaker_backend.process import CancellationToken
from speechmaker_backend.settings import RuntimeOptions, Settings

TEXT = "Hello world. " * 200


class NoConverterProbe:
    def probe_bundled(self):
        return None

    def probe_system(self, deadline):
        return None


class Mp3MockBackend(MockTTSBackend):
    """Mock engine that emits MP3 frame bytes instead of WAV."""

    @property
    def native_format(self):
        return "mp3"

    def synthesize(self, text, voice_id, speed, output_path, deadline=None, cancel_token=None):
        with open(output_path, "wb") as fh:
            fh.write(b"\xff\xfb" + text.encode("utf-8"))
        self.synthesized.append({"text": text, "voice_id": voice_id, "output_path": output_path})
        return output_path


def build_deps(temp_dir, argv, events, **overrides):
    values = {
        "parse_args": lambda: parse_args(argv),
        "event_emitter_cls": lambda **kwargs: events,
        "load_settings": lambda path: Settings(default_output_path=temp_dir),
        "runtime_options": lambda: RuntimeOptions(voice_attempts=2),
        "converter_probe_cls": NoConverterProbe,
    }
    values.update(overrides)
    return replace(DEFAULT_MAIN_DEPS, **values)


def emitted(events, event_type):
    return [call.kwargs for call in events.emit.call_args_list if call.args[0] == event_type]


@pytest.mark.unit
class TestParseArgs:
    def test_requires_input_or_text(self):
        with pytest.raises(SystemExit):
            parse_args(["--backend", "mock"])

    def test_input_and_text_are_exclusive(self):
        with pytest.raises(SystemExit):
            parse_args(["--input", "a.txt", "--text", "hello"])

    def test_workers_must_be_positive(self):
        with pytest.raises(SystemExit):
            parse_args(["--text", "hello", "--workers", "0"])

    def test_inspection_modes_need_no_input(self):
        assert parse_args(["--list_voices"]).list_voices is True
        assert parse_args(["--check_resources"]).check_resources is True

    def test_defaults(self):
        args = parse_args(["--text", "hello"])

        assert args.backend == "edge"
        assert args.event_format == "text"
        assert args.format is None
        assert args.workers is None


@pytest.mark.unit
class TestMainConversion:
    def test_converts_text_to_wav(self, temp_dir):
        events = MagicMock()
        cleanup_backend = MagicMock(return_value=None)
        deps = build_deps(
            temp_dir,
            ["--text", TEXT, "--backend", "mock", "--no_rich", "--chunk_chars", "1000"],
            events,
            cleanup_backend=cleanup_backend,
        )

        assert main(deps) == EXIT_OK

        expected = os.path.join(temp_dir, "speech.wav")
        assert os.path.isfile(expected)
        events.emit.assert_any_call("done", output=expected)
        events.emit.assert_any_call("metadata", key="total_chunks", value=3)
        cleanup_backend.assert_called_once()
        events.close.assert_called_once()

    def test_mp3_engine_without_converter_writes_mp3(self, temp_dir):
        events = MagicMock()
        backend = Mp3MockBackend()
        deps = build_deps(
            temp_dir,
            ["--text", TEXT, "--backend", "mock", "--no_rich", "--chunk_chars", "1000"],
            events,
            load_settings=lambda path: Settings(
                default_output_path=temp_dir,
                default_output_format="mp3",
            ),
            create_backend=lambda name: backend,
            cleanup_backend=MagicMock(return_value=None),
        )

        assert main(deps) == EXIT_OK

        expected = os.path.join(temp_dir, "speech.mp3")
        with open(expected, "rb") as fh:
            merged = fh.read()
        assert merged == b"".join(
            b"\xff\xfb" + item["text"].encode("utf-8")
            for item in sorted(backend.synthesized, key=lambda item: item["output_path"])
        )
        assert len(backend.synthesized) == 3
        events.warn.assert_not_called()
        events.emit.assert_any_call("metadata", key="output_format", value="mp3")

    def test_mp3_request_without_converter_falls_back_to_wav(self, temp_dir):
        events = MagicMock()
        deps = build_deps(
            temp_dir,
            ["--text", "Short text.", "--backend", "mock", "--no_rich", "--format", "mp3"],
            events,
        )

        assert main(deps) == EXIT_OK

        assert os.path.isfile(os.path.join(temp_dir, "speech.wav"))
        warnings = [call.args[0] for call in events.warn.call_args_list]
        assert any("Falling back to WAV" in warning for warning in warnings)

    def test_missing_input_file_is_reported(self, temp_dir):
        events = MagicMock()
        missing = os.path.join(temp_dir, "missing.txt")
        deps = build_deps(temp_dir, ["--input", missing, "--backend", "mock", "--no_rich"], events)

        assert main(deps) == EXIT_FAILURE

        events.emit.assert_any_call("error", message="Error: File not found: missing.txt", record=ANY)
        record = emitted(events, "error")[0]["record"]
        assert record["category"] == "file_not_found"
        assert record["suggested_action"] == "browse_file"

    def test_cancelled_conversion_exits_130(self, temp_dir):
        events = MagicMock()

        def cancelled_token():
            token = CancellationToken()
            token.cancel()
            return token

        deps = build_deps(
            temp_dir,
            ["--text", TEXT, "--backend", "mock", "--no_rich", "--chunk_chars", "1000"],
            events,
            cancel_token_cls=cancelled_token,
        )

        assert main(deps) == EXIT_CANCELLED
        assert not os.path.exists(os.path.join(temp_dir, "speech.wav"))
        assert emitted(events, "error")[0]["record"]["category"] == "cancelled"

    def test_missing_voices_blocks_conversion(self, temp_dir):
        events = MagicMock()
        deps = build_deps(
            temp_dir,
            ["--text", "Hello.", "--backend", "mock", "--no_rich"],
            events,
            create_backend=lambda name: MockTTSBackend(voices=[]),
        )

        assert main(deps) == EXIT_FAILURE

        record = emitted(events, "error")[0]["record"]
        assert record["category"] == "voice_unavailable"
        assert record["suggested_action"] == "install_voices"
        assert emitted(events, "done") == []


@pytest.mark.unit
class TestMainInspection:
    def test_check_resources_reports_state(self, temp_dir):
        events = MagicMock()
        deps = build_deps(temp_dir, ["--check_resources", "--backend", "mock"], events)

        assert main(deps) == EXIT_OK

        result = emitted(events, "inspection")[0]["result"]
        assert "mock" in result["backends"]
        assert result["converter"]["available"] is False
        assert result["converter"]["source"] == "none"
        assert len(result["voices"]["voices"]) == 2
        assert result["readiness"]["ready"] is True
        assert result["readiness"]["mp3_available"] is False

    def test_list_voices(self, temp_dir):
        events = MagicMock()
        deps = build_deps(temp_dir, ["--list_voices", "--backend", "mock"], events)

        assert main(deps) == EXIT_OK

        voice_ids = [payload["id"] for payload in emitted(events, "voice")]
        assert voice_ids == ["en-US-MockNeural", "en-GB-MockNeural"]


@pytest.mark.unit
class TestReportError:
    def test_troubleshooting_steps_are_numbered(self, classifier):
        events = MagicMock()
        events.event_format = "text"
        record = classifier.classify("Unsupported file type: .pdf")

        cli.report_error(events, record)

        lines = [call.args[0] for call in events.error.call_args_list]
        assert lines[0].startswith("  1. ")
        assert len(lines) == len(record.troubleshooting)

    def test_json_mode_skips_text_lines(self, classifier):
        events = MagicMock()
        events.event_format = "json"

        cli.report_error(events, classifier.classify("Unsupported file type: .pdf"))

        events.error.assert_not_called()
