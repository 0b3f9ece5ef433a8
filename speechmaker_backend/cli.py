import argparse
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from rich.progress import (
    BarColumn,
    Progress,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from backends import TTSBackend, create_backend, get_available_backends

from .cleanup import cleanup_backend
from .errors import ErrorCategory, ErrorClassifier, ErrorRecord, SessionError
from .events import EventEmitter, start_heartbeat_emitter
from .export import AudioConverter
from .job import (
    DEFAULT_PREPARATION_DEPS,
    JobPreparationDeps,
    PreparedSession,
    prepare_session,
)
from .pipeline import DEFAULT_MAX_WORKERS, ConversionOrchestrator
from .process import CancellationToken
from .readiness import ReadinessStateMachine
from .resources import DEFAULT_CONVERTER_TIMEOUT_MS, ResourceResolver
from .runtime import ConverterProbe
from .settings import RuntimeOptions, Settings, load_settings

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


@dataclass
class MainDeps:
    parse_args: Callable[[], argparse.Namespace]
    event_emitter_cls: Callable[..., EventEmitter]
    load_settings: Callable[..., Settings]
    runtime_options: Callable[[], RuntimeOptions]
    create_backend: Callable[[str], TTSBackend]
    converter_probe_cls: Callable[[], ConverterProbe]
    orchestrator_cls: Callable[..., ConversionOrchestrator]
    prepare_session: Callable[..., PreparedSession]
    preparation_deps: JobPreparationDeps
    cleanup_backend: Callable[[Optional[TTSBackend]], Optional[BaseException]]
    start_heartbeat_emitter: Callable[..., Any]
    cancel_token_cls: Callable[[], CancellationToken]


DEFAULT_MAIN_DEPS = MainDeps(
    parse_args=lambda: parse_args(),
    event_emitter_cls=EventEmitter,
    load_settings=load_settings,
    runtime_options=RuntimeOptions.from_env,
    create_backend=create_backend,
    converter_probe_cls=ConverterProbe,
    orchestrator_cls=ConversionOrchestrator,
    prepare_session=prepare_session,
    preparation_deps=DEFAULT_PREPARATION_DEPS,
    cleanup_backend=cleanup_backend,
    start_heartbeat_emitter=start_heartbeat_emitter,
    cancel_token_cls=CancellationToken,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Convert text to speech with a pluggable voice engine")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--input", help="Path to input .txt file")
    source.add_argument("--text", help="Text to convert")
    parser.add_argument("--output", help="Path to output file (WAV or MP3)")
    parser.add_argument(
        "--output_dir",
        help="Folder for the output file when --output is not given (default: settings folder)",
    )
    parser.add_argument("--voice", default=None, help="Voice id (default: last used or engine default)")
    parser.add_argument("--speed", type=float, default=None, help="Speech speed, 0.5-2.0")
    parser.add_argument(
        "--format",
        choices=["wav", "mp3"],
        default=None,
        help="Output format (default: from settings, wav)",
    )
    parser.add_argument(
        "--chunk_chars",
        type=int,
        default=None,
        help="Max characters per chunk (default: from settings, 5000)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help=f"Concurrent synthesis workers (default: {DEFAULT_MAX_WORKERS})",
    )
    parser.add_argument(
        "--backend",
        choices=["edge", "mock"],
        default="edge",
        help="TTS backend to use (default: edge)",
    )
    parser.add_argument("--settings", help="Path to a JSON settings file")
    parser.add_argument(
        "--list_voices",
        action="store_true",
        help="Print the voice catalog, then exit",
    )
    parser.add_argument(
        "--check_resources",
        action="store_true",
        help="Report converter, voice catalog, and readiness state, then exit",
    )
    parser.add_argument(
        "--fast_start",
        action="store_true",
        help="Use shorter voice-detection timeouts and fewer attempts",
    )
    parser.add_argument(
        "--no_rich",
        action="store_true",
        help="Disable rich progress bar (for CLI integration)",
    )
    parser.add_argument(
        "--event_format",
        choices=["text", "json"],
        default="text",
        help="IPC event output format (default: text)",
    )
    parser.add_argument(
        "--log_file",
        help="Optional path to append backend logs",
    )
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not (args.list_voices or args.check_resources) and not (args.input or args.text):
        parser.error("one of --input or --text is required")
    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be >= 1")
    return args


def report_error(events: EventEmitter, record: ErrorRecord) -> None:
    events.emit("error", message=f"Error: {record.user_message}", record=record.to_dict())
    if events.event_format != "json":
        for number, step in enumerate(record.troubleshooting, start=1):
            events.error(f"  {number}. {step}")


def build_resolver(
    args: argparse.Namespace,
    options: RuntimeOptions,
    backend: TTSBackend,
    classifier: ErrorClassifier,
    events: EventEmitter,
    converter_probe: ConverterProbe,
) -> ResourceResolver:
    return ResourceResolver(
        voice_lister=backend.list_voices,
        classifier=classifier,
        converter_probe=converter_probe,
        converter_timeout_ms=options.converter_timeout_ms or DEFAULT_CONVERTER_TIMEOUT_MS,
        voice_timeout_ms=options.voice_timeout_ms,
        voice_attempts=options.voice_attempts,
        fast_start=args.fast_start or options.fast_start,
        events=events,
    )


def main(deps: Optional[MainDeps] = None) -> int:
    deps = deps or DEFAULT_MAIN_DEPS

    args = deps.parse_args()
    job_name = os.path.basename(args.output) if args.output else None
    events = deps.event_emitter_cls(
        event_format=args.event_format,
        job_id=job_name or "job",
        log_file=args.log_file,
    )
    classifier = ErrorClassifier(events=events)
    backend: Optional[TTSBackend] = None
    orchestrator: Optional[ConversionOrchestrator] = None

    try:
        options = deps.runtime_options()
        settings = deps.load_settings(args.settings)
        backend = deps.create_backend(args.backend)

        resolver = build_resolver(
            args,
            options,
            backend,
            classifier,
            events,
            deps.converter_probe_cls(),
        )
        readiness = ReadinessStateMachine(events=events, native_format=backend.native_format)
        readiness.attach(resolver)
        readiness.update_output_folder_state(
            bool(args.output or args.output_dir),
            settings.default_output_path,
        )

        readiness.update_voice_state(loading=True, loaded=False)
        converter_status = resolver.resolve_converter()
        voice_status = resolver.resolve_voices()
        readiness.update_initialization_state(False)

        if args.check_resources:
            events.emit(
                "inspection",
                result={
                    "backends": get_available_backends(),
                    "converter": converter_status.to_dict(),
                    "voices": voice_status.to_dict(),
                    "readiness": readiness.snapshot.to_dict(),
                },
            )
            return EXIT_OK

        if not readiness.ready:
            record = voice_status.error or classifier.classify(
                "No TTS voices found",
                {"operation": "list_voices"},
            )
            report_error(events, record)
            return EXIT_FAILURE

        if args.list_voices:
            for voice in voice_status.voices:
                events.emit("voice", **voice.to_dict())
            return EXIT_OK

        converter = AudioConverter.from_status(converter_status)
        orchestrator = deps.orchestrator_cls(
            backend,
            classifier=classifier,
            converter=converter,
            max_workers=args.workers or options.workers or DEFAULT_MAX_WORKERS,
            events=events,
        )
        prepared = deps.prepare_session(
            args,
            settings=settings,
            voices=voice_status.voices,
            converter_available=readiness.snapshot.converter_usable,
            create_session=orchestrator.create_session,
            deps=deps.preparation_deps,
            native_format=backend.native_format,
        )
        for warning in prepared.warnings:
            events.warn(warning)

        session = prepared.session
        events.emit("metadata", key="voice", value=prepared.voice.id)
        events.emit("metadata", key="output_format", value=session.output_format)
        events.emit("metadata", key="total_chars", value=prepared.total_chars)
        events.info(
            f"Converting {session.total_chunks} chunks with {backend.name} backend "
            f"({orchestrator.max_workers} workers)"
        )

        progress = None
        task_id = None
        if not args.no_rich:
            progress = Progress(
                TextColumn("[bold]Converting[/bold]"),
                BarColumn(),
                TextColumn("{task.completed}/{task.total} chunks"),
                TimeElapsedColumn(),
                TimeRemainingColumn(),
            )
            task_id = progress.add_task("tts", total=session.total_chunks, completed=0)

        token = deps.cancel_token_cls()
        heartbeat_stop, heartbeat_thread = deps.start_heartbeat_emitter(
            events,
            thread_name="convert-heartbeat",
        )
        try:
            if progress:
                with progress:
                    output_path = orchestrator.convert(session, token, progress, task_id)
            else:
                output_path = orchestrator.convert(session, token)
        finally:
            heartbeat_stop.set()
            heartbeat_thread.join(timeout=1)

        events.info("Done.")
        events.info(f"Output: {output_path}")
        events.info(f"Chunks: {session.total_chunks}")
        return EXIT_OK
    except SessionError as exc:
        report_error(events, exc.record)
        if exc.partial_outputs and orchestrator is not None and exc.session is not None:
            orchestrator.cleanup(exc.session)
        if exc.record.category is ErrorCategory.CANCELLED:
            return EXIT_CANCELLED
        return EXIT_FAILURE
    except KeyboardInterrupt:
        events.warn("Interrupted.")
        return EXIT_CANCELLED
    except Exception as exc:
        record = classifier.classify(
            exc,
            {
                "operation": "prepare",
                "file_path": args.input,
                "output_format": args.format,
            },
        )
        report_error(events, record)
        return EXIT_FAILURE
    finally:
        backend_cleanup_error = deps.cleanup_backend(backend)
        if backend_cleanup_error is not None:
            events.warn(f"Backend cleanup failed: {backend_cleanup_error}")
        events.close()


def run() -> None:
    sys.exit(main())
