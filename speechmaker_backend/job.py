import argparse
import os
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .errors import (
    EmptyFileError,
    FileTooLargeError,
    NoVoicesError,
    OutputLocationError,
    UnsupportedFileTypeError,
    VoiceNotFoundError,
)
from .models import ConversionSession, Voice
from .settings import MAX_VOICE_SPEED, MIN_VOICE_SPEED, Settings

MAX_INPUT_BYTES = 10 * 1024 * 1024
SUPPORTED_INPUT_EXTENSIONS = (".txt",)
DEFAULT_OUTPUT_BASENAME = "speech"

_UNSAFE_FILENAME_RE = re.compile(r'[<>:"/\\|?*]')


def read_text_file(path: str) -> str:
    """Read a UTF-8 text input after checking type, size, and content."""
    extension = os.path.splitext(path)[1].lower()
    if extension not in SUPPORTED_INPUT_EXTENSIONS:
        raise UnsupportedFileTypeError(
            f"Unsupported file type: {extension or '(none)'}. Only .txt files are supported."
        )

    size = os.stat(path).st_size
    if size > MAX_INPUT_BYTES:
        raise FileTooLargeError(
            f"File too large: {size / 1024 / 1024:.2f}MB. "
            f"Maximum size is {MAX_INPUT_BYTES // (1024 * 1024)}MB."
        )

    with open(path, "r", encoding="utf-8", errors="replace") as fh:
        text = fh.read()
    if not text.strip():
        raise EmptyFileError("File is empty or contains no readable text")
    return text


def sanitize_base_name(base_name: str) -> str:
    sanitized = _UNSAFE_FILENAME_RE.sub("_", base_name).strip()
    return sanitized or DEFAULT_OUTPUT_BASENAME


def generate_unique_output_path(output_dir: str, base_name: str, extension: str) -> str:
    """Return ``<dir>/<name>.<ext>``, or ``<name>_N.<ext>`` if that is taken."""
    extension = extension if extension.startswith(".") else f".{extension}"
    name = sanitize_base_name(base_name)
    candidate = os.path.join(output_dir, f"{name}{extension}")
    counter = 0
    while os.path.exists(candidate):
        counter += 1
        candidate = os.path.join(output_dir, f"{name}_{counter}{extension}")
    return candidate


def ensure_output_dir(output_dir: str) -> str:
    try:
        os.makedirs(output_dir, exist_ok=True)
    except OSError as exc:
        raise OutputLocationError(f"Cannot use output folder {output_dir}: {exc}") from exc
    if not os.access(output_dir, os.W_OK):
        raise OutputLocationError(f"Output folder is not writable: {output_dir}")
    return output_dir


def select_voice(voices: Sequence[Voice], requested: Optional[str]) -> Voice:
    if not voices:
        raise NoVoicesError("No TTS voices found")
    if requested:
        for voice in voices:
            if voice.id == requested:
                return voice
        raise VoiceNotFoundError(requested)
    for voice in voices:
        if voice.is_default:
            return voice
    return voices[0]


@dataclass
class PreparedSession:
    session: ConversionSession
    input_path: Optional[str]
    voice: Voice
    chunk_chars: int
    total_chars: int
    warnings: List[str]


@dataclass
class JobPreparationDeps:
    read_text_file: Callable[[str], str] = read_text_file
    generate_unique_output_path: Callable[[str, str, str], str] = generate_unique_output_path
    ensure_output_dir: Callable[[str], str] = ensure_output_dir


DEFAULT_PREPARATION_DEPS = JobPreparationDeps()


def resolve_output_format(
    requested: Optional[str],
    settings: Settings,
    converter_available: bool,
    native_format: str = "wav",
) -> tuple[str, List[str]]:
    """Pick the output format, falling back to the engine's own format when
    producing the requested one would need the missing converter."""
    output_format = requested or settings.default_output_format
    warnings: List[str] = []
    if output_format != native_format and not converter_available:
        warnings.append(
            f"{output_format.upper()} output requires FFmpeg, which was not found. "
            f"Falling back to {native_format.upper()}."
        )
        output_format = native_format
    return output_format, warnings


def prepare_session(
    args: argparse.Namespace,
    *,
    settings: Settings,
    voices: Sequence[Voice],
    converter_available: bool,
    create_session: Callable[..., ConversionSession],
    deps: Optional[JobPreparationDeps] = None,
    native_format: str = "wav",
) -> PreparedSession:
    deps = deps or DEFAULT_PREPARATION_DEPS

    input_path = getattr(args, "input", None)
    if input_path:
        text = deps.read_text_file(input_path)
        base_name = os.path.splitext(os.path.basename(input_path))[0]
    else:
        text = getattr(args, "text", None) or ""
        base_name = DEFAULT_OUTPUT_BASENAME

    speed = args.speed if args.speed is not None else settings.voice_speed
    if not MIN_VOICE_SPEED <= speed <= MAX_VOICE_SPEED:
        raise ValueError(f"--speed must be between {MIN_VOICE_SPEED} and {MAX_VOICE_SPEED}")

    chunk_chars = args.chunk_chars if args.chunk_chars is not None else settings.max_chunk_length
    if chunk_chars < 1:
        raise ValueError("--chunk_chars must be >= 1")

    voice = select_voice(voices, args.voice or settings.last_selected_voice)
    output_format, warnings = resolve_output_format(
        args.format,
        settings,
        converter_available,
        native_format,
    )

    if args.output:
        output_path = args.output
        requested_ext = os.path.splitext(output_path)[1].lower().lstrip(".")
        if requested_ext and requested_ext != output_format:
            output_path = f"{os.path.splitext(output_path)[0]}.{output_format}"
            warnings.append(f"Output extension changed to .{output_format}: {output_path}")
        elif not requested_ext:
            output_path = f"{output_path}.{output_format}"
        deps.ensure_output_dir(os.path.dirname(os.path.abspath(output_path)))
    else:
        output_dir = args.output_dir or settings.default_output_path
        if not output_dir:
            raise OutputLocationError("No output folder configured")
        deps.ensure_output_dir(output_dir)
        output_path = deps.generate_unique_output_path(output_dir, base_name, output_format)

    session = create_session(
        text,
        voice_id=voice.id,
        speed=speed,
        output_format=output_format,
        output_path=output_path,
        max_chunk_chars=chunk_chars,
    )
    return PreparedSession(
        session=session,
        input_path=input_path,
        voice=voice,
        chunk_chars=chunk_chars,
        total_chars=len(text),
        warnings=warnings,
    )
