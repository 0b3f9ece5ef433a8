import json
import os
import tempfile
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

from .export import SUPPORTED_OUTPUT_FORMATS
from .runtime import _parse_env_bool, _parse_env_int

APP_FOLDER_NAME = "SpeechMaker"

MIN_VOICE_SPEED = 0.5
MAX_VOICE_SPEED = 2.0
MIN_CHUNK_LENGTH = 1000
MAX_CHUNK_LENGTH = 50000
DEFAULT_CHUNK_LENGTH = 5000


def _can_use_folder(path: str) -> bool:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError:
        return False
    return os.access(path, os.W_OK)


def default_output_folder() -> str:
    """First usable of ~/Documents/SpeechMaker, ~/SpeechMaker, <tmp>/SpeechMaker."""
    home = os.path.expanduser("~")
    candidates = [
        os.path.join(home, "Documents", APP_FOLDER_NAME),
        os.path.join(home, APP_FOLDER_NAME),
        os.path.join(tempfile.gettempdir(), APP_FOLDER_NAME),
    ]
    for candidate in candidates:
        if _can_use_folder(candidate):
            return candidate
    return tempfile.gettempdir()


@dataclass
class Settings:
    last_selected_voice: Optional[str] = None
    default_output_format: str = "wav"
    default_output_path: Optional[str] = None
    voice_speed: float = 1.0
    max_chunk_length: int = DEFAULT_CHUNK_LENGTH

    def to_dict(self) -> dict:
        return asdict(self)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_settings(
    raw: Optional[Mapping[str, Any]],
    *,
    resolve_default_folder: bool = True,
) -> Settings:
    """Build ``Settings`` from untrusted input; bad values fall back to defaults."""
    raw = raw or {}
    settings = Settings()

    voice = raw.get("last_selected_voice")
    if isinstance(voice, str) and voice:
        settings.last_selected_voice = voice

    output_format = raw.get("default_output_format")
    if output_format in SUPPORTED_OUTPUT_FORMATS:
        settings.default_output_format = output_format

    speed = raw.get("voice_speed")
    if _is_number(speed) and MIN_VOICE_SPEED <= speed <= MAX_VOICE_SPEED:
        settings.voice_speed = float(speed)

    chunk_length = raw.get("max_chunk_length")
    if _is_number(chunk_length) and MIN_CHUNK_LENGTH <= chunk_length <= MAX_CHUNK_LENGTH:
        settings.max_chunk_length = int(chunk_length)

    output_path = raw.get("default_output_path")
    if isinstance(output_path, str) and output_path and _can_use_folder(output_path):
        settings.default_output_path = output_path
    elif resolve_default_folder:
        settings.default_output_path = default_output_folder()

    return settings


def load_settings(path: Optional[str], *, resolve_default_folder: bool = True) -> Settings:
    raw: Mapping[str, Any] = {}
    if path and os.path.isfile(path):
        try:
            with open(path, "r", encoding="utf-8") as fh:
                loaded = json.load(fh)
            if isinstance(loaded, dict):
                raw = loaded
        except (OSError, ValueError):
            raw = {}
    return validate_settings(raw, resolve_default_folder=resolve_default_folder)


def save_settings(path: str, settings: Settings) -> None:
    settings_dir = os.path.dirname(os.path.abspath(path))
    if settings_dir:
        os.makedirs(settings_dir, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(settings.to_dict(), fh, indent=2)


@dataclass
class RuntimeOptions:
    fast_start: bool = False
    converter_timeout_ms: Optional[int] = None
    voice_timeout_ms: Optional[int] = None
    voice_attempts: Optional[int] = None
    workers: Optional[int] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RuntimeOptions":
        env = os.environ if environ is None else environ
        return cls(
            fast_start=bool(_parse_env_bool(env.get("SPEECHMAKER_FAST_START"))),
            converter_timeout_ms=_parse_env_int(env.get("SPEECHMAKER_CONVERTER_TIMEOUT_MS")),
            voice_timeout_ms=_parse_env_int(env.get("SPEECHMAKER_VOICE_TIMEOUT_MS")),
            voice_attempts=_parse_env_int(env.get("SPEECHMAKER_VOICE_ATTEMPTS"), minimum=2),
            workers=_parse_env_int(env.get("SPEECHMAKER_WORKERS")),
        )
