"""Voice engine backed by the ``edge-tts`` command-line tool."""

import os
import re
import shutil
from typing import Dict, List, Optional

from speechmaker_backend.errors import (
    EngineUnresponsiveError,
    NoVoicesError,
    SpeechMakerError,
)
from speechmaker_backend.models import Voice
from speechmaker_backend.process import CancellationToken, Deadline, run_command

from .base import TTSBackend

DEFAULT_EXECUTABLE = "edge-tts"

_TABLE_SEPARATOR_RE = re.compile(r"^-{3,}(\s+-{3,})*\s*$")
_INLINE_NAME_RE = re.compile(r"Name:\s*([^,]+)")
_INLINE_GENDER_RE = re.compile(r"Gender:\s*([^,]+)")
_INLINE_LANGUAGE_RE = re.compile(r"(?:Language|Locale):\s*([^,\s]+)")


def speed_to_rate(speed: float) -> str:
    percent = int(round((speed - 1.0) * 100))
    return f"+{percent}%" if percent >= 0 else f"{percent}%"


def _locale_from_short_name(short_name: str) -> str:
    parts = short_name.split("-")
    if len(parts) >= 3:
        return f"{parts[0]}-{parts[1]}"
    return "Unknown"


def _parse_table(lines: List[str]) -> List[Dict[str, str]]:
    rows: List[Dict[str, str]] = []
    for line in lines:
        columns = re.split(r"\s{2,}", line.strip())
        if not columns or not columns[0]:
            continue
        short_name = columns[0]
        rows.append(
            {
                "id": short_name,
                "gender": columns[1] if len(columns) > 1 else "Unknown",
                "locale": _locale_from_short_name(short_name),
            }
        )
    return rows


def _parse_blocks(lines: List[str]) -> List[Dict[str, str]]:
    rows: List[Dict[str, str]] = []
    current: Dict[str, str] = {}
    for line in lines + [""]:
        stripped = line.strip()
        if not stripped:
            if current.get("id"):
                rows.append(current)
            current = {}
            continue
        key, _, value = stripped.partition(":")
        value = value.strip()
        key = key.strip().lower()
        if key == "shortname":
            current["id"] = value
        elif key == "name" and "id" not in current:
            current["id"] = value
        elif key == "gender":
            current["gender"] = value
        elif key in ("locale", "language"):
            current["locale"] = value
    return rows


def _parse_inline(lines: List[str]) -> List[Dict[str, str]]:
    rows: List[Dict[str, str]] = []
    for line in lines:
        name_match = _INLINE_NAME_RE.search(line)
        if not name_match:
            continue
        gender_match = _INLINE_GENDER_RE.search(line)
        language_match = _INLINE_LANGUAGE_RE.search(line)
        rows.append(
            {
                "id": name_match.group(1).strip(),
                "gender": gender_match.group(1).strip() if gender_match else "Unknown",
                "locale": language_match.group(1).strip() if language_match else "Unknown",
            }
        )
    return rows


def parse_voice_list(output: str) -> List[Voice]:
    """Parse ``edge-tts --list-voices`` output (table, block or inline layout)."""
    lines = output.splitlines()
    separator_idx = next(
        (idx for idx, line in enumerate(lines) if _TABLE_SEPARATOR_RE.match(line.strip())),
        None,
    )

    if separator_idx is not None:
        rows = _parse_table(lines[separator_idx + 1:])
    elif any("Name:" in line and "Gender:" in line for line in lines):
        rows = _parse_inline(lines)
    else:
        rows = _parse_blocks(lines)

    voices: List[Voice] = []
    default_assigned = False
    for row in rows:
        locale = row.get("locale") or _locale_from_short_name(row["id"])
        is_default = not default_assigned and locale.lower().startswith("en")
        default_assigned = default_assigned or is_default
        voices.append(
            Voice(
                id=row["id"],
                display_name=row["id"],
                locale=locale,
                gender=row.get("gender") or "Unknown",
                is_default=is_default,
            )
        )

    if not voices:
        raise NoVoicesError("No TTS voices found. Please ensure edge-tts is properly installed.")
    return voices


class EdgeCLIBackend(TTSBackend):
    def __init__(self, executable: Optional[str] = None) -> None:
        self.executable = executable or os.getenv("SPEECHMAKER_EDGE_TTS") or DEFAULT_EXECUTABLE

    @property
    def name(self) -> str:
        return "edge"

    @property
    def native_format(self) -> str:
        # edge-tts always writes MP3 frames regardless of the file extension.
        return "mp3"

    def _run(self, args: List[str], deadline, cancel_token, label: str):
        try:
            return run_command(
                [self.executable, *args],
                deadline=deadline,
                cancel_token=cancel_token,
                label=label,
            )
        except OSError as exc:
            raise EngineUnresponsiveError(
                f"Failed to execute {self.executable}: {exc}"
            ) from exc

    def list_voices(self, deadline: Optional[Deadline] = None) -> List[Voice]:
        proc = self._run(["--list-voices"], deadline, None, "edge-tts --list-voices")
        if proc.returncode != 0:
            raise EngineUnresponsiveError(f"Failed to get voices: {proc.stderr.strip()}")
        return parse_voice_list(proc.stdout)

    def synthesize(
        self,
        text: str,
        voice_id: str,
        speed: float,
        output_path: str,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        args = [
            "--voice", voice_id,
            "--rate", speed_to_rate(speed),
            "--text", text,
            "--write-media", output_path,
        ]
        proc = self._run(args, deadline, cancel_token, "edge-tts synthesis")
        if proc.returncode != 0:
            raise SpeechMakerError(f"TTS conversion failed: {proc.stderr.strip()}")
        if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
            raise SpeechMakerError("TTS conversion failed: engine produced no audio")
        return output_path


def is_edge_cli_available(executable: str = DEFAULT_EXECUTABLE) -> bool:
    return shutil.which(executable) is not None
