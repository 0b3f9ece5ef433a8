import os
import platform
import re
import shutil
import sys
from dataclasses import dataclass
from typing import Optional

from .process import Deadline, run_command

PACKAGE_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

_FFMPEG_VERSION_RE = re.compile(r"ffmpeg version (\S+)")


def _parse_env_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def _parse_env_int(value: Optional[str], minimum: int = 1) -> Optional[int]:
    if value is None or not value.strip():
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        return None
    if parsed < minimum:
        return None
    return parsed


def converter_executable_name() -> str:
    return "ffmpeg.exe" if sys.platform == "win32" else "ffmpeg"


def bundled_converter_path(root: Optional[str] = None) -> str:
    override = os.getenv("SPEECHMAKER_FFMPEG")
    if override:
        return override
    base = root or PACKAGE_ROOT
    return os.path.join(
        base,
        "resources",
        "ffmpeg",
        sys.platform,
        platform.machine().lower() or "unknown",
        converter_executable_name(),
    )


def quick_validate_converter(path: Optional[str]) -> bool:
    """Cheap existence check; never spawns a process."""
    if not path:
        return False
    return os.path.isfile(path) and os.access(path, os.X_OK)


def parse_converter_version(output: str) -> Optional[str]:
    match = _FFMPEG_VERSION_RE.search(output or "")
    return match.group(1) if match else None


@dataclass
class ConverterProbeResult:
    path: str
    version: Optional[str]


class ConverterProbe:
    """Finds an ffmpeg executable, bundled copy first."""

    def __init__(self, bundled_path: Optional[str] = None) -> None:
        self._bundled_path = bundled_path

    def bundled_path(self) -> str:
        return self._bundled_path or bundled_converter_path()

    def probe_bundled(self) -> Optional[ConverterProbeResult]:
        path = self.bundled_path()
        if quick_validate_converter(path):
            return ConverterProbeResult(path=path, version=None)
        return None

    def probe_system(self, deadline: Deadline) -> Optional[ConverterProbeResult]:
        path = shutil.which("ffmpeg")
        if path is None:
            return None

        proc = run_command([path, "-version"], deadline=deadline, label="ffmpeg -version")
        if proc.returncode != 0:
            return None
        version = parse_converter_version(proc.stdout)
        if version is None:
            return None
        return ConverterProbeResult(path=path, version=version)
