"""Error taxonomy, classification, and the in-memory error ring log."""

import errno
import os
import random
import re
import string
import subprocess
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Tuple


class ErrorCategory(str, Enum):
    VOICE_UNAVAILABLE = "voice_unavailable"
    ENGINE_UNRESPONSIVE = "engine_unresponsive"
    FILE_NOT_FOUND = "file_not_found"
    ACCESS_DENIED = "access_denied"
    IS_DIRECTORY = "is_directory"
    TOO_MANY_OPEN_FILES = "too_many_open_files"
    UNSUPPORTED_FILE_TYPE = "unsupported_file_type"
    FILE_TOO_LARGE = "file_too_large"
    FILE_EMPTY = "file_empty"
    OUTPUT_LOCATION = "output_location"
    CONVERTER_MISSING = "converter_missing"
    CONVERSION_FAILED = "conversion_failed"
    MERGE_FAILED = "merge_failed"
    EMPTY_INPUT = "empty_input"
    CANCELLED = "cancelled"
    CLEANUP = "cleanup"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SpeechMakerError(RuntimeError):
    error_category = ErrorCategory.UNKNOWN

    def __init__(self, message: str, *, error_category: Optional[ErrorCategory] = None) -> None:
        super().__init__(message)
        if error_category is not None:
            self.error_category = error_category


class NoVoicesError(SpeechMakerError):
    error_category = ErrorCategory.VOICE_UNAVAILABLE


class VoiceNotFoundError(SpeechMakerError):
    error_category = ErrorCategory.VOICE_UNAVAILABLE

    def __init__(self, voice_id: str) -> None:
        super().__init__(f"Voice '{voice_id}' not found")
        self.voice_id = voice_id


class EngineUnresponsiveError(SpeechMakerError):
    error_category = ErrorCategory.ENGINE_UNRESPONSIVE


class UnsupportedFileTypeError(SpeechMakerError):
    error_category = ErrorCategory.UNSUPPORTED_FILE_TYPE


class FileTooLargeError(SpeechMakerError):
    error_category = ErrorCategory.FILE_TOO_LARGE


class EmptyFileError(SpeechMakerError):
    error_category = ErrorCategory.FILE_EMPTY


class OutputLocationError(SpeechMakerError):
    error_category = ErrorCategory.OUTPUT_LOCATION


class ConverterMissingError(SpeechMakerError):
    error_category = ErrorCategory.CONVERTER_MISSING


class ConversionFailedError(SpeechMakerError):
    error_category = ErrorCategory.CONVERSION_FAILED


class MergeFailedError(SpeechMakerError):
    error_category = ErrorCategory.MERGE_FAILED


class EmptyInputError(SpeechMakerError):
    error_category = ErrorCategory.EMPTY_INPUT


class ConversionCancelled(SpeechMakerError):
    error_category = ErrorCategory.CANCELLED


class DeadlineExceeded(TimeoutError):
    def __init__(self, message: str, *, timeout_ms: Optional[int] = None) -> None:
        super().__init__(message)
        self.timeout_ms = timeout_ms


ENGINE_OPERATIONS = {"list_voices", "synthesize", "initialize_engine"}
CONVERTER_OPERATIONS = {"detect_converter", "transcode", "merge", "validate_audio"}


@dataclass(frozen=True)
class ErrorRecord:
    id: str
    timestamp: str
    category: ErrorCategory
    severity: Severity
    message: str
    user_message: str
    troubleshooting: Tuple[str, ...]
    can_retry: bool
    suggested_action: str
    code: Optional[str] = None
    context: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Read-only view over a private copy.
        object.__setattr__(self, "context", MappingProxyType(dict(self.context)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "user_message": self.user_message,
            "troubleshooting": list(self.troubleshooting),
            "can_retry": self.can_retry,
            "suggested_action": self.suggested_action,
            "code": self.code,
            "context": dict(self.context),
        }


class SessionError(RuntimeError):
    """A conversion session ended without producing its output."""

    def __init__(
        self,
        record: ErrorRecord,
        session: Any = None,
        partial_outputs: Optional[List[str]] = None,
    ) -> None:
        super().__init__(record.user_message)
        self.record = record
        self.session = session
        self.partial_outputs = list(partial_outputs or [])


@dataclass(frozen=True)
class _Rule:
    severity: Severity
    can_retry: bool
    suggested_action: str
    user_message: str
    troubleshooting: Tuple[str, ...]


_RULES: Dict[ErrorCategory, _Rule] = {
    ErrorCategory.VOICE_UNAVAILABLE: _Rule(
        Severity.WARNING,
        True,
        "select_voice",
        'The selected voice "{voice_id}" is no longer available.',
        (
            "The voice may have been removed from the speech engine",
            "Select a different voice from the list",
            "Refresh the voice list",
            "Reset the voice setting to its default",
        ),
    ),
    ErrorCategory.ENGINE_UNRESPONSIVE: _Rule(
        Severity.ERROR,
        True,
        "retry",
        "The text-to-speech engine is not responding.",
        (
            "Try the conversion again",
            "Check that the speech engine is installed and on PATH",
            "Make sure no other application is holding the engine",
            "Check your network connection if the engine is online-backed",
            "Reinstall the speech engine if the problem persists",
        ),
    ),
    ErrorCategory.FILE_NOT_FOUND: _Rule(
        Severity.ERROR,
        True,
        "browse_file",
        "File not found: {file_name}",
        (
            "Check if the file exists at the specified location",
            "Verify the file path is correct",
            "Make sure the file hasn't been moved or deleted",
            "Try browsing for the file again",
        ),
    ),
    ErrorCategory.ACCESS_DENIED: _Rule(
        Severity.ERROR,
        True,
        "check_permissions",
        "Access denied: Cannot read {file_name}",
        (
            "Check if the file is open in another application",
            "Verify you have permission to read the file",
            "Check if the file is on a network drive with restricted access",
            "Make sure the file is not corrupted",
        ),
    ),
    ErrorCategory.IS_DIRECTORY: _Rule(
        Severity.ERROR,
        True,
        "browse_file",
        "Invalid selection: You selected a folder instead of a file",
        (
            "Please select a .txt file, not a folder",
            "Navigate into the folder and select a text file",
        ),
    ),
    ErrorCategory.TOO_MANY_OPEN_FILES: _Rule(
        Severity.ERROR,
        True,
        "restart_app",
        "Too many files are currently open",
        (
            "Close some applications and try again",
            "Restart the application if the problem persists",
            "Free up system resources",
        ),
    ),
    ErrorCategory.UNSUPPORTED_FILE_TYPE: _Rule(
        Severity.ERROR,
        False,
        "convert_file",
        "Unsupported file format: {file_name}",
        (
            "Only .txt files are supported",
            "Convert your file to .txt format using a text editor",
            "Copy and paste the text directly into the application",
        ),
    ),
    ErrorCategory.FILE_TOO_LARGE: _Rule(
        Severity.ERROR,
        True,
        "split_file",
        "File too large: {file_size}MB (maximum 10MB)",
        (
            "Split the file into smaller parts (under 10MB each)",
            "Copy and paste smaller portions of text directly",
            "Remove unnecessary content from the file",
        ),
    ),
    ErrorCategory.FILE_EMPTY: _Rule(
        Severity.ERROR,
        True,
        "check_content",
        "File is empty: {file_name}",
        (
            "Check if the file contains text content",
            "Open the file in a text editor to verify content",
            "Try selecting a different file",
        ),
    ),
    ErrorCategory.OUTPUT_LOCATION: _Rule(
        Severity.ERROR,
        True,
        "select_folder",
        "Cannot save to the selected output location.",
        (
            "Check if the output folder exists and is writable",
            "Select a different output folder",
            "Check if there's enough disk space",
        ),
    ),
    ErrorCategory.CONVERTER_MISSING: _Rule(
        Severity.WARNING,
        True,
        "install_converter",
        "FFmpeg is required for MP3 conversion but is not installed.",
        (
            "Download FFmpeg from https://ffmpeg.org/download.html",
            "Add the FFmpeg bin folder to your PATH",
            "Restart the application after installation",
            "Alternative: Use WAV format which doesn't require FFmpeg",
        ),
    ),
    ErrorCategory.CONVERSION_FAILED: _Rule(
        Severity.ERROR,
        True,
        "use_wav",
        "Audio conversion failed. The audio file may be corrupted.",
        (
            "Try converting to WAV format instead",
            "Check if FFmpeg is properly installed",
            "Check if there's enough disk space",
        ),
    ),
    ErrorCategory.MERGE_FAILED: _Rule(
        Severity.ERROR,
        True,
        "retry_smaller",
        "Failed to merge audio chunks. The conversion may be incomplete.",
        (
            "Try converting smaller portions of text",
            "Check if there's enough disk space",
            "Use WAV format which is more reliable for large files",
        ),
    ),
    ErrorCategory.EMPTY_INPUT: _Rule(
        Severity.INFO,
        False,
        "add_text",
        "No text provided for conversion.",
        (
            "Enter text in the input area or select a text file",
            "Make sure the selected file contains readable text",
        ),
    ),
    ErrorCategory.CANCELLED: _Rule(
        Severity.INFO,
        False,
        "none",
        "Conversion was cancelled by user.",
        ("Start a new conversion when ready",),
    ),
    ErrorCategory.CLEANUP: _Rule(
        Severity.WARNING,
        False,
        "none",
        "Some temporary files could not be removed.",
        ("Temporary audio chunks can be deleted manually",),
    ),
    ErrorCategory.UNKNOWN: _Rule(
        Severity.ERROR,
        True,
        "retry",
        "An unexpected error occurred.",
        (
            "Try again with a shorter text sample",
            "Check system resources (memory, disk space)",
            "Restart the application",
        ),
    ),
}

_NO_VOICES_RULE = _Rule(
    Severity.CRITICAL,
    True,
    "install_voices",
    "No text-to-speech voices are available on your system.",
    (
        "Ensure the speech engine (edge-tts) is installed",
        "Check that the engine can reach its voice service",
        "Restart the application after installing voices",
    ),
)


def _converter_missing_rule(rule: _Rule, output_format: str, native_format: str) -> _Rule:
    return _Rule(
        rule.severity,
        rule.can_retry,
        f"use_{native_format}",
        f"FFmpeg is required for {output_format.upper()} output but is not installed.",
        rule.troubleshooting[:-1]
        + (
            f"Alternative: Use {native_format.upper()} format, "
            "which the speech engine produces without FFmpeg",
        ),
    )


_ERRNO_CATEGORIES = {
    errno.ENOENT: ErrorCategory.FILE_NOT_FOUND,
    errno.EACCES: ErrorCategory.ACCESS_DENIED,
    errno.EPERM: ErrorCategory.ACCESS_DENIED,
    errno.EISDIR: ErrorCategory.IS_DIRECTORY,
    errno.EMFILE: ErrorCategory.TOO_MANY_OPEN_FILES,
    errno.ENFILE: ErrorCategory.TOO_MANY_OPEN_FILES,
}

# Checked in order; first match wins.
_MESSAGE_PATTERNS: Tuple[Tuple[re.Pattern, ErrorCategory], ...] = (
    (re.compile(r"unsupported file type"), ErrorCategory.UNSUPPORTED_FILE_TYPE),
    (re.compile(r"file too large"), ErrorCategory.FILE_TOO_LARGE),
    (re.compile(r"cancel"), ErrorCategory.CANCELLED),
    (re.compile(r"text cannot be empty|no text provided"), ErrorCategory.EMPTY_INPUT),
    (re.compile(r"no tts voices found|no voices"), ErrorCategory.VOICE_UNAVAILABLE),
    (re.compile(r"voice '[^']*' not found"), ErrorCategory.VOICE_UNAVAILABLE),
    (
        re.compile(r"ffmpeg is not installed|ffmpeg not found|converter (is )?missing"),
        ErrorCategory.CONVERTER_MISSING,
    ),
    (re.compile(r"merg(e|ing) failed"), ErrorCategory.MERGE_FAILED),
    (re.compile(r"tts conversion failed|failed to execute|not responding"), ErrorCategory.ENGINE_UNRESPONSIVE),
    (re.compile(r"conversion failed|ffmpeg failed"), ErrorCategory.CONVERSION_FAILED),
    (re.compile(r"output path|output folder"), ErrorCategory.OUTPUT_LOCATION),
    (re.compile(r"file not found"), ErrorCategory.FILE_NOT_FOUND),
    (re.compile(r"permission denied|access denied"), ErrorCategory.ACCESS_DENIED),
    (re.compile(r"\bempty\b"), ErrorCategory.FILE_EMPTY),
)

_VOICE_ID_RE = re.compile(r"Voice '([^']+)' not found")
_FILE_SIZE_RE = re.compile(r"(\d+\.?\d*)\s*MB")


def _iter_exception_chain(exc: BaseException) -> Iterable[BaseException]:
    seen: set = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        yield current
        seen.add(id(current))
        next_exc = current.__cause__ or current.__context__
        current = next_exc if isinstance(next_exc, BaseException) else None


def generate_error_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"err_{int(time.time() * 1000)}_{suffix}"


class ErrorLog:
    """Bounded ring buffer of error records with per-category counters."""

    def __init__(self, max_entries: int = 1000) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._entries: Deque[ErrorRecord] = deque(maxlen=max_entries)
        self._counts: Counter = Counter()
        self._total = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def append(self, record: ErrorRecord) -> None:
        with self._lock:
            self._entries.append(record)
            self._counts[record.category.value] += 1
            self._total += 1

    def recent(self, limit: int = 50) -> List[ErrorRecord]:
        with self._lock:
            entries = list(self._entries)
        return entries[-limit:] if limit > 0 else []

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._counts.clear()
            self._total = 0

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total": self._total,
                "buffered": len(self._entries),
                "by_category": dict(self._counts),
                "critical": sum(
                    1 for entry in self._entries if entry.severity is Severity.CRITICAL
                ),
            }


class ErrorClassifier:
    """Maps raw failures to normalized ``ErrorRecord`` descriptors.

    Classification looks, in order, at typed ``SpeechMakerError`` instances in
    the exception chain, timeouts, OS error codes, and finally at known message
    fragments. The operation named in ``context["operation"]`` decides how
    process-level failures (missing executables, timeouts) are read.
    """

    def __init__(self, error_log: Optional[ErrorLog] = None, events: Optional[Any] = None) -> None:
        self.error_log = error_log if error_log is not None else ErrorLog()
        self.events = events

    def classify(
        self,
        raw_error: Any,
        context: Optional[Mapping[str, Any]] = None,
        *,
        category: Optional[ErrorCategory] = None,
    ) -> ErrorRecord:
        ctx: Dict[str, Any] = dict(context or {})
        if isinstance(raw_error, BaseException):
            message = str(raw_error) or type(raw_error).__name__
        else:
            message = str(raw_error)
        code = self._error_code(raw_error)

        resolved = category or self._resolve_category(raw_error, message, ctx)
        rule = self._rule_for(resolved, message, ctx)

        record = ErrorRecord(
            id=generate_error_id(),
            timestamp=datetime.now(timezone.utc).isoformat(),
            category=resolved,
            severity=rule.severity,
            message=message,
            user_message=self._format_user_message(rule.user_message, message, ctx),
            troubleshooting=rule.troubleshooting,
            can_retry=rule.can_retry,
            suggested_action=rule.suggested_action,
            code=code,
            context=ctx,
        )
        self.error_log.append(record)
        self._log(record)
        return record

    def record_cleanup_failure(self, exc: BaseException, path: str) -> ErrorRecord:
        return self.classify(
            exc,
            {"operation": "cleanup", "file_path": path},
            category=ErrorCategory.CLEANUP,
        )

    def clear(self) -> None:
        self.error_log.clear()

    def stats(self) -> Dict[str, Any]:
        return self.error_log.stats()

    def _log(self, record: ErrorRecord) -> None:
        if self.events is None:
            return
        line = (
            f"[{record.category.value}] {record.user_message} "
            f"(operation={record.context.get('operation', 'unknown')}, id={record.id})"
        )
        if record.severity in (Severity.ERROR, Severity.CRITICAL):
            self.events.error(line)
        else:
            self.events.warn(line)

    @staticmethod
    def _error_code(raw_error: Any) -> Optional[str]:
        if isinstance(raw_error, BaseException):
            for item in _iter_exception_chain(raw_error):
                if isinstance(item, OSError) and item.errno in errno.errorcode:
                    return errno.errorcode[item.errno]
        code = getattr(raw_error, "code", None)
        return str(code) if code is not None else None

    def _resolve_category(
        self,
        raw_error: Any,
        message: str,
        ctx: Mapping[str, Any],
    ) -> ErrorCategory:
        operation = str(ctx.get("operation", ""))
        messages: List[str] = []

        if isinstance(raw_error, BaseException):
            for item in _iter_exception_chain(raw_error):
                if isinstance(item, SpeechMakerError):
                    return item.error_category
                if isinstance(item, (TimeoutError, subprocess.TimeoutExpired)):
                    return self._process_failure_category(operation)
                if isinstance(item, OSError) and item.errno is not None:
                    if operation in ENGINE_OPERATIONS or operation in CONVERTER_OPERATIONS:
                        if item.errno == errno.ENOENT:
                            return self._process_failure_category(operation, missing=True)
                        return self._process_failure_category(operation)
                    category = _ERRNO_CATEGORIES.get(item.errno)
                    if category is not None:
                        return category
                messages.append(str(item))
        else:
            code = getattr(raw_error, "code", None)
            if isinstance(code, str) and hasattr(errno, code):
                category = _ERRNO_CATEGORIES.get(getattr(errno, code))
                if category is not None:
                    return category
            messages.append(message)

        lowered = " ".join(messages).lower()
        for pattern, category in _MESSAGE_PATTERNS:
            if pattern.search(lowered):
                return category
        if operation in ENGINE_OPERATIONS:
            return ErrorCategory.ENGINE_UNRESPONSIVE
        if operation == "merge":
            return ErrorCategory.MERGE_FAILED
        if operation in CONVERTER_OPERATIONS:
            return ErrorCategory.CONVERSION_FAILED
        return ErrorCategory.UNKNOWN

    @staticmethod
    def _process_failure_category(operation: str, missing: bool = False) -> ErrorCategory:
        if operation == "detect_converter" or (missing and operation in CONVERTER_OPERATIONS):
            return ErrorCategory.CONVERTER_MISSING
        if operation == "merge":
            return ErrorCategory.MERGE_FAILED
        if operation in CONVERTER_OPERATIONS:
            return ErrorCategory.CONVERSION_FAILED
        return ErrorCategory.ENGINE_UNRESPONSIVE

    @staticmethod
    def _rule_for(category: ErrorCategory, message: str, ctx: Mapping[str, Any]) -> _Rule:
        rule = _RULES[category]
        lowered = message.lower()
        if category is ErrorCategory.VOICE_UNAVAILABLE and _VOICE_ID_RE.search(message) is None:
            if "no tts voices found" in lowered or "no voices" in lowered or ctx.get("operation") == "list_voices":
                return _NO_VOICES_RULE
        if category is ErrorCategory.CONVERTER_MISSING:
            output_format = ctx.get("output_format")
            native_format = ctx.get("native_format") or "wav"
            if output_format and output_format != native_format:
                return _converter_missing_rule(rule, str(output_format), str(native_format))
        return rule

    @staticmethod
    def _format_user_message(template: str, message: str, ctx: Mapping[str, Any]) -> str:
        file_path = ctx.get("file_path") or ""
        file_name = os.path.basename(str(file_path)) if file_path else "the file"
        voice_match = _VOICE_ID_RE.search(message)
        size_match = _FILE_SIZE_RE.search(message)
        values = {
            "file_name": file_name,
            "voice_id": voice_match.group(1) if voice_match else ctx.get("voice_id", "Unknown"),
            "file_size": size_match.group(1) if size_match else "unknown",
        }
        return template.format(**values)
