import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ChunkStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_SESSION_STATUSES = {
    SessionStatus.SUCCEEDED,
    SessionStatus.FAILED,
    SessionStatus.CANCELLED,
}


class ResourceKind(str, Enum):
    AUDIO_CONVERTER = "audio_converter"
    VOICE_CATALOG = "voice_catalog"


@dataclass(frozen=True)
class Voice:
    id: str
    display_name: str
    locale: str = "Unknown"
    gender: str = "Unknown"
    is_default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "locale": self.locale,
            "gender": self.gender,
            "is_default": self.is_default,
        }


@dataclass
class ChunkJob:
    index: int
    text: str
    status: ChunkStatus = ChunkStatus.PENDING
    attempt_count: int = 0
    output_path: Optional[str] = None
    error: Optional[Any] = None


class SessionStateError(RuntimeError):
    pass


@dataclass
class ConversionSession:
    """One end-to-end text to audio request."""

    jobs: List[ChunkJob]
    voice_id: str
    speed: float
    output_format: str
    output_path: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: SessionStatus = SessionStatus.PENDING
    temp_dir: Optional[str] = None
    error: Optional[Any] = None
    _status_lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    @property
    def total_chunks(self) -> int:
        return len(self.jobs)

    def mark_running(self) -> None:
        with self._status_lock:
            if self.status is not SessionStatus.PENDING:
                raise SessionStateError(
                    f"Session {self.id} cannot start from status '{self.status.value}'."
                )
            self.status = SessionStatus.RUNNING

    def finish(self, status: SessionStatus, error: Optional[Any] = None) -> None:
        """Move the session into a terminal status exactly once."""
        if status not in TERMINAL_SESSION_STATUSES:
            raise ValueError(f"Not a terminal session status: {status}")
        with self._status_lock:
            if self.status in TERMINAL_SESSION_STATUSES:
                raise SessionStateError(
                    f"Session {self.id} is already terminal ('{self.status.value}')."
                )
            self.status = status
            self.error = error


@dataclass(frozen=True)
class ResourceStatus:
    kind: ResourceKind
    available: bool
    source: str
    detection_latency_ms: int
    cached_at: float
    path: Optional[str] = None
    version: Optional[str] = None
    voices: Tuple[Voice, ...] = ()
    attempts: int = 0
    error: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "available": self.available,
            "source": self.source,
            "detection_latency_ms": self.detection_latency_ms,
            "cached_at": self.cached_at,
            "path": self.path,
            "version": self.version,
            "voices": [voice.to_dict() for voice in self.voices],
            "attempts": self.attempts,
            "error": self.error.to_dict() if self.error is not None else None,
        }


@dataclass
class RetryState:
    key: str
    attempts: int = 0
    last_delay_ms: int = 0
