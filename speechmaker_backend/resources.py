import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import ErrorCategory, ErrorClassifier, NoVoicesError
from .events import EventEmitter
from .models import ResourceKind, ResourceStatus, Voice
from .process import Deadline
from .retry import RetryPolicy
from .runtime import ConverterProbe

DEFAULT_CONVERTER_TIMEOUT_MS = 3000
DEFAULT_VOICE_TIMEOUT_MS = 5000
FAST_START_VOICE_TIMEOUT_MS = 3000
DEFAULT_VOICE_ATTEMPTS = 3
MIN_VOICE_ATTEMPTS = 2

VoiceLister = Callable[[Deadline], Sequence[Voice]]
ResourceListener = Callable[[ResourceStatus], Any]


class ResourceResolver:
    """Resolves the audio converter and the voice catalog, once per cache lifetime.

    Concurrent callers asking for the same kind share a single in-flight probe
    and then the cached result. ``clear()`` drops both the cache and anything
    in flight; nothing here is module-level state.
    """

    def __init__(
        self,
        *,
        voice_lister: VoiceLister,
        classifier: ErrorClassifier,
        converter_probe: Optional[ConverterProbe] = None,
        converter_timeout_ms: int = DEFAULT_CONVERTER_TIMEOUT_MS,
        voice_timeout_ms: Optional[int] = None,
        voice_attempts: Optional[int] = None,
        fast_start: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        events: Optional[EventEmitter] = None,
    ) -> None:
        self.voice_lister = voice_lister
        self.classifier = classifier
        self.converter_probe = converter_probe or ConverterProbe()
        self.converter_timeout_ms = converter_timeout_ms
        self.fast_start = fast_start
        if voice_timeout_ms is None:
            voice_timeout_ms = (
                FAST_START_VOICE_TIMEOUT_MS if fast_start else DEFAULT_VOICE_TIMEOUT_MS
            )
        self.voice_timeout_ms = voice_timeout_ms
        if voice_attempts is None:
            voice_attempts = MIN_VOICE_ATTEMPTS if fast_start else DEFAULT_VOICE_ATTEMPTS
        if voice_attempts < MIN_VOICE_ATTEMPTS:
            raise ValueError(f"voice_attempts must be >= {MIN_VOICE_ATTEMPTS}")
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=voice_attempts)
        self.events = events or EventEmitter()

        self._lock = threading.Lock()
        self._cache: Dict[ResourceKind, ResourceStatus] = {}
        self._in_flight: Dict[ResourceKind, Future] = {}
        self._generation = 0
        self._listeners: List[ResourceListener] = []
        self._probe_counts: Dict[ResourceKind, int] = {kind: 0 for kind in ResourceKind}

    def add_listener(self, listener: ResourceListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def probe_count(self, kind: ResourceKind) -> int:
        with self._lock:
            return self._probe_counts[kind]

    def cached(self, kind: ResourceKind) -> Optional[ResourceStatus]:
        with self._lock:
            return self._cache.get(kind)

    def clear(self) -> None:
        """Forget every cached status.

        A resolution already running when this is called still answers its
        own callers, but its result is neither cached nor published.
        """
        with self._lock:
            self._generation += 1
            self._cache.clear()
            self._in_flight.clear()

    def invalidate(self, kind: ResourceKind) -> None:
        with self._lock:
            self._cache.pop(kind, None)

    def refresh(self, kind: ResourceKind) -> ResourceStatus:
        self.invalidate(kind)
        return self.resolve(kind)

    def resolve_converter(self) -> ResourceStatus:
        return self.resolve(ResourceKind.AUDIO_CONVERTER)

    def resolve_voices(self) -> ResourceStatus:
        return self.resolve(ResourceKind.VOICE_CATALOG)

    def resolve(self, kind: ResourceKind) -> ResourceStatus:
        with self._lock:
            cached = self._cache.get(kind)
            if cached is not None:
                return cached
            flight = self._in_flight.get(kind)
            owner = flight is None
            if owner:
                flight = Future()
                self._in_flight[kind] = flight
                self._probe_counts[kind] += 1
            generation = self._generation

        if not owner:
            return flight.result()

        try:
            if kind is ResourceKind.AUDIO_CONVERTER:
                status = self._detect_converter()
            else:
                status = self._load_voices()
        except BaseException as exc:
            with self._lock:
                if self._in_flight.get(kind) is flight:
                    del self._in_flight[kind]
            flight.set_exception(exc)
            raise

        with self._lock:
            current = generation == self._generation
            if current:
                self._cache[kind] = status
            if self._in_flight.get(kind) is flight:
                del self._in_flight[kind]
            listeners = list(self._listeners)
        flight.set_result(status)

        if current:
            self._publish(status, listeners)
        return status

    def _publish(self, status: ResourceStatus, listeners: List[ResourceListener]) -> None:
        self.events.emit(
            "resource",
            kind=status.kind.value,
            available=status.available,
            source=status.source,
            latency_ms=status.detection_latency_ms,
        )
        for listener in listeners:
            try:
                listener(status)
            except Exception as exc:
                self.events.warn(f"Resource listener failed: {exc}")

    def _detect_converter(self) -> ResourceStatus:
        started = time.monotonic()

        bundled = self.converter_probe.probe_bundled()
        if bundled is not None:
            return self._converter_status(True, "bundled", started, bundled.path, bundled.version)

        error = None
        system = None
        try:
            system = self.converter_probe.probe_system(
                Deadline.after_ms(self.converter_timeout_ms)
            )
        except (OSError, TimeoutError) as exc:
            error = self.classifier.classify(exc, {"operation": "detect_converter"})

        if system is not None:
            return self._converter_status(True, "system", started, system.path, system.version)

        if error is None:
            error = self.classifier.classify(
                "No working FFmpeg installation found",
                {"operation": "detect_converter"},
                category=ErrorCategory.CONVERTER_MISSING,
            )
        return self._converter_status(False, "none", started, None, None, error=error)

    def _converter_status(
        self,
        available: bool,
        source: str,
        started: float,
        path: Optional[str],
        version: Optional[str],
        error: Any = None,
    ) -> ResourceStatus:
        return ResourceStatus(
            kind=ResourceKind.AUDIO_CONVERTER,
            available=available,
            source=source,
            detection_latency_ms=int((time.monotonic() - started) * 1000),
            cached_at=time.time(),
            path=path,
            version=version,
            attempts=1,
            error=error,
        )

    def _load_voices(self) -> ResourceStatus:
        started = time.monotonic()
        key = "resource:voice_catalog"
        self.retry_policy.reset(key)
        last_error = None
        attempt = 0

        while True:
            attempt = self.retry_policy.next_attempt(key)
            try:
                voices = tuple(self.voice_lister(Deadline.after_ms(self.voice_timeout_ms)))
                if not voices:
                    raise NoVoicesError("No TTS voices found")
            except Exception as exc:
                last_error = self.classifier.classify(
                    exc, {"operation": "list_voices", "attempt": attempt}
                )
                if not self.retry_policy.should_retry(last_error):
                    break
                if not self.retry_policy.has_attempts_left(key):
                    break
                self.retry_policy.backoff(key)
                continue

            self.retry_policy.reset(key)
            return ResourceStatus(
                kind=ResourceKind.VOICE_CATALOG,
                available=True,
                source="engine",
                detection_latency_ms=int((time.monotonic() - started) * 1000),
                cached_at=time.time(),
                voices=voices,
                attempts=attempt,
            )

        self.retry_policy.reset(key)
        return ResourceStatus(
            kind=ResourceKind.VOICE_CATALOG,
            available=False,
            source="none",
            detection_latency_ms=int((time.monotonic() - started) * 1000),
            cached_at=time.time(),
            voices=(),
            attempts=attempt,
            error=last_error,
        )
