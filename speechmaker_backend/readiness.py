"""Aggregated ready/not-ready state with per-topic subscribers."""

import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .events import EventEmitter
from .models import ResourceKind, ResourceStatus, Voice

TROUBLESHOOTING_ATTEMPTS = 3


class Topic(str, Enum):
    VOICE = "voice"
    CONVERTER = "converter"
    OUTPUT_FOLDER = "output_folder"
    ACTION = "action"
    INITIALIZATION = "initialization"


def compute_ready(
    initializing: bool,
    voices_loaded: bool,
    output_folder_set: bool,
    default_output_folder: Optional[str],
) -> bool:
    return (
        not initializing
        and voices_loaded
        and (output_folder_set or default_output_folder is not None)
    )


@dataclass(frozen=True)
class ReadinessSnapshot:
    initializing: bool = True
    voices_loading: bool = False
    voices_loaded: bool = False
    voices: tuple = ()
    voice_load_attempts: int = 0
    voice_load_error: Optional[Any] = None
    converter_available: bool = False
    converter_source: str = "none"
    converter_validated: bool = False
    native_format: str = "wav"
    output_folder_set: bool = False
    default_output_folder: Optional[str] = None
    ready: bool = False
    show_retry_button: bool = False
    show_troubleshooting: bool = False
    loading_message: str = "Initializing application..."

    @property
    def converter_usable(self) -> bool:
        return self.converter_available and self.converter_validated

    def can_produce(self, output_format: str) -> bool:
        # Capability gate only; never part of ``ready``.
        return output_format == self.native_format or self.converter_usable

    @property
    def mp3_available(self) -> bool:
        return self.can_produce("mp3")

    def to_dict(self) -> Dict[str, Any]:
        error = self.voice_load_error
        return {
            "initializing": self.initializing,
            "voices_loading": self.voices_loading,
            "voices_loaded": self.voices_loaded,
            "voice_count": len(self.voices),
            "voice_load_attempts": self.voice_load_attempts,
            "voice_load_error": error.to_dict() if hasattr(error, "to_dict") else error,
            "converter_available": self.converter_available,
            "converter_source": self.converter_source,
            "converter_validated": self.converter_validated,
            "native_format": self.native_format,
            "mp3_available": self.mp3_available,
            "output_folder_set": self.output_folder_set,
            "default_output_folder": self.default_output_folder,
            "ready": self.ready,
            "show_retry_button": self.show_retry_button,
            "show_troubleshooting": self.show_troubleshooting,
            "loading_message": self.loading_message,
        }


@dataclass(frozen=True)
class Notification:
    topic: Topic
    current: ReadinessSnapshot
    previous: ReadinessSnapshot
    action: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[Notification], Any]


class ReadinessStateMachine:
    """Folds independently arriving facts into one readiness snapshot.

    Every update recomputes ``ready`` and notifies the subscribers of that
    update's topic. A subscriber that raises is logged and skipped; the
    remaining subscribers still run.
    """

    def __init__(
        self,
        events: Optional[EventEmitter] = None,
        native_format: str = "wav",
    ) -> None:
        self.events = events or EventEmitter()
        self._state = ReadinessSnapshot(native_format=native_format)
        self._lock = threading.Lock()
        self._subscribers: Dict[Topic, List[Subscriber]] = {topic: [] for topic in Topic}

    @property
    def snapshot(self) -> ReadinessSnapshot:
        with self._lock:
            return self._state

    @property
    def ready(self) -> bool:
        return self.snapshot.ready

    def can_convert_to_mp3(self) -> bool:
        return self.snapshot.mp3_available

    def can_produce(self, output_format: str) -> bool:
        return self.snapshot.can_produce(output_format)

    def subscribe(self, topic: Topic, callback: Subscriber) -> Callable[[], None]:
        topic = Topic(topic)
        with self._lock:
            self._subscribers[topic].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers[topic]:
                    self._subscribers[topic].remove(callback)

        return unsubscribe

    def update_voice_state(
        self,
        loading: bool,
        loaded: bool,
        voices: Sequence[Voice] = (),
        attempts: int = 0,
        error: Optional[Any] = None,
    ) -> ReadinessSnapshot:
        def change(state: ReadinessSnapshot) -> ReadinessSnapshot:
            message = state.loading_message
            if loading:
                message = f"Loading voices... (attempt {attempts})" if attempts > 0 else "Loading voices..."
            elif not loaded and error is not None:
                message = "Failed to load voices"
            return replace(
                state,
                voices_loading=loading,
                voices_loaded=loaded,
                voices=tuple(voices),
                voice_load_attempts=attempts,
                voice_load_error=error,
                show_retry_button=not loading and not loaded and attempts > 0,
                show_troubleshooting=(
                    not loading and not loaded and attempts >= TROUBLESHOOTING_ATTEMPTS
                ),
                loading_message=message,
            )

        return self._transition(Topic.VOICE, change)

    def update_converter_state(
        self,
        available: bool,
        source: str = "none",
        validated: bool = False,
    ) -> ReadinessSnapshot:
        return self._transition(
            Topic.CONVERTER,
            lambda state: replace(
                state,
                converter_available=available,
                converter_source=source,
                converter_validated=validated,
            ),
        )

    def update_output_folder_state(
        self,
        folder_set: bool,
        default_folder: Optional[str] = None,
    ) -> ReadinessSnapshot:
        return self._transition(
            Topic.OUTPUT_FOLDER,
            lambda state: replace(
                state,
                output_folder_set=folder_set,
                default_output_folder=default_folder,
            ),
        )

    def update_initialization_state(self, initializing: bool) -> ReadinessSnapshot:
        def change(state: ReadinessSnapshot) -> ReadinessSnapshot:
            updated = replace(state, initializing=initializing)
            if not initializing:
                ready = compute_ready(
                    False,
                    updated.voices_loaded,
                    updated.output_folder_set,
                    updated.default_output_folder,
                )
                updated = replace(
                    updated,
                    loading_message="Ready" if ready else "Initialization complete",
                )
            return updated

        return self._transition(Topic.INITIALIZATION, change)

    def apply_resource_status(self, status: ResourceStatus) -> ReadinessSnapshot:
        if status.kind is ResourceKind.AUDIO_CONVERTER:
            return self.update_converter_state(
                status.available,
                status.source,
                validated=status.available,
            )
        return self.update_voice_state(
            loading=False,
            loaded=status.available,
            voices=status.voices,
            attempts=status.attempts,
            error=status.error,
        )

    def attach(self, resolver: Any) -> Callable[[], None]:
        """Feed every status ``resolver`` publishes into this state machine."""
        return resolver.add_listener(self.apply_resource_status)

    def request_action(self, action: str, **payload: Any) -> None:
        snapshot = self.snapshot
        self._notify(
            Notification(
                topic=Topic.ACTION,
                current=snapshot,
                previous=snapshot,
                action=action,
                payload=payload,
            )
        )

    def _transition(
        self,
        topic: Topic,
        change: Callable[[ReadinessSnapshot], ReadinessSnapshot],
    ) -> ReadinessSnapshot:
        with self._lock:
            previous = self._state
            updated = change(previous)
            ready = compute_ready(
                updated.initializing,
                updated.voices_loaded,
                updated.output_folder_set,
                updated.default_output_folder,
            )
            updated = replace(updated, ready=ready)
            if ready and not previous.ready:
                updated = replace(updated, loading_message="Ready")
            self._state = updated

        if updated.ready != previous.ready:
            self.events.emit("readiness", ready=updated.ready, topic=topic.value)
        self._notify(Notification(topic=topic, current=updated, previous=previous))
        return updated

    def _notify(self, notification: Notification) -> None:
        with self._lock:
            subscribers = list(self._subscribers[notification.topic])
        for callback in subscribers:
            try:
                callback(notification)
            except Exception as exc:
                self.events.warn(
                    f"Readiness subscriber for '{notification.topic.value}' failed: {exc}"
                )
