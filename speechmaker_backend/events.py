"""Line-oriented progress events for the process driving the backend.

Text mode writes one ``KIND:field:field`` line per event, which is what the
desktop shell parses. JSON mode writes one object per line with ``type``,
``ts_ms`` and ``job_id`` keys plus the event payload.
"""

import json
import os
import sys
import threading
import time
from typing import Any, Dict, Mapping, Optional, TextIO, Tuple

EVENT_FORMATS = ("text", "json")

_TEXT_TEMPLATES: Dict[str, str] = {
    "phase": "PHASE:{phase}",
    "metadata": "METADATA:{key}:{value}",
    "timing": "TIMING:{chunk_idx}:{chunk_timing_ms}",
    "heartbeat": "HEARTBEAT:{heartbeat_ts}",
    "worker": "WORKER:{id}:{status}:{details}",
    "progress": "PROGRESS:{current_chunk}/{total_chunks} chunks",
    "retry": "RETRY:{chunk_idx}:{attempt}:{delay_ms}",
    "resource": "RESOURCE:{kind}:{available}:{source}",
    "voice": "VOICE:{id}:{locale}:{display_name}",
    "done": "DONE:{output}",
}


class _BlankMissing(dict):
    def __missing__(self, key: str) -> str:
        return ""


def _to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def format_text_event(event_type: str, payload: Mapping[str, Any]) -> Optional[str]:
    """Render one event as a text line, or None for events text mode skips."""
    if event_type == "error":
        return str(payload["message"])
    if event_type == "readiness":
        return f"READY:{'true' if payload['ready'] else 'false'}"
    if event_type == "inspection":
        return f"INSPECTION:{_to_json(payload['result'])}"
    template = _TEXT_TEMPLATES.get(event_type)
    if template is None:
        return None
    return template.format_map(_BlankMissing(payload))


class EventEmitter:
    """Thread-safe writer for progress events and log lines.

    Events go to stdout, warnings and errors to stderr. When ``log_file`` is
    set every line is also appended there.
    """

    def __init__(
        self,
        event_format: str = "text",
        job_id: str = "job",
        log_file: Optional[str] = None,
    ):
        if event_format not in EVENT_FORMATS:
            raise ValueError(f"event_format must be one of {', '.join(EVENT_FORMATS)}")
        self.event_format = event_format
        self.job_id = job_id
        self._lock = threading.Lock()
        self._log_fp: Optional[TextIO] = None

        if log_file:
            log_dir = os.path.dirname(os.path.abspath(log_file))
            os.makedirs(log_dir, exist_ok=True)
            self._log_fp = open(log_file, "a", encoding="utf-8")

    @property
    def is_json(self) -> bool:
        return self.event_format == "json"

    def emit(self, event_type: str, **payload: Any) -> None:
        if self.is_json:
            self._write(self._json_line(event_type, payload))
            return
        line = format_text_event(event_type, payload)
        if line is not None:
            self._write(line, stderr=event_type == "error")

    def info(self, message: str) -> None:
        if self.is_json:
            self._write(self._json_line("log", {"level": "info", "message": message}))
        else:
            self._write(message)

    def warn(self, message: str) -> None:
        if self.is_json:
            self._write(self._json_line("log", {"level": "warning", "message": message}))
        else:
            self._write(f"WARN: {message}", stderr=True)

    def error(self, message: str) -> None:
        if self.is_json:
            self._write(self._json_line("error", {"message": message}))
        else:
            self._write(message, stderr=True)

    def close(self) -> None:
        with self._lock:
            log_fp, self._log_fp = self._log_fp, None
        if log_fp is not None:
            log_fp.close()

    def _json_line(self, event_type: str, payload: Mapping[str, Any]) -> str:
        body = {"type": event_type, "ts_ms": int(time.time() * 1000), "job_id": self.job_id}
        body.update(payload)
        return _to_json(body)

    def _write(self, line: str, *, stderr: bool = False) -> None:
        stream = sys.stderr if stderr else sys.stdout
        with self._lock:
            stream.write(line + "\n")
            stream.flush()
            if self._log_fp is not None:
                self._log_fp.write(line + "\n")
                self._log_fp.flush()


def start_heartbeat_emitter(
    events: EventEmitter,
    interval_seconds: float = 5.0,
    thread_name: str = "event-heartbeat",
) -> Tuple[threading.Event, threading.Thread]:
    """Emit a heartbeat every ``interval_seconds`` until the returned event is set."""
    stop_event = threading.Event()

    def beat() -> None:
        while not stop_event.wait(interval_seconds):
            events.emit("heartbeat", heartbeat_ts=int(time.time() * 1000))

    thread = threading.Thread(target=beat, name=thread_name, daemon=True)
    thread.start()
    return stop_event, thread
