import subprocess
import threading
import time
from typing import List, Optional, Sequence

from .errors import ConversionCancelled, DeadlineExceeded

POLL_INTERVAL_SECONDS = 0.05


class Deadline:
    """A point on the monotonic clock after which an external call gives up."""

    def __init__(self, expires_at: Optional[float], timeout_ms: Optional[int] = None) -> None:
        self.expires_at = expires_at
        self.timeout_ms = timeout_ms

    @classmethod
    def after_ms(cls, timeout_ms: Optional[int]) -> "Deadline":
        if timeout_ms is None:
            return cls.never()
        return cls(time.monotonic() + timeout_ms / 1000.0, timeout_ms)

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None, None)

    def remaining_seconds(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining_seconds()
        return remaining is not None and remaining <= 0.0

    def check(self, label: str = "operation") -> None:
        if self.expired:
            raise DeadlineExceeded(
                f"{label} timed out after {self.timeout_ms}ms",
                timeout_ms=self.timeout_ms,
            )


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: Optional[float]) -> bool:
        """Sleep up to ``seconds``; returns True if cancelled meanwhile."""
        return self._event.wait(seconds)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ConversionCancelled("Conversion was cancelled")


def _terminate(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    proc.kill()
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        pass


def run_command(
    cmd: Sequence[str],
    *,
    deadline: Optional[Deadline] = None,
    cancel_token: Optional[CancellationToken] = None,
    label: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run an external command to a definite outcome.

    Returns the completed process (any exit code) or raises
    ``DeadlineExceeded`` / ``ConversionCancelled`` after killing the child.
    ``OSError`` from a missing executable propagates unchanged.
    """
    deadline = deadline or Deadline.never()
    label = label or str(cmd[0])
    args: List[str] = [str(part) for part in cmd]

    if cancel_token is not None:
        cancel_token.raise_if_cancelled()

    proc = subprocess.Popen(
        args,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    try:
        while True:
            remaining = deadline.remaining_seconds()
            wait_for = POLL_INTERVAL_SECONDS
            if remaining is not None:
                if remaining <= 0.0:
                    _terminate(proc)
                    raise DeadlineExceeded(
                        f"{label} timed out after {deadline.timeout_ms}ms",
                        timeout_ms=deadline.timeout_ms,
                    )
                wait_for = min(wait_for, remaining)

            try:
                stdout, stderr = proc.communicate(timeout=wait_for)
                return subprocess.CompletedProcess(
                    args,
                    proc.returncode,
                    stdout.decode("utf-8", errors="replace"),
                    stderr.decode("utf-8", errors="replace"),
                )
            except subprocess.TimeoutExpired:
                pass

            if cancel_token is not None and cancel_token.cancelled:
                _terminate(proc)
                raise ConversionCancelled(f"Conversion was cancelled while running {label}")
    except BaseException:
        _terminate(proc)
        raise
