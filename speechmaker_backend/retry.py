import threading
import time
from typing import Any, Callable, Dict, Optional

from .models import RetryState

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_CAP_DELAY_MS = 10000


class RetryExhaustedError(RuntimeError):
    def __init__(self, key: str, max_attempts: int) -> None:
        super().__init__(f"No attempts left for '{key}' (max {max_attempts}).")
        self.key = key
        self.max_attempts = max_attempts


class RetryPolicy:
    """Backoff timing and per-key attempt counting.

    The policy never decides *whether* an error is worth retrying; that comes
    from the ``can_retry`` flag the error classifier puts on each record.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        cap_delay_ms: int = DEFAULT_CAP_DELAY_MS,
        sleep: Optional[Callable[[float], Any]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.cap_delay_ms = cap_delay_ms
        self._sleep = sleep
        self._states: Dict[str, RetryState] = {}
        self._lock = threading.Lock()

    def delay(self, attempt: int) -> int:
        return int(min(self.base_delay_ms * (2 ** max(attempt, 0)), self.cap_delay_ms))

    def should_retry(self, record: Any) -> bool:
        return bool(getattr(record, "can_retry", False))

    def attempts(self, key: str) -> int:
        with self._lock:
            state = self._states.get(key)
            return state.attempts if state is not None else 0

    def has_attempts_left(self, key: str) -> bool:
        return self.attempts(key) < self.max_attempts

    def next_attempt(self, key: str) -> int:
        """Count one more attempt for ``key`` and return its 1-based number."""
        with self._lock:
            state = self._states.setdefault(key, RetryState(key=key))
            if state.attempts >= self.max_attempts:
                raise RetryExhaustedError(key, self.max_attempts)
            state.attempts += 1
            return state.attempts

    def state(self, key: str) -> Optional[RetryState]:
        with self._lock:
            state = self._states.get(key)
            if state is None:
                return None
            return RetryState(
                key=state.key,
                attempts=state.attempts,
                last_delay_ms=state.last_delay_ms,
            )

    def reset(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)

    def reset_prefix(self, prefix: str) -> None:
        with self._lock:
            for key in [k for k in self._states if k.startswith(prefix)]:
                del self._states[key]

    def backoff(self, key: str, cancel_token: Optional[Any] = None) -> int:
        """Wait out the delay that follows the latest attempt for ``key``.

        Returns the delay in milliseconds. With a cancellation token the wait
        ends early when the token fires.
        """
        with self._lock:
            state = self._states.setdefault(key, RetryState(key=key))
            delay_ms = self.delay(max(state.attempts - 1, 0))
            state.last_delay_ms = delay_ms

        seconds = delay_ms / 1000.0
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel_token is not None:
            cancel_token.wait(seconds)
        else:
            time.sleep(seconds)
        return delay_ms
