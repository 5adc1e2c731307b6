"""Thread-safe cancellation token shared by the event loop and executor threads."""

from __future__ import annotations

import enum
import threading


class CancelReason(enum.Enum):
    ABORTED = "aborted"
    TIMEOUT = "timeout"


class CancellationToken:
    """One-shot flag; the first ``cancel`` wins and fixes the reason."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: CancelReason | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    def cancel(self, reason: CancelReason = CancelReason.ABORTED) -> bool:
        """Set the token. Returns False if it was already set."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    def wait(self, timeout: float | None = None) -> bool:
        """Block the calling thread until cancelled or ``timeout`` elapses."""
        return self._event.wait(timeout)
