"""
Cooperative cancellation.

A token is created per job and handed to every blocking call the job makes.
Stages check it between units of work; the subprocess runner polls it while
waiting on a child process.
"""

import threading
from typing import Optional

from .errors import CancellationError


class CancellationToken:
    """Thread-safe cancellation flag for a single job"""

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "Cancellation requested") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self._reason or "Job cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile"""
        return self._event.wait(timeout)
