"""
Managed execution of external engine processes.

The caller starts the process; ``run_managed`` owns the handle from then on.
It polls for completion, kills the child on cancellation or timeout and
always reaps it, so no exit path leaves an orphaned process behind.
"""

import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..cancellation import CancellationToken
from ..errors import CancellationError, ExternalEngineError, StageTimeoutError

logger = logging.getLogger("media_worker")


@dataclass
class ProcessOutput:
    returncode: int
    stdout: bytes
    stderr: bytes

    def stderr_tail(self, lines: int = 10) -> str:
        text = self.stderr.decode("utf-8", errors="replace").strip()
        return "\n".join(text.splitlines()[-lines:])


class ProcessTracker:
    """Counts live child processes started through ``run_managed``"""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Dict[int, str] = {}
        self._started = 0

    def register(self, process: subprocess.Popen, name: str) -> None:
        with self._lock:
            self._active[process.pid] = name
            self._started += 1

    def unregister(self, process: subprocess.Popen) -> None:
        with self._lock:
            self._active.pop(process.pid, None)

    @property
    def active(self) -> int:
        with self._lock:
            return len(self._active)

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {'active': len(self._active), 'started': self._started}


def _terminate(process: subprocess.Popen, grace_sec: float = 2.0) -> None:
    """SIGTERM, then SIGKILL if the child does not exit within the grace period"""
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.communicate(timeout=grace_sec)
    except subprocess.TimeoutExpired:
        process.kill()
        process.communicate()


def run_managed(
    start: Callable[[], subprocess.Popen],
    name: str,
    token: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
    tracker: Optional[ProcessTracker] = None,
    poll_interval: float = 0.2,
) -> ProcessOutput:
    """
    Run an external process to completion under cancellation and timeout control.

    Args:
        start: Callable returning a started Popen with piped stdout/stderr
        name: Engine name used in errors and logs
        token: Cancellation token checked while waiting
        timeout: Hard limit in seconds for the whole run
        tracker: Optional live-process accounting

    Returns:
        ProcessOutput; a non-zero return code is left to the caller to interpret
    """
    if token is not None:
        token.raise_if_cancelled()

    try:
        process = start()
    except FileNotFoundError as e:
        raise ExternalEngineError(f"{name} executable not found: {e}", fatal=True) from e
    except OSError as e:
        raise ExternalEngineError(f"Failed to start {name}: {e}") from e

    if tracker is not None:
        tracker.register(process, name)
    deadline = time.monotonic() + timeout if timeout else None

    try:
        while True:
            if token is not None and token.cancelled:
                logger.info(f"Killing {name} (pid {process.pid}) after cancellation")
                _terminate(process)
                raise CancellationError(token.reason or "Job cancelled")

            wait = poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(f"{name} (pid {process.pid}) exceeded {timeout:.1f}s timeout")
                    _terminate(process)
                    raise StageTimeoutError(f"{name} timed out after {timeout:.1f}s")
                wait = min(wait, remaining)

            try:
                stdout, stderr = process.communicate(timeout=wait)
            except subprocess.TimeoutExpired:
                continue
            return ProcessOutput(process.returncode, stdout or b"", stderr or b"")
    finally:
        if process.poll() is None:
            _terminate(process)
        if tracker is not None:
            tracker.unregister(process)
