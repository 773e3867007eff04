"""
Bounded pool of speech-recognition engine instances.

Engines are expensive to initialize, so instances are created lazily up to
``max_size`` and reused across jobs. Callers block (with a timeout) while all
instances are leased out.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from .cancellation import CancellationToken
from .errors import ExternalEngineError, PipelineError, ResourceExhaustionError

logger = logging.getLogger("media_worker")


class EnginePool:
    """Thread-safe pool with explicit acquire/release and scoped leases"""

    def __init__(self, factory: Callable[[], Any], max_size: int, acquire_timeout: float = 30.0,
                 name: str = "engine"):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.factory = factory
        self.max_size = max_size
        self.acquire_timeout = acquire_timeout
        self.name = name
        self._cond = threading.Condition()
        self._idle: List[Any] = []
        self._created = 0
        self._in_use = 0
        self._peak_in_use = 0
        self._closed = False

    @property
    def in_use(self) -> int:
        with self._cond:
            return self._in_use

    @property
    def created(self) -> int:
        with self._cond:
            return self._created

    def acquire(self, timeout: Optional[float] = None, token: Optional[CancellationToken] = None) -> Any:
        """
        Acquire an engine instance.

        Raises:
            ResourceExhaustionError: no instance became available in time
            CancellationError: the token was cancelled while waiting
            ExternalEngineError: creating a new instance failed (fatal)
        """
        timeout = self.acquire_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout

        with self._cond:
            while True:
                if self._closed:
                    raise ResourceExhaustionError(f"{self.name} pool is closed")
                if token is not None:
                    token.raise_if_cancelled()
                if self._idle:
                    engine = self._idle.pop()
                    self._mark_leased()
                    return engine
                if self._created < self.max_size:
                    # Reserve the slot before releasing the lock to build the engine
                    self._created += 1
                    self._mark_leased()
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ResourceExhaustionError(
                        f"Timed out after {timeout:.1f}s waiting for a {self.name} instance "
                        f"({self._in_use}/{self.max_size} in use)")
                # Wake periodically so cancellation is noticed while blocked
                self._cond.wait(min(remaining, 0.25))

        try:
            logger.info(f"Initializing {self.name} instance ({self._created}/{self.max_size})")
            return self.factory()
        except BaseException as e:
            with self._cond:
                self._created -= 1
                self._in_use -= 1
                self._cond.notify()
            if isinstance(e, PipelineError):
                raise
            if isinstance(e, Exception):
                raise ExternalEngineError(f"Failed to initialize {self.name}: {e}", fatal=True) from e
            raise

    def release(self, engine: Any) -> None:
        with self._cond:
            self._in_use -= 1
            if self._closed:
                self._created -= 1
                self._close_engine(engine)
            else:
                self._idle.append(engine)
            self._cond.notify()

    def discard(self, engine: Any) -> None:
        """Release a broken instance without returning it to the pool"""
        with self._cond:
            self._in_use -= 1
            self._created -= 1
            self._cond.notify()
        self._close_engine(engine)

    @contextmanager
    def lease(self, timeout: Optional[float] = None,
              token: Optional[CancellationToken] = None) -> Iterator[Any]:
        """Acquire an engine for the duration of a ``with`` block"""
        engine = self.acquire(timeout=timeout, token=token)
        try:
            yield engine
        finally:
            self.release(engine)

    def _mark_leased(self) -> None:
        self._in_use += 1
        self._peak_in_use = max(self._peak_in_use, self._in_use)

    def _close_engine(self, engine: Any) -> None:
        close = getattr(engine, "close", None)
        if callable(close):
            try:
                close()
            except Exception as e:
                logger.warning(f"Error closing {self.name} instance: {e}")

    def close(self) -> None:
        with self._cond:
            self._closed = True
            idle, self._idle = self._idle, []
            self._created -= len(idle)
            self._cond.notify_all()
        for engine in idle:
            self._close_engine(engine)
        logger.info(f"{self.name} pool closed")

    def get_stats(self) -> Dict[str, Any]:
        with self._cond:
            return {
                'max_size': self.max_size,
                'created': self._created,
                'in_use': self._in_use,
                'idle': len(self._idle),
                'peak_in_use': self._peak_in_use,
            }
