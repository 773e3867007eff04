"""
Bounded worker pool.

Job ids are queued by the submission side and consumed by a fixed number of
worker threads. Each job is handled end-to-end by the thread that dequeued it.
"""

import logging
import queue
import threading
from typing import Callable, List, Optional

from .errors import QueueFullError
from .logging_setup import log_exception

logger = logging.getLogger("media_worker")

_STOP = object()


class WorkerPool:
    """Fixed-size thread pool fed by a bounded FIFO queue"""

    def __init__(self, handler: Callable[[str], None], size: int = 2, max_queue: int = 100,
                 name: str = "media-worker"):
        if size < 1:
            raise ValueError("size must be at least 1")
        self.handler = handler
        self.size = size
        self.name = name
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_queue)
        self._threads: List[threading.Thread] = []
        self._busy = 0
        self._lock = threading.Lock()
        self._closed = False
        self.running = False

    def start(self) -> None:
        if self.running:
            logger.warning("Worker pool is already running")
            return
        self.running = True
        for i in range(self.size):
            thread = threading.Thread(target=self._worker_loop, name=f"{self.name}-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Worker pool started with {self.size} workers")

    def submit(self, job_id: str) -> None:
        """Enqueue a job id; raises QueueFullError when at capacity or closed"""
        with self._lock:
            if self._closed:
                raise QueueFullError("Worker pool is shutting down")
            try:
                self._queue.put_nowait(job_id)
            except queue.Full:
                raise QueueFullError(f"Job queue is full ({self._queue.maxsize} pending)")

    def close(self) -> None:
        """Stop accepting new job ids; queued ones stay until drained or run"""
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                with self._lock:
                    self._busy += 1
                try:
                    self.handler(item)
                except Exception as e:
                    log_exception(logger, f"Unhandled error processing job {item}: {e}")
                finally:
                    with self._lock:
                        self._busy -= 1
            finally:
                self._queue.task_done()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop workers after the jobs they are currently running"""
        self.close()
        if not self.running:
            return
        self.running = False
        for _ in self._threads:
            self._queue.put(_STOP)
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Worker pool stopped")

    def drain(self) -> List[str]:
        """Remove and return job ids that were never dispatched"""
        pending = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            self._queue.task_done()
            if item is not _STOP:
                pending.append(item)
        return pending

    def join(self) -> None:
        """Block until every queued job has been processed"""
        self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def busy(self) -> int:
        with self._lock:
            return self._busy
