"""
In-process job store.

Keeps JSON snapshots so callers never share mutable Job objects with the
store.
"""

import json
import logging
import threading
from typing import Any, Dict, Optional

from .base import JobStore
from ..models import Job

logger = logging.getLogger("media_worker")


class MemoryJobStore(JobStore):
    """Dictionary-backed job store"""

    def __init__(self):
        self._records: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.saves = 0

    def save(self, job: Job) -> None:
        document = json.dumps(job.to_dict())
        with self._lock:
            self._records[job.id] = document
            self.saves += 1

    def load(self, job_id: str) -> Optional[Job]:
        with self._lock:
            document = self._records.get(job_id)
        if document is None:
            return None
        return Job.from_dict(json.loads(document))

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            counts: Dict[str, int] = {}
            for document in self._records.values():
                status = json.loads(document)["status"]
                counts[status] = counts.get(status, 0) + 1
            return {'jobs': counts, 'saves': self.saves}
