"""
Abstract base classes for job stores and submission sources.

Defines the interface that all adapters must implement, enabling
easy swapping between different durable stores (memory, Postgres, S3)
and submission sources (SQS).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from ..models import Job


@dataclass
class Submission:
    """A job request received from an external source"""
    input_ref: str
    options: Dict[str, Any] = field(default_factory=dict)
    receipt: Optional[str] = None


class JobStore(ABC):
    """Durable record of job state"""

    def connect(self) -> None:
        """Open connections; no-op for stores without one"""

    def close(self) -> None:
        """Release connections"""

    @abstractmethod
    def save(self, job: Job) -> None:
        """
        Persist the current state of a job, replacing any previous record.

        Args:
            job: Job to persist
        """
        pass

    @abstractmethod
    def load(self, job_id: str) -> Optional[Job]:
        """
        Load a job by id.

        Args:
            job_id: ID of the job to retrieve

        Returns:
            Job object if found, None otherwise
        """
        pass

    def get_stats(self) -> Dict[str, Any]:
        """Store statistics for monitoring"""
        return {}


class SubmissionSource(ABC):
    """Pull-based feed of job submissions"""

    @abstractmethod
    def connect(self) -> None:
        pass

    @abstractmethod
    def receive(self) -> Optional[Submission]:
        """
        Wait for the next submission.

        Returns:
            Submission if one arrived, None if the poll came back empty
        """
        pass

    @abstractmethod
    def acknowledge(self, submission: Submission) -> None:
        """Remove a submission from the source once it has been accepted"""
        pass

    @abstractmethod
    def close(self) -> None:
        pass
