"""
Adapter pattern implementations for job stores and submission sources.

This module provides abstract base classes and concrete implementations
for durable job stores (memory, Postgres, S3) and submission sources (SQS).
"""

from .base import JobStore, Submission, SubmissionSource
from .memory_store import MemoryJobStore

__all__ = [
    'JobStore',
    'Submission',
    'SubmissionSource',
    'MemoryJobStore',
]
