"""
Error taxonomy for the media pipeline.

Every stage reports failures through one of these exceptions. The
orchestrator reads ``kind``, ``retryable`` and ``fatal`` to decide between
retry-in-place and a terminal failure.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INPUT = "input_error"
    EXTERNAL_ENGINE = "external_engine_error"
    TIMEOUT = "timeout"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    NUMERIC = "numeric_error"
    IO = "io_error"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class PipelineError(Exception):
    """Base class for all stage failures"""

    kind = ErrorKind.INTERNAL
    retryable = False

    def __init__(self, message: str, fatal: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        # Fatal errors skip the retry budget entirely
        self.fatal = (not self.retryable) if fatal is None else fatal

    def __str__(self) -> str:
        return self.message


class InputError(PipelineError):
    """Unreadable container, unsupported format, zero duration, bad dimensions"""
    kind = ErrorKind.INPUT
    retryable = False


class ExternalEngineError(PipelineError):
    """Non-zero exit or crash of an external engine.

    Pass ``fatal=True`` for engine initialization and model-load failures.
    """
    kind = ErrorKind.EXTERNAL_ENGINE
    retryable = True


class StageTimeoutError(PipelineError):
    kind = ErrorKind.TIMEOUT
    retryable = True


class ResourceExhaustionError(PipelineError):
    """Engine pool acquisition failed within the allotted time"""
    kind = ErrorKind.RESOURCE_EXHAUSTION
    retryable = True


class NumericError(PipelineError):
    """NaN/Inf produced during feature computation"""
    kind = ErrorKind.NUMERIC
    retryable = True


class StorageIOError(PipelineError):
    """Failure reading or writing a pipeline artifact"""
    kind = ErrorKind.IO
    retryable = True


class CancellationError(PipelineError):
    kind = ErrorKind.CANCELLED
    retryable = False

    def __init__(self, message: str = "Job cancelled"):
        super().__init__(message, fatal=True)


class QueueFullError(ResourceExhaustionError):
    """Raised to submitters when the job queue is at capacity"""
