"""
Static stage definitions.

Descriptors carry the retry budget and timeout of each stage; the
orchestrator walks them in ordinal order.
"""

from dataclasses import dataclass
from typing import List, Optional

from .config import WorkerConfig
from .models import Stage


@dataclass(frozen=True)
class StageDescriptor:
    """Static definition of a pipeline stage"""
    stage: Stage
    ordinal: int
    skippable: bool = False
    retryable: bool = True
    max_retries: int = 0
    timeout_sec: Optional[float] = None
    transcript_optional: bool = False

    @property
    def name(self) -> str:
        return self.stage.value


def build_stage_descriptors(config: WorkerConfig) -> List[StageDescriptor]:
    """Stage table for the given configuration, in execution order"""
    return [
        StageDescriptor(
            stage=Stage.PROBING,
            ordinal=0,
            retryable=False,
            max_retries=0,
            timeout_sec=config.PROBE_TIMEOUT_SEC,
        ),
        # Video re-encode inside this stage is optional per job (skip_video)
        StageDescriptor(
            stage=Stage.TRANSCODING,
            ordinal=1,
            max_retries=config.TRANSCODE_MAX_RETRIES,
            timeout_sec=config.TRANSCODE_TIMEOUT_SEC,
        ),
        StageDescriptor(
            stage=Stage.TRANSCRIBING,
            ordinal=2,
            skippable=True,
            max_retries=config.TRANSCRIBE_MAX_RETRIES,
            timeout_sec=config.TRANSCRIBE_TIMEOUT_SEC,
        ),
        StageDescriptor(
            stage=Stage.EXTRACTING,
            ordinal=3,
            max_retries=config.EXTRACT_MAX_RETRIES,
            transcript_optional=True,
        ),
    ]
