"""
Domain models for the media worker.

Defines the core data structures used throughout the system,
providing type safety and clear interfaces between components.
"""

import uuid
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({Status.SUCCEEDED, Status.FAILED, Status.CANCELLED})


class Stage(str, Enum):
    PROBING = "probing"
    TRANSCODING = "transcoding"
    TRANSCRIBING = "transcribing"
    EXTRACTING = "extracting"


STAGE_ORDER: List[Stage] = [Stage.PROBING, Stage.TRANSCODING, Stage.TRANSCRIBING, Stage.EXTRACTING]


@dataclass
class JobOptions:
    """Per-job stage options supplied at submission"""
    sample_rate: int = 16000
    channels: int = 1
    video_profile: Optional[str] = None
    skip_video: bool = True
    skip_transcription: bool = False
    language: Optional[str] = None
    detect_scenes: bool = False
    scene_threshold: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'JobOptions':
        return cls(**_known_fields(cls, data or {}))


VIDEO_PROFILE_NAMES = ("720p", "480p")


class SubmittedOptions(BaseModel):
    """Wire form of JobOptions; every field is optional and overrides a default"""
    model_config = ConfigDict(extra='forbid')

    sample_rate: Optional[Annotated[StrictInt, Field(ge=8000, le=192000)]] = None
    channels: Optional[Annotated[StrictInt, Field(ge=1, le=8)]] = None
    video_profile: Optional[Literal["720p", "480p"]] = None
    skip_video: Optional[StrictBool] = None
    skip_transcription: Optional[StrictBool] = None
    language: Optional[Annotated[StrictStr, Field(min_length=2, max_length=16)]] = None
    detect_scenes: Optional[StrictBool] = None
    scene_threshold: Optional[Annotated[float, Field(gt=0, le=255)]] = None

    @classmethod
    def parse(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        """Validated, non-null overrides; raises ValueError naming the bad fields"""
        try:
            options = cls.model_validate(data)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'options'}: {err['msg']}" for err in e.errors())
            raise ValueError(f"Invalid job options: {problems}") from e
        return options.model_dump(exclude_none=True)


@dataclass
class StreamInfo:
    """Represents a single container stream reported by the probe"""
    index: int
    codec_type: str
    codec_name: Optional[str] = None
    codec_long_name: Optional[str] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    frame_rate: Optional[str] = None
    duration: Optional[float] = None


@dataclass
class MediaMetadata:
    """Container and stream metadata for an input file"""
    filename: str
    format_name: str
    duration: float
    format_long_name: Optional[str] = None
    size_bytes: Optional[int] = None
    bit_rate: Optional[int] = None
    streams: List[StreamInfo] = field(default_factory=list)

    @property
    def audio_stream(self) -> Optional[StreamInfo]:
        return next((s for s in self.streams if s.codec_type == "audio"), None)

    @property
    def has_audio(self) -> bool:
        return self.audio_stream is not None

    @property
    def has_video(self) -> bool:
        return any(s.codec_type == "video" for s in self.streams)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MediaMetadata':
        data = dict(data)
        data["streams"] = [StreamInfo(**_known_fields(StreamInfo, s)) for s in data.get("streams", [])]
        return cls(**_known_fields(cls, data))


@dataclass
class SceneInfo:
    """One detected scene with its preview artifacts"""
    index: int
    start: float
    end: float
    clip_path: Optional[str] = None
    thumbnail_path: Optional[str] = None

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass
class AudioRef:
    """Reference to the canonical audio artifact (and optional re-encoded video and scenes)"""
    path: str
    sample_rate: int
    channels: int
    duration: float
    video_path: Optional[str] = None
    scenes: Optional[List[SceneInfo]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AudioRef':
        data = dict(data)
        if data.get("scenes") is not None:
            data["scenes"] = [SceneInfo(**_known_fields(SceneInfo, s)) for s in data["scenes"]]
        return cls(**_known_fields(cls, data))


@dataclass
class TranscriptSegment:
    """Represents a transcript segment"""
    start: float
    end: float
    text: str
    confidence: Optional[float] = None


@dataclass
class Transcript:
    """Time-aligned transcript; segments sorted by start and non-overlapping"""
    segments: List[TranscriptSegment]
    engine: str
    language: Optional[str] = None

    @property
    def text(self) -> str:
        return ' '.join(segment.text for segment in self.segments)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transcript':
        data = dict(data)
        data["segments"] = [TranscriptSegment(**_known_fields(TranscriptSegment, s))
                            for s in data.get("segments", [])]
        return cls(**_known_fields(cls, data))


@dataclass
class Classification:
    label: str
    confidence: float
    scores: Dict[str, float] = field(default_factory=dict)


@dataclass
class FeatureVector:
    """Fixed-dimension feature vector with optional model classification"""
    names: List[str]
    values: List[float]
    classification: Optional[Classification] = None
    fallback_used: bool = False

    @property
    def dimension(self) -> int:
        return len(self.values)

    def as_mapping(self) -> Dict[str, float]:
        return dict(zip(self.names, self.values))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FeatureVector':
        data = dict(data)
        if data.get("classification"):
            data["classification"] = Classification(**data["classification"])
        return cls(**_known_fields(cls, data))


PAYLOAD_TYPES = {
    Stage.PROBING: MediaMetadata,
    Stage.TRANSCODING: AudioRef,
    Stage.TRANSCRIBING: Transcript,
    Stage.EXTRACTING: FeatureVector,
}


@dataclass
class StageResult:
    """Outcome of one stage; payload type is fixed by the stage"""
    stage: Stage
    success: bool
    message: str = ""
    payload: Any = None
    attempts: int = 1
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "success": self.success,
            "message": self.message,
            "attempts": self.attempts,
            "skipped": self.skipped,
            "payload": asdict(self.payload) if self.payload is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StageResult':
        stage = Stage(data["stage"])
        payload = data.get("payload")
        if payload is not None:
            payload = PAYLOAD_TYPES[stage].from_dict(payload)
        return cls(
            stage=stage,
            success=data["success"],
            message=data.get("message", ""),
            payload=payload,
            attempts=data.get("attempts", 1),
            skipped=data.get("skipped", False),
        )


@dataclass
class ErrorRecord:
    """Structured failure surfaced through the status query"""
    stage: Optional[Stage]
    kind: str
    message: str
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value if self.stage else None,
            "kind": self.kind,
            "message": self.message,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ErrorRecord':
        return cls(
            stage=Stage(data["stage"]) if data.get("stage") else None,
            kind=data["kind"],
            message=data["message"],
            attempts=data.get("attempts", 0),
        )


class InvalidTransition(Exception):
    """Raised when a job state change violates the state machine"""


@dataclass
class Job:
    """Represents a media processing job"""
    id: str
    input_ref: str
    options: JobOptions = field(default_factory=JobOptions)
    status: Status = Status.PENDING
    stage: Optional[Stage] = None
    results: Dict[Stage, StageResult] = field(default_factory=dict)
    error: Optional[ErrorRecord] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    retries: Dict[Stage, int] = field(default_factory=dict)

    @classmethod
    def new(cls, input_ref: str, options: Optional[JobOptions] = None) -> 'Job':
        return cls(id=uuid.uuid4().hex, input_ref=input_ref, options=options or JobOptions())

    @property
    def state(self) -> str:
        """Status while idle or terminal, otherwise the name of the current stage"""
        if self.status == Status.RUNNING and self.stage is not None:
            return self.stage.value
        return self.status.value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise InvalidTransition(f"Job {self.id} is terminal ({self.status.value})")

    def advance(self, stage: Stage) -> None:
        """Move forward to ``stage``; stages never move backwards"""
        self._ensure_mutable()
        if self.stage is not None and STAGE_ORDER.index(stage) <= STAGE_ORDER.index(self.stage):
            raise InvalidTransition(f"Job {self.id} cannot move from {self.stage.value} to {stage.value}")
        if self.status == Status.PENDING:
            if stage != Stage.PROBING:
                raise InvalidTransition(f"Job {self.id} must start at {Stage.PROBING.value}")
            self.status = Status.RUNNING
            self.started_at = utcnow()
        self.stage = stage

    def record_retry(self) -> int:
        self._ensure_mutable()
        if self.stage is None:
            raise InvalidTransition(f"Job {self.id} has no active stage to retry")
        self.retries[self.stage] = self.retries.get(self.stage, 0) + 1
        return self.retries[self.stage]

    def attach(self, result: StageResult) -> None:
        self._ensure_mutable()
        if result.stage != self.stage:
            raise InvalidTransition(
                f"Result for {result.stage.value} does not match current stage {self.stage}")
        existing = self.results.get(result.stage)
        if existing is not None and existing.success:
            raise InvalidTransition(f"Job {self.id} already has a result for {result.stage.value}")
        self.results[result.stage] = result

    def succeed(self) -> None:
        self._ensure_mutable()
        missing = [s.value for s in STAGE_ORDER if not self.has_completed(s)]
        if missing:
            raise InvalidTransition(f"Job {self.id} missing results for: {', '.join(missing)}")
        self.status = Status.SUCCEEDED
        self.finished_at = utcnow()

    def fail(self, error: ErrorRecord) -> None:
        self._ensure_mutable()
        if not error.message:
            error.message = f"{error.kind} at {error.stage.value if error.stage else 'dispatch'}"
        self.status = Status.FAILED
        self.error = error
        self.finished_at = utcnow()

    def cancel(self) -> None:
        self._ensure_mutable()
        self.status = Status.CANCELLED
        self.finished_at = utcnow()

    def has_completed(self, stage: Stage) -> bool:
        result = self.results.get(stage)
        return result is not None and result.success

    def payload(self, stage: Stage) -> Any:
        """Payload of a completed stage, or None"""
        if not self.has_completed(stage):
            return None
        return self.results[stage].payload

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "input_ref": self.input_ref,
            "options": self.options.to_dict(),
            "status": self.status.value,
            "stage": self.stage.value if self.stage else None,
            "state": self.state,
            "results": [self.results[s].to_dict() for s in STAGE_ORDER if s in self.results],
            "error": self.error.to_dict() if self.error else None,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "retries": {stage.value: count for stage, count in self.retries.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Job':
        results = [StageResult.from_dict(r) for r in data.get("results", [])]
        return cls(
            id=data["id"],
            input_ref=data["input_ref"],
            options=JobOptions.from_dict(data.get("options")),
            status=Status(data["status"]),
            stage=Stage(data["stage"]) if data.get("stage") else None,
            results={r.stage: r for r in results},
            error=ErrorRecord.from_dict(data["error"]) if data.get("error") else None,
            created_at=_parse_iso(data.get("created_at")) or utcnow(),
            started_at=_parse_iso(data.get("started_at")),
            finished_at=_parse_iso(data.get("finished_at")),
            retries={Stage(k): v for k, v in (data.get("retries") or {}).items()},
        )

    def snapshot(self) -> 'Job':
        """Detached deep copy, safe to hand to other threads"""
        return Job.from_dict(self.to_dict())
