"""
Configuration management for the media worker.

Centralizes all configuration loading from environment variables
and provides type-safe access to configuration values.
"""

import os
from typing import Dict, Any, Optional
from dataclasses import dataclass

from .models import VIDEO_PROFILE_NAMES


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class WorkerConfig:
    """Configuration for the media worker"""

    # Job store settings
    JOB_STORE_TYPE: str = "memory"  # memory, postgres, s3
    JOB_STORE_CONFIG: Dict[str, Any] = None

    # Submission source settings
    SUBMISSION_SOURCE: str = "none"  # none, sqs
    SUBMISSION_CONFIG: Dict[str, Any] = None

    # Concurrency settings
    WORKER_CONCURRENCY: int = 2
    QUEUE_MAX_SIZE: int = 100

    # Speech engine settings
    TRANSCRIBE_ENGINE: str = "whisper"  # whisper, vosk, mock
    WHISPER_MODEL: str = "whisper-1"
    VOSK_MODEL_PATH: Optional[str] = None
    ENGINE_POOL_SIZE: int = 2
    ENGINE_ACQUIRE_TIMEOUT_SEC: float = 30.0

    # External binaries
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"

    # Stage timeouts
    PROBE_TIMEOUT_SEC: float = 30.0
    TRANSCODE_TIMEOUT_SEC: float = 600.0
    TRANSCRIBE_TIMEOUT_SEC: float = 900.0

    # Retry policy
    TRANSCODE_MAX_RETRIES: int = 2
    TRANSCRIBE_MAX_RETRIES: int = 1
    EXTRACT_MAX_RETRIES: int = 2
    BACKOFF_BASE_MS: int = 500
    BACKOFF_MULTIPLIER: float = 2.0
    MAX_BACKOFF_MS: int = 12000
    POLL_INTERVAL_MS: int = 1500

    # Canonical audio / video defaults
    TARGET_SAMPLE_RATE: int = 16000
    TARGET_CHANNELS: int = 1
    DEFAULT_SKIP_VIDEO: bool = True
    DEFAULT_VIDEO_PROFILE: str = "720p"

    # Scene detection
    SCENE_THRESHOLD: float = 27.0
    SCENE_MIN_LENGTH_SEC: float = 0.5
    SCENE_EXPORT_CLIPS: bool = True

    # Feature extraction
    FEATURE_MODEL_PATH: Optional[str] = None

    # Outputs
    WRITE_SRT: bool = False
    RETAIN_ARTIFACTS: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"

    # HTTP server
    ENABLE_HTTP_SERVER: bool = False
    HTTP_PORT: int = 8000
    MAX_UPLOAD_MB: int = 2048

    # Data directory
    DATA_DIR: str = "/app/data"

    @classmethod
    def from_env(cls) -> 'WorkerConfig':
        """Load configuration from environment variables"""
        config = cls()

        # Job store configuration
        config.JOB_STORE_TYPE = os.getenv("JOB_STORE_TYPE", "memory")
        config.JOB_STORE_CONFIG = cls._parse_job_store_config()

        # Submission source configuration
        config.SUBMISSION_SOURCE = os.getenv("SUBMISSION_SOURCE", "none")
        config.SUBMISSION_CONFIG = cls._parse_submission_config()

        # Concurrency settings
        config.WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "2"))
        config.QUEUE_MAX_SIZE = int(os.getenv("QUEUE_MAX_SIZE", "100"))

        # Speech engine settings
        config.TRANSCRIBE_ENGINE = os.getenv("TRANSCRIBE_ENGINE", "whisper")
        config.WHISPER_MODEL = os.getenv("WHISPER_MODEL", "whisper-1")
        config.VOSK_MODEL_PATH = os.getenv("VOSK_MODEL_PATH")
        config.ENGINE_POOL_SIZE = int(os.getenv("ENGINE_POOL_SIZE", "2"))
        config.ENGINE_ACQUIRE_TIMEOUT_SEC = float(os.getenv("ENGINE_ACQUIRE_TIMEOUT_SEC", "30"))

        # External binaries
        config.FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
        config.FFPROBE_PATH = os.getenv("FFPROBE_PATH", "ffprobe")

        # Stage timeouts
        config.PROBE_TIMEOUT_SEC = float(os.getenv("PROBE_TIMEOUT_SEC", "30"))
        config.TRANSCODE_TIMEOUT_SEC = float(os.getenv("TRANSCODE_TIMEOUT_SEC", "600"))
        config.TRANSCRIBE_TIMEOUT_SEC = float(os.getenv("TRANSCRIBE_TIMEOUT_SEC", "900"))

        # Retry policy
        config.TRANSCODE_MAX_RETRIES = int(os.getenv("TRANSCODE_MAX_RETRIES", "2"))
        config.TRANSCRIBE_MAX_RETRIES = int(os.getenv("TRANSCRIBE_MAX_RETRIES", "1"))
        config.EXTRACT_MAX_RETRIES = int(os.getenv("EXTRACT_MAX_RETRIES", "2"))
        config.BACKOFF_BASE_MS = int(os.getenv("BACKOFF_BASE_MS", "500"))
        config.BACKOFF_MULTIPLIER = float(os.getenv("BACKOFF_MULTIPLIER", "2.0"))
        config.MAX_BACKOFF_MS = int(os.getenv("MAX_BACKOFF_MS", "12000"))
        config.POLL_INTERVAL_MS = int(os.getenv("WORKER_POLL_MS", "1500"))

        # Canonical audio / video defaults
        config.TARGET_SAMPLE_RATE = int(os.getenv("TARGET_SAMPLE_RATE", "16000"))
        config.TARGET_CHANNELS = int(os.getenv("TARGET_CHANNELS", "1"))
        config.DEFAULT_SKIP_VIDEO = _env_bool("DEFAULT_SKIP_VIDEO", "true")
        config.DEFAULT_VIDEO_PROFILE = os.getenv("DEFAULT_VIDEO_PROFILE", "720p")

        # Scene detection
        config.SCENE_THRESHOLD = float(os.getenv("SCENE_THRESHOLD", "27.0"))
        config.SCENE_MIN_LENGTH_SEC = float(os.getenv("SCENE_MIN_LENGTH_SEC", "0.5"))
        config.SCENE_EXPORT_CLIPS = _env_bool("SCENE_EXPORT_CLIPS", "true")

        # Feature extraction
        config.FEATURE_MODEL_PATH = os.getenv("FEATURE_MODEL_PATH")

        # Outputs
        config.WRITE_SRT = _env_bool("WRITE_SRT", "false")
        config.RETAIN_ARTIFACTS = _env_bool("RETAIN_ARTIFACTS", "false")

        # Logging
        config.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # HTTP server
        config.ENABLE_HTTP_SERVER = _env_bool("WORKER_DEV_HTTP", "false")
        config.HTTP_PORT = int(os.getenv("WORKER_HTTP_PORT", "8000"))
        config.MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "2048"))

        # Data directory
        config.DATA_DIR = os.getenv("DATA_DIR", "/app/data")

        return config

    @classmethod
    def _parse_job_store_config(cls) -> Dict[str, Any]:
        """Parse job store specific configuration"""
        store_type = os.getenv("JOB_STORE_TYPE", "memory")

        if store_type == "postgres":
            return {
                "database_url": os.getenv("DATABASE_URL"),
                "connection_pool_size": int(os.getenv("POSTGRES_POOL_SIZE", "5")),
                "connection_timeout": int(os.getenv("POSTGRES_TIMEOUT", "10"))
            }
        elif store_type == "s3":
            return {
                "bucket": os.getenv("AWS_S3_BUCKET"),
                "region": os.getenv("AWS_REGION", "us-east-1"),
                "prefix": os.getenv("S3_PREFIX", "media-jobs/")
            }
        else:
            return {}

    @classmethod
    def _parse_submission_config(cls) -> Dict[str, Any]:
        """Parse submission source specific configuration"""
        source = os.getenv("SUBMISSION_SOURCE", "none")

        if source == "sqs":
            return {
                "queue_url": os.getenv("AWS_SQS_QUEUE_URL"),
                "region": os.getenv("AWS_REGION", "us-east-1"),
                "max_messages": int(os.getenv("SQS_MAX_MESSAGES", "1")),
                "wait_time_seconds": int(os.getenv("SQS_WAIT_TIME", "20"))
            }
        else:
            return {}

    @property
    def work_dir(self) -> str:
        """Root of the per-job scratch workspaces"""
        return os.path.join(self.DATA_DIR, "work")

    @property
    def subs_dir(self) -> str:
        return os.path.join(self.DATA_DIR, "subs")

    @property
    def uploads_dir(self) -> str:
        return os.path.join(self.DATA_DIR, "uploads")

    @property
    def log_dir(self) -> str:
        return os.path.join(self.DATA_DIR, "worker")

    def validate(self) -> None:
        """Validate configuration and raise errors for missing required values"""
        required_vars = []
        store_config = self.JOB_STORE_CONFIG or {}
        submission_config = self.SUBMISSION_CONFIG or {}

        if self.JOB_STORE_TYPE not in ("memory", "postgres", "s3"):
            raise ValueError(f"Unsupported job store type: {self.JOB_STORE_TYPE}")

        if self.TRANSCRIBE_ENGINE not in ("whisper", "vosk", "mock"):
            raise ValueError(f"Unsupported transcription engine: {self.TRANSCRIBE_ENGINE}")

        # Check required environment variables based on configuration
        if self.JOB_STORE_TYPE == "postgres" and not store_config.get("database_url"):
            required_vars.append("DATABASE_URL")

        if self.JOB_STORE_TYPE == "s3" and not store_config.get("bucket"):
            required_vars.append("AWS_S3_BUCKET")

        if self.SUBMISSION_SOURCE == "sqs" and not submission_config.get("queue_url"):
            required_vars.append("AWS_SQS_QUEUE_URL")

        # Check for OpenAI API key if Whisper transcription is enabled
        if self.TRANSCRIBE_ENGINE == "whisper" and not os.getenv("OPENAI_API_KEY"):
            required_vars.append("OPENAI_API_KEY")

        if self.TRANSCRIBE_ENGINE == "vosk" and not self.VOSK_MODEL_PATH:
            required_vars.append("VOSK_MODEL_PATH")

        if required_vars:
            raise ValueError(f"Missing required environment variables: {', '.join(required_vars)}")

        if self.DEFAULT_VIDEO_PROFILE not in VIDEO_PROFILE_NAMES:
            raise ValueError(f"Unsupported video profile: {self.DEFAULT_VIDEO_PROFILE}")

        if self.SCENE_THRESHOLD <= 0:
            raise ValueError("SCENE_THRESHOLD must be positive")

        if self.WORKER_CONCURRENCY < 1 or self.ENGINE_POOL_SIZE < 1:
            raise ValueError("WORKER_CONCURRENCY and ENGINE_POOL_SIZE must be at least 1")
