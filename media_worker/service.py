"""
Main worker service.

Wires the job store, speech engine pool, stage implementations and the
pipeline orchestrator together from configuration, and optionally pulls
submissions from a queue-backed source.
"""

import time
import signal
import sys
import logging
import threading
from typing import Optional, Dict, Any

from .config import WorkerConfig
from .adapters.base import JobStore, SubmissionSource
from .adapters.memory_store import MemoryJobStore
from .engine_pool import EnginePool
from .errors import QueueFullError
from .models import Job
from .orchestrator import PipelineOrchestrator, PipelineStages
from .pipeline.features import FeatureExtractor
from .pipeline.probe import FfprobeMediaProbe
from .pipeline.process import ProcessTracker
from .pipeline.scenes import SceneDetector
from .pipeline.transcode import FfmpegTranscoder
from .pipeline.transcribe import MockEngine, Transcriber, VoskEngine, WhisperEngine
from .logging_setup import setup_logging, log_exception
from .http_server import start_health_server

logger = logging.getLogger("media_worker")


class WorkerService:
    """Main worker service with adapter-based architecture"""

    def __init__(self, config: Optional[WorkerConfig] = None):
        self.config = config or WorkerConfig.from_env()
        self.store: Optional[JobStore] = None
        self.submission_source: Optional[SubmissionSource] = None
        self.engine_pool: Optional[EnginePool] = None
        self.tracker = ProcessTracker()
        self.orchestrator: Optional[PipelineOrchestrator] = None
        self.health_server = None
        self.running = False
        self._stop_event = threading.Event()
        self.backoff_interval = self.config.POLL_INTERVAL_MS
        self.max_backoff = self.config.MAX_BACKOFF_MS

    def initialize(self, store: Optional[JobStore] = None, stages: Optional[PipelineStages] = None):
        """Initialize the worker from configuration; explicit collaborators override it"""
        try:
            setup_logging(self.config.LOG_LEVEL, self.config.log_dir)

            if stages is None:
                self.config.validate()

            self.store = store or self._create_job_store()
            self.store.connect()

            if stages is None:
                self.engine_pool = EnginePool(
                    self._create_engine_factory(),
                    max_size=self.config.ENGINE_POOL_SIZE,
                    acquire_timeout=self.config.ENGINE_ACQUIRE_TIMEOUT_SEC,
                    name=self.config.TRANSCRIBE_ENGINE
                )
                stages = self._create_stages()

            self.orchestrator = PipelineOrchestrator(
                self.config, self.store, stages, engine_pool=self.engine_pool, tracker=self.tracker)
            self.orchestrator.start()

            self.submission_source = self._create_submission_source()
            if self.submission_source:
                self.submission_source.connect()

            self.health_server = start_health_server(self)

            logger.info(f"Worker service initialized: {self.config.JOB_STORE_TYPE} store, "
                        f"{self.config.TRANSCRIBE_ENGINE} engine, {self.config.WORKER_CONCURRENCY} workers")

        except Exception as e:
            log_exception(logger, f"Failed to initialize worker service: {e}")
            raise

    def _create_job_store(self) -> JobStore:
        """Create job store based on configuration"""
        config = self.config.JOB_STORE_CONFIG or {}

        if self.config.JOB_STORE_TYPE == "memory":
            return MemoryJobStore()

        elif self.config.JOB_STORE_TYPE == "postgres":
            from .adapters.postgres_adapter import PostgresJobStore
            return PostgresJobStore(
                database_url=config["database_url"],
                pool_size=config.get("connection_pool_size", 5),
                timeout=config.get("connection_timeout", 10)
            )

        elif self.config.JOB_STORE_TYPE == "s3":
            from .adapters.s3_adapter import S3JobStore
            return S3JobStore(
                bucket=config["bucket"],
                region=config.get("region", "us-east-1"),
                prefix=config.get("prefix", "media-jobs/")
            )

        else:
            raise ValueError(f"Unsupported job store type: {self.config.JOB_STORE_TYPE}")

    def _create_submission_source(self) -> Optional[SubmissionSource]:
        """Create submission source based on configuration"""
        if self.config.SUBMISSION_SOURCE == "sqs":
            from .adapters.sqs_adapter import SQSSubmissionSource
            config = self.config.SUBMISSION_CONFIG or {}
            return SQSSubmissionSource(
                queue_url=config["queue_url"],
                region=config.get("region", "us-east-1"),
                max_messages=config.get("max_messages", 1),
                wait_time=config.get("wait_time_seconds", 20)
            )
        return None

    def _create_engine_factory(self):
        """Engine constructor for the configured speech engine"""
        engine = self.config.TRANSCRIBE_ENGINE
        if engine == "whisper":
            return lambda: WhisperEngine(self.config.WHISPER_MODEL)
        if engine == "vosk":
            return lambda: VoskEngine(self.config.VOSK_MODEL_PATH)
        if engine == "mock":
            return MockEngine
        raise ValueError(f"Unsupported transcription engine: {engine}")

    def _create_stages(self) -> PipelineStages:
        return PipelineStages(
            probe=FfprobeMediaProbe(self.config.FFPROBE_PATH, tracker=self.tracker),
            transcoder=FfmpegTranscoder(self.config.FFMPEG_PATH, tracker=self.tracker),
            scene_detector=SceneDetector(self.config.FFMPEG_PATH, tracker=self.tracker,
                                         min_scene_sec=self.config.SCENE_MIN_LENGTH_SEC,
                                         export_clips=self.config.SCENE_EXPORT_CLIPS),
            transcriber=Transcriber(self.engine_pool, acquire_timeout=self.config.ENGINE_ACQUIRE_TIMEOUT_SEC),
            extractor=FeatureExtractor(self.config.FEATURE_MODEL_PATH),
        )

    # Submission API

    def submit(self, input_ref: str, options: Optional[Dict[str, Any]] = None) -> str:
        return self.orchestrator.submit(input_ref, options)

    def status(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.orchestrator.get_status(job_id)

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.orchestrator.get_job(job_id)

    def cancel(self, job_id: str) -> bool:
        return self.orchestrator.cancel(job_id)

    # Run loop

    def start(self):
        """Run until stopped, pulling submissions when a source is configured"""
        if self.running:
            logger.warning("Worker service is already running")
            return

        self.running = True
        self._stop_event.clear()
        logger.info("Worker service started")

        if self.submission_source:
            self._start_polling_loop()
        else:
            self._stop_event.wait()

    def _start_polling_loop(self):
        """Start the polling loop for the pull-based submission source"""
        logger.info("Worker started, polling for submissions...")

        while self.running:
            try:
                accepted = self.run_once()

                if not accepted:
                    # Nothing accepted, use exponential backoff
                    if self._stop_event.wait(self.backoff_interval / 1000.0):
                        break
                    self.backoff_interval = min(
                        self.backoff_interval * self.config.BACKOFF_MULTIPLIER,
                        self.max_backoff
                    )
                else:
                    self.backoff_interval = self.config.POLL_INTERVAL_MS

            except KeyboardInterrupt:
                logger.info("Received interrupt signal, shutting down...")
                break
            except Exception as e:
                log_exception(logger, f"Unexpected error in worker loop: {str(e)}")
                time.sleep(self.backoff_interval / 1000.0)
                self.backoff_interval = min(
                    self.backoff_interval * self.config.BACKOFF_MULTIPLIER,
                    self.max_backoff
                )

        logger.info("Worker polling loop stopped")

    def run_once(self) -> bool:
        """
        Pull one submission and hand it to the orchestrator.

        Returns:
            True if a job was accepted, False otherwise
        """
        submission = self.submission_source.receive()
        if not submission:
            return False

        try:
            job_id = self.orchestrator.submit(submission.input_ref, submission.options)
        except QueueFullError:
            # Leave the message on the queue for redelivery
            logger.warning(f"Queue full, deferring submission for {submission.input_ref}")
            return False
        except ValueError as e:
            logger.error(f"Rejecting submission for {submission.input_ref}: {e}")
            self.submission_source.acknowledge(submission)
            return False

        self.submission_source.acknowledge(submission)
        logger.info(f"Accepted submission as job {job_id}")
        return True

    def stop(self):
        """Stop the worker service"""
        if self.orchestrator:
            self.orchestrator.stop(timeout=self.config.TRANSCODE_TIMEOUT_SEC)

        self.running = False
        self._stop_event.set()

        if self.health_server:
            self.health_server.stop()
        if self.submission_source:
            self.submission_source.close()
        if self.engine_pool:
            self.engine_pool.close()
        if self.store:
            self.store.close()

        logger.info("Worker service stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        stats = {
            'running': self.running,
            'config': {
                'job_store_type': self.config.JOB_STORE_TYPE,
                'submission_source': self.config.SUBMISSION_SOURCE,
                'transcribe_engine': self.config.TRANSCRIBE_ENGINE,
                'worker_concurrency': self.config.WORKER_CONCURRENCY,
                'engine_pool_size': self.config.ENGINE_POOL_SIZE
            }
        }

        if self.orchestrator:
            stats['orchestrator'] = self.orchestrator.get_stats()
        if self.store:
            stats['store'] = self.store.get_stats()

        return stats

    def reset_stats(self):
        """Reset worker statistics"""
        if self.orchestrator:
            self.orchestrator.reset_stats()
        logger.info("Worker statistics reset")


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)


def main():
    """Main entry point"""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    worker = WorkerService()

    try:
        worker.initialize()
        worker.start()
    except Exception as e:
        log_exception(logger, f"Worker failed to start: {str(e)}")
        sys.exit(1)
    finally:
        worker.stop()


if __name__ == "__main__":
    main()
