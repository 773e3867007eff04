"""
Pipeline orchestration and execution management.

Handles job submission, the per-job stage state machine, retries with
backoff, cooperative cancellation, artifact cleanup and progress tracking.
Coordinates the stage implementations, the worker pool and the job store.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from datetime import datetime

from .adapters.base import JobStore
from .cancellation import CancellationToken
from .config import WorkerConfig
from .engine_pool import EnginePool
from .errors import CancellationError, ErrorKind, InputError, PipelineError, QueueFullError, StageTimeoutError
from .logging_setup import log_exception
from .models import ErrorRecord, Job, JobOptions, Stage, StageResult, Status, SubmittedOptions
from .pipeline.process import ProcessTracker
from .pipeline.transcribe import save_srt_file
from .pipeline.util import get_job_workspace, remove_workspace, resolve_input_path
from .stages import StageDescriptor, build_stage_descriptors
from .worker_pool import WorkerPool

logger = logging.getLogger("media_worker")

# Errors that get one free retry before counting toward a stage's budget
_GRACE_KINDS = (ErrorKind.TIMEOUT, ErrorKind.RESOURCE_EXHAUSTION)


@dataclass
class PipelineStages:
    """Stage implementations, selected by configuration"""
    probe: Any
    transcoder: Any
    transcriber: Any
    extractor: Any
    scene_detector: Any = None


@dataclass
class _JobContext:
    job: Job
    workspace: str
    token: CancellationToken = field(default_factory=CancellationToken)
    lock: threading.Lock = field(default_factory=threading.Lock)
    dispatched: bool = False


class PipelineOrchestrator:
    """Manages pipeline execution flow and coordination"""

    def __init__(self, config: WorkerConfig, store: JobStore, stages: PipelineStages,
                 engine_pool: Optional[EnginePool] = None, tracker: Optional[ProcessTracker] = None,
                 descriptors: Optional[List[StageDescriptor]] = None):
        self.config = config
        self.store = store
        self.stages = stages
        self.engine_pool = engine_pool
        self.tracker = tracker
        self.descriptors = sorted(descriptors or build_stage_descriptors(config), key=lambda d: d.ordinal)
        self.pool = WorkerPool(self.run_job, size=config.WORKER_CONCURRENCY, max_queue=config.QUEUE_MAX_SIZE)
        self._active: Dict[str, _JobContext] = {}
        self._lock = threading.Lock()
        self.stats = self._new_stats()

    @staticmethod
    def _new_stats() -> Dict[str, Any]:
        return {
            'jobs_submitted': 0,
            'jobs_processed': 0,
            'jobs_succeeded': 0,
            'jobs_failed': 0,
            'jobs_cancelled': 0,
            'total_processing_time': 0.0,
            'start_time': datetime.now()
        }

    # Lifecycle

    def start(self) -> None:
        self.pool.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Cancel in-flight jobs, finalize queued ones and stop the workers"""
        # Submissions from here on are rejected and recorded as failed
        self.pool.close()
        with self._lock:
            contexts = list(self._active.values())
        for ctx in contexts:
            ctx.token.cancel("Worker shutting down")
        for job_id in self.pool.drain():
            self._cancel_undispatched(job_id)
        self.pool.stop(timeout)

    # Submission API

    def build_options(self, options: Union[JobOptions, Dict[str, Any], None] = None) -> JobOptions:
        """
        Merge submitted options over the configured defaults.

        Raises:
            ValueError: unknown option, wrong type or out-of-range value
        """
        if isinstance(options, JobOptions):
            return options
        if options is not None and not isinstance(options, dict):
            raise ValueError("Job options must be an object")
        resolved = JobOptions(
            sample_rate=self.config.TARGET_SAMPLE_RATE,
            channels=self.config.TARGET_CHANNELS,
            video_profile=self.config.DEFAULT_VIDEO_PROFILE,
            skip_video=self.config.DEFAULT_SKIP_VIDEO,
            scene_threshold=self.config.SCENE_THRESHOLD,
        )
        for key, value in SubmittedOptions.parse(options or {}).items():
            setattr(resolved, key, value)
        return resolved

    def submit(self, input_ref: str, options: Union[JobOptions, Dict[str, Any], None] = None) -> str:
        """
        Create a job and queue it for processing.

        Returns:
            The job id; processing continues asynchronously

        Raises:
            QueueFullError: the worker queue is at capacity
        """
        job = Job.new(input_ref, self.build_options(options))
        ctx = _JobContext(job=job, workspace=get_job_workspace(self.config.work_dir, job.id))

        with self._lock:
            self._active[job.id] = ctx
            self.stats['jobs_submitted'] += 1
        self._save(job)

        try:
            self.pool.submit(job.id)
        except QueueFullError as e:
            with self._lock:
                self._active.pop(job.id, None)
            with ctx.lock:
                job.fail(ErrorRecord(stage=None, kind=e.kind.value, message=e.message))
                self._save(job)
            raise

        logger.info(f"SUBMITTED: Job {job.id} for {input_ref}")
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        """Detached snapshot of a job, from memory while active, else from the store"""
        with self._lock:
            ctx = self._active.get(job_id)
        if ctx is not None:
            with ctx.lock:
                return ctx.job.snapshot()
        return self.store.load(job_id)

    def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Current stage and status; results or error record once terminal"""
        job = self.get_job(job_id)
        if job is None:
            return None

        document = job.to_dict()
        status = {
            'job_id': job.id,
            'input_ref': job.input_ref,
            'status': document['status'],
            'stage': document['stage'],
            'state': document['state'],
            'retries': document['retries'],
            'created_at': document['created_at'],
            'started_at': document['started_at'],
            'finished_at': document['finished_at'],
        }
        if job.is_terminal:
            status['complete'] = job.status == Status.SUCCEEDED
            status['results'] = document['results']
            status['error'] = document['error']
        return status

    def cancel(self, job_id: str) -> bool:
        """
        Request cooperative cancellation.

        Returns:
            True if the request was accepted, False if the job is unknown or
            already terminal
        """
        with self._lock:
            ctx = self._active.get(job_id)
        if ctx is None:
            return False

        with ctx.lock:
            # Still in the active set while run_job finishes its cleanup
            if ctx.job.is_terminal:
                return False
            ctx.token.cancel("Cancellation requested")
        logger.info(f"Cancellation requested for job {job_id}")
        self._cancel_undispatched(job_id)
        return True

    def _cancel_undispatched(self, job_id: str) -> None:
        """Finalize a job that no worker has picked up yet"""
        with self._lock:
            ctx = self._active.get(job_id)
        if ctx is None:
            return
        with ctx.lock:
            if ctx.dispatched or ctx.job.is_terminal:
                return
            ctx.job.cancel()
            self._save(ctx.job)
        with self._lock:
            self._active.pop(job_id, None)
            self.stats['jobs_cancelled'] += 1
        logger.info(f"CANCELLED: Job {job_id} before dispatch")

    # Execution

    def run_job(self, job_id: str) -> Optional[Job]:
        """
        Execute the complete pipeline for one job on the calling thread.

        Returns:
            Final snapshot of the job, or None if it was not runnable
        """
        with self._lock:
            ctx = self._active.get(job_id)
        if ctx is None:
            logger.debug(f"Job {job_id} is no longer active, skipping")
            return None
        with ctx.lock:
            if ctx.dispatched or ctx.job.is_terminal:
                return None
            ctx.dispatched = True

        job = ctx.job
        start_time = time.time()
        logger.info(f"Executing pipeline for job {job.id}: {job.input_ref}")

        try:
            for descriptor in self.descriptors:
                self._transition(ctx, descriptor.stage)
                result = self._run_stage(ctx, descriptor)
                self._commit(ctx, result)

            with ctx.lock:
                ctx.token.raise_if_cancelled()
                job.succeed()
                self._save(job)
            logger.info(f"READY: Pipeline completed for job {job.id} in {time.time() - start_time:.2f}s")

        except CancellationError as e:
            self._cancelled(ctx, e.message)

        except PipelineError as e:
            # Cancellation takes priority over a concurrent stage failure
            if ctx.token.cancelled:
                self._cancelled(ctx, ctx.token.reason or e.message)
            else:
                self._fail(ctx, e.kind.value, e.message)

        except Exception as e:
            log_exception(logger, f"Unexpected error in pipeline execution for job {job.id}: {e}")
            self._fail(ctx, ErrorKind.INTERNAL.value, f"Unexpected error: {e}")

        finally:
            self._release(ctx)
            processing_time = time.time() - start_time
            with self._lock:
                self._active.pop(job.id, None)
                self.stats['jobs_processed'] += 1
                self.stats['total_processing_time'] += processing_time
                key = {
                    Status.SUCCEEDED: 'jobs_succeeded',
                    Status.FAILED: 'jobs_failed',
                    Status.CANCELLED: 'jobs_cancelled',
                }.get(job.status)
                if key:
                    self.stats[key] += 1

        return job.snapshot()

    def _transition(self, ctx: _JobContext, stage: Stage) -> None:
        with ctx.lock:
            ctx.token.raise_if_cancelled()
            ctx.job.advance(stage)
            self._save(ctx.job)
        logger.info(f"{stage.value.upper()}: Job {ctx.job.id}")

    def _commit(self, ctx: _JobContext, result: StageResult) -> None:
        """Attach a stage result unless the job was cancelled meanwhile"""
        with ctx.lock:
            if ctx.token.cancelled:
                logger.info(f"Discarding {result.stage.value} result for cancelled job {ctx.job.id}")
                raise CancellationError(ctx.token.reason or "Job cancelled")
            ctx.job.attach(result)
            self._save(ctx.job)

    def _cancelled(self, ctx: _JobContext, reason: str) -> None:
        job = ctx.job
        with ctx.lock:
            job.cancel()
            self._save(job)
        logger.info(f"CANCELLED: Job {job.id} at {job.stage.value if job.stage else 'dispatch'}: {reason}")

    def _fail(self, ctx: _JobContext, kind: str, message: str) -> None:
        job = ctx.job
        with ctx.lock:
            stage = job.stage
            attempts = job.retries.get(stage, 0) + 1 if stage else 0
            if stage is not None and not job.has_completed(stage):
                job.attach(StageResult(stage=stage, success=False, message=message, attempts=attempts))
            job.fail(ErrorRecord(stage=stage, kind=kind, message=message, attempts=attempts))
            self._save(job)
        logger.error(f"Pipeline failed for job {job.id} at {stage.value if stage else 'dispatch'} "
                     f"({kind}): {message}")

    def _run_stage(self, ctx: _JobContext, descriptor: StageDescriptor) -> StageResult:
        """Invoke a stage, retrying in place according to its descriptor"""
        stage = descriptor.stage
        if descriptor.skippable and self._should_skip(ctx.job, stage):
            logger.info(f"Skipping {stage.value} for job {ctx.job.id}")
            return StageResult(stage=stage, success=True, message="skipped", attempts=0, skipped=True)

        attempt = 0
        budget_used = 0
        grace_used = False

        while True:
            try:
                payload = self._invoke(ctx, descriptor, attempt)
                return StageResult(stage=stage, success=True, message=f"completed after {attempt + 1} attempt(s)",
                                   payload=payload, attempts=attempt + 1)
            except CancellationError:
                raise
            except PipelineError as e:
                if e.fatal or not e.retryable:
                    raise
                if e.kind in _GRACE_KINDS and not grace_used:
                    grace_used = True
                elif descriptor.retryable and budget_used < descriptor.max_retries:
                    budget_used += 1
                else:
                    raise

                attempt += 1
                with ctx.lock:
                    ctx.job.record_retry()
                    self._save(ctx.job)
                delay = self._backoff_seconds(attempt)
                logger.warning(f"Job {ctx.job.id} {stage.value} failed ({e.kind.value}: {e.message}); "
                               f"retry {attempt} in {delay:.2f}s")
                if ctx.token.wait(delay):
                    raise CancellationError(ctx.token.reason or "Job cancelled")

    def _should_skip(self, job: Job, stage: Stage) -> bool:
        return stage == Stage.TRANSCRIBING and job.options.skip_transcription

    def _backoff_seconds(self, retry: int) -> float:
        delay_ms = self.config.BACKOFF_BASE_MS * (self.config.BACKOFF_MULTIPLIER ** (retry - 1))
        return min(delay_ms, self.config.MAX_BACKOFF_MS) / 1000.0

    def _resolve_input(self, job: Job) -> str:
        try:
            return resolve_input_path(job.input_ref, self.config.DATA_DIR)
        except ValueError as e:
            raise InputError(str(e)) from e

    def _invoke(self, ctx: _JobContext, descriptor: StageDescriptor, attempt: int) -> Any:
        job, token, timeout = ctx.job, ctx.token, descriptor.timeout_sec
        token.raise_if_cancelled()

        if descriptor.stage == Stage.PROBING:
            return self.stages.probe.probe(self._resolve_input(job), token=token, timeout=timeout)

        if descriptor.stage == Stage.TRANSCODING:
            metadata = job.payload(Stage.PROBING)
            input_path = self._resolve_input(job)
            deadline = time.monotonic() + timeout if timeout else None
            audio = self.stages.transcoder.transcode(
                input_path, metadata, job.options, ctx.workspace, token=token, timeout=timeout)
            if job.options.detect_scenes:
                audio.scenes = self._detect_scenes(ctx, input_path, metadata, deadline)
            return audio

        if descriptor.stage == Stage.TRANSCRIBING:
            audio = job.payload(Stage.TRANSCODING)
            transcript = self.stages.transcriber.transcribe(
                audio, token=token, timeout=timeout, language=job.options.language)
            if self.config.WRITE_SRT:
                srt_path = save_srt_file(transcript, self.config.subs_dir, job.id)
                logger.info(f"SRT file saved: {srt_path}")
            return transcript

        if descriptor.stage == Stage.EXTRACTING:
            audio = job.payload(Stage.TRANSCODING)
            transcript = job.payload(Stage.TRANSCRIBING)
            if transcript is None and not descriptor.transcript_optional:
                raise InputError("Feature extraction requires a transcript")
            return self.stages.extractor.extract(audio, transcript, token=token, attempt=attempt)

        raise InputError(f"No handler for stage {descriptor.stage.value}")

    def _detect_scenes(self, ctx: _JobContext, input_path: str, metadata, deadline: Optional[float]):
        if not metadata.has_video:
            logger.info(f"Job {ctx.job.id} has no video stream, skipping scene detection")
            return []
        if self.stages.scene_detector is None:
            raise InputError("Scene detection is not available on this worker")

        remaining = None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise StageTimeoutError("Transcode deadline exceeded before scene detection")
        return self.stages.scene_detector.detect(
            input_path, ctx.workspace, duration=metadata.duration, threshold=ctx.job.options.scene_threshold,
            token=ctx.token, timeout=remaining)

    def _release(self, ctx: _JobContext) -> None:
        """Drop per-job temporary artifacts once the job is terminal"""
        if self.config.RETAIN_ARTIFACTS and ctx.job.status == Status.SUCCEEDED:
            return
        if remove_workspace(ctx.workspace):
            logger.debug(f"Removed workspace {ctx.workspace}")

    def _save(self, job: Job) -> None:
        try:
            self.store.save(job)
        except Exception as e:
            log_exception(logger, f"Error saving job {job.id} ({job.state}): {e}")

    # Monitoring

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics"""
        with self._lock:
            stats = dict(self.stats)
            active = len(self._active)
        uptime = (datetime.now() - stats['start_time']).total_seconds()
        finished = stats['jobs_succeeded'] + stats['jobs_failed']

        result = {
            'jobs_submitted': stats['jobs_submitted'],
            'jobs_processed': stats['jobs_processed'],
            'jobs_succeeded': stats['jobs_succeeded'],
            'jobs_failed': stats['jobs_failed'],
            'jobs_cancelled': stats['jobs_cancelled'],
            'active_jobs': active,
            'queued_jobs': self.pool.pending,
            'busy_workers': self.pool.busy,
            'total_processing_time': stats['total_processing_time'],
            'average_processing_time': (
                stats['total_processing_time'] / stats['jobs_processed']
                if stats['jobs_processed'] > 0 else 0
            ),
            'uptime_seconds': uptime,
            'success_rate': stats['jobs_succeeded'] / finished if finished > 0 else 0,
        }
        if self.engine_pool is not None:
            result['engine_pool'] = self.engine_pool.get_stats()
        if self.tracker is not None:
            result['processes'] = self.tracker.get_stats()
        return result

    def reset_stats(self) -> None:
        """Reset orchestrator statistics"""
        with self._lock:
            self.stats = self._new_stats()
        logger.info("Orchestrator statistics reset")
