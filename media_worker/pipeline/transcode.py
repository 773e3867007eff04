import os
import time
import wave
import ffmpeg
import logging
from typing import Any, Dict, Optional

from ..cancellation import CancellationToken
from ..errors import ExternalEngineError, InputError, StageTimeoutError, StorageIOError
from ..models import AudioRef, JobOptions, MediaMetadata
from .process import ProcessTracker, run_managed
from .util import ensure_dir, remove_file

logger = logging.getLogger("media_worker")

AUDIO_FILENAME = "audio.wav"
VIDEO_FILENAME = "video.mp4"

VIDEO_PROFILES: Dict[str, Dict[str, Any]] = {
    "720p": {"height": 720, "fps": 30, "crf": 22, "preset": "medium"},
    "480p": {"height": 480, "fps": 30, "crf": 23, "preset": "veryfast"},
}


def canonical_paths(workspace: str) -> tuple[str, str]:
    """Deterministic (audio_path, video_path) for a job workspace"""
    return os.path.join(workspace, AUDIO_FILENAME), os.path.join(workspace, VIDEO_FILENAME)


def read_wav_duration(audio_path: str) -> float:
    """Duration of a PCM WAV file in seconds"""
    try:
        with wave.open(audio_path, 'rb') as wav:
            rate = wav.getframerate()
            return wav.getnframes() / float(rate) if rate else 0.0
    except (wave.Error, EOFError, OSError) as e:
        raise StorageIOError(f"Canonical audio is unreadable: {audio_path}: {e}") from e


class FfmpegTranscoder:
    """Normalizes input media into canonical PCM audio and an optional re-encoded video"""

    def __init__(self, ffmpeg_path: str = "ffmpeg", tracker: Optional[ProcessTracker] = None):
        self.ffmpeg_path = ffmpeg_path
        self.tracker = tracker

    def transcode(self, input_path: str, metadata: MediaMetadata, options: JobOptions, workspace: str,
                  token: Optional[CancellationToken] = None, timeout: Optional[float] = None) -> AudioRef:
        """
        Transcode the input to mono/16-bit PCM WAV at the requested sample rate.

        Outputs are written to ``<workspace>/audio.wav`` and, when video
        re-encoding is requested, ``<workspace>/video.mp4``. Partial outputs
        are removed on any failure.

        Returns:
            AudioRef pointing at the canonical audio
        """
        # Re-verified on every attempt; the input may vanish between retries
        if not os.path.isfile(input_path):
            raise InputError(f"Input file no longer exists: {input_path}")

        reencode_video = not options.skip_video and metadata.has_video
        profile = None
        if reencode_video:
            profile = VIDEO_PROFILES.get(options.video_profile or "")
            if profile is None:
                raise InputError(f"Unknown video profile: {options.video_profile}")

        try:
            ensure_dir(workspace)
        except OSError as e:
            raise StorageIOError(f"Cannot create workspace {workspace}: {e}") from e

        audio_path, video_path = canonical_paths(workspace)
        deadline = time.monotonic() + timeout if timeout else None

        try:
            if reencode_video:
                logger.info(f"Re-encoding video ({options.video_profile}): {input_path} -> {video_path}")
                video = (
                    ffmpeg
                    .input(input_path)
                    .video
                    .filter('scale', -2, profile['height'])  # Keep aspect ratio
                    .filter('fps', profile['fps'])
                    .output(
                        video_path,
                        vcodec='libx264',
                        crf=profile['crf'],
                        preset=profile['preset']
                    )
                    .global_args('-nostdin')
                    .overwrite_output()
                )
                self._run(video, "ffmpeg video encode", token, self._remaining(deadline, timeout))

            logger.info(f"Extracting canonical audio ({options.sample_rate}Hz, {options.channels}ch): {audio_path}")
            audio = (
                ffmpeg
                .input(input_path)
                .audio
                .output(
                    audio_path,
                    acodec='pcm_s16le',       # 16-bit PCM
                    ac=options.channels,
                    ar=options.sample_rate
                )
                .global_args('-nostdin')
                .overwrite_output()
            )
            self._run(audio, "ffmpeg audio extract", token, self._remaining(deadline, timeout))

            # Verify files exist
            if not os.path.exists(audio_path) or os.path.getsize(audio_path) == 0:
                raise StorageIOError(f"Transcode produced no audio output: {audio_path}")
            if reencode_video and not os.path.exists(video_path):
                raise StorageIOError(f"Transcode produced no video output: {video_path}")

            duration = read_wav_duration(audio_path)

        except BaseException:
            remove_file(audio_path)
            remove_file(video_path)
            raise

        logger.info(f"Transcoded {input_path}: audio duration {duration:.2f}s")
        return AudioRef(
            path=audio_path,
            sample_rate=options.sample_rate,
            channels=options.channels,
            duration=duration,
            video_path=video_path if reencode_video else None,
        )

    @staticmethod
    def _remaining(deadline: Optional[float], timeout: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise StageTimeoutError(f"Transcode timed out after {timeout:.1f}s")
        return remaining

    def _run(self, stream, name: str, token: Optional[CancellationToken], timeout: Optional[float]) -> None:
        output = run_managed(
            lambda: stream.run_async(cmd=self.ffmpeg_path, pipe_stdout=True, pipe_stderr=True),
            name=name,
            token=token,
            timeout=timeout,
            tracker=self.tracker,
        )
        if output.returncode != 0:
            raise ExternalEngineError(f"{name} exited with code {output.returncode}: {output.stderr_tail()}")
