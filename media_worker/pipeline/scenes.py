"""
Scene boundary detection with per-scene preview artifacts.

Cuts come from PySceneDetect's ContentDetector. Each scene of usable length
gets a midpoint thumbnail and, optionally, a stream-copied clip, written by
ffmpeg into ``<workspace>/scenes/``.
"""

import os
import time
import ffmpeg
import logging
import threading
from typing import Iterable, List, Optional, Tuple

from scenedetect import SceneManager, open_video
from scenedetect.detectors import ContentDetector
from scenedetect.video_stream import VideoOpenFailure

from ..cancellation import CancellationToken
from ..errors import ExternalEngineError, InputError, StageTimeoutError, StorageIOError
from ..models import SceneInfo
from .process import ProcessTracker, run_managed
from .util import ensure_dir, remove_workspace

logger = logging.getLogger("media_worker")

SCENES_DIRNAME = "scenes"
# Retrying with half the threshold stops below this value
MIN_THRESHOLD = 5.0


def build_scene_segments(cut_times: Iterable[float], duration: float,
                         min_scene_sec: float = 0.5) -> List[Tuple[float, float]]:
    """
    Turn cut timestamps into (start, end) segments covering [0, duration].

    Cuts outside the media are ignored and segments shorter than
    ``min_scene_sec`` are dropped.
    """
    starts = sorted({0.0} | {float(t) for t in cut_times if 0.0 < t < duration})
    segments = []
    for i, start in enumerate(starts):
        end = starts[i + 1] if i + 1 < len(starts) else duration
        if end - start < min_scene_sec:
            continue
        segments.append((start, end))
    return segments


class SceneDetector:
    """Finds scene boundaries and writes thumbnails (and clips) for each scene"""

    def __init__(self, ffmpeg_path: str = "ffmpeg", tracker: Optional[ProcessTracker] = None,
                 min_scene_sec: float = 0.5, export_clips: bool = True):
        self.ffmpeg_path = ffmpeg_path
        self.tracker = tracker
        self.min_scene_sec = min_scene_sec
        self.export_clips = export_clips

    def detect(self, input_path: str, workspace: str, duration: float, threshold: float = 27.0,
               token: Optional[CancellationToken] = None, timeout: Optional[float] = None) -> List[SceneInfo]:
        """
        Detect scenes in ``input_path``.

        When the first pass finds no cut at all, detection runs once more
        with half the threshold. A scene whose thumbnail or clip cannot be
        written keeps its boundaries without the artifact. The scenes
        directory is removed if detection fails.
        """
        if token is not None:
            token.raise_if_cancelled()
        deadline = time.monotonic() + timeout if timeout else None
        scenes_dir = os.path.join(workspace, SCENES_DIRNAME)
        try:
            ensure_dir(scenes_dir)
        except OSError as e:
            raise StorageIOError(f"Cannot create scenes directory {scenes_dir}: {e}") from e

        try:
            cuts = self.find_cuts(input_path, threshold, token, deadline)
            if not cuts and threshold / 2 >= MIN_THRESHOLD:
                logger.info(f"No cuts at threshold {threshold:.1f}, retrying at {threshold / 2:.1f}")
                cuts = self.find_cuts(input_path, threshold / 2, token, deadline)

            segments = build_scene_segments(cuts, duration, self.min_scene_sec)
            scenes = [
                self._export(input_path, index, start, end, scenes_dir, token, deadline)
                for index, (start, end) in enumerate(segments)
            ]
        except BaseException:
            remove_workspace(scenes_dir)
            raise

        logger.info(f"Scene detection found {len(scenes)} scenes in {input_path}")
        return scenes

    def find_cuts(self, input_path: str, threshold: float, token: Optional[CancellationToken] = None,
                  deadline: Optional[float] = None) -> List[float]:
        """Cut timestamps in seconds, excluding the start of the first scene"""
        try:
            video = open_video(input_path)
        except (VideoOpenFailure, OSError) as e:
            raise InputError(f"Cannot open video for scene detection: {input_path}: {e}") from e

        scene_manager = SceneManager()
        scene_manager.add_detector(ContentDetector(threshold=threshold))

        finished = threading.Event()
        watcher = threading.Thread(target=self._watch, args=(scene_manager, token, deadline, finished),
                                   name="scene-watch", daemon=True)
        watcher.start()
        try:
            scene_manager.detect_scenes(video=video)
        except Exception as e:
            raise ExternalEngineError(f"Scene detection failed for {input_path}: {e}") from e
        finally:
            finished.set()
            watcher.join()
            del video

        # detect_scenes returns early when the watcher stops it
        if token is not None:
            token.raise_if_cancelled()
        if deadline is not None and time.monotonic() >= deadline:
            raise StageTimeoutError("Scene detection timed out")

        return [start.get_seconds() for start, _ in scene_manager.get_scene_list()[1:]]

    @staticmethod
    def _watch(scene_manager: SceneManager, token: Optional[CancellationToken], deadline: Optional[float],
               finished: threading.Event) -> None:
        while not finished.wait(0.1):
            cancelled = token is not None and token.cancelled
            if cancelled or (deadline is not None and time.monotonic() >= deadline):
                scene_manager.stop()
                return

    def _export(self, input_path: str, index: int, start: float, end: float, scenes_dir: str,
                token: Optional[CancellationToken], deadline: Optional[float]) -> SceneInfo:
        scene = SceneInfo(index=index, start=start, end=end)
        thumbnail_path = os.path.join(scenes_dir, f"thumb_{index:03d}.jpg")
        thumbnail = (
            ffmpeg
            .input(input_path, ss=start + (end - start) / 2)
            .output(thumbnail_path, vframes=1, format='image2', vcodec='mjpeg')
            .global_args('-nostdin')
            .overwrite_output()
        )
        if self._run_optional(thumbnail, f"scene {index} thumbnail", token, deadline):
            scene.thumbnail_path = thumbnail_path

        if self.export_clips:
            clip_path = os.path.join(scenes_dir, f"scene_{index:03d}.mp4")
            clip = (
                ffmpeg
                .input(input_path, ss=start, t=end - start)
                .output(clip_path, c='copy', avoid_negative_ts='make_zero')
                .global_args('-nostdin')
                .overwrite_output()
            )
            if self._run_optional(clip, f"scene {index} clip", token, deadline):
                scene.clip_path = clip_path
        return scene

    def _run_optional(self, stream, name: str, token: Optional[CancellationToken],
                      deadline: Optional[float]) -> bool:
        """Run one ffmpeg export; a non-fatal engine failure only costs that artifact"""
        timeout = None
        if deadline is not None:
            timeout = deadline - time.monotonic()
            if timeout <= 0:
                raise StageTimeoutError("Scene detection timed out")
        output = run_managed(
            lambda: stream.run_async(cmd=self.ffmpeg_path, pipe_stdout=True, pipe_stderr=True),
            name=name,
            token=token,
            timeout=timeout,
            tracker=self.tracker,
        )
        if output.returncode != 0:
            logger.warning(f"{name} exited with code {output.returncode}: {output.stderr_tail()}")
            return False
        return True
