import os
import tempfile
import unittest

import cv2
import numpy as np

from media_worker.cancellation import CancellationToken
from media_worker.errors import CancellationError, ExternalEngineError, InputError
from media_worker.pipeline.process import ProcessTracker
from media_worker.pipeline.scenes import SCENES_DIRNAME, SceneDetector, build_scene_segments

from tests.helpers import fake_executable

FFMPEG_WRITES_OUTPUT = """
    import sys
    with open([a for a in sys.argv if a.endswith((".jpg", ".mp4"))][-1], "wb") as f:
        f.write(b"artifact")
"""


class ScriptedDetector(SceneDetector):
    """Scene detector whose cut detection returns canned cuts per threshold"""

    def __init__(self, cuts_by_threshold=None, error=None, **kwargs):
        super().__init__(**kwargs)
        self.cuts_by_threshold = cuts_by_threshold or {}
        self.error = error
        self.thresholds = []

    def find_cuts(self, input_path, threshold, token=None, deadline=None):
        self.thresholds.append(threshold)
        if self.error is not None:
            raise self.error
        return self.cuts_by_threshold.get(threshold, [])


class TestBuildSceneSegments(unittest.TestCase):

    def test_segments_cover_media(self):
        self.assertEqual(build_scene_segments([5.0, 2.0], 8.0), [(0.0, 2.0), (2.0, 5.0), (5.0, 8.0)])

    def test_no_cuts_is_one_scene(self):
        self.assertEqual(build_scene_segments([], 4.0), [(0.0, 4.0)])

    def test_short_and_out_of_range_cuts(self):
        segments = build_scene_segments([2.0, 2.2, 2.2, 9.0, -1.0], 6.0, min_scene_sec=0.5)
        self.assertEqual(segments, [(0.0, 2.0), (2.2, 6.0)])


class SceneTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name
        self.media = os.path.join(self.dir, "clip.mkv")
        with open(self.media, "wb") as f:
            f.write(b"\x00" * 32)
        self.workspace = os.path.join(self.dir, "work", "job")
        self.scenes_dir = os.path.join(self.workspace, SCENES_DIRNAME)

    def tearDown(self):
        self._tmp.cleanup()


class TestSceneDetector(SceneTestCase):

    def test_retries_once_with_half_threshold(self):
        ffmpeg = fake_executable(self.dir, "ffmpeg", FFMPEG_WRITES_OUTPUT)
        tracker = ProcessTracker()
        detector = ScriptedDetector({13.5: [3.0]}, ffmpeg_path=ffmpeg, tracker=tracker)

        scenes = detector.detect(self.media, self.workspace, duration=10.0, threshold=27.0, timeout=30)

        self.assertEqual(detector.thresholds, [27.0, 13.5])
        self.assertEqual([(s.index, s.start, s.end) for s in scenes], [(0, 0.0, 3.0), (1, 3.0, 10.0)])
        for scene in scenes:
            self.assertEqual(os.path.dirname(scene.thumbnail_path), self.scenes_dir)
            self.assertTrue(os.path.isfile(scene.thumbnail_path))
            self.assertTrue(os.path.isfile(scene.clip_path))
        self.assertEqual(tracker.active, 0)

    def test_no_retry_when_cuts_found(self):
        ffmpeg = fake_executable(self.dir, "ffmpeg", FFMPEG_WRITES_OUTPUT)
        detector = ScriptedDetector({27.0: [1.0, 4.0]}, ffmpeg_path=ffmpeg, export_clips=False)

        scenes = detector.detect(self.media, self.workspace, duration=6.0, threshold=27.0)

        self.assertEqual(detector.thresholds, [27.0])
        self.assertEqual(len(scenes), 3)
        self.assertTrue(all(s.clip_path is None for s in scenes))
        self.assertEqual(sorted(os.listdir(self.scenes_dir)), ["thumb_000.jpg", "thumb_001.jpg", "thumb_002.jpg"])

    def test_failed_thumbnail_keeps_scene(self):
        ffmpeg = fake_executable(self.dir, "ffmpeg", """
            import sys
            output = [a for a in sys.argv if a.endswith((".jpg", ".mp4"))][-1]
            if output.endswith(".jpg"):
                sys.stderr.write("no frame at timestamp")
                sys.exit(1)
            with open(output, "wb") as f:
                f.write(b"clip")
        """)
        detector = ScriptedDetector({27.0: [2.0]}, ffmpeg_path=ffmpeg)

        scenes = detector.detect(self.media, self.workspace, duration=4.0, threshold=27.0)

        self.assertEqual(len(scenes), 2)
        self.assertTrue(all(s.thumbnail_path is None for s in scenes))
        self.assertTrue(all(os.path.isfile(s.clip_path) for s in scenes))

    def test_missing_ffmpeg_fails_and_cleans_up(self):
        detector = ScriptedDetector({27.0: [2.0]}, ffmpeg_path="/nonexistent/ffmpeg")

        with self.assertRaises(ExternalEngineError) as ctx:
            detector.detect(self.media, self.workspace, duration=4.0, threshold=27.0)

        self.assertTrue(ctx.exception.fatal)
        self.assertFalse(os.path.exists(self.scenes_dir))

    def test_cancellation_during_detection_cleans_up(self):
        detector = ScriptedDetector(error=CancellationError("stop"))

        with self.assertRaises(CancellationError):
            detector.detect(self.media, self.workspace, duration=4.0, threshold=27.0)

        self.assertFalse(os.path.exists(self.scenes_dir))

    def test_cancelled_before_start(self):
        token = CancellationToken()
        token.cancel()
        detector = ScriptedDetector()

        with self.assertRaises(CancellationError):
            detector.detect(self.media, self.workspace, duration=4.0, token=token)
        self.assertEqual(detector.thresholds, [])


class TestFindCuts(SceneTestCase):

    def test_missing_video_is_input_error(self):
        with self.assertRaises(InputError):
            SceneDetector().find_cuts(os.path.join(self.dir, "absent.avi"), threshold=27.0)

    def test_hard_cut_is_found(self):
        path = os.path.join(self.dir, "cut.avi")
        writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*"MJPG"), 10.0, (64, 64))
        if not writer.isOpened():
            self.skipTest("OpenCV cannot write MJPG video on this platform")
        for value in [0] * 20 + [255] * 20:
            writer.write(np.full((64, 64, 3), value, dtype=np.uint8))
        writer.release()

        cuts = SceneDetector().find_cuts(path, threshold=27.0)

        self.assertEqual(len(cuts), 1)
        self.assertAlmostEqual(cuts[0], 2.0, delta=0.2)


if __name__ == '__main__':
    unittest.main()
