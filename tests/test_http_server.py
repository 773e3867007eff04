import os
import tempfile
import time
import unittest

from fastapi.testclient import TestClient

from media_worker.adapters.memory_store import MemoryJobStore
from media_worker.errors import QueueFullError
from media_worker.http_server import create_app
from media_worker.orchestrator import PipelineStages
from media_worker.pipeline.features import FeatureExtractor
from media_worker.service import WorkerService

from tests.helpers import FakeProbe, FakeTranscoder, input_file, make_config


class TestJobAPI(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.data_dir = self._tmp.name
        self.service = WorkerService(make_config(self.data_dir))
        self.service.initialize(
            store=MemoryJobStore(),
            stages=PipelineStages(
                probe=FakeProbe(),
                transcoder=FakeTranscoder(),
                transcriber=None,
                extractor=FeatureExtractor(),
            ),
        )
        self.client = TestClient(create_app(self.service))

    def tearDown(self):
        self.service.stop()
        self._tmp.cleanup()

    def wait_for(self, job_id, status, timeout=10.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            body = self.client.get(f"/jobs/{job_id}").json()
            if body["status"] == status:
                return body
            time.sleep(0.02)
        raise AssertionError(f"Job {job_id} never reached {status}")

    def test_submit_and_poll(self):
        response = self.client.post("/jobs", json={
            "input_ref": input_file(self.data_dir),
            "options": {"skip_transcription": True},
        })
        self.assertEqual(response.status_code, 202)
        job_id = response.json()["job_id"]

        body = self.wait_for(job_id, "succeeded")

        self.assertTrue(body["complete"])
        self.assertEqual(len(body["results"]), 4)
        self.assertIsNone(body["error"])

    def test_failed_job_reports_error(self):
        response = self.client.post("/jobs", json={"input_ref": input_file(self.data_dir, "corrupt.mp4")})
        body = self.wait_for(response.json()["job_id"], "failed")

        self.assertFalse(body["complete"])
        self.assertEqual(body["error"]["kind"], "input_error")
        self.assertEqual(body["error"]["stage"], "probing")

    def test_unknown_job(self):
        self.assertEqual(self.client.get("/jobs/missing").status_code, 404)

        response = self.client.post("/jobs/missing/cancel")
        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.json(), {"job_id": "missing", "accepted": False})

    def test_invalid_options(self):
        response = self.client.post("/jobs", json={"input_ref": "clip.mp4", "options": {"fps": 30}})
        self.assertEqual(response.status_code, 400)

    def test_option_types_rejected(self):
        for options in ({"skip_video": "false"}, {"sample_rate": -1}, {"video_profile": "4k"}):
            with self.subTest(options=options):
                response = self.client.post("/jobs", json={"input_ref": "clip.mp4", "options": options})
                self.assertEqual(response.status_code, 400)

    def test_upload_then_submit(self):
        response = self.client.post("/uploads", files={"file": ("my clip.mp4", b"\x00" * 64, "video/mp4")})
        self.assertEqual(response.status_code, 201)
        body = response.json()

        self.assertTrue(body["input_ref"].startswith("uploads" + os.sep))
        self.assertTrue(body["input_ref"].endswith("_my clip.mp4"))
        self.assertEqual(body["size"], 64)
        self.assertTrue(os.path.isfile(os.path.join(self.data_dir, body["input_ref"])))

        submitted = self.client.post("/jobs", json={"input_ref": body["input_ref"],
                                                    "options": {"skip_transcription": True}})
        self.wait_for(submitted.json()["job_id"], "succeeded")

    def test_upload_rejects_bad_files(self):
        for filename, content in (("../escape.mp4", b"\x00"), ("empty.mp4", b"")):
            with self.subTest(filename=filename):
                response = self.client.post("/uploads", files={"file": (filename, content, "video/mp4")})
                self.assertEqual(response.status_code, 400)
        uploads = self.service.config.uploads_dir
        self.assertEqual(os.listdir(uploads) if os.path.isdir(uploads) else [], [])

    def test_upload_size_limit(self):
        self.service.config.MAX_UPLOAD_MB = 1
        response = self.client.post("/uploads", files={"file": ("big.mp4", b"\x00" * (1024 * 1024 + 1), "video/mp4")})

        self.assertEqual(response.status_code, 413)
        self.assertEqual(os.listdir(self.service.config.uploads_dir), [])

    def test_missing_input_ref(self):
        self.assertEqual(self.client.post("/jobs", json={}).status_code, 422)

    def test_health_and_stats(self):
        self.assertEqual(self.client.get("/healthz").json(), {"ok": True, "status": "healthy"})

        stats = self.client.get("/stats").json()
        self.assertTrue("orchestrator" in stats)
        self.assertEqual(stats["config"]["transcribe_engine"], "mock")


class FullQueueService:
    config = None
    orchestrator = object()

    def submit(self, input_ref, options=None):
        raise QueueFullError("Job queue is full (1 pending)")


class TestBackpressure(unittest.TestCase):

    def test_full_queue_returns_503(self):
        client = TestClient(create_app(FullQueueService()))
        response = client.post("/jobs", json={"input_ref": "clip.mp4"})

        self.assertEqual(response.status_code, 503)
        self.assertIn("queue is full", response.json()["detail"])


if __name__ == '__main__':
    unittest.main()
