import os
import unittest
from unittest import mock

from media_worker.config import WorkerConfig
from media_worker.errors import (
    CancellationError,
    ExternalEngineError,
    InputError,
    NumericError,
    QueueFullError,
    StageTimeoutError,
)


class TestWorkerConfig(unittest.TestCase):

    @mock.patch.dict(os.environ, {
        "JOB_STORE_TYPE": "postgres",
        "DATABASE_URL": "postgresql://localhost/media",
        "WORKER_CONCURRENCY": "4",
        "TRANSCRIBE_ENGINE": "mock",
        "WRITE_SRT": "true",
        "DATA_DIR": "/srv/media",
    }, clear=True)
    def test_from_env(self):
        config = WorkerConfig.from_env()

        self.assertEqual(config.JOB_STORE_TYPE, "postgres")
        self.assertEqual(config.JOB_STORE_CONFIG["database_url"], "postgresql://localhost/media")
        self.assertEqual(config.WORKER_CONCURRENCY, 4)
        self.assertTrue(config.WRITE_SRT)
        self.assertEqual(config.work_dir, os.path.join("/srv/media", "work"))
        self.assertEqual(config.subs_dir, os.path.join("/srv/media", "subs"))
        config.validate()

    @mock.patch.dict(os.environ, {
        "TRANSCRIBE_ENGINE": "mock",
        "BACKOFF_BASE_MS": "100",
        "BACKOFF_MULTIPLIER": "3",
        "MAX_BACKOFF_MS": "900",
        "SCENE_THRESHOLD": "15",
        "SCENE_EXPORT_CLIPS": "false",
        "MAX_UPLOAD_MB": "64",
    }, clear=True)
    def test_retry_scene_and_upload_keys(self):
        config = WorkerConfig.from_env()

        self.assertEqual(config.BACKOFF_BASE_MS, 100)
        self.assertEqual(config.BACKOFF_MULTIPLIER, 3.0)
        self.assertEqual(config.MAX_BACKOFF_MS, 900)
        self.assertEqual(config.SCENE_THRESHOLD, 15.0)
        self.assertFalse(config.SCENE_EXPORT_CLIPS)
        self.assertEqual(config.MAX_UPLOAD_MB, 64)
        config.validate()

    @mock.patch.dict(os.environ, {"TRANSCRIBE_ENGINE": "mock", "WORKER_BACKOFF_MULTIPLIER": "9"}, clear=True)
    def test_prefixed_backoff_key_is_ignored(self):
        self.assertEqual(WorkerConfig.from_env().BACKOFF_MULTIPLIER, 2.0)

    def test_validate_rejects_bad_scene_threshold(self):
        with self.assertRaisesRegex(ValueError, "SCENE_THRESHOLD"):
            WorkerConfig(TRANSCRIBE_ENGINE="mock", SCENE_THRESHOLD=0).validate()

    @mock.patch.dict(os.environ, {"JOB_STORE_TYPE": "postgres", "TRANSCRIBE_ENGINE": "mock"}, clear=True)
    def test_validate_reports_missing_database_url(self):
        config = WorkerConfig.from_env()
        with self.assertRaisesRegex(ValueError, "DATABASE_URL"):
            config.validate()

    @mock.patch.dict(os.environ, {"TRANSCRIBE_ENGINE": "whisper"}, clear=True)
    def test_whisper_requires_api_key(self):
        with self.assertRaisesRegex(ValueError, "OPENAI_API_KEY"):
            WorkerConfig.from_env().validate()

    def test_validate_rejects_unknown_engine(self):
        with self.assertRaisesRegex(ValueError, "Unsupported transcription engine"):
            WorkerConfig(TRANSCRIBE_ENGINE="sphinx").validate()

    def test_validate_rejects_zero_concurrency(self):
        with self.assertRaises(ValueError):
            WorkerConfig(TRANSCRIBE_ENGINE="mock", WORKER_CONCURRENCY=0).validate()


class TestErrorTaxonomy(unittest.TestCase):

    def test_retry_flags(self):
        self.assertFalse(InputError("bad").retryable)
        self.assertTrue(InputError("bad").fatal)
        self.assertTrue(ExternalEngineError("crash").retryable)
        self.assertFalse(ExternalEngineError("crash").fatal)
        self.assertTrue(ExternalEngineError("model load", fatal=True).fatal)
        self.assertTrue(StageTimeoutError("slow").retryable)
        self.assertTrue(NumericError("nan").retryable)
        self.assertTrue(CancellationError().fatal)

    def test_kinds(self):
        self.assertEqual(InputError("x").kind.value, "input_error")
        self.assertEqual(QueueFullError("x").kind.value, "resource_exhaustion")
        self.assertEqual(str(NumericError("nan in centroid")), "nan in centroid")


if __name__ == '__main__':
    unittest.main()


class TestLoggingSetup(unittest.TestCase):

    def test_writes_rotating_log_file(self):
        import logging
        import tempfile
        from media_worker.logging_setup import setup_logging

        with tempfile.TemporaryDirectory() as log_dir:
            logger = setup_logging("debug", log_dir)
            logger.debug("probe started")
            for handler in logger.handlers:
                handler.flush()

            self.assertEqual(logger.level, logging.DEBUG)
            self.assertEqual(len(logger.handlers), 2)
            with open(os.path.join(log_dir, "log.log"), encoding="utf-8") as f:
                self.assertIn("probe started", f.read())

            setup_logging("info", log_dir)
            self.assertEqual(len(logger.handlers), 2)
            for handler in logger.handlers[:]:
                logger.removeHandler(handler)
                handler.close()
