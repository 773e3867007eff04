import io
import json
import unittest

import boto3
from botocore.response import StreamingBody
from botocore.stub import ANY, Stubber

from media_worker.adapters.memory_store import MemoryJobStore
from media_worker.adapters.s3_adapter import S3JobStore
from media_worker.adapters.sqs_adapter import SQSSubmissionSource
from media_worker.models import Job, JobOptions, Stage, Status

QUEUE_URL = "https://sqs.us-east-1.amazonaws.com/123456789012/media-jobs"


def client(service):
    return boto3.client(service, region_name="us-east-1",
                        aws_access_key_id="test", aws_secret_access_key="test")


class TestMemoryJobStore(unittest.TestCase):

    def test_save_and_load_are_detached(self):
        store = MemoryJobStore()
        job = Job.new("clip.mp4", JobOptions(language="en"))
        store.save(job)

        job.advance(Stage.PROBING)
        loaded = store.load(job.id)

        self.assertEqual(loaded.status, Status.PENDING)
        self.assertEqual(loaded.options.language, "en")
        self.assertIsNone(store.load("missing"))

    def test_stats_count_by_status(self):
        store = MemoryJobStore()
        first, second = Job.new("a.mp4"), Job.new("b.mp4")
        second.cancel()
        store.save(first)
        store.save(second)

        self.assertEqual(store.get_stats(), {"jobs": {"pending": 1, "cancelled": 1}, "saves": 2})


class TestS3JobStore(unittest.TestCase):

    def setUp(self):
        self.s3 = client("s3")
        self.stubber = Stubber(self.s3)
        self.stubber.activate()
        self.store = S3JobStore("media-bucket", client=self.s3)

    def tearDown(self):
        self.stubber.deactivate()

    def test_save_writes_job_document(self):
        job = Job.new("clip.mp4")
        self.stubber.add_response("put_object", {}, {
            "Bucket": "media-bucket",
            "Key": f"media-jobs/jobs/{job.id}.json",
            "Body": ANY,
            "ContentType": "application/json",
        })

        self.store.save(job)
        self.stubber.assert_no_pending_responses()

    def test_load_parses_document(self):
        job = Job.new("clip.mp4")
        body = json.dumps(job.to_dict()).encode("utf-8")
        self.stubber.add_response("get_object", {"Body": StreamingBody(io.BytesIO(body), len(body))}, {
            "Bucket": "media-bucket",
            "Key": f"media-jobs/jobs/{job.id}.json",
        })

        self.assertEqual(self.store.load(job.id).id, job.id)

    def test_load_missing_key(self):
        self.stubber.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)
        self.assertIsNone(self.store.load("missing"))


class TestSQSSubmissionSource(unittest.TestCase):

    def setUp(self):
        self.sqs = client("sqs")
        self.stubber = Stubber(self.sqs)
        self.stubber.activate()
        self.source = SQSSubmissionSource(QUEUE_URL, wait_time=0, client=self.sqs)

    def tearDown(self):
        self.stubber.deactivate()

    def queue_message(self, body):
        self.stubber.add_response("receive_message", {
            "Messages": [{"MessageId": "m-1", "ReceiptHandle": "r-1", "Body": body}]
        })

    def test_receive_and_acknowledge(self):
        self.queue_message(json.dumps({"input_ref": "clip.mp4", "options": {"skip_transcription": True}}))
        self.stubber.add_response("delete_message", {}, {"QueueUrl": QUEUE_URL, "ReceiptHandle": "r-1"})

        submission = self.source.receive()
        self.source.acknowledge(submission)

        self.assertEqual(submission.input_ref, "clip.mp4")
        self.assertEqual(submission.options, {"skip_transcription": True})
        self.stubber.assert_no_pending_responses()

    def test_empty_queue(self):
        self.stubber.add_response("receive_message", {})
        self.assertIsNone(self.source.receive())

    def test_malformed_message_is_deleted(self):
        self.queue_message("not json")
        self.stubber.add_response("delete_message", {}, {"QueueUrl": QUEUE_URL, "ReceiptHandle": "r-1"})

        self.assertIsNone(self.source.receive())
        self.stubber.assert_no_pending_responses()

    def test_non_object_bodies_are_deleted(self):
        for body in ("[1, 2]", '"clip.mp4"', "null", json.dumps({"input_ref": 7})):
            with self.subTest(body=body):
                self.queue_message(body)
                self.stubber.add_response("delete_message", {}, {"QueueUrl": QUEUE_URL, "ReceiptHandle": "r-1"})

                self.assertIsNone(self.source.receive())
                self.stubber.assert_no_pending_responses()


if __name__ == '__main__':
    unittest.main()
