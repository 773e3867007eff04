"""
AWS SQS submission source.

Provides pull-based job submissions from SQS queues. Message bodies are
JSON: {"input_ref": "...", "options": {...}}.
"""

import boto3
import json
import logging
from typing import Optional
from botocore.exceptions import ClientError

from .base import Submission, SubmissionSource

logger = logging.getLogger("media_worker")


class SQSSubmissionSource(SubmissionSource):
    """AWS SQS implementation of the submission source"""

    def __init__(self, queue_url: str, region: str = "us-east-1", max_messages: int = 1, wait_time: int = 20,
                 client=None):
        self.queue_url = queue_url
        self.region = region
        self.max_messages = max_messages
        self.wait_time = wait_time
        self.sqs = client

    def connect(self):
        """Initialize SQS client"""
        if self.sqs is not None:
            return
        try:
            self.sqs = boto3.client('sqs', region_name=self.region)
            logger.info(f"SQS submission source connected to queue: {self.queue_url}")
        except Exception as e:
            logger.error(f"Failed to connect to SQS: {e}")
            raise

    def receive(self) -> Optional[Submission]:
        """Long-poll SQS for one submission"""
        if not self.sqs:
            raise RuntimeError("SQS client not initialized. Call connect() first.")

        try:
            response = self.sqs.receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=self.max_messages,
                WaitTimeSeconds=self.wait_time,
                MessageAttributeNames=['All']
            )
        except ClientError as e:
            logger.error(f"SQS error receiving submission: {e}")
            return None

        messages = response.get('Messages', [])
        if not messages:
            return None

        # Process first message
        message = messages[0]
        receipt_handle = message['ReceiptHandle']

        try:
            body = json.loads(message['Body'])
            if not isinstance(body, dict):
                raise ValueError(f"message body must be a JSON object, got {type(body).__name__}")
            input_ref = body['input_ref']
            options = body.get('options') or {}
            if not isinstance(input_ref, str) or not isinstance(options, dict):
                raise ValueError("input_ref must be a string and options an object")
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.error(f"Discarding malformed SQS message {message.get('MessageId')}: {e}")
            # Delete malformed message
            self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt_handle)
            return None

        logger.info(f"Received SQS submission {message.get('MessageId')} for {input_ref}")
        return Submission(input_ref=input_ref, options=options, receipt=receipt_handle)

    def acknowledge(self, submission: Submission) -> None:
        """Delete the message once the job has been accepted"""
        if not self.sqs:
            raise RuntimeError("SQS client not initialized")
        if submission.receipt:
            self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=submission.receipt)

    def close(self):
        """Close SQS connection"""
        self.sqs = None
        logger.info("SQS submission source connection closed")
