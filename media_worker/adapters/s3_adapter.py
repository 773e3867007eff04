"""
AWS S3 job store.

Stores one JSON document per job under ``<prefix>jobs/<job_id>.json``.
"""

import boto3
import json
import logging
from typing import Optional, Dict, Any
from botocore.exceptions import ClientError

from .base import JobStore
from ..models import Job

logger = logging.getLogger("media_worker")


class S3JobStore(JobStore):
    """AWS S3 implementation of the job store"""

    def __init__(self, bucket: str, region: str = "us-east-1", prefix: str = "media-jobs/", client=None):
        self.bucket = bucket
        self.region = region
        self.prefix = prefix
        self.s3 = client

    def connect(self):
        """Initialize S3 client"""
        if self.s3 is not None:
            return
        try:
            self.s3 = boto3.client('s3', region_name=self.region)
            logger.info(f"S3 job store connected to bucket: {self.bucket}")
        except Exception as e:
            logger.error(f"Failed to connect to S3: {e}")
            raise

    def _key(self, job_id: str) -> str:
        return f"{self.prefix}jobs/{job_id}.json"

    def save(self, job: Job) -> None:
        """Write the job document"""
        self.s3.put_object(
            Bucket=self.bucket,
            Key=self._key(job.id),
            Body=json.dumps(job.to_dict()).encode('utf-8'),
            ContentType='application/json'
        )

    def load(self, job_id: str) -> Optional[Job]:
        """Read the job document; None when the key does not exist"""
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=self._key(job_id))
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('NoSuchKey', '404'):
                return None
            logger.error(f"Error loading job {job_id} from S3: {e}")
            raise
        return Job.from_dict(json.loads(response['Body'].read()))

    def get_stats(self) -> Dict[str, Any]:
        return {'bucket': self.bucket, 'prefix': self.prefix}

    def close(self):
        """Close S3 connection"""
        self.s3 = None
        logger.info("S3 job store connection closed")
