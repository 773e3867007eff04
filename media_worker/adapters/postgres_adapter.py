"""
Postgres job store.

Each job is one row in ``media_jobs`` holding the status columns used for
monitoring and the full JSON document used to rebuild the Job.
"""

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool
from typing import Optional, Dict, Any
import logging

from .base import JobStore
from ..models import Job
from ..logging_setup import log_exception

logger = logging.getLogger("media_worker")


class PostgresJobStore(JobStore):
    """Postgres implementation of the job store"""

    def __init__(self, database_url: str, pool_size: int = 5, timeout: int = 10):
        self.database_url = database_url
        self.pool_size = pool_size
        self.timeout = timeout
        self.pool = None

    def connect(self):
        """Initialize connection pool"""
        try:
            self.pool = ConnectionPool(
                self.database_url,
                min_size=1,
                max_size=self.pool_size,
                kwargs={
                    "connect_timeout": self.timeout,
                    "application_name": "media_worker"
                }
            )
            logger.info("Postgres job store connection pool initialized")
            self._bootstrap_schema()
        except Exception as e:
            log_exception(logger, f"Failed to connect to Postgres job store: {e}")
            raise

    def _bootstrap_schema(self):
        """Create the jobs table if it does not exist"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS media_jobs (
                        id TEXT PRIMARY KEY,
                        input_ref TEXT NOT NULL,
                        status TEXT NOT NULL,
                        stage TEXT,
                        error_kind TEXT,
                        document JSONB NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL,
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    );
                """)
                cur.execute("CREATE INDEX IF NOT EXISTS media_jobs_status_idx ON media_jobs (status);")
                conn.commit()
                logger.info("Postgres job store schema validated")

    def save(self, job: Job) -> None:
        """Upsert the job document"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO media_jobs (id, input_ref, status, stage, error_kind, document, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        status = EXCLUDED.status,
                        stage = EXCLUDED.stage,
                        error_kind = EXCLUDED.error_kind,
                        document = EXCLUDED.document,
                        updated_at = now()
                """, (
                    job.id,
                    job.input_ref,
                    job.status.value,
                    job.stage.value if job.stage else None,
                    job.error.kind if job.error else None,
                    Jsonb(job.to_dict()),
                    job.created_at,
                ))
                conn.commit()

    def load(self, job_id: str) -> Optional[Job]:
        """Load a job document by id"""
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("SELECT document FROM media_jobs WHERE id = %s", (job_id,))
                result = cur.fetchone()
                if result:
                    return Job.from_dict(result['document'])
                return None

    def get_stats(self) -> Dict[str, Any]:
        """Job counts by status"""
        try:
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT status, COUNT(*) FROM media_jobs GROUP BY status")
                    return {'jobs': {row[0]: row[1] for row in cur.fetchall()}}
        except psycopg.Error as e:
            logger.error(f"Error getting job store stats: {e}")
            return {'error': str(e)}

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.close()
            logger.info("Postgres job store connection pool closed")
