from __future__ import annotations

from typing import Any, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry
from rq.job import JobStatus

from .config import Settings
from .errors import UpstreamError
from .logging_utils import get_logger

JOB_FUNCTION = "minutes.pipeline.process_job_message"
LIVE_STATUSES = frozenset(
    {JobStatus.QUEUED, JobStatus.STARTED, JobStatus.DEFERRED, JobStatus.SCHEDULED}
)
logger = get_logger(__name__)


def build_retry_policy(max_attempts: int, base_backoff_s: int) -> Optional[Retry]:
    normalized_attempts = max(1, int(max_attempts))
    max_retries = max(0, normalized_attempts - 1)
    if max_retries == 0:
        return None
    base = max(1, int(base_backoff_s))
    intervals = [base * (2 ** idx) for idx in range(max_retries)]
    return Retry(max=max_retries, interval=intervals)


class JobQueue:
    """Publishes job messages onto the rq queue consumed by the pipeline workers."""

    def __init__(self, settings: Settings, connection: Optional[Redis] = None) -> None:
        self.settings = settings
        self._connection = connection

    @property
    def connection(self) -> Redis:
        if self._connection is None:
            self._connection = Redis.from_url(self.settings.redis_url)
        return self._connection

    def publish(self, message: Dict[str, Any]) -> str:
        job_id = str(message["jobId"])
        queue = Queue(self.settings.job_queue_name, connection=self.connection)
        retry = build_retry_policy(
            self.settings.job_max_attempts, self.settings.job_retry_backoff_s
        )
        try:
            existing = queue.fetch_job(job_id)
            if existing is not None and existing.get_status() in LIVE_STATUSES:
                logger.info("job_queue.already_queued job_id=%s", job_id)
                return existing.id
            rq_job = queue.enqueue(
                JOB_FUNCTION,
                message,
                job_id=job_id,
                retry=retry,
                job_timeout=self.settings.job_timeout_s,
            )
        except RedisError as exc:
            raise UpstreamError("enqueue", str(exc)) from exc
        logger.info(
            "job_queue.published job_id=%s queue=%s max_attempts=%s",
            job_id,
            self.settings.job_queue_name,
            self.settings.job_max_attempts,
        )
        return rq_job.id
