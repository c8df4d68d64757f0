from __future__ import annotations

from redis import Redis
from rq.worker_pool import WorkerPool

from minutes.config import settings
from minutes.logging_utils import configure_logging, get_logger


def main() -> None:
    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    if settings.worker_concurrency <= 0:
        raise SystemExit("WORKER_CONCURRENCY must be > 0")
    connection = Redis.from_url(settings.redis_url)
    logger.info(
        "pipeline_worker.start queue=%s workers=%s",
        settings.job_queue_name,
        settings.worker_concurrency,
    )
    pool = WorkerPool(
        [settings.job_queue_name],
        connection=connection,
        num_workers=settings.worker_concurrency,
    )
    pool.start(logging_level=settings.log_level.upper())


if __name__ == "__main__":
    main()
