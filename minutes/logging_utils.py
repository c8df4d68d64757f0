from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

_job_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("job_id", default="-")
_stage_var: contextvars.ContextVar[str] = contextvars.ContextVar("stage", default="-")
_configured = False


class JobContextFilter(logging.Filter):
    """Stamp every record with the job and pipeline stage being worked on."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "job_id"):
            record.job_id = _job_id_var.get()
        if not hasattr(record, "stage"):
            record.stage = _stage_var.get()
        return True


def configure_logging(level: str = "INFO") -> None:
    global _configured
    root = logging.getLogger()
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if not _configured:
        if not root.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s %(levelname)s [%(name)s] "
                    "[job=%(job_id)s stage=%(stage)s] %(message)s"
                )
            )
            root.addHandler(handler)
        for handler in root.handlers:
            handler.addFilter(JobContextFilter())
        _configured = True

    root.setLevel(numeric_level)


@contextmanager
def job_context(job_id: str, stage: str = "-") -> Iterator[None]:
    job_token = _job_id_var.set(job_id)
    stage_token = _stage_var.set(stage)
    try:
        yield
    finally:
        _stage_var.reset(stage_token)
        _job_id_var.reset(job_token)


def set_stage(stage: str) -> None:
    # Only meaningful inside job_context, which restores the previous stage.
    _stage_var.set(stage)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)
