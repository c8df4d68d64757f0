from __future__ import annotations

import contextvars
import logging

from minutes.logging_utils import JobContextFilter, job_context, set_stage


def _stamped() -> logging.LogRecord:
    record = logging.LogRecord("minutes.test", logging.INFO, __file__, 1, "msg", None, None)
    JobContextFilter().filter(record)
    return record


def _inside_and_after():
    with job_context("job-1", "created"):
        set_stage("transcribing")
        inside = _stamped()
    return inside, _stamped()


def test_filter_stamps_job_and_stage() -> None:
    inside, after = contextvars.Context().run(_inside_and_after)

    assert (inside.job_id, inside.stage) == ("job-1", "transcribing")
    assert (after.job_id, after.stage) == ("-", "-")
