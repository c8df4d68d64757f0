from __future__ import annotations


class AuthError(RuntimeError):
    """Missing, stale or mismatched webhook signature."""


class PayloadError(ValueError):
    """Malformed request body or queue message; no job is created."""


class UpstreamError(RuntimeError):
    """An externally-mediated stage failed (download, transcode, upload, ...)."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message


class CleanupError(RuntimeError):
    pass


class NotificationError(RuntimeError):
    pass


class StaleJobError(RuntimeError):
    """The stored job was failed, completed or moved on by another consumer."""

    def __init__(self, job_id: str, state: str) -> None:
        super().__init__(f"job {job_id} is {state}")
        self.job_id = job_id
        self.state = state
