from __future__ import annotations

from typing import TYPE_CHECKING, Literal, Optional

from .errors import NotificationError
from .jobs import Job
from .logging_utils import get_logger
from .slack import SlackClientError

if TYPE_CHECKING:
    from .context import PipelineContext

OUTCOME = Literal["accepted", "completed", "failed", "transcript_missing"]
# Outcomes that are posted at most once per job.
ONCE_PER_JOB = ("accepted", "completed")
FALLBACK_FILE_LABEL = "ファイル"

logger = get_logger(__name__)


def _file_label(job: Job, title: Optional[str] = None) -> str:
    return title or job.original_file_name or FALLBACK_FILE_LABEL


def render_message(job: Job, outcome: OUTCOME, detail: Optional[str] = None) -> str:
    if outcome == "accepted":
        return (
            f":hourglass_flowing_sand: 「{_file_label(job)}」を受け付けました。"
            "議事録の作成が完了したらこのスレッドでお知らせします。"
        )
    if outcome == "completed":
        title = job.summary.meeting_name if job.summary is not None else None
        return (
            f":white_check_mark: 「{_file_label(job, title)}」の議事録を作成し、Notionに保存しました！\n"
            f"{detail or job.knowledge_base_page_url or ''}"
        ).rstrip()
    if outcome == "transcript_missing":
        return (
            f":warning: 「{_file_label(job)}」の文字起こし処理でエラーが発生しました。"
            "文字起こし結果がありません。"
        )
    if outcome == "failed":
        reason = detail or job.failure_reason or "不明なエラー"
        return f":x: 「{_file_label(job)}」の議事録作成に失敗しました。\n理由: {reason}"
    raise ValueError(f"unknown notification outcome: {outcome}")


def _deliver(ctx: "PipelineContext", job: Job, text: str) -> None:
    if not job.channel_id:
        raise NotificationError("job has no channel to reply to")
    if not ctx.slack.configured:
        raise NotificationError("SLACK_BOT_TOKEN is not configured")
    try:
        ctx.slack.post_message(job.channel_id, text, thread_ts=job.thread_ts)
    except SlackClientError as exc:
        raise NotificationError(str(exc)) from exc


def notify(
    ctx: "PipelineContext",
    job: Job,
    outcome: OUTCOME,
    detail: Optional[str] = None,
) -> bool:
    """Post the outcome of a job into its originating thread.

    Never raises for delivery problems; returns whether a message was posted.
    Accepted and completed messages are keyed per job so redelivery does not
    repeat them.
    """
    text = render_message(job, outcome, detail)
    stage_key = f"notify:{outcome}"
    once = outcome in ONCE_PER_JOB
    if once and ctx.store.stage_result(job.job_id, stage_key) is not None:
        logger.info("notify.already_sent job_id=%s outcome=%s", job.job_id, outcome)
        return False

    try:
        _deliver(ctx, job, text)
    except NotificationError as exc:
        logger.warning(
            "notify.failed job_id=%s outcome=%s channel=%s error=%s",
            job.job_id,
            outcome,
            job.channel_id,
            exc,
        )
        return False

    if once:
        ctx.store.record_stage_result(job.job_id, stage_key)
    logger.info(
        "notify.sent job_id=%s outcome=%s channel=%s",
        job.job_id,
        outcome,
        job.channel_id,
    )
    return True
