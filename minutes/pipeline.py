from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .context import PipelineContext, get_context
from .errors import PayloadError, StaleJobError, UpstreamError
from .jobs import (
    ARTIFACT_COLUMNS,
    STATE_COMPLETED,
    STATE_CREATED,
    STATE_DOWNLOADING,
    STATE_NOTIFYING,
    STATE_PERSISTING,
    STATE_SUMMARIZING,
    STATE_TEXT_PENDING,
    STATE_TRANSCRIBING,
    Job,
    is_terminal,
    state_index,
)
from .logging_utils import get_logger, job_context, set_stage
from .media import extract
from .notify import notify
from .notion import persist
from .schemas import CallbackRequest, JobMessage
from .summarize import extract_meeting_info, summarize

logger = get_logger(__name__)


def parse_job_message(message: Dict[str, Any]) -> JobMessage:
    try:
        parsed = JobMessage.model_validate(message)
    except ValidationError as exc:
        raise PayloadError(f"invalid job message: {exc.errors()[:1]}") from exc
    missing = parsed.missing_download_fields()
    if missing:
        raise PayloadError(f"job message missing {', '.join(missing)}")
    return parsed


def _load_job(ctx: PipelineContext, message: JobMessage) -> Job:
    job = ctx.store.get_job(message.job_id) if message.job_id else None
    if job is None:
        job = Job.from_message(message)
        ctx.store.create_job(job)
        job = ctx.store.get_job(job.job_id) or job
        logger.info("pipeline.job_reconstructed job_id=%s", job.job_id)
    job.download_token = message.slack_bot_token
    return job


def process_job_message(
    message: Dict[str, Any], ctx: Optional[PipelineContext] = None
) -> Dict[str, Any]:
    """rq entry point for one delivery of a job message."""
    ctx = ctx or get_context()
    try:
        parsed = parse_job_message(message)
    except PayloadError as exc:
        logger.error("pipeline.rejected_message job_id=%s error=%s", message.get("jobId"), exc)
        return {"status": "rejected", "error": str(exc)}

    job = _load_job(ctx, parsed)
    with job_context(job.job_id, job.state):
        return run_job(ctx, job)


def _ensure_message_text(ctx: PipelineContext, job: Job) -> bool:
    if job.has_message_text:
        return True
    remembered = ctx.store.pop_message_text(job.source_file_id)
    if remembered is None:
        return False
    ctx.store.merge_message_text(job.job_id, remembered)
    job.original_message_text = remembered
    return True


def _advance(ctx: PipelineContext, job: Job, state: str, **artifacts: Any) -> None:
    """Record a finished stage, or stop when the stored job has moved on.

    A refused transition is accepted only when the stored job is non-terminal
    and already at or beyond ``state``; its artifacts then replace ours.
    """
    if ctx.store.advance(job.job_id, state, **artifacts):  # type: ignore[arg-type]
        for name, value in artifacts.items():
            setattr(job, name, value)
        job.state = state
        set_stage(state)
        logger.info("pipeline.stage_complete job_id=%s stage=%s", job.job_id, state)
        return

    current = ctx.store.get_job(job.job_id)
    if current is None:
        raise StaleJobError(job.job_id, "missing")
    if current.state != state and (
        is_terminal(current.state) or state_index(current.state) < state_index(state)
    ):
        logger.info(
            "pipeline.stage_refused job_id=%s stage=%s stored_state=%s",
            job.job_id,
            state,
            current.state,
        )
        raise StaleJobError(job.job_id, current.state)
    for name in ARTIFACT_COLUMNS:
        setattr(job, name, getattr(current, name))
    job.state = current.state
    set_stage(current.state)
    logger.info(
        "pipeline.stage_already_recorded job_id=%s stage=%s stored_state=%s",
        job.job_id,
        state,
        current.state,
    )


def run_job(ctx: PipelineContext, job: Job) -> Dict[str, Any]:
    if is_terminal(job.state):
        logger.info("pipeline.skip_terminal job_id=%s state=%s", job.job_id, job.state)
        return {"job_id": job.job_id, "status": job.state, "skipped": True}

    if not _ensure_message_text(ctx, job):
        logger.info("pipeline.deferred job_id=%s file_id=%s", job.job_id, job.source_file_id)
        return {"job_id": job.job_id, "status": "deferred"}

    attempt_no = ctx.store.increment_attempts(job.job_id)
    max_attempts = max(1, int(ctx.settings.job_max_attempts))
    logger.info(
        "pipeline.start job_id=%s state=%s attempt=%s max_attempts=%s",
        job.job_id,
        job.state,
        attempt_no,
        max_attempts,
    )

    try:
        notify(ctx, job, "accepted")
        if state_index(job.state) < state_index(STATE_DOWNLOADING):
            _advance(ctx, job, STATE_DOWNLOADING)

        if job.normalized_audio_uri is None:
            audio_uri = extract(ctx, job)
            _advance(ctx, job, STATE_TRANSCRIBING, normalized_audio_uri=audio_uri)

        if job.transcript is None:
            transcript = ctx.speech.transcribe(job.normalized_audio_uri)
            _advance(ctx, job, STATE_SUMMARIZING, transcript=transcript)

        page_url = finish_job(ctx, job)
    except StaleJobError as exc:
        return _superseded(job, exc)
    except Exception as exc:
        error = str(exc)
        if attempt_no >= max_attempts:
            ctx.store.fail(job.job_id, error)
            job.failure_reason = error
            logger.exception(
                "pipeline.failed job_id=%s attempt=%s error=%s",
                job.job_id,
                attempt_no,
                error,
            )
            notify(ctx, job, "failed", error)
        else:
            ctx.store.record_attempt_error(job.job_id, error)
            logger.warning(
                "pipeline.retry_scheduled job_id=%s attempt=%s error=%s",
                job.job_id,
                attempt_no,
                error,
            )
        raise

    logger.info("pipeline.complete job_id=%s url=%s", job.job_id, page_url)
    return {"job_id": job.job_id, "status": STATE_COMPLETED, "page_url": page_url}


def _superseded(job: Job, exc: StaleJobError) -> Dict[str, Any]:
    logger.warning("pipeline.superseded job_id=%s stored_state=%s", job.job_id, exc.state)
    return {"job_id": job.job_id, "status": exc.state, "skipped": True}


def finish_job(ctx: PipelineContext, job: Job) -> str:
    """Summarize, persist and announce a job whose transcript is known."""
    meeting_info = extract_meeting_info(job.original_message_text)
    if job.summary is None:
        summary = summarize(
            ctx.summarizer, job.transcript or "", job.original_message_text, meeting_info
        )
        _advance(ctx, job, STATE_PERSISTING, summary=summary)

    if job.knowledge_base_page_url is None:
        page_url = persist(ctx, job, job.summary, meeting_info)
        _advance(ctx, job, STATE_NOTIFYING, knowledge_base_page_url=page_url)

    notify(ctx, job, "completed", job.knowledge_base_page_url)
    _advance(ctx, job, STATE_COMPLETED)
    return job.knowledge_base_page_url or ""


def _seed_from_callback(ctx: PipelineContext, payload: CallbackRequest) -> Job:
    job = Job(
        job_id=payload.job_id or "",
        source_file_id=payload.original_file_id or "",
        download_url="",
        original_file_name=payload.original_file_name,
        channel_id=payload.slack_channel_id,
        thread_ts=payload.slack_thread_ts,
        permalink=payload.slack_file_permalink,
        original_message_text=payload.original_message_text,
        normalized_audio_uri=payload.gcs_audio_uri,
        state=STATE_CREATED,
    )
    ctx.store.create_job(job)
    logger.info("pipeline.job_seeded_from_callback job_id=%s", job.job_id)
    return ctx.store.get_job(job.job_id) or job


def complete_from_callback(
    payload: CallbackRequest, ctx: Optional[PipelineContext] = None
) -> Dict[str, Any]:
    """Finish a job whose transcript was produced by a separate transcription worker."""
    ctx = ctx or get_context()
    if not payload.job_id:
        raise PayloadError("callback missing jobId")

    job = ctx.store.get_job(payload.job_id)
    if job is None:
        job = _seed_from_callback(ctx, payload)

    with job_context(job.job_id, job.state):
        if is_terminal(job.state):
            logger.info("pipeline.skip_terminal job_id=%s state=%s", job.job_id, job.state)
            return {"job_id": job.job_id, "status": job.state, "skipped": True}

        if payload.transcript is None:
            logger.warning("pipeline.callback_missing_transcript job_id=%s", job.job_id)
            notify(ctx, job, "transcript_missing")
            raise PayloadError("callback missing transcript")

        if job.original_message_text is None and payload.original_message_text is not None:
            ctx.store.merge_message_text(job.job_id, payload.original_message_text)
            job.original_message_text = payload.original_message_text

        artifacts: Dict[str, Any] = {}
        if job.normalized_audio_uri is None and payload.gcs_audio_uri:
            artifacts["normalized_audio_uri"] = payload.gcs_audio_uri
        if job.transcript is None:
            artifacts["transcript"] = payload.transcript

        try:
            if artifacts and state_index(job.state) < state_index(STATE_SUMMARIZING):
                _advance(ctx, job, STATE_SUMMARIZING, **artifacts)
            page_url = finish_job(ctx, job)
        except StaleJobError as exc:
            return _superseded(job, exc)
        except Exception as exc:
            ctx.store.fail(job.job_id, str(exc))
            job.failure_reason = str(exc)
            logger.exception("pipeline.callback_failed job_id=%s error=%s", job.job_id, str(exc))
            notify(ctx, job, "failed", str(exc))
            raise
        return {"job_id": job.job_id, "status": STATE_COMPLETED, "page_url": page_url}


def release_expired_text_pending(
    ctx: PipelineContext,
    timeout_s: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Let jobs that waited too long for their message text proceed without it."""
    timeout = ctx.settings.text_pending_timeout_s if timeout_s is None else timeout_s
    current = now or datetime.now(timezone.utc)
    cutoff = current - timedelta(seconds=timeout)
    summary = {"pending": 0, "released": 0}

    for job in ctx.store.list_jobs_in_state(STATE_TEXT_PENDING):
        summary["pending"] += 1
        if job.created_at is not None and job.created_at > cutoff:
            continue
        # Jobs that already have text were merged but never picked up; republish.
        if not job.has_message_text:
            remembered = ctx.store.pop_message_text(job.source_file_id)
            text = remembered if remembered is not None else ""
            if not ctx.store.merge_message_text(job.job_id, text):
                continue
            job.original_message_text = text
        try:
            ctx.queue.publish(job.to_message(ctx.settings.slack_bot_token))
        except UpstreamError as exc:
            logger.warning("pipeline.release_failed job_id=%s error=%s", job.job_id, exc)
            continue
        summary["released"] += 1
        logger.info(
            "pipeline.text_pending_released job_id=%s text_chars=%s",
            job.job_id,
            len(job.original_message_text or ""),
        )
    return summary
