from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qs

from pydantic import ValidationError

from .errors import AuthError, PayloadError, UpstreamError
from .jobs import STATE_CREATED, STATE_TEXT_PENDING, Job, new_job_id
from .logging_utils import get_logger, job_context
from .schemas import EventCallback
from .signature import verify_signature
from .slack import SlackClientError

if TYPE_CHECKING:
    from .context import PipelineContext

logger = get_logger(__name__)


@dataclass
class GatewayResponse:
    status: int
    body: Any = field(default_factory=dict)
    content_type: str = "application/json"


def _json(status: int, message: str, **extra: Any) -> GatewayResponse:
    return GatewayResponse(status=status, body={"message": message, **extra})


def parse_body(raw_body: bytes) -> Dict[str, Any]:
    """JSON body, or a form-encoded body carrying JSON in ``payload``."""
    try:
        decoded = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PayloadError("request body is not valid UTF-8") from exc

    try:
        parsed = json.loads(decoded)
    except json.JSONDecodeError:
        form = parse_qs(decoded)
        if "payload" not in form:
            raise PayloadError("request body is neither JSON nor a form payload")
        try:
            parsed = json.loads(form["payload"][0])
        except json.JSONDecodeError as exc:
            raise PayloadError(f"form payload is not valid JSON: {exc}") from exc

    if not isinstance(parsed, dict):
        raise PayloadError("request body must be a JSON object")
    return parsed


def _message_text(event: Dict[str, Any]) -> Optional[str]:
    message = event.get("message") if isinstance(event.get("message"), dict) else {}
    files = event.get("files") if isinstance(event.get("files"), list) else []
    comment = None
    if files and isinstance(files[0], dict):
        initial_comment = files[0].get("initial_comment") or {}
        if isinstance(initial_comment, dict):
            comment = initial_comment.get("comment")
    for candidate in (message.get("text"), event.get("text"), comment):
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def _publish(ctx: "PipelineContext", job: Job) -> None:
    ctx.queue.publish(job.to_message(ctx.settings.slack_bot_token))


def handle_file_shared(
    ctx: "PipelineContext", event: Dict[str, Any], event_id: Optional[str]
) -> GatewayResponse:
    if event.get("bot_id"):
        logger.info("events.bot_skipped bot_id=%s", event.get("bot_id"))
        return _json(200, "Event from bot, skipped")

    file_id = event.get("file_id")
    user_id = event.get("user_id")
    if not file_id or not user_id:
        logger.warning("events.file_shared_incomplete event_id=%s", event_id)
        return _json(200, "Event ignored: missing file_id or user_id")

    if event_id:
        existing = ctx.store.find_job_for_event(event_id, file_id)
        if existing is not None:
            # A redelivery after a failed enqueue; publication is idempotent per jobId.
            if existing.state == STATE_CREATED:
                _publish(ctx, existing)
            return _json(200, "Event already processed", jobId=existing.job_id)

    if not ctx.slack.configured:
        raise UpstreamError("files.info", "SLACK_BOT_TOKEN is not configured")
    try:
        file_data = ctx.slack.file_info(file_id)
    except SlackClientError as exc:
        raise UpstreamError("files.info", str(exc)) from exc

    download_url = file_data.get("url_private_download")
    if not download_url:
        raise UpstreamError("files.info", f"file {file_id} has no download URL")

    text = _message_text(event)
    if text is None:
        text = ctx.store.pop_message_text(file_id)

    job = Job(
        job_id=new_job_id(),
        source_file_id=file_id,
        download_url=download_url,
        original_file_name=file_data.get("name"),
        original_file_extension=file_data.get("filetype"),
        channel_id=event.get("channel_id") or event.get("channel"),
        thread_ts=event.get("thread_ts") or event.get("event_ts") or event.get("ts"),
        permalink=file_data.get("permalink"),
        requester_id=user_id,
        original_message_text=text,
        event_id=event_id,
        event_ts=event.get("event_ts"),
        state=STATE_CREATED if text is not None else STATE_TEXT_PENDING,
    )

    with job_context(job.job_id, job.state):
        if not ctx.store.create_job(job):
            logger.info("events.job_exists event_id=%s file_id=%s", event_id, file_id)
            return _json(200, "Event already processed")

        if job.state == STATE_TEXT_PENDING:
            logger.info("events.text_pending job_id=%s file_id=%s", job.job_id, file_id)
            return _json(202, "Awaiting messageText event", jobId=job.job_id)

        _publish(ctx, job)
        logger.info("events.job_enqueued job_id=%s file_id=%s", job.job_id, file_id)
        return _json(200, "Job enqueued", jobId=job.job_id)


def handle_file_message(ctx: "PipelineContext", event: Dict[str, Any]) -> GatewayResponse:
    """Attach the text of a file-share message to the jobs for its files."""
    if event.get("bot_id"):
        return _json(200, "Event from bot, skipped")
    text = event.get("text")
    if not isinstance(text, str) or not text:
        return _json(200, "Message without text ignored")

    released: List[str] = []
    for file_data in event.get("files") or []:
        file_id = file_data.get("id") if isinstance(file_data, dict) else None
        if not file_id:
            continue
        pending = ctx.store.find_text_pending_job(file_id)
        if pending is None:
            if ctx.store.remember_message_text(file_id, text, event.get("channel")):
                logger.info("events.text_remembered file_id=%s", file_id)
            else:
                logger.info("events.text_too_late file_id=%s", file_id)
            continue
        if ctx.store.merge_message_text(pending.job_id, text):
            pending.original_message_text = text
            _publish(ctx, pending)
            released.append(pending.job_id)
            logger.info("events.text_merged job_id=%s file_id=%s", pending.job_id, file_id)
    return _json(200, "Message text recorded", jobIds=released)


def dispatch(ctx: "PipelineContext", envelope: EventCallback) -> GatewayResponse:
    event = envelope.event
    event_type = event.get("type")
    if event_type == "file_shared":
        return handle_file_shared(ctx, event, envelope.event_id)
    if event_type == "message" and event.get("files"):
        return handle_file_message(ctx, event)
    logger.info("events.ignored type=%s event_id=%s", event_type, envelope.event_id)
    return _json(200, "Event acknowledged")


def handle(
    ctx: "PipelineContext", raw_body: bytes, headers: Mapping[str, str]
) -> GatewayResponse:
    """Ingestion gateway for the chat platform's Events API.

    Returns the HTTP status and body to send back. Duplicate ``event_id``
    deliveries are acknowledged without side effects; a failure after the
    event was recorded releases it so the platform's retry is processed.
    """
    try:
        payload = parse_body(raw_body)
    except PayloadError as exc:
        logger.warning("events.bad_payload error=%s", exc)
        return _json(400, "Invalid payload")

    if payload.get("type") == "url_verification":
        challenge = str(payload.get("challenge") or "").strip()
        return GatewayResponse(status=200, body=challenge, content_type="text/plain")

    try:
        verify_signature(
            ctx.settings.slack_signing_secret,
            headers,
            raw_body,
            tolerance_s=ctx.settings.signature_tolerance_s,
        )
    except AuthError as exc:
        logger.warning("events.auth_failed error=%s", exc)
        return _json(401, "Invalid signature")

    if payload.get("type") != "event_callback":
        logger.warning("events.unsupported_envelope type=%s", payload.get("type"))
        return _json(400, "Unsupported payload type")
    try:
        envelope = EventCallback.model_validate(payload)
    except ValidationError as exc:
        logger.warning("events.bad_envelope error=%s", exc.errors()[:1])
        return _json(400, "Invalid event envelope")

    event_id = envelope.event_id
    if event_id:
        if not ctx.store.record_event(event_id, envelope.event.get("type")):
            logger.info("events.duplicate event_id=%s", event_id)
            return _json(200, "Event already processed")
    else:
        logger.warning("events.missing_event_id type=%s", envelope.event.get("type"))

    try:
        return dispatch(ctx, envelope)
    except Exception:
        logger.exception("events.processing_failed event_id=%s", event_id)
        if event_id:
            ctx.store.release_event(event_id)
        return _json(500, "Event processing failed")
