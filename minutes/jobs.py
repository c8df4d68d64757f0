from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence
from uuid import uuid4

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine

from .logging_utils import get_logger
from .schemas import JobMessage, SummaryDocument

JOB_STATE = Literal[
    "created",
    "text_pending",
    "downloading",
    "transcoding",
    "uploading",
    "transcribing",
    "summarizing",
    "persisting",
    "notifying",
    "completed",
    "failed",
]
STATE_CREATED: JOB_STATE = "created"
STATE_TEXT_PENDING: JOB_STATE = "text_pending"
STATE_DOWNLOADING: JOB_STATE = "downloading"
STATE_TRANSCODING: JOB_STATE = "transcoding"
STATE_UPLOADING: JOB_STATE = "uploading"
STATE_TRANSCRIBING: JOB_STATE = "transcribing"
STATE_SUMMARIZING: JOB_STATE = "summarizing"
STATE_PERSISTING: JOB_STATE = "persisting"
STATE_NOTIFYING: JOB_STATE = "notifying"
STATE_COMPLETED: JOB_STATE = "completed"
STATE_FAILED: JOB_STATE = "failed"

# Forward-only order; FAILED is reachable from any non-terminal state via fail().
STATE_ORDER: Sequence[JOB_STATE] = (
    STATE_CREATED,
    STATE_TEXT_PENDING,
    STATE_DOWNLOADING,
    STATE_TRANSCODING,
    STATE_UPLOADING,
    STATE_TRANSCRIBING,
    STATE_SUMMARIZING,
    STATE_PERSISTING,
    STATE_NOTIFYING,
    STATE_COMPLETED,
)
TERMINAL_STATES = frozenset({STATE_COMPLETED, STATE_FAILED})

ARTIFACT_COLUMNS = {
    "normalized_audio_uri": "normalized_audio_uri",
    "transcript": "transcript",
    "summary": "summary_json",
    "knowledge_base_page_url": "knowledge_base_page_url",
}

JOB_COLUMNS = """
    job_id, event_id, source_file_id, download_url, original_file_name,
    original_file_extension, channel_id, thread_ts, permalink, requester_id,
    original_message_text, event_ts, state, failure_reason, attempts, last_error,
    normalized_audio_uri, transcript, summary_json, knowledge_base_page_url,
    created_at, updated_at
"""

logger = get_logger(__name__)


def new_job_id() -> str:
    return str(uuid4())


def state_index(state: str) -> int:
    return STATE_ORDER.index(state)  # type: ignore[arg-type]


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Job:
    job_id: str
    source_file_id: str
    download_url: str
    original_file_name: Optional[str] = None
    original_file_extension: Optional[str] = None
    channel_id: Optional[str] = None
    thread_ts: Optional[str] = None
    permalink: Optional[str] = None
    requester_id: Optional[str] = None
    original_message_text: Optional[str] = None
    event_id: Optional[str] = None
    event_ts: Optional[str] = None
    state: str = STATE_CREATED
    failure_reason: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    normalized_audio_uri: Optional[str] = None
    transcript: Optional[str] = None
    summary: Optional[SummaryDocument] = None
    knowledge_base_page_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Short-lived bearer credential for the download URL; carried by the queue
    # message, never persisted.
    download_token: Optional[str] = None

    @property
    def has_message_text(self) -> bool:
        return self.original_message_text is not None

    def to_message(self, bot_token: str) -> Dict[str, Any]:
        return JobMessage(
            job_id=self.job_id,
            original_file_id=self.source_file_id,
            slack_file_download_url=self.download_url,
            slack_bot_token=bot_token,
            original_file_name=self.original_file_name,
            original_file_extension=self.original_file_extension,
            slack_channel_id=self.channel_id,
            slack_thread_ts=self.thread_ts,
            slack_file_permalink=self.permalink,
            slack_user_id=self.requester_id,
            original_message_text=self.original_message_text,
            event_ts=self.event_ts,
        ).model_dump(by_alias=True)

    @classmethod
    def from_message(cls, message: JobMessage) -> "Job":
        text_known = message.original_message_text is not None
        return cls(
            job_id=message.job_id or new_job_id(),
            source_file_id=message.original_file_id or "",
            download_url=message.slack_file_download_url or "",
            original_file_name=message.original_file_name,
            original_file_extension=message.original_file_extension,
            channel_id=message.slack_channel_id,
            thread_ts=message.slack_thread_ts,
            permalink=message.slack_file_permalink,
            requester_id=message.slack_user_id,
            original_message_text=message.original_message_text,
            event_ts=message.event_ts,
            state=STATE_CREATED if text_known else STATE_TEXT_PENDING,
            download_token=message.slack_bot_token,
        )


def serialize_job(job: Job) -> Dict[str, Any]:
    return {
        "job_id": job.job_id,
        "event_id": job.event_id,
        "source_file_id": job.source_file_id,
        "original_file_name": job.original_file_name,
        "original_file_extension": job.original_file_extension,
        "channel_id": job.channel_id,
        "thread_ts": job.thread_ts,
        "permalink": job.permalink,
        "requester_id": job.requester_id,
        "has_message_text": job.has_message_text,
        "state": job.state,
        "failure_reason": job.failure_reason,
        "attempts": job.attempts,
        "last_error": job.last_error,
        "normalized_audio_uri": job.normalized_audio_uri,
        "transcript_chars": len(job.transcript) if job.transcript is not None else None,
        "summary": job.summary.as_dict() if job.summary is not None else None,
        "knowledge_base_page_url": job.knowledge_base_page_url,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
    }


def _row_to_job(row: Dict[str, Any]) -> Job:
    summary = None
    if row["summary_json"]:
        summary = SummaryDocument.model_validate(json.loads(row["summary_json"]))
    return Job(
        job_id=row["job_id"],
        event_id=row["event_id"],
        source_file_id=row["source_file_id"],
        download_url=row["download_url"],
        original_file_name=row["original_file_name"],
        original_file_extension=row["original_file_extension"],
        channel_id=row["channel_id"],
        thread_ts=row["thread_ts"],
        permalink=row["permalink"],
        requester_id=row["requester_id"],
        original_message_text=row["original_message_text"],
        event_ts=row["event_ts"],
        state=row["state"],
        failure_reason=row["failure_reason"],
        attempts=int(row["attempts"] or 0),
        last_error=row["last_error"],
        normalized_audio_uri=row["normalized_audio_uri"],
        transcript=row["transcript"],
        summary=summary,
        knowledge_base_page_url=row["knowledge_base_page_url"],
        created_at=_as_datetime(row["created_at"]),
        updated_at=_as_datetime(row["updated_at"]),
    )


class JobStore:
    """Durable job records, the inbound-event ledger and stage idempotency keys.

    Every mutation is a single guarded statement (``ON CONFLICT DO NOTHING`` or
    ``UPDATE ... WHERE state IN (...)``) so concurrent or repeated deliveries
    observe check-and-set semantics.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # Event ledger

    def record_event(self, event_id: str, event_type: Optional[str]) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                text(
                    """
                    INSERT INTO inbound_events (event_id, event_type)
                    VALUES (:event_id, :event_type)
                    ON CONFLICT (event_id) DO NOTHING
                    """
                ),
                {"event_id": event_id, "event_type": event_type},
            )
        return result.rowcount == 1

    def release_event(self, event_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text("DELETE FROM inbound_events WHERE event_id = :event_id"),
                {"event_id": event_id},
            )

    # Job records

    def create_job(self, job: Job) -> bool:
        summary_json = json.dumps(job.summary.as_dict()) if job.summary else None
        with self.engine.begin() as conn:
            result = conn.execute(
                text(
                    """
                    INSERT INTO meeting_jobs
                      (job_id, event_id, source_file_id, download_url,
                       original_file_name, original_file_extension, channel_id,
                       thread_ts, permalink, requester_id, original_message_text,
                       event_ts, state, transcript, normalized_audio_uri, summary_json)
                    VALUES
                      (:job_id, :event_id, :source_file_id, :download_url,
                       :original_file_name, :original_file_extension, :channel_id,
                       :thread_ts, :permalink, :requester_id, :original_message_text,
                       :event_ts, :state, :transcript, :normalized_audio_uri, :summary_json)
                    ON CONFLICT DO NOTHING
                    """
                ),
                {
                    "job_id": job.job_id,
                    "event_id": job.event_id,
                    "source_file_id": job.source_file_id,
                    "download_url": job.download_url,
                    "original_file_name": job.original_file_name,
                    "original_file_extension": job.original_file_extension,
                    "channel_id": job.channel_id,
                    "thread_ts": job.thread_ts,
                    "permalink": job.permalink,
                    "requester_id": job.requester_id,
                    "original_message_text": job.original_message_text,
                    "event_ts": job.event_ts,
                    "state": job.state,
                    "transcript": job.transcript,
                    "normalized_audio_uri": job.normalized_audio_uri,
                    "summary_json": summary_json,
                },
            )
        created = result.rowcount == 1
        if created:
            logger.info(
                "job_store.created job_id=%s file_id=%s state=%s",
                job.job_id,
                job.source_file_id,
                job.state,
            )
        return created

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT {JOB_COLUMNS} FROM meeting_jobs WHERE job_id = :job_id"),
                {"job_id": job_id},
            ).mappings().first()
        return _row_to_job(dict(row)) if row is not None else None

    def require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise KeyError(f"job not found: {job_id}")
        return job

    def find_text_pending_job(self, file_id: str) -> Optional[Job]:
        with self.engine.connect() as conn:
            row = conn.execute(
                text(
                    f"""
                    SELECT {JOB_COLUMNS}
                    FROM meeting_jobs
                    WHERE source_file_id = :file_id AND state = :state
                    ORDER BY created_at ASC
                    LIMIT 1
                    """
                ),
                {"file_id": file_id, "state": STATE_TEXT_PENDING},
            ).mappings().first()
        return _row_to_job(dict(row)) if row is not None else None

    def find_job_for_event(self, event_id: str, file_id: str) -> Optional[Job]:
        with self.engine.connect() as conn:
            row = conn.execute(
                text(
                    f"""
                    SELECT {JOB_COLUMNS}
                    FROM meeting_jobs
                    WHERE event_id = :event_id AND source_file_id = :file_id
                    """
                ),
                {"event_id": event_id, "file_id": file_id},
            ).mappings().first()
        return _row_to_job(dict(row)) if row is not None else None

    def list_jobs_in_state(self, state: JOB_STATE, limit: int = 100) -> List[Job]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    f"""
                    SELECT {JOB_COLUMNS}
                    FROM meeting_jobs
                    WHERE state = :state
                    ORDER BY created_at ASC
                    LIMIT :limit
                    """
                ),
                {"state": state, "limit": limit},
            ).mappings()
            return [_row_to_job(dict(row)) for row in rows]

    def advance(self, job_id: str, state: JOB_STATE, **artifacts: Any) -> bool:
        """Move a job forward to ``state``, writing stage artifacts in the same statement.

        Returns False (and writes nothing) when the job is terminal or already at
        or beyond ``state``.
        """
        target = state_index(state)
        from_states = [s for s in STATE_ORDER[:target] if not is_terminal(s)]
        set_clauses = ["state = :state", "updated_at = CURRENT_TIMESTAMP"]
        params: Dict[str, Any] = {
            "job_id": job_id,
            "state": state,
            "from_states": from_states,
        }
        for name, value in artifacts.items():
            column = ARTIFACT_COLUMNS.get(name)
            if column is None:
                raise ValueError(f"unknown job artifact: {name}")
            if isinstance(value, SummaryDocument):
                value = json.dumps(value.as_dict(), ensure_ascii=False)
            set_clauses.append(f"{column} = :{column}")
            params[column] = value

        statement = text(
            f"""
            UPDATE meeting_jobs
            SET {", ".join(set_clauses)}
            WHERE job_id = :job_id AND state IN :from_states
            """
        ).bindparams(bindparam("from_states", expanding=True))
        with self.engine.begin() as conn:
            result = conn.execute(statement, params)
        advanced = result.rowcount == 1
        if advanced:
            logger.info("job_store.advanced job_id=%s state=%s", job_id, state)
        return advanced

    def fail(self, job_id: str, reason: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                text(
                    """
                    UPDATE meeting_jobs
                    SET state = :failed, failure_reason = :reason, last_error = :reason,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE job_id = :job_id AND state NOT IN (:completed, :failed)
                    """
                ),
                {
                    "job_id": job_id,
                    "reason": reason,
                    "failed": STATE_FAILED,
                    "completed": STATE_COMPLETED,
                },
            )
        return result.rowcount == 1

    def increment_attempts(self, job_id: str) -> int:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE meeting_jobs
                    SET attempts = attempts + 1, updated_at = CURRENT_TIMESTAMP
                    WHERE job_id = :job_id AND state NOT IN (:completed, :failed)
                    """
                ),
                {"job_id": job_id, "completed": STATE_COMPLETED, "failed": STATE_FAILED},
            )
            attempts = conn.execute(
                text("SELECT attempts FROM meeting_jobs WHERE job_id = :job_id"),
                {"job_id": job_id},
            ).scalar()
        return int(attempts or 0)

    def record_attempt_error(self, job_id: str, error: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE meeting_jobs
                    SET last_error = :error, updated_at = CURRENT_TIMESTAMP
                    WHERE job_id = :job_id AND state NOT IN (:completed, :failed)
                    """
                ),
                {
                    "job_id": job_id,
                    "error": error,
                    "completed": STATE_COMPLETED,
                    "failed": STATE_FAILED,
                },
            )

    # Message text reconciliation

    def merge_message_text(self, job_id: str, message_text: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                text(
                    """
                    UPDATE meeting_jobs
                    SET original_message_text = :message_text,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE job_id = :job_id
                      AND state = :state
                      AND original_message_text IS NULL
                    """
                ),
                {
                    "job_id": job_id,
                    "message_text": message_text,
                    "state": STATE_TEXT_PENDING,
                },
            )
        return result.rowcount == 1

    def remember_message_text(
        self, file_id: str, message_text: str, channel_id: Optional[str] = None
    ) -> bool:
        """Hold text until the file's job is created or picks it up.

        Returns False, storing nothing, once a job for the file has left
        text_pending, since such a job never pops remembered text.
        """
        with self.engine.begin() as conn:
            inserted = conn.execute(
                text(
                    """
                    INSERT INTO pending_message_texts (file_id, message_text, channel_id)
                    SELECT CAST(:file_id AS TEXT), CAST(:message_text AS TEXT),
                      CAST(:channel_id AS TEXT)
                    WHERE NOT EXISTS (
                      SELECT 1 FROM meeting_jobs
                      WHERE source_file_id = :file_id AND state <> :text_pending
                    )
                    ON CONFLICT (file_id) DO UPDATE SET
                      message_text = excluded.message_text,
                      channel_id = excluded.channel_id
                    """
                ),
                {
                    "file_id": file_id,
                    "message_text": message_text,
                    "channel_id": channel_id,
                    "text_pending": STATE_TEXT_PENDING,
                },
            )
        return inserted.rowcount == 1

    def pop_message_text(self, file_id: str) -> Optional[str]:
        with self.engine.begin() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT message_text
                    FROM pending_message_texts
                    WHERE file_id = :file_id
                    """
                ),
                {"file_id": file_id},
            ).first()
            if row is None:
                return None
            conn.execute(
                text("DELETE FROM pending_message_texts WHERE file_id = :file_id"),
                {"file_id": file_id},
            )
        return row[0]

    # Stage idempotency keys

    def stage_result(self, job_id: str, stage: str) -> Optional[str]:
        with self.engine.connect() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT result
                    FROM job_stage_keys
                    WHERE job_id = :job_id AND stage = :stage
                    """
                ),
                {"job_id": job_id, "stage": stage},
            ).first()
        return row[0] if row is not None else None

    def record_stage_result(self, job_id: str, stage: str, result: str = "") -> bool:
        with self.engine.begin() as conn:
            inserted = conn.execute(
                text(
                    """
                    INSERT INTO job_stage_keys (job_id, stage, result)
                    VALUES (:job_id, :stage, :result)
                    ON CONFLICT (job_id, stage) DO NOTHING
                    """
                ),
                {"job_id": job_id, "stage": stage, "result": result},
            )
        return inserted.rowcount == 1

    def claim_stage(self, job_id: str, stage: str) -> bool:
        """Reserve ``stage`` for this worker before an external side effect.

        The placeholder row is only inserted while the job is non-terminal, so a
        failed or completed job, or a stage already claimed by another
        consumer, yields False.
        """
        with self.engine.begin() as conn:
            inserted = conn.execute(
                text(
                    """
                    INSERT INTO job_stage_keys (job_id, stage, result)
                    SELECT CAST(:job_id AS TEXT), CAST(:stage AS TEXT), ''
                    WHERE EXISTS (
                      SELECT 1 FROM meeting_jobs
                      WHERE job_id = :job_id AND state NOT IN (:completed, :failed)
                    )
                    ON CONFLICT (job_id, stage) DO NOTHING
                    """
                ),
                {
                    "job_id": job_id,
                    "stage": stage,
                    "completed": STATE_COMPLETED,
                    "failed": STATE_FAILED,
                },
            )
        return inserted.rowcount == 1

    def finish_stage(self, job_id: str, stage: str, result: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE job_stage_keys
                    SET result = :result
                    WHERE job_id = :job_id AND stage = :stage
                    """
                ),
                {"job_id": job_id, "stage": stage, "result": result},
            )

    def release_stage(self, job_id: str, stage: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    DELETE FROM job_stage_keys
                    WHERE job_id = :job_id AND stage = :stage AND result = ''
                    """
                ),
                {"job_id": job_id, "stage": stage},
            )
