"""job record store: event ledger, meeting jobs, pending texts, stage keys

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19

"""

from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS inbound_events (
          event_id     TEXT PRIMARY KEY,
          event_type   TEXT,
          received_at  TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS meeting_jobs (
          job_id                   TEXT PRIMARY KEY,
          event_id                 TEXT,
          source_file_id           TEXT NOT NULL,
          download_url             TEXT NOT NULL,
          original_file_name       TEXT,
          original_file_extension  TEXT,
          channel_id               TEXT,
          thread_ts                TEXT,
          permalink                TEXT,
          requester_id             TEXT,
          original_message_text    TEXT,
          event_ts                 TEXT,
          state                    TEXT NOT NULL,
          failure_reason           TEXT,
          attempts                 INTEGER NOT NULL DEFAULT 0,
          last_error               TEXT,
          normalized_audio_uri     TEXT,
          transcript               TEXT,
          summary_json             TEXT,
          knowledge_base_page_url  TEXT,
          created_at               TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
          updated_at               TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
          UNIQUE (event_id, source_file_id),
          CHECK (state IN (
            'created', 'text_pending', 'downloading', 'transcoding', 'uploading',
            'transcribing', 'summarizing', 'persisting', 'notifying',
            'completed', 'failed'
          ))
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS meeting_jobs_state_created_idx "
        "ON meeting_jobs (state, created_at);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS meeting_jobs_file_idx "
        "ON meeting_jobs (source_file_id);"
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS pending_message_texts (
          file_id       TEXT PRIMARY KEY,
          message_text  TEXT NOT NULL,
          channel_id    TEXT,
          received_at   TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS job_stage_keys (
          job_id      TEXT NOT NULL REFERENCES meeting_jobs(job_id) ON DELETE CASCADE,
          stage       TEXT NOT NULL,
          result      TEXT NOT NULL DEFAULT '',
          created_at  TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
          PRIMARY KEY (job_id, stage)
        );
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS job_stage_keys;")
    op.execute("DROP TABLE IF EXISTS pending_message_texts;")
    op.execute("DROP INDEX IF EXISTS meeting_jobs_file_idx;")
    op.execute("DROP INDEX IF EXISTS meeting_jobs_state_created_idx;")
    op.execute("DROP TABLE IF EXISTS meeting_jobs;")
    op.execute("DROP TABLE IF EXISTS inbound_events;")
