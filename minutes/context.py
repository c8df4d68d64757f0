from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from .config import Settings, settings
from .db import create_db_engine
from .job_queue import JobQueue
from .jobs import JobStore
from .media import AudioStorage
from .notion import NotionClient
from .slack import SlackClient
from .summarize import GenerativeSummarizer
from .transcribe import SpeechTranscriber


@dataclass
class PipelineContext:
    """Every collaborator a job needs, passed explicitly to each stage."""

    settings: Settings
    store: JobStore
    queue: JobQueue
    slack: SlackClient
    storage: AudioStorage
    speech: SpeechTranscriber
    summarizer: GenerativeSummarizer
    knowledge_base: NotionClient


def build_context(config: Optional[Settings] = None) -> PipelineContext:
    config = config or settings
    return PipelineContext(
        settings=config,
        store=JobStore(create_db_engine(config.database_url)),
        queue=JobQueue(config),
        slack=SlackClient(config),
        storage=AudioStorage(config),
        speech=SpeechTranscriber(config),
        summarizer=GenerativeSummarizer(config),
        knowledge_base=NotionClient(config),
    )


@lru_cache(maxsize=1)
def get_context() -> PipelineContext:
    return build_context(settings)
