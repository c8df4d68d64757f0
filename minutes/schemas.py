from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SUMMARY_KEYS = (
    "meetingName",
    "meetingInfo",
    "agenda",
    "discussion",
    "scheduleTasks",
    "sharedInfo",
    "otherNotes",
)


class EventCallback(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    event_id: Optional[str] = None
    event_time: Optional[int] = None
    event: Dict[str, Any] = Field(default_factory=dict)


class JobMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    job_id: Optional[str] = Field(default=None, alias="jobId")
    original_file_id: Optional[str] = Field(default=None, alias="originalFileId")
    slack_file_download_url: Optional[str] = Field(
        default=None, alias="slackFileDownloadUrl"
    )
    slack_bot_token: Optional[str] = Field(default=None, alias="slackBotToken")
    original_file_name: Optional[str] = Field(default=None, alias="originalFileName")
    original_file_extension: Optional[str] = Field(
        default=None, alias="originalFileExtension"
    )
    slack_channel_id: Optional[str] = Field(default=None, alias="slackChannelId")
    slack_thread_ts: Optional[str] = Field(default=None, alias="slackThreadTs")
    slack_file_permalink: Optional[str] = Field(
        default=None, alias="slackFilePermalink"
    )
    slack_user_id: Optional[str] = Field(default=None, alias="slackUserId")
    original_message_text: Optional[str] = Field(
        default=None, alias="originalMessageText"
    )
    event_ts: Optional[str] = Field(default=None, alias="eventTs")

    @field_validator("event_ts", "slack_thread_ts", mode="before")
    @classmethod
    def stringify_timestamps(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(value)
        return value

    def missing_download_fields(self) -> List[str]:
        missing = []
        if not self.slack_file_download_url:
            missing.append("slackFileDownloadUrl")
        if not self.slack_bot_token:
            missing.append("slackBotToken")
        if not self.original_file_id:
            missing.append("originalFileId")
        return missing


class CallbackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    transcript: Optional[str] = None
    job_id: Optional[str] = Field(default=None, alias="jobId")
    original_file_id: Optional[str] = Field(default=None, alias="originalFileId")
    original_file_name: Optional[str] = Field(default=None, alias="originalFileName")
    slack_channel_id: Optional[str] = Field(default=None, alias="slackChannelId")
    slack_thread_ts: Optional[str] = Field(default=None, alias="slackThreadTs")
    slack_file_permalink: Optional[str] = Field(
        default=None, alias="slackFilePermalink"
    )
    original_message_text: Optional[str] = Field(
        default=None, alias="originalMessageText"
    )
    gcs_audio_uri: Optional[str] = Field(default=None, alias="gcsAudioUri")


class MeetingInfo(BaseModel):
    date: str
    client: str
    consultant: str


class SummaryDocument(BaseModel):
    """The seven sections of a meeting summary, keyed the way the model returns them."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", strict=True)

    meeting_name: str = Field(alias="meetingName")
    meeting_info: str = Field(alias="meetingInfo")
    agenda: str = Field(alias="agenda")
    discussion: str = Field(alias="discussion")
    schedule_tasks: str = Field(alias="scheduleTasks")
    shared_info: str = Field(alias="sharedInfo")
    other_notes: str = Field(alias="otherNotes")

    @classmethod
    def degraded(cls, message: str) -> "SummaryDocument":
        return cls.model_validate({key: message for key in SUMMARY_KEYS})

    def as_dict(self) -> Dict[str, str]:
        return self.model_dump(by_alias=True)
