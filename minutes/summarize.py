from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

from google import genai
from google.genai import types
from pydantic import ValidationError

from .config import Settings
from .logging_utils import get_logger
from .schemas import SUMMARY_KEYS, MeetingInfo, SummaryDocument

UNKNOWN = "不明"
DEGRADED_PREFIX = "要約の生成に失敗しました"

DATE_RE = re.compile(r"(\d{4}[年/-]\d{1,2}[月/-]\d{1,2}日?)")
CLIENT_RE = re.compile(r"(?:クライアント|顧客|client)[:：\s]*([^\s]+)", re.IGNORECASE)
CONSULTANT_RE = re.compile(r"(?:コンサルタント|担当|consultant)[:：\s]*([^\s]+)", re.IGNORECASE)
FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {key: {"type": "STRING"} for key in SUMMARY_KEYS},
    "required": list(SUMMARY_KEYS),
}

PROMPT_TEMPLATE = """あなたは優秀な議事録作成アシスタントです。
以下の会議の文字起こしと補足情報から、議事録を作成してください。

出力は次の7つのキーを持つJSONオブジェクトのみとし、値はすべて文字列にしてください。
- meetingName: 会議名
- meetingInfo: 会議の基本情報（日時、参加者など）
- agenda: 会議の目的とアジェンダ
- discussion: 会議の内容（議論と決定事項）
- scheduleTasks: 今後のスケジュールとタスク管理
- sharedInfo: 共有情報・添付資料
- otherNotes: その他特記事項
該当する内容がない項目は「なし」としてください。

# 補足情報
日時: {date}
クライアント: {client}
コンサルタント: {consultant}
投稿メッセージ: {message}

# 文字起こし
{transcript}
"""

logger = get_logger(__name__)


def extract_meeting_info(message_text: Optional[str]) -> MeetingInfo:
    info = {"date": UNKNOWN, "client": UNKNOWN, "consultant": UNKNOWN}
    if not message_text:
        return MeetingInfo(**info)
    for key, pattern in (("date", DATE_RE), ("client", CLIENT_RE), ("consultant", CONSULTANT_RE)):
        match = pattern.search(message_text)
        if match:
            info[key] = match.group(1)
    return MeetingInfo(**info)


def build_prompt(transcript: str, message_text: Optional[str], meeting_info: MeetingInfo) -> str:
    return PROMPT_TEMPLATE.format(
        date=meeting_info.date,
        client=meeting_info.client,
        consultant=meeting_info.consultant,
        message=message_text or "なし",
        transcript=transcript or "（文字起こし結果なし）",
    )


def parse_summary(raw: str) -> SummaryDocument:
    """Parse and strictly validate a model response into a SummaryDocument.

    Raises ValueError (including pydantic's ValidationError) on anything that is
    not a JSON object with all seven string keys.
    """
    cleaned = (raw or "").strip()
    if not cleaned:
        raise ValueError("model returned no content")
    fenced = FENCE_RE.match(cleaned)
    if fenced:
        cleaned = fenced.group(1)
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError(f"model returned {type(data).__name__}, expected an object")
    missing = [key for key in SUMMARY_KEYS if key not in data]
    if missing:
        raise ValueError(f"model response missing keys: {', '.join(missing)}")
    return SummaryDocument.model_validate({key: data[key] for key in SUMMARY_KEYS})


def degraded_summary(reason: str) -> SummaryDocument:
    return SummaryDocument.degraded(f"{DEGRADED_PREFIX}: {reason}")


class GenerativeSummarizer:
    """Gemini client, on Vertex AI when a project is configured, else by API key."""

    def __init__(self, settings: Settings, client: Optional[genai.Client] = None) -> None:
        self.project = settings.gemini_project
        self.location = settings.gemini_location
        self.model = settings.gemini_model
        self.api_key = settings.gemini_api_key
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self.project or self.api_key)

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            if self.project:
                self._client = genai.Client(
                    vertexai=True, project=self.project, location=self.location
                )
            else:
                self._client = genai.Client(api_key=self.api_key)
        return self._client

    def generate(self, prompt: str) -> str:
        response = self.client.models.generate_content(
            model=self.model,
            contents=prompt,
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=RESPONSE_SCHEMA,
                temperature=0.2,
            ),
        )
        return response.text or ""


def summarize(
    summarizer: GenerativeSummarizer,
    transcript: str,
    original_message_text: Optional[str],
    meeting_info: MeetingInfo,
) -> SummaryDocument:
    """Summarize a transcript; never raises.

    Any configuration, call or validation failure yields a degraded document
    whose seven fields carry the diagnostic instead of content.
    """
    if not summarizer.configured:
        logger.warning("summarize.not_configured model=%s", summarizer.model)
        return degraded_summary("生成モデルが設定されていません")

    prompt = build_prompt(transcript, original_message_text, meeting_info)
    try:
        raw = summarizer.generate(prompt)
    except Exception as exc:
        logger.exception("summarize.call_failed model=%s error=%s", summarizer.model, str(exc))
        return degraded_summary(f"モデル呼び出しエラー ({exc})")

    try:
        summary = parse_summary(raw)
    except (ValueError, ValidationError) as exc:
        logger.warning("summarize.invalid_response model=%s error=%s", summarizer.model, str(exc))
        return degraded_summary(f"応答形式エラー ({exc})")

    logger.info(
        "summarize.complete model=%s transcript_chars=%s",
        summarizer.model,
        len(transcript or ""),
    )
    return summary
