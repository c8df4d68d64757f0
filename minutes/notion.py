from __future__ import annotations

import re
from datetime import date
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import httpx

from .config import Settings
from .errors import StaleJobError, UpstreamError
from .jobs import Job, is_terminal
from .logging_utils import get_logger
from .schemas import MeetingInfo, SummaryDocument

if TYPE_CHECKING:
    from .context import PipelineContext

# Notion rejects rich-text objects over 2000 characters and requests with
# more than 100 child blocks.
MAX_RICH_TEXT_CHARS = 2000
MAX_BLOCK_CHARS = 1950
MAX_CHILDREN_PER_REQUEST = 100
CONFIG_MISSING_URL = "about:blank#error-notion-config-missing"
STAGE_PERSIST = "persist"

TITLE_PROPERTY = "会議名"
DATE_PROPERTY = "日時"
CLIENT_PROPERTY = "クライアント名"
CONSULTANT_PROPERTY = "コンサルタント名"
SECTION_PROPERTIES = {
    "meeting_info": "会議の基本情報",
    "agenda": "会議の目的とアジェンダ",
    "discussion": "会議の内容（議論と決定事項）",
    "schedule_tasks": "今後のスケジュール",
    "shared_info": "共有情報・添付資料",
    "other_notes": "その他特記事項",
}
TRANSCRIPT_HEADING = "文字起こし全文"
SOURCE_LINK_LABEL = "元ファイル (Slack)"
UNTITLED = "無題の議事録"

_DATE_PARTS_RE = re.compile(r"(\d{4})[年/-](\d{1,2})[月/-](\d{1,2})")
logger = get_logger(__name__)


def split_text(value: str, size: int) -> List[str]:
    if size <= 0:
        raise ValueError("chunk size must be > 0")
    return [value[start : start + size] for start in range(0, len(value), size)]


def rich_text(value: Optional[str]) -> List[Dict[str, Any]]:
    if not value:
        return []
    return [
        {"type": "text", "text": {"content": chunk}}
        for chunk in split_text(value, MAX_RICH_TEXT_CHARS)
    ]


def parse_meeting_date(raw: Optional[str]) -> Optional[str]:
    match = _DATE_PARTS_RE.search(raw or "")
    if not match:
        return None
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3))).isoformat()
    except ValueError:
        return None


def page_title(summary: SummaryDocument, job: Job, meeting_info: MeetingInfo) -> str:
    if summary.meeting_name.strip():
        return summary.meeting_name
    if job.original_file_name:
        return job.original_file_name
    if meeting_info.date:
        return f"議事録 ({meeting_info.date})"
    return UNTITLED


def build_properties(job: Job, summary: SummaryDocument, meeting_info: MeetingInfo) -> Dict[str, Any]:
    properties: Dict[str, Any] = {
        TITLE_PROPERTY: {"title": rich_text(page_title(summary, job, meeting_info))},
    }
    meeting_date = parse_meeting_date(meeting_info.date)
    if meeting_date:
        properties[DATE_PROPERTY] = {"date": {"start": meeting_date}}
    if meeting_info.client:
        properties[CLIENT_PROPERTY] = {"rich_text": rich_text(meeting_info.client)}
    if meeting_info.consultant:
        properties[CONSULTANT_PROPERTY] = {"rich_text": rich_text(meeting_info.consultant)}

    for field_name, property_name in SECTION_PROPERTIES.items():
        value = getattr(summary, field_name)
        if field_name == "shared_info" and job.permalink:
            value = f"{value}\n\n{SOURCE_LINK_LABEL}: {job.permalink}".strip()
        properties[property_name] = {"rich_text": rich_text(value)}
    return properties


def build_transcript_blocks(transcript: Optional[str]) -> List[Dict[str, Any]]:
    if not transcript or not transcript.strip():
        return []
    blocks: List[Dict[str, Any]] = [
        {
            "object": "block",
            "type": "heading_2",
            "heading_2": {"rich_text": rich_text(TRANSCRIPT_HEADING)},
        }
    ]
    for chunk in split_text(transcript, MAX_BLOCK_CHARS):
        blocks.append(
            {
                "object": "block",
                "type": "paragraph",
                "paragraph": {"rich_text": rich_text(chunk)},
            }
        )
    return blocks


def page_url_from_response(body: Dict[str, Any]) -> str:
    url = body.get("url")
    if isinstance(url, str) and url:
        return url
    page_id = str(body.get("id") or "").replace("-", "")
    if not page_id:
        raise UpstreamError("persist", "page creation response missing id")
    return f"https://www.notion.so/{page_id}"


class NotionClient:
    def __init__(self, settings: Settings) -> None:
        self.api_key = settings.notion_api_key
        self.database_id = settings.notion_db_id
        self.base_url = settings.notion_api_base_url.rstrip("/")
        self.version = settings.notion_version
        self.timeout = httpx.Timeout(settings.notion_timeout_s)

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.database_id)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Notion-Version": self.version,
        }

    def _request(self, client: httpx.Client, method: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = client.request(
                method, f"{self.base_url}{path}", json=payload, headers=self._headers()
            )
        except httpx.HTTPError as exc:
            raise UpstreamError("persist", f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 400:
                detail = detail[:400]
            raise UpstreamError(
                "persist", f"{method} {path} returned {response.status_code}: {detail}"
            )
        return response.json()

    def create_page(self, properties: Dict[str, Any], children: List[Dict[str, Any]]) -> str:
        first, rest = children[:MAX_CHILDREN_PER_REQUEST], children[MAX_CHILDREN_PER_REQUEST:]
        payload: Dict[str, Any] = {
            "parent": {"database_id": self.database_id},
            "properties": properties,
        }
        if first:
            payload["children"] = first

        with httpx.Client(timeout=self.timeout) as client:
            body = self._request(client, "POST", "/pages", payload)
            page_id = str(body.get("id") or "")
            for start in range(0, len(rest), MAX_CHILDREN_PER_REQUEST):
                batch = rest[start : start + MAX_CHILDREN_PER_REQUEST]
                self._request(
                    client, "PATCH", f"/blocks/{page_id}/children", {"children": batch}
                )
        return page_url_from_response(body)


def _raise_unclaimed(ctx: "PipelineContext", job: Job) -> None:
    current = ctx.store.get_job(job.job_id)
    if current is None or is_terminal(current.state):
        state = current.state if current is not None else "missing"
        logger.info("notion.persist_skipped job_id=%s state=%s", job.job_id, state)
        raise StaleJobError(job.job_id, state)
    # Another delivery holds the claim; a retry will pick up its page URL.
    raise UpstreamError("persist", "page creation already in progress")


def persist(
    ctx: "PipelineContext",
    job: Job,
    summary: SummaryDocument,
    meeting_info: MeetingInfo,
) -> str:
    """Create the knowledge-base page for a job and return its URL.

    Guarded by the ``persist`` stage key, claimed before the page is created,
    so a redelivered or concurrent delivery reuses the page instead of
    creating a second one.
    """
    existing = ctx.store.stage_result(job.job_id, STAGE_PERSIST)
    if existing:
        logger.info("notion.page_reused job_id=%s url=%s", job.job_id, existing)
        return existing

    notion = ctx.knowledge_base
    if not notion.configured:
        logger.error("notion.not_configured job_id=%s", job.job_id)
        return CONFIG_MISSING_URL

    if not ctx.store.claim_stage(job.job_id, STAGE_PERSIST):
        _raise_unclaimed(ctx, job)

    properties = build_properties(job, summary, meeting_info)
    children = build_transcript_blocks(job.transcript)
    try:
        url = notion.create_page(properties, children)
    except Exception:
        ctx.store.release_stage(job.job_id, STAGE_PERSIST)
        raise
    ctx.store.finish_stage(job.job_id, STAGE_PERSIST, url)
    logger.info(
        "notion.page_created job_id=%s url=%s blocks=%s",
        job.job_id,
        url,
        len(children),
    )
    return url
