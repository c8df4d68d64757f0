from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from .config import Settings
from .logging_utils import get_logger

logger = get_logger(__name__)


class SlackClientError(RuntimeError):
    pass


class SlackClient:
    """Minimal Slack Web API client: file metadata lookup and threaded replies."""

    def __init__(self, settings: Settings) -> None:
        self.token = settings.slack_bot_token
        self.base_url = settings.slack_api_base_url.rstrip("/")
        self.timeout = httpx.Timeout(settings.slack_timeout_s)

    @property
    def configured(self) -> bool:
        return bool(self.token.strip())

    def _call(
        self,
        method: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.configured:
            raise SlackClientError("SLACK_BOT_TOKEN is not configured")

        url = f"{self.base_url}/{method}"
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                if payload is not None:
                    response = client.post(url, json=payload, headers=headers)
                else:
                    response = client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise SlackClientError(f"{method} request failed: {exc}") from exc

        if response.status_code != 200:
            raise SlackClientError(f"{method} returned HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise SlackClientError(f"{method} returned a non-JSON body") from exc
        if not body.get("ok"):
            raise SlackClientError(f"{method} failed: {body.get('error', 'unknown_error')}")
        return body

    def file_info(self, file_id: str) -> Dict[str, Any]:
        body = self._call("files.info", params={"file": file_id})
        file_data = body.get("file")
        if not isinstance(file_data, dict):
            raise SlackClientError("files.info response missing 'file'")
        return file_data

    def post_message(self, channel: str, text: str, thread_ts: Optional[str] = None) -> str:
        payload: Dict[str, Any] = {"channel": channel, "text": text}
        if thread_ts:
            payload["thread_ts"] = thread_ts
        body = self._call("chat.postMessage", payload=payload)
        return str(body.get("ts") or "")
