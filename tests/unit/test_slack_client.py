from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from minutes.config import Settings
from minutes.slack import SlackClient, SlackClientError


class _FakeResponse:
    def __init__(self, status_code: int, body: Dict[str, Any]) -> None:
        self.status_code = status_code
        self._body = body

    def json(self) -> Dict[str, Any]:
        return self._body


class _FakeClient:
    def __init__(self, response: _FakeResponse, recorder: List[Dict[str, Any]]) -> None:
        self._response = response
        self._recorder = recorder

    def __enter__(self) -> "_FakeClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def get(self, url: str, params: Optional[Dict[str, Any]], headers: Dict[str, str]) -> _FakeResponse:
        self._recorder.append({"method": "GET", "url": url, "params": params, "headers": headers})
        return self._response

    def post(self, url: str, json: Dict[str, Any], headers: Dict[str, str]) -> _FakeResponse:
        self._recorder.append({"method": "POST", "url": url, "payload": json, "headers": headers})
        return self._response


def _patch(monkeypatch: pytest.MonkeyPatch, response: _FakeResponse) -> List[Dict[str, Any]]:
    calls: List[Dict[str, Any]] = []
    monkeypatch.setattr(
        "minutes.slack.httpx.Client", lambda *args, **kwargs: _FakeClient(response, calls)
    )
    return calls


def _client(token: str = "xoxb-1") -> SlackClient:
    return SlackClient(Settings(_env_file=None, slack_bot_token=token))


def test_file_info_returns_file(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _patch(
        monkeypatch,
        _FakeResponse(200, {"ok": True, "file": {"id": "F1", "name": "meeting.mp4"}}),
    )
    assert _client().file_info("F1")["name"] == "meeting.mp4"
    assert calls[0]["url"] == "https://slack.com/api/files.info"
    assert calls[0]["params"] == {"file": "F1"}
    assert calls[0]["headers"]["Authorization"] == "Bearer xoxb-1"


def test_post_message_in_thread(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _patch(monkeypatch, _FakeResponse(200, {"ok": True, "ts": "171.1"}))
    assert _client().post_message("C1", "hello", thread_ts="170.1") == "171.1"
    assert calls[0]["payload"] == {"channel": "C1", "text": "hello", "thread_ts": "170.1"}


def test_api_error_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch(monkeypatch, _FakeResponse(200, {"ok": False, "error": "file_not_found"}))
    with pytest.raises(SlackClientError, match="file_not_found"):
        _client().file_info("F404")


def test_missing_token_raises() -> None:
    client = _client(token="")
    assert client.configured is False
    with pytest.raises(SlackClientError, match="not configured"):
        client.post_message("C1", "hello")


class _NonJsonResponse(_FakeResponse):
    def json(self) -> Dict[str, Any]:
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


def test_non_json_body_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch(monkeypatch, _NonJsonResponse(200, {}))
    with pytest.raises(SlackClientError, match="non-JSON"):
        _client().file_info("F1")
