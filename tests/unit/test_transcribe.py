from __future__ import annotations

import concurrent.futures
from types import SimpleNamespace
from typing import Any, List, Optional

import pytest
from google.api_core.exceptions import ServiceUnavailable

from minutes.config import Settings
from minutes.errors import UpstreamError
from minutes.transcribe import SpeechTranscriber, join_segments


def _result(*texts: str) -> SimpleNamespace:
    return SimpleNamespace(alternatives=[SimpleNamespace(transcript=t) for t in texts])


class _FakeOperation:
    def __init__(self, results: List[Any], error: Optional[Exception] = None) -> None:
        self._results = results
        self._error = error
        self.timeouts: List[float] = []
        self.operation = SimpleNamespace(name="operations/123")

    def result(self, timeout: float):
        self.timeouts.append(timeout)
        if self._error is not None:
            raise self._error
        return SimpleNamespace(results=self._results)


class _FakeSpeechClient:
    def __init__(self, operation: _FakeOperation) -> None:
        self.operation = operation
        self.requests: List[Any] = []

    def long_running_recognize(self, config, audio):
        self.requests.append({"config": config, "audio": audio})
        return self.operation


def _transcriber(operation: _FakeOperation) -> SpeechTranscriber:
    settings = Settings(_env_file=None, transcription_timeout_s=42)
    return SpeechTranscriber(settings, client=_FakeSpeechClient(operation))


def test_join_segments_uses_primary_alternative() -> None:
    results = [_result("こんにちは", "こんにちわ"), SimpleNamespace(alternatives=[]), _result("以上です")]
    assert join_segments(results) == "こんにちは\n以上です"


def test_transcribe_returns_joined_text_with_bounded_wait() -> None:
    operation = _FakeOperation([_result("一行目"), _result("二行目")])
    transcriber = _transcriber(operation)

    assert transcriber.transcribe("gs://bucket/audio/a.wav") == "一行目\n二行目"
    assert operation.timeouts == [42]
    request = transcriber.client.requests[0]
    assert request["audio"].uri == "gs://bucket/audio/a.wav"
    assert request["config"].sample_rate_hertz == 16000
    assert request["config"].language_code == "ja-JP"


def test_transcribe_empty_results_is_empty_transcript() -> None:
    transcriber = _transcriber(_FakeOperation([]))
    assert transcriber.transcribe("gs://bucket/audio/silent.wav") == ""


def test_transcribe_timeout_is_upstream_error() -> None:
    transcriber = _transcriber(_FakeOperation([], error=concurrent.futures.TimeoutError()))
    with pytest.raises(UpstreamError, match="did not finish") as excinfo:
        transcriber.transcribe("gs://bucket/audio/a.wav", timeout_s=5)
    assert excinfo.value.stage == "transcribe"


def test_transcribe_api_error_is_upstream_error() -> None:
    transcriber = _transcriber(_FakeOperation([], error=ServiceUnavailable("backend down")))
    with pytest.raises(UpstreamError, match="backend down"):
        transcriber.transcribe("gs://bucket/audio/a.wav")
