from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any, Dict, List

import pytest

from minutes.context import PipelineContext
from minutes.errors import UpstreamError
from minutes.jobs import STATE_DOWNLOADING, STATE_UPLOADING, Job, new_job_id
from minutes.media import (
    AUDIO_CODEC_ARGS,
    audio_object_name,
    download_source,
    extract,
    normalize_audio,
    scratch_files,
)


class _FakeStream:
    def __init__(self, status_code: int, content_type: str, chunks: List[bytes]) -> None:
        self.status_code = status_code
        self.headers = {"content-type": content_type}
        self._chunks = chunks

    def __enter__(self) -> "_FakeStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def iter_bytes(self):
        yield from self._chunks


class _FakeClient:
    def __init__(self, stream: _FakeStream, recorder: List[Dict[str, Any]]) -> None:
        self._stream = stream
        self._recorder = recorder

    def __enter__(self) -> "_FakeClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def stream(self, method: str, url: str, headers: Dict[str, str]) -> _FakeStream:
        self._recorder.append({"method": method, "url": url, "headers": headers})
        return self._stream


def _patch_client(monkeypatch: pytest.MonkeyPatch, stream: _FakeStream) -> List[Dict[str, Any]]:
    calls: List[Dict[str, Any]] = []
    monkeypatch.setattr(
        "minutes.media.httpx.Client", lambda *args, **kwargs: _FakeClient(stream, calls)
    )
    return calls


def test_download_source_streams_with_bearer(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _patch_client(monkeypatch, _FakeStream(200, "video/mp4", [b"abc", b"def"]))
    dest = tmp_path / "video.mp4"

    written = download_source("https://files.example/F1", "xoxb-1", dest, 10)

    assert written == 6
    assert dest.read_bytes() == b"abcdef"
    assert calls[0]["headers"]["Authorization"] == "Bearer xoxb-1"


def test_download_source_rejects_html_page(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_client(monkeypatch, _FakeStream(200, "text/html; charset=utf-8", [b"<html>"]))
    with pytest.raises(UpstreamError) as excinfo:
        download_source("https://files.example/F1", "xoxb-1", tmp_path / "v.mp4", 10)
    assert excinfo.value.stage == "download"


def test_download_source_rejects_error_status(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_client(monkeypatch, _FakeStream(403, "application/json", []))
    with pytest.raises(UpstreamError, match="HTTP 403"):
        download_source("https://files.example/F1", "xoxb-1", tmp_path / "v.mp4", 10)


def test_normalize_audio_builds_fixed_command(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: List[List[str]] = []
    src = tmp_path / "in.mp4"
    dest = tmp_path / "out.wav"

    def fake_run(command, **kwargs):
        seen.append(command)
        dest.write_bytes(b"wav")
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    monkeypatch.setattr("minutes.media.subprocess.run", fake_run)
    normalize_audio(src, dest, binary="ffmpeg", timeout_s=5)

    assert seen[0] == ["ffmpeg", "-y", "-i", str(src), *AUDIO_CODEC_ARGS, str(dest)]


def test_normalize_audio_surfaces_nonzero_exit(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(command, **kwargs):
        return subprocess.CompletedProcess(command, 1, stdout="", stderr="Invalid data found")

    monkeypatch.setattr("minutes.media.subprocess.run", fake_run)
    with pytest.raises(UpstreamError, match="Invalid data found") as excinfo:
        normalize_audio(tmp_path / "in.mp4", tmp_path / "out.wav")
    assert excinfo.value.stage == "transcode"


def test_normalize_audio_zero_exit_without_output_fails(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def fake_run(command, **kwargs):
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="done")

    monkeypatch.setattr("minutes.media.subprocess.run", fake_run)
    with pytest.raises(UpstreamError, match="ffmpeg output file not found"):
        normalize_audio(tmp_path / "in.mp4", tmp_path / "out.wav")


def test_normalize_audio_missing_binary(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(command, **kwargs):
        raise FileNotFoundError(command[0])

    monkeypatch.setattr("minutes.media.subprocess.run", fake_run)
    with pytest.raises(UpstreamError, match="not found"):
        normalize_audio(tmp_path / "in.mp4", tmp_path / "out.wav", binary="no-ffmpeg")


def test_scratch_files_are_removed_on_error(tmp_path: Path) -> None:
    scratch = tmp_path / "scratch.bin"
    with pytest.raises(RuntimeError):
        with scratch_files(scratch):
            scratch.write_bytes(b"x")
            raise RuntimeError("boom")
    assert not scratch.exists()


def _job(ctx: PipelineContext) -> Job:
    job = Job(
        job_id=new_job_id(),
        source_file_id="F1",
        download_url="https://files.example/F1",
        original_file_extension="mov",
        original_message_text="",
        event_id="Ev1",
    )
    ctx.store.create_job(job)
    ctx.store.advance(job.job_id, STATE_DOWNLOADING)
    job.download_token = "xoxb-1"
    return job


def test_extract_uploads_and_cleans_scratch(
    ctx: PipelineContext, fake_media: Dict[str, List[str]]
) -> None:
    job = _job(ctx)

    uri = extract(ctx, job)

    assert uri == f"gs://test-bucket/{audio_object_name(job)}"
    assert fake_media["normalize"][0].endswith(".mov")
    assert ctx.store.require_job(job.job_id).state == STATE_UPLOADING
    assert ctx.store.stage_result(job.job_id, "upload") == uri
    assert list(Path(ctx.settings.scratch_dir).iterdir()) == []


def test_extract_cleans_scratch_when_transcode_fails(
    ctx: PipelineContext, monkeypatch: pytest.MonkeyPatch
) -> None:
    job = _job(ctx)

    def fake_download(url, token, dest, timeout_s):
        dest.write_bytes(b"video")
        return 5

    def fake_run(command, **kwargs):
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    monkeypatch.setattr("minutes.media.download_source", fake_download)
    monkeypatch.setattr("minutes.media.subprocess.run", fake_run)

    with pytest.raises(UpstreamError, match="ffmpeg output file not found"):
        extract(ctx, job)
    assert list(Path(ctx.settings.scratch_dir).iterdir()) == []
    assert ctx.storage.uploads == []


def test_extract_reuses_previous_upload(ctx: PipelineContext, fake_media) -> None:
    job = _job(ctx)
    ctx.store.record_stage_result(job.job_id, "upload", "gs://test-bucket/audio/x.wav")

    assert extract(ctx, job) == "gs://test-bucket/audio/x.wav"
    assert fake_media["download"] == []


def test_extract_requires_bearer_credential(ctx: PipelineContext, fake_media) -> None:
    job = _job(ctx)
    job.download_token = None
    with pytest.raises(UpstreamError, match="bearer"):
        extract(ctx, job)
